"""
Command-line interface.
Runs imports, inspects workbook columns, and browses stored penalties.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Optional
from tabulate import tabulate

from .api import build_store, create_app
from .config_loader import ConfigLoader
from .import_pipeline import ImportOrchestrator
from .logging_setup import setup_logging
from .mapper import ColumnMap
from .penalty_store import PenaltyFilters, PenaltyStore
from .workbook import SheetNotFoundError, WorkbookReadError, open_workbook

logger = logging.getLogger(__name__)


class CLI:
    """Command-line interface for penalty imports."""

    def __init__(self, config: ConfigLoader, store: Optional[PenaltyStore] = None):
        self.config = config
        self._store = store

    @property
    def store(self) -> PenaltyStore:
        if self._store is None:
            self._store = build_store(self.config)
        return self._store

    def run_import(self, file_path: Optional[Path], clear_existing: bool = False,
                   as_json: bool = False) -> int:
        """
        Import a workbook. The file given here is never deleted.

        Returns:
            Process exit code
        """
        orchestrator = ImportOrchestrator(self.store, self.config)
        if file_path is not None:
            orchestrator.settings.default_workbook = Path(file_path)

        try:
            summary = orchestrator.run(clear_existing=clear_existing)
        except (SheetNotFoundError, WorkbookReadError) as e:
            print(f"Import failed: {e}")
            return 1

        if as_json:
            print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
            return 0

        print(f"\nImport {summary.run_id} ({summary.source_path}):\n")
        print(tabulate(
            [
                ['Imported', summary.imported],
                ['Updated', summary.updated],
                ['Errors', summary.errors],
                ['Total', summary.total],
                ['Skipped rows', summary.skipped],
                ['Flagged keys', summary.flagged_keys],
                ['Taxi keys', summary.taxi_keys],
            ],
            headers=['Counter', 'Value'],
            tablefmt='grid',
        ))
        return 0

    def check_columns(self, file_path: Optional[Path]) -> int:
        """Print both sheets' headers and which canonical fields resolve."""
        settings = self.config.import_settings()
        file_path = Path(file_path) if file_path else settings.default_workbook
        if file_path is None:
            print("Error: no workbook given and no default workbook configured")
            return 1
        specs = self.config.load_column_specs()

        try:
            with open_workbook(file_path) as workbook:
                print(f"Sheets: {', '.join(workbook.sheet_names)}")
                for name in (settings.primary_sheet, settings.log_sheet):
                    header = workbook.sheet(name).header_row()
                    print(f"\n=== {name} sheet column headers ({len(header)}) ===")
                    print(tabulate(list(enumerate(header, start=1)), headers=['#', 'Header']))

                column_map = ColumnMap.resolve(workbook.sheet(settings.primary_sheet).header_row(), specs)
        except (SheetNotFoundError, WorkbookReadError) as e:
            print(f"Error: {e}")
            return 1

        rows = [[spec.field, ', '.join(str(i) for i in column_map.get(spec.field)) or '-']
                for spec in specs]
        print(f"\n=== Field mapping ({len(specs) - len(column_map.unresolved)}/{len(specs)} resolved) ===")
        print(tabulate(rows, headers=['Field', 'Column(s)'], tablefmt='simple'))
        return 0

    def list_penalties(self, driver: Optional[str] = None, flagged: Optional[bool] = None,
                       limit: int = 20) -> int:
        penalties, total = self.store.find(
            PenaltyFilters(driver_name=driver, is_flagged=flagged), page=1, limit=limit
        )
        if not penalties:
            print("No penalties found")
            return 0

        table_data = [
            [
                p['penalty_number'],
                p.get('event_date') or '',
                (p.get('driver') or {}).get('name') or '',
                (p.get('vehicle') or {}).get('plate') or '',
                'yes' if p.get('is_flagged') else '',
                'yes' if p.get('is_taxi_penalty') else '',
            ]
            for p in penalties
        ]
        print(f"\nPenalties (showing {len(penalties)} of {total}):\n")
        print(tabulate(table_data,
                       headers=['Penalty no', 'Date', 'Driver', 'Plate', 'Flagged', 'Taxi'],
                       tablefmt='grid'))
        return 0

    def show_stats(self) -> int:
        stats = self.store.stats_overview()
        print(tabulate(
            [
                ['Total', stats['total_penalties']],
                ['Flagged', stats['flagged_count']],
                ['Taxi penalties', stats['taxi_penalty_count']],
                ['Normal', stats['normal_count']],
                ['Driver penalties', stats['driver_penalties']],
                ['Passenger penalties', stats['passenger_penalties']],
            ],
            headers=['Metric', 'Count'],
            tablefmt='grid',
        ))
        if stats['top_locations']:
            print("\nTop locations:")
            print(tabulate([[loc["location"], loc["count"]] for loc in stats['top_locations']],
                           headers=['Location', 'Count']))
        return 0

    def serve(self, host: Optional[str], port: Optional[int]) -> int:
        import uvicorn

        server_cfg = self.config.section('server')
        app = create_app(self.config, store=self.store)
        uvicorn.run(app,
                    host=host or server_cfg.get('host', '127.0.0.1'),
                    port=port or int(server_cfg.get('port', 5000)))
        return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Traffic penalty workbook import")

    parser.add_argument('--config-dir', type=Path, help='Directory with global_config.yaml and penalty_schema.yaml')
    parser.add_argument('--db', type=Path, help='Database path (overrides config)')
    parser.add_argument('--log-level', type=str, help='Logging level (overrides config)')

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    import_parser = subparsers.add_parser('import', help='Import a penalty workbook')
    import_parser.add_argument('--file', type=Path, help='Workbook path (default: configured workbook)')
    import_parser.add_argument('--clear-existing', action='store_true',
                               help='Delete all stored penalties first (irreversible)')
    import_parser.add_argument('--json', action='store_true', help='Print the run summary as JSON')

    columns_parser = subparsers.add_parser('check-columns', help='Show workbook headers and field mapping')
    columns_parser.add_argument('--file', type=Path, help='Workbook path')

    list_parser = subparsers.add_parser('list', help='List stored penalties')
    list_parser.add_argument('--driver', type=str, help='Driver name contains')
    list_parser.add_argument('--flagged', action='store_true', help='Only flagged penalties')
    list_parser.add_argument('--limit', type=int, default=20, help='Number of rows')

    subparsers.add_parser('stats', help='Show penalty statistics')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--host', type=str, help='Bind host')
    serve_parser.add_argument('--port', type=int, help='Bind port')

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = {}
    if args.db:
        overrides['storage'] = {'db_path': str(args.db)}
    config = ConfigLoader(args.config_dir, overrides=overrides)

    log_cfg = config.section('logging')
    setup_logging(
        Path(log_cfg.get('log_dir', './logs')),
        log_level=args.log_level or log_cfg.get('level', 'INFO'),
        json_format=bool(log_cfg.get('json_format', True)),
        console_output=bool(log_cfg.get('console_output', True)),
    )

    cli = CLI(config)

    if args.command == 'import':
        return cli.run_import(args.file, clear_existing=args.clear_existing, as_json=args.json)
    elif args.command == 'check-columns':
        return cli.check_columns(args.file)
    elif args.command == 'list':
        return cli.list_penalties(args.driver, flagged=True if args.flagged else None, limit=args.limit)
    elif args.command == 'stats':
        return cli.show_stats()
    elif args.command == 'serve':
        return cli.serve(args.host, args.port)
    else:
        parser.print_help()
        return 2


if __name__ == '__main__':
    sys.exit(main())
