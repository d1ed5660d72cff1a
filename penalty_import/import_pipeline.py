"""
Import pipeline orchestrator.
Coordinates workbook reading, cross-sheet reconciliation, existing-key lookup
and batched writes for one penalty workbook import.
"""

import logging
from pathlib import Path
from typing import Optional
from datetime import datetime

from .batch_writer import BatchWriter, FlushSlot
from .config_loader import ConfigLoader
from .key_index import load_existing_keys
from .logging_setup import run_context
from .mapper import RowMapper
from .models import Errored, FlagKeySets, ImportState, ImportSummary, Mapped, Skipped
from .penalty_store import PenaltyStore
from .reconciler import Reconciler
from .utils import discard_file, new_run_id
from .workbook import SheetRow, WorkbookReadError, open_workbook

logger = logging.getLogger(__name__)


class ImportOrchestrator:
    """Runs penalty workbook imports against a penalty store."""

    def __init__(self, store: PenaltyStore, config: ConfigLoader):
        """
        Initialize import orchestrator.

        Args:
            store: PenaltyStore to import into
            config: ConfigLoader with import settings and column specs
        """
        self.store = store
        self.settings = config.import_settings()
        self.layout = config.log_sheet_layout()
        self.specs = config.load_column_specs()
        self.state = ImportState.IDLE
        self.state_history = [ImportState.IDLE]

    def _set_state(self, state: ImportState) -> None:
        self.state = state
        self.state_history.append(state)
        logger.debug(f"Import state: {state.value}")

    def run(self, upload_path: Optional[Path] = None, clear_existing: bool = False) -> ImportSummary:
        """
        Import a workbook.

        Args:
            upload_path: Uploaded temp file; removed when the run ends.
                If None, the configured default workbook is used and kept.
            clear_existing: Delete every stored penalty before importing.
                Destructive and not transactional: the wipe is not undone if
                the import fails later.

        Returns:
            ImportSummary with imported / updated / errors / total counters

        Raises:
            SheetNotFoundError: A required sheet is missing (nothing written)
            WorkbookReadError: The workbook cannot be read
        """
        summary = ImportSummary(run_id=new_run_id(), started_at=datetime.now())
        with run_context(summary.run_id):
            return self._run(summary, upload_path, clear_existing)

    def _run(self, summary: ImportSummary, upload_path: Optional[Path], clear_existing: bool) -> ImportSummary:
        is_upload = upload_path is not None
        workbook_path = Path(upload_path) if is_upload else self.settings.default_workbook

        try:
            if workbook_path is None:
                raise WorkbookReadError("No workbook uploaded and no default workbook configured")
            summary.source_path = str(workbook_path)
            logger.info(f"Starting import {summary.run_id} from {workbook_path.name}")

            with open_workbook(workbook_path) as workbook:
                log_sheet = workbook.sheet(self.settings.log_sheet)
                primary_sheet = workbook.sheet(self.settings.primary_sheet)

                if clear_existing:
                    deleted = self.store.delete_all()
                    logger.warning(f"clear_existing set: deleted {deleted} penalties before import")

                self._set_state(ImportState.READING_LOG_SHEET)
                flag_sets = Reconciler.build_flag_sets(log_sheet, self.layout)
                summary.flagged_keys = len(flag_sets.flagged_keys)
                summary.taxi_keys = len(flag_sets.taxi_keys)

                self._set_state(ImportState.READING_EXISTING_KEYS)
                existing_keys = load_existing_keys(self.store, self.settings.existing_key_page_size)
                summary.existing_keys = len(existing_keys)

                self._set_state(ImportState.STREAMING_ROWS)
                mapper = RowMapper.for_header(self.specs, primary_sheet.header_row())
                writer = BatchWriter(
                    self.store,
                    batch_size=self.settings.batch_size,
                    slot=FlushSlot(),
                    progress_every=self.settings.progress_every,
                )
                try:
                    for row in primary_sheet.iter_rows():
                        if not self._process_row(row, mapper, flag_sets, existing_keys, writer):
                            summary.skipped += 1

                    self._set_state(ImportState.DRAINING)
                    writer.flush_all()
                finally:
                    writer.close()

            counters = writer.counters()
            summary.imported = counters['imported']
            summary.updated = counters['updated']
            summary.errors = counters['errors']
            summary.total = counters['total']
            summary.completed_at = datetime.now()
            self._set_state(ImportState.DONE)
            summary.state = self.state

            logger.info(
                f"Import {summary.run_id} complete: {summary.imported} imported, "
                f"{summary.updated} updated, {summary.errors} errors, "
                f"{summary.total} total, {summary.skipped} skipped"
            )
            return summary

        except Exception as e:
            self._set_state(ImportState.FAILED)
            summary.state = self.state
            logger.error(f"Import {summary.run_id} failed: {e}")
            raise

        finally:
            if is_upload:
                try:
                    discard_file(workbook_path)
                except OSError as e:
                    logger.error(f"Could not remove uploaded file {workbook_path}: {e}")

    def _process_row(self,
                     row: SheetRow,
                     mapper: RowMapper,
                     flag_sets: FlagKeySets,
                     existing_keys: set[int],
                     writer: BatchWriter) -> bool:
        """Map, reconcile and enqueue one row. Returns False if skipped."""
        try:
            result = mapper.map_row(row)
        except Exception as e:
            result = Errored(str(e))

        if isinstance(result, Mapped):
            record = Reconciler.apply_flags(result.record, flag_sets)
            writer.enqueue(BatchWriter.classify(record, existing_keys))
            return True
        if isinstance(result, Skipped):
            return False

        logger.debug(f"Error processing row {row.row_number}: {result.error}")
        writer.record_row_error(result.error)
        return True
