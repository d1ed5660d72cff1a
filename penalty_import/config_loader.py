"""
Configuration loading and management.
Loads YAML config files for global settings and the penalty column schema.
"""

import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
import logging
from .models import ColumnSpec
from .utils import deep_merge


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path(__file__).resolve().parent / "config"

FIELD_TYPES = ('int', 'float', 'str', 'date', 'time', 'datetime')


@dataclass
class ImportSettings:
    """Settings for one import run."""
    primary_sheet: str = "Liste"
    log_sheet: str = "Günlük"
    batch_size: int = 50
    existing_key_page_size: int = 1000
    progress_every: int = 500
    default_workbook: Optional[Path] = None


@dataclass
class LogSheetLayout:
    """Where the daily log sheet keeps the reconciliation columns."""
    date_column: int = 2
    driver_column: int = 3
    flagged_header: str = "Şaibeli mi?"
    affirmative: str = "Evet"
    taxi_markers: list[str] = field(default_factory=lambda: ["taksi", "taksici"])


@dataclass
class UploadPolicy:
    """Accepted uploads."""
    staging_dir: Path = Path("./uploads")
    max_bytes: int = 50 * 1024 * 1024
    extensions: list[str] = field(default_factory=lambda: [".xlsx", ".xls"])


class ConfigLoader:
    """Loads and caches configuration from YAML files."""

    def __init__(self, config_dir: Optional[Path] = None, overrides: Optional[dict[str, Any]] = None):
        self.config_dir = Path(config_dir) if config_dir else DEFAULT_CONFIG_DIR
        self.overrides = overrides or {}
        self._cache = {}

    def _load_yaml(self, filepath: Path) -> dict[str, Any]:
        """Load a YAML file and cache it."""
        if filepath in self._cache:
            return self._cache[filepath]

        if not filepath.exists():
            raise FileNotFoundError(f"Config file not found: {filepath}")

        logger.info(f"Loading config: {filepath}")
        with open(filepath, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        self._cache[filepath] = data
        return data

    def load_global_config(self) -> dict[str, Any]:
        """Load global configuration with overrides applied."""
        data = self._load_yaml(self.config_dir / "global_config.yaml")
        return deep_merge(data, self.overrides)

    def section(self, name: str) -> dict[str, Any]:
        return self.load_global_config().get(name) or {}

    def import_settings(self) -> ImportSettings:
        cfg = self.section('import')
        default_workbook = cfg.get('default_workbook')
        return ImportSettings(
            primary_sheet=cfg.get('primary_sheet', "Liste"),
            log_sheet=cfg.get('log_sheet', "Günlük"),
            batch_size=int(cfg.get('batch_size', 50)),
            existing_key_page_size=int(cfg.get('existing_key_page_size', 1000)),
            progress_every=int(cfg.get('progress_every', 500)),
            default_workbook=Path(default_workbook) if default_workbook else None,
        )

    def log_sheet_layout(self) -> LogSheetLayout:
        cfg = self.section('log_sheet')
        return LogSheetLayout(
            date_column=int(cfg.get('date_column', 2)),
            driver_column=int(cfg.get('driver_column', 3)),
            flagged_header=cfg.get('flagged_header', "Şaibeli mi?"),
            affirmative=cfg.get('affirmative', "Evet"),
            taxi_markers=[m.lower() for m in cfg.get('taxi_markers', ["taksi", "taksici"])],
        )

    def upload_policy(self) -> UploadPolicy:
        cfg = self.section('upload')
        return UploadPolicy(
            staging_dir=Path(cfg.get('staging_dir', "./uploads")),
            max_bytes=int(cfg.get('max_bytes', 50 * 1024 * 1024)),
            extensions=[e.lower() for e in cfg.get('extensions', [".xlsx", ".xls"])],
        )

    def db_path(self) -> Path:
        return Path(self.section('storage').get('db_path', "./data/penalties.db"))

    def load_column_specs(self) -> list[ColumnSpec]:
        """Load the column mapping table for the primary sheet."""
        data = self._load_yaml(self.config_dir / "penalty_schema.yaml")

        specs = []
        for entry in data.get('fields', []):
            field_type = entry.get('type', 'str')
            if field_type not in FIELD_TYPES:
                raise ValueError(f"Unknown type '{field_type}' for field {entry.get('field')}")
            headers = entry.get('headers') or []
            if not headers:
                raise ValueError(f"Field {entry.get('field')} declares no headers")
            specs.append(ColumnSpec(
                field=entry['field'],
                headers=[str(h) for h in headers],
                type=field_type,
                required=bool(entry.get('required', False)),
            ))

        logger.info(f"Loaded {len(specs)} column specs (schema v{data.get('version', '1.0')})")
        return specs
