"""
Traffic penalty workbook import package.
"""

__version__ = "0.1.0"
__author__ = "Operations Team"

from .models import (
    PenaltyRecord,
    ImportSummary,
    ImportState,
    FlagKeySets,
    Mapped,
    Skipped,
    Errored,
    WriteKind,
    WriteOp,
    ColumnSpec,
)
from .config_loader import ConfigLoader
from .logging_setup import setup_logging, get_logger
from .workbook import open_workbook, SheetNotFoundError, WorkbookReadError
from .penalty_store import PenaltyStore, BulkWriteError
from .import_pipeline import ImportOrchestrator

__all__ = [
    'PenaltyRecord',
    'ImportSummary',
    'ImportState',
    'FlagKeySets',
    'Mapped',
    'Skipped',
    'Errored',
    'WriteKind',
    'WriteOp',
    'ColumnSpec',
    'ConfigLoader',
    'setup_logging',
    'get_logger',
    'open_workbook',
    'SheetNotFoundError',
    'WorkbookReadError',
    'PenaltyStore',
    'BulkWriteError',
    'ImportOrchestrator',
]
