"""
Data models for the penalty import pipeline.
Defines the persisted penalty record and the transient import structures.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional, Union
from enum import Enum


# Nested blocks of a penalty document
RECORD_BLOCKS = ('location', 'passenger', 'driver', 'vehicle', 'review')


class ImportState(str, Enum):
    """Lifecycle of a single import run."""
    IDLE = "idle"
    READING_LOG_SHEET = "reading_log_sheet"
    READING_EXISTING_KEYS = "reading_existing_keys"
    STREAMING_ROWS = "streaming_rows"
    DRAINING = "draining"
    DONE = "done"
    FAILED = "failed"


class WriteKind(str, Enum):
    """Write operation chosen for a mapped record."""
    INSERT = "insert"
    UPDATE = "update"


@dataclass
class PenaltyRecord:
    """A traffic penalty reconciled from the workbook."""
    penalty_number: int
    event_date: Optional[date] = None
    event_time: Optional[str] = None  # HH:MM:SS
    receipt_time: Optional[str] = None  # HH:MM:SS
    location: dict[str, Any] = field(default_factory=dict)
    passenger: dict[str, Any] = field(default_factory=dict)
    driver: dict[str, Any] = field(default_factory=dict)
    vehicle: dict[str, Any] = field(default_factory=dict)
    review: dict[str, Any] = field(default_factory=dict)
    notes: Optional[str] = None
    is_flagged: bool = False
    is_taxi_penalty: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def driver_name(self) -> Optional[str]:
        return self.driver.get('name')

    @property
    def passenger_name(self) -> Optional[str]:
        return self.passenger.get('name')

    def to_document(self) -> dict[str, Any]:
        """Convert to a JSON-serializable document."""
        doc = {
            'penalty_number': self.penalty_number,
            'event_date': self.event_date.isoformat() if self.event_date else None,
            'event_time': self.event_time,
            'receipt_time': self.receipt_time,
            'notes': self.notes,
            'is_flagged': self.is_flagged,
            'is_taxi_penalty': self.is_taxi_penalty,
        }
        for block in RECORD_BLOCKS:
            doc[block] = {k: _jsonable(v) for k, v in getattr(self, block).items()}
        if self.created_at:
            doc['created_at'] = self.created_at.isoformat()
        if self.updated_at:
            doc['updated_at'] = self.updated_at.isoformat()
        return doc


def _jsonable(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


# Row mapping outcomes

@dataclass
class Mapped:
    """Row mapped to a record."""
    record: PenaltyRecord


@dataclass
class Skipped:
    """Row intentionally not imported (not an error)."""
    reason: str


@dataclass
class Errored:
    """Row could not be mapped."""
    error: str


MapResult = Union[Mapped, Skipped, Errored]


@dataclass
class WriteOp:
    """A record classified for insert or update."""
    kind: WriteKind
    record: PenaltyRecord


@dataclass
class FlagKeySets:
    """Composite keys marked in the daily log sheet."""
    flagged_keys: set[str] = field(default_factory=set)
    taxi_keys: set[str] = field(default_factory=set)
    rows_scanned: int = 0


@dataclass
class ImportSummary:
    """Result of an import run."""
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    imported: int = 0
    updated: int = 0
    errors: int = 0
    total: int = 0
    skipped: int = 0
    flagged_keys: int = 0
    taxi_keys: int = 0
    existing_keys: int = 0
    source_path: Optional[str] = None
    state: ImportState = ImportState.IDLE

    def to_response(self) -> dict:
        """Counters exposed to API callers."""
        return {
            'imported': self.imported,
            'updated': self.updated,
            'errors': self.errors,
            'total': self.total,
        }

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'run_id': self.run_id,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            **self.to_response(),
            'skipped': self.skipped,
            'flagged_keys': self.flagged_keys,
            'taxi_keys': self.taxi_keys,
            'existing_keys': self.existing_keys,
            'source_path': self.source_path,
            'state': self.state.value,
        }


@dataclass
class ColumnSpec:
    """Canonical field and the header spellings it may appear under."""
    field: str  # 'penalty_number' or '<block>.<name>'
    headers: list[str]
    type: str = "str"  # int, float, str, date, time, datetime
    required: bool = False
