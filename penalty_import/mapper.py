"""
Field mapping module.
Maps "Liste" sheet rows to penalty records using the column mapping table.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional
from .coercion import COERCERS, CellCoercionError, parse_penalty_number
from .models import ColumnSpec, Errored, MapResult, Mapped, PenaltyRecord, RECORD_BLOCKS, Skipped
from .workbook import SheetRow

logger = logging.getLogger(__name__)

KEY_FIELD = 'penalty_number'
TOP_LEVEL_FIELDS = ('event_date', 'event_time', 'receipt_time', 'notes')


def normalize_header(text: str) -> str:
    """Case-folded header with collapsed whitespace."""
    return re.sub(r'\s+', ' ', str(text)).strip().casefold()


class ColumnMap:
    """
    Canonical field to 1-based column indices, resolved once per sheet.

    A field keeps one index per header synonym found in the sheet, in synonym
    order, so a blank cell under the preferred spelling falls back to the
    next one.
    """

    def __init__(self, indices: Dict[str, List[int]], unresolved: List[str]):
        self.indices = indices
        self.unresolved = unresolved

    @classmethod
    def resolve(cls, header_row: List[Optional[str]], specs: List[ColumnSpec]) -> 'ColumnMap':
        """
        Resolve each spec's header synonyms against a header row.

        For each synonym an exact match wins over a normalized
        (whitespace/case-insensitive) one.
        """
        exact = {}
        normalized = {}
        for idx, name in enumerate(header_row, start=1):
            if name is None:
                continue
            exact.setdefault(name, idx)
            normalized.setdefault(normalize_header(name), idx)

        indices = {}
        unresolved = []
        for spec in specs:
            found = []
            for header in spec.headers:
                index = exact.get(header) or normalized.get(normalize_header(header))
                if index and index not in found:
                    found.append(index)
            if found:
                indices[spec.field] = found
            else:
                unresolved.append(spec.field)

        if unresolved:
            logger.debug(f"Unresolved columns: {unresolved}")
        return cls(indices, unresolved)

    def get(self, field: str) -> List[int]:
        return self.indices.get(field, [])

    def value(self, field: str, cell: Callable[[int], Any]) -> Any:
        """First non-blank value among the field's columns."""
        for index in self.get(field):
            value = cell(index)
            if value is not None and not (isinstance(value, str) and not value.strip()):
                return value
        return None


class RowMapper:
    """Maps raw rows to PenaltyRecord objects."""

    def __init__(self, specs: List[ColumnSpec], column_map: Optional[ColumnMap] = None):
        self.specs = specs
        self.column_map = column_map
        self._key_spec = next((s for s in specs if s.field == KEY_FIELD), None)
        if self._key_spec is None:
            raise ValueError(f"Column specs must define '{KEY_FIELD}'")
        for spec in specs:
            self._check_field(spec.field)

    @classmethod
    def for_header(cls, specs: List[ColumnSpec], header_row: List[Optional[str]]) -> 'RowMapper':
        return cls(specs, ColumnMap.resolve(header_row, specs))

    @staticmethod
    def _check_field(field: str) -> None:
        if field == KEY_FIELD or field in TOP_LEVEL_FIELDS:
            return
        block, _, name = field.partition('.')
        if block not in RECORD_BLOCKS or not name:
            raise ValueError(f"Unknown canonical field: {field}")

    def map_row(self, row: SheetRow) -> MapResult:
        """Map a sheet row using the resolved column map."""
        if self.column_map is None:
            raise RuntimeError("RowMapper has no column map; use RowMapper.for_header()")

        return self._map(lambda spec: self.column_map.value(spec.field, row.cell))

    def map_values(self, values: Dict[str, Any]) -> MapResult:
        """Map a dict keyed by header text."""
        column_map = ColumnMap.resolve(list(values.keys()), self.specs)
        raw = list(values.values())
        return self._map(lambda spec: column_map.value(spec.field, lambda idx: raw[idx - 1]))

    def _map(self, getter: Callable[[ColumnSpec], Any]) -> MapResult:
        penalty_number = parse_penalty_number(getter(self._key_spec))
        if penalty_number is None:
            return Skipped("missing penalty number")

        record = PenaltyRecord(penalty_number=penalty_number)
        for spec in self.specs:
            if spec.field == KEY_FIELD:
                continue
            try:
                value = COERCERS[spec.type](getter(spec))
            except CellCoercionError as e:
                return Errored(f"{spec.field}: {e}")
            self._assign(record, spec.field, value)

        return Mapped(record)

    @staticmethod
    def _assign(record: PenaltyRecord, field: str, value: Any) -> None:
        if field in TOP_LEVEL_FIELDS:
            setattr(record, field, value)
            return
        block, _, name = field.partition('.')
        getattr(record, block)[name] = value
