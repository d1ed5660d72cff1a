"""
Cross-sheet reconciliation.
Indexes the daily log sheet by (event date, driver name) and derives the
flagged / taxi-penalty status of primary-sheet records from it.
"""

import logging
from datetime import date
from typing import Any, Optional
from .coercion import CellCoercionError, coerce_date, coerce_str
from .config_loader import LogSheetLayout
from .models import FlagKeySets, PenaltyRecord
from .workbook import Sheet

logger = logging.getLogger(__name__)


def _lower(text: str) -> str:
    # str.lower() turns dotted capital I into "i" + combining dot
    return text.replace('İ', 'i').lower()


class Reconciler:
    """Builds flag key sets and applies them to mapped records."""

    @staticmethod
    def composite_key(event_date: Optional[date], driver_name: Optional[str]) -> Optional[str]:
        """
        Join key between the two sheets.

        Returns:
            '<YYYY-MM-DD>_<driver name>' or None if either part is missing
        """
        if not event_date or not driver_name:
            return None
        return f"{event_date.isoformat()}_{driver_name}"

    @staticmethod
    def _cell_date(value: Any) -> Optional[date]:
        try:
            return coerce_date(value)
        except CellCoercionError:
            return None

    @staticmethod
    def find_flag_column(header_row: list, label: str) -> int:
        """1-based index of the flagged-label header, -1 when absent."""
        for idx, name in enumerate(header_row, start=1):
            if name is not None and str(name).strip() == label:
                return idx
        return -1

    @staticmethod
    def build_flag_sets(log_sheet: Sheet, layout: LogSheetLayout) -> FlagKeySets:
        """
        Scan the daily log sheet once and collect flagged / taxi keys.

        The flagged column is found by its header label; the column right
        after it holds free-text notes that mark taxi penalties. A missing
        label disables both checks without failing.

        Args:
            log_sheet: The daily log sheet
            layout: Column positions and literals of the sheet

        Returns:
            FlagKeySets
        """
        flagged_col = Reconciler.find_flag_column(log_sheet.header_row(), layout.flagged_header)
        taxi_col = flagged_col + 1 if flagged_col != -1 else -1
        if flagged_col == -1:
            logger.warning(
                f"Header '{layout.flagged_header}' not found in sheet {log_sheet.name}; "
                f"no records will be flagged"
            )

        flag_sets = FlagKeySets()

        for row in log_sheet.iter_rows():
            event_date = Reconciler._cell_date(row.cell(layout.date_column))
            driver_name = coerce_str(row.cell(layout.driver_column))
            key = Reconciler.composite_key(event_date, driver_name)
            if key is None:
                continue

            if flagged_col != -1:
                flagged_value = row.cell(flagged_col)
                if isinstance(flagged_value, str) and flagged_value.strip() == layout.affirmative:
                    flag_sets.flagged_keys.add(key)

            if taxi_col != -1:
                note = row.cell(taxi_col)
                note_text = _lower(str(note)) if note is not None else ''
                if any(marker in note_text for marker in layout.taxi_markers):
                    flag_sets.taxi_keys.add(key)

            flag_sets.rows_scanned += 1

        logger.info(
            f"Processed {flag_sets.rows_scanned} rows from {log_sheet.name}: "
            f"{len(flag_sets.flagged_keys)} flagged, {len(flag_sets.taxi_keys)} taxi"
        )
        return flag_sets

    @staticmethod
    def apply_flags(record: PenaltyRecord, flag_sets: FlagKeySets) -> PenaltyRecord:
        """Set derived flags on a mapped record."""
        key = Reconciler.composite_key(record.event_date, record.driver_name)
        if key is None:
            return record
        record.is_flagged = key in flag_sets.flagged_keys
        record.is_taxi_penalty = key in flag_sets.taxi_keys
        return record
