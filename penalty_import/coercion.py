"""
Cell value coercions.
Converts raw spreadsheet values (serial dates, day fractions, numbers stored
as text) into the types stored on a penalty record.
"""

import logging
import math
from datetime import date, datetime, time
from typing import Any, Optional
from openpyxl.utils.datetime import from_excel

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60

DATETIME_FORMATS = (
    '%d.%m.%Y %H:%M:%S',
    '%d.%m.%Y %H:%M',
    '%d.%m.%Y',
    '%d/%m/%Y %H:%M',
    '%d/%m/%Y',
)


class CellCoercionError(ValueError):
    """Cell value cannot be converted to the column's type."""

    def __init__(self, value: Any, target: str):
        self.value = value
        self.target = target
        super().__init__(f"Cannot convert {value!r} to {target}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def excel_serial_to_date(value: Any) -> Optional[date]:
    """
    Convert a spreadsheet date serial to a calendar date.

    Serials count days from 1899-12-30 and keep the 1900 leap-year bug, so
    serials below 61 are shifted by one day. Date objects produced by the
    reader pass through. Anything else yields None.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not _is_number(value) or value <= 0:
        return None
    converted = from_excel(value)
    if isinstance(converted, datetime):
        return converted.date()
    return None


def excel_fraction_to_time(value: Any) -> Optional[str]:
    """
    Convert a fraction of a 24-hour day to a zero padded HH:MM:SS string.

    Values above 1 keep only their fractional part. Time objects produced by
    the reader pass through. Anything else yields None.
    """
    if isinstance(value, datetime):
        return value.strftime('%H:%M:%S')
    if isinstance(value, time):
        return value.strftime('%H:%M:%S')
    if not _is_number(value) or value < 0:
        return None
    seconds = round((value % 1) * SECONDS_PER_DAY) % SECONDS_PER_DAY
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def parse_penalty_number(value: Any) -> Optional[int]:
    """Integral number or digit string, else None."""
    if _is_number(value):
        if float(value).is_integer() and value > 0:
            return int(value)
        return None
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit() and int(text) > 0:
            return int(text)
    return None


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def coerce_str(value: Any) -> Optional[str]:
    if _blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        # Phone numbers and ids typed as numbers
        return str(int(value))
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value).strip()


def coerce_int(value: Any) -> Optional[int]:
    if _blank(value):
        return None
    if _is_number(value) and float(value).is_integer():
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip('-').isdigit():
            return int(text)
    raise CellCoercionError(value, 'int')


def coerce_float(value: Any) -> Optional[float]:
    if _blank(value):
        return None
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip().replace(' ', '')
        # 1.234,56 style amounts
        if ',' in text:
            text = text.replace('.', '').replace(',', '.')
        try:
            return float(text)
        except ValueError:
            pass
    raise CellCoercionError(value, 'float')


def coerce_date(value: Any) -> Optional[date]:
    if _blank(value):
        return None
    converted = excel_serial_to_date(value)
    if converted is not None:
        return converted
    if isinstance(value, str):
        parsed = coerce_datetime(value)
        return parsed.date() if parsed else None
    raise CellCoercionError(value, 'date')


def coerce_time(value: Any) -> Optional[str]:
    if _blank(value):
        return None
    converted = excel_fraction_to_time(value)
    if converted is not None:
        return converted
    if isinstance(value, str):
        text = value.strip()
        for fmt in ('%H:%M:%S', '%H:%M'):
            try:
                return datetime.strptime(text, fmt).strftime('%H:%M:%S')
            except ValueError:
                continue
    raise CellCoercionError(value, 'time')


def coerce_datetime(value: Any) -> Optional[datetime]:
    if _blank(value):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, time())
    if _is_number(value) and value > 0:
        converted = from_excel(value)
        if isinstance(converted, datetime):
            return converted
    if isinstance(value, str):
        text = value.strip()
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            pass
        for fmt in DATETIME_FORMATS:
            try:
                return datetime.strptime(text, fmt)
            except ValueError:
                continue
    raise CellCoercionError(value, 'datetime')


COERCERS = {
    'int': coerce_int,
    'float': coerce_float,
    'str': coerce_str,
    'date': coerce_date,
    'time': coerce_time,
    'datetime': coerce_datetime,
}
