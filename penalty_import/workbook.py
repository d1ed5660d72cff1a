"""
Workbook reader with streaming row access.
Opens XLSX (openpyxl, read-only mode) and legacy XLS (xlrd) workbooks behind
one sheet interface so rows are consumed one at a time.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Iterator, Optional
import openpyxl
import xlrd

from .format_detector import WorkbookFormat, detect_format

logger = logging.getLogger(__name__)

XLSX_EXTENSIONS = ('.xlsx', '.xlsm')


class WorkbookReadError(Exception):
    """Workbook could not be opened or read."""


class SheetNotFoundError(KeyError):
    """A required sheet is missing from the workbook."""

    def __init__(self, sheet_name: str, available: Optional[list[str]] = None):
        self.sheet_name = sheet_name
        self.available = available or []
        super().__init__(sheet_name)

    def __str__(self) -> str:
        return f"{self.sheet_name} sheet not found"


class SheetRow:
    """One data row of a sheet."""

    __slots__ = ('row_number', 'values', '_columns')

    def __init__(self, row_number: int, values: tuple, columns: dict[str, int]):
        self.row_number = row_number
        self.values = values
        self._columns = columns

    def cell(self, index: int) -> Any:
        """Raw value of a 1-based column, None when absent."""
        if index < 1 or index > len(self.values):
            return None
        return self.values[index - 1]

    def get(self, column_name: str) -> Any:
        """Raw value by header text, None when the header is unknown."""
        index = self._columns.get(column_name)
        if index is None:
            return None
        return self.cell(index)

    def as_dict(self) -> dict[str, Any]:
        return {name: self.cell(idx) for name, idx in self._columns.items()}


class Sheet(ABC):
    """A named worksheet. Row 1 is the header row."""

    def __init__(self, name: str):
        self.name = name
        self._header: Optional[list[Optional[str]]] = None

    @abstractmethod
    def _iter_raw_rows(self, min_row: int) -> Iterator[tuple]:
        """Yield raw value tuples starting at a 1-based row."""
        pass

    def header_row(self) -> list[Optional[str]]:
        """Ordered column names of row 1 (None for blank header cells)."""
        if self._header is None:
            first = next(self._iter_raw_rows(1), ())
            self._header = [str(v) if v is not None else None for v in first]
        return self._header

    def column_index(self) -> dict[str, int]:
        """Header text to 1-based column index; first occurrence wins."""
        columns = {}
        for idx, name in enumerate(self.header_row(), start=1):
            if name and name not in columns:
                columns[name] = idx
        return columns

    def iter_rows(self) -> Iterator[SheetRow]:
        """Stream data rows, skipping the header and fully empty rows."""
        columns = self.column_index()
        for row_number, values in enumerate(self._iter_raw_rows(2), start=2):
            if all(v is None for v in values):
                continue
            yield SheetRow(row_number, values, columns)

    def for_each_row(self, callback: Callable[[SheetRow], None]) -> int:
        """Invoke callback once per data row. Returns rows visited."""
        count = 0
        for row in self.iter_rows():
            callback(row)
            count += 1
        return count


class XLSXSheet(Sheet):

    def __init__(self, worksheet):
        super().__init__(worksheet.title)
        # stored <dimension> may be stale; scan the actual rows instead
        worksheet.reset_dimensions()
        self._worksheet = worksheet

    def _iter_raw_rows(self, min_row: int) -> Iterator[tuple]:
        return self._worksheet.iter_rows(min_row=min_row, values_only=True)


class XLSSheet(Sheet):

    def __init__(self, sheet):
        super().__init__(sheet.name)
        self._sheet = sheet

    def _iter_raw_rows(self, min_row: int) -> Iterator[tuple]:
        for row_idx in range(min_row - 1, self._sheet.nrows):
            yield tuple(None if v == '' else v for v in self._sheet.row_values(row_idx))


class Workbook:
    """An open workbook. Use as a context manager to release the file."""

    def __init__(self, path: Path, file_format: WorkbookFormat, book, handle=None):
        self.path = Path(path)
        self.file_format = file_format
        self._book = book
        self._handle = handle

    @property
    def sheet_names(self) -> list[str]:
        if self.file_format is WorkbookFormat.XLS:
            return self._book.sheet_names()
        return list(self._book.sheetnames)

    def sheet(self, name: str) -> Sheet:
        """Get a sheet by name or raise SheetNotFoundError."""
        names = self.sheet_names
        if name not in names:
            raise SheetNotFoundError(name, names)
        if self.file_format is WorkbookFormat.XLS:
            return XLSSheet(self._book.sheet_by_name(name))
        return XLSXSheet(self._book[name])

    def close(self) -> None:
        if self._book is None:
            return
        if self.file_format is WorkbookFormat.XLS:
            self._book.release_resources()
        else:
            self._book.close()
        self._book = None
        if self._handle is not None:
            self._handle.close()
            self._handle = None

    def __enter__(self) -> 'Workbook':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def open_workbook(path: Path) -> Workbook:
    """
    Open a workbook for streaming reads.

    Args:
        path: Path to an .xlsx or .xls file

    Returns:
        Workbook

    Raises:
        WorkbookReadError: If the file is missing, unsupported or corrupt
    """
    path = Path(path)
    if not path.exists():
        raise WorkbookReadError(f"Workbook not found: {path}")

    file_format = detect_format(path)
    logger.info(f"Opening workbook: {path.name} ({file_format.value})")

    handle = None
    try:
        if file_format is WorkbookFormat.XLSX:
            # openpyxl rejects paths without an xlsx extension
            if path.suffix.lower() not in XLSX_EXTENSIONS:
                handle = open(path, 'rb')
            book = openpyxl.load_workbook(handle or path, read_only=True, data_only=True)
        elif file_format is WorkbookFormat.XLS:
            book = xlrd.open_workbook(str(path), on_demand=True)
        else:
            raise WorkbookReadError(f"Unsupported workbook format: {path.name}")
    except WorkbookReadError:
        raise
    except Exception as e:
        if handle is not None:
            handle.close()
        logger.error(f"Error opening workbook {path.name}: {e}")
        raise WorkbookReadError(f"Workbook could not be read: {e}") from e

    return Workbook(path, file_format, book, handle)
