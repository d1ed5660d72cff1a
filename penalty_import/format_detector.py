"""
Workbook format detection.

Uploads are staged under random names, so the extension is only a hint;
the file signature decides when the extension is missing or unknown.
"""

import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkbookFormat(str, Enum):
    XLSX = "xlsx"  # Office Open XML, zip container
    XLS = "xls"  # BIFF8 in an OLE2 compound file
    UNKNOWN = "unknown"


SIGNATURES = (
    (b'PK\x03\x04', WorkbookFormat.XLSX),
    (b'\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1', WorkbookFormat.XLS),
)

SUFFIXES = {
    '.xlsx': WorkbookFormat.XLSX,
    '.xlsm': WorkbookFormat.XLSX,
    '.xls': WorkbookFormat.XLS,
}


def sniff_signature(path: Path) -> WorkbookFormat:
    """Format from the first bytes of the file."""
    try:
        with open(path, 'rb') as f:
            head = f.read(8)
    except OSError as e:
        logger.warning(f"Could not read {Path(path).name} to sniff its format: {e}")
        return WorkbookFormat.UNKNOWN

    return next((fmt for magic, fmt in SIGNATURES if head.startswith(magic)), WorkbookFormat.UNKNOWN)


def detect_format(path: Path) -> WorkbookFormat:
    """Workbook format by extension, falling back to the file signature."""
    path = Path(path)
    by_suffix = SUFFIXES.get(path.suffix.lower())
    if by_suffix is not None:
        return by_suffix

    detected = sniff_signature(path)
    if detected is WorkbookFormat.UNKNOWN:
        logger.warning(f"{path.name} is neither an xlsx nor an xls workbook")
    else:
        logger.debug(f"{path.name} detected as {detected.value} by signature")
    return detected

