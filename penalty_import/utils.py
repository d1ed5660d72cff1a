"""
Small helpers shared by the import pipeline, the store and the API.
"""

import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)


def new_run_id(now: Optional[datetime] = None) -> str:
    """Import run id: import_<YYYYmmdd_HHMMSS>_<8 hex chars>."""
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"import_{stamp}_{secrets.token_hex(4)}"


def discard_file(path: Path) -> bool:
    """Delete a staged file. Returns False if it was already gone."""
    try:
        Path(path).unlink()
    except FileNotFoundError:
        return False
    logger.debug(f"Removed staged file {path}")
    return True


def deep_merge(base: Mapping[str, Any], patch: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge patch into a copy of base.

    Nested mappings are merged key by key, any other value replaces the one
    in base. Neither argument is modified.
    """
    merged = dict(base)
    for key, value in patch.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def shorten(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit - 3] + "..."
