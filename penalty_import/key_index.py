"""
Existing-record index.
Pages through the penalty store to collect every known penalty number.
"""

import logging
from .penalty_store import PenaltyStore

logger = logging.getLogger(__name__)


def load_existing_keys(store: PenaltyStore, page_size: int = 1000) -> set[int]:
    """
    Load all persisted penalty numbers.

    Uses a key cursor (numbers greater than the last one seen, ascending) so
    only one page of keys is fetched at a time.

    Args:
        store: Penalty store
        page_size: Keys per query

    Returns:
        Set of penalty numbers
    """
    if page_size < 1:
        raise ValueError("page_size must be positive")

    keys = set()
    last_key = 0
    pages = 0

    while True:
        page = store.keys_after(last_key, page_size)
        if not page:
            break
        pages += 1
        keys.update(page)
        last_key = page[-1]
        if len(page) < page_size:
            break

    logger.info(f"Found {len(keys)} existing penalties ({pages} pages)")
    return keys
