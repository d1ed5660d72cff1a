from __future__ import annotations

import pytest

from penalty_import.key_index import load_existing_keys
from penalty_import.penalty_store import PenaltyStore


class CountingStore:
    def __init__(self, store: PenaltyStore):
        self._store = store
        self.calls = []

    def keys_after(self, last_key, limit):
        self.calls.append((last_key, limit))
        return self._store.keys_after(last_key, limit)


def test_loads_every_key_page_by_page(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(n) for n in range(1, 26)])
    counting = CountingStore(store)

    keys = load_existing_keys(counting, page_size=10)

    assert keys == set(range(1, 26))
    assert counting.calls == [(0, 10), (10, 10), (20, 10)]


def test_exact_multiple_of_page_size_stops_on_empty_page(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(n) for n in range(1, 21)])
    counting = CountingStore(store)

    assert len(load_existing_keys(counting, page_size=10)) == 20
    assert counting.calls[-1] == (20, 10)


def test_empty_store(store: PenaltyStore) -> None:
    assert load_existing_keys(store) == set()


def test_rejects_non_positive_page_size(store: PenaltyStore) -> None:
    with pytest.raises(ValueError):
        load_existing_keys(store, page_size=0)
