from __future__ import annotations

import json
import time
from datetime import date

import pytest

from penalty_import.penalty_store import (
    BulkWriteError,
    DocumentValidationError,
    PenaltyFilters,
    PenaltyStore,
)


def test_insert_many_and_lookup(store: PenaltyStore, make_record) -> None:
    record = make_record(1001, event_time='10:30:00')
    record.vehicle['plate'] = '34 ABC 123'

    assert store.insert_many([record, make_record(1002)]) == 2

    doc = store.get_by_number(1001)
    assert doc['event_date'] == '2024-01-10'
    assert doc['event_time'] == '10:30:00'
    assert doc['driver']['name'] == 'Ahmet Yılmaz'
    assert doc['vehicle']['plate'] == '34 ABC 123'
    assert doc['created_at'] == doc['updated_at']
    assert store.get(doc['id'])['penalty_number'] == 1001
    assert store.count() == 2


def test_insert_many_is_unordered(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(1001)])

    with pytest.raises(BulkWriteError) as exc_info:
        store.insert_many([make_record(1001), make_record(1002), make_record(1003, event_date=None)])

    error = exc_info.value
    assert error.inserted_count == 1
    assert [e.penalty_number for e in error.write_errors] == [1001, 1003]
    assert [e.index for e in error.write_errors] == [0, 2]
    assert 'event_date is required' in error.write_errors[1].message
    assert store.count() == 2


def test_update_many_keeps_created_at(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(1001)])
    before = store.get_by_number(1001)
    time.sleep(0.01)

    changed = make_record(1001, driver='Mehmet Kaya', is_flagged=True)
    matched = store.update_many([changed, make_record(9999)])

    after = store.get_by_number(1001)
    assert matched == 1
    assert after['driver']['name'] == 'Mehmet Kaya'
    assert after['is_flagged'] is True
    assert after['created_at'] == before['created_at']
    assert after['updated_at'] > before['updated_at']
    assert store.get_by_number(9999) is None


def test_unique_penalty_number(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(1001)])
    with pytest.raises(BulkWriteError):
        store.insert_many([make_record(1001, driver='Başka Sürücü')])
    assert store.count() == 1


def test_keys_after_pages_in_key_order(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(n) for n in (5, 3, 9, 1, 7)])

    assert store.keys_after(0, 2) == [1, 3]
    assert store.keys_after(3, 2) == [5, 7]
    assert store.keys_after(7, 2) == [9]
    assert store.keys_after(9, 2) == []


def test_delete_all(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(1), make_record(2)])
    assert store.delete_all() == 2
    assert store.count() == 0


def test_find_filters_and_orders_newest_first(store: PenaltyStore, make_record) -> None:
    first = make_record(1001, event_date=date(2024, 1, 10), is_flagged=True)
    first.vehicle['plate'] = '34 ABC 123'
    second = make_record(1002, event_date=date(2024, 2, 1), driver='Mehmet Kaya')
    second.location['place'] = 'Kadıköy'
    third = make_record(1003, event_date=date(2024, 3, 5))
    store.insert_many([first, second, third])

    docs, total = store.find()
    assert total == 3
    assert [d['penalty_number'] for d in docs] == [1003, 1002, 1001]

    docs, total = store.find(PenaltyFilters(driver_name='ahmet'))
    assert (total, {d['penalty_number'] for d in docs}) == (2, {1001, 1003})

    docs, _ = store.find(PenaltyFilters(vehicle_plate='abc'))
    assert [d['penalty_number'] for d in docs] == [1001]

    docs, _ = store.find(PenaltyFilters(event_place='kadı'))
    assert [d['penalty_number'] for d in docs] == [1002]

    docs, _ = store.find(PenaltyFilters(is_flagged=True))
    assert [d['penalty_number'] for d in docs] == [1001]

    docs, _ = store.find(PenaltyFilters(start_date=date(2024, 1, 15), end_date=date(2024, 2, 28)))
    assert [d['penalty_number'] for d in docs] == [1002]

    docs, total = store.find(page=2, limit=2)
    assert total == 3
    assert [d['penalty_number'] for d in docs] == [1001]


def test_update_fields_merges_blocks(store: PenaltyStore, make_record) -> None:
    record = make_record(1001)
    record.driver['phone'] = '5321234567'
    store.insert_many([record])
    penalty_id = store.get_by_number(1001)['id']

    updated = store.update_fields(penalty_id, {'driver': {'paid': 'Evet'}, 'notes': 'ödendi', 'id': 77})

    assert updated['id'] == penalty_id
    assert updated['driver'] == {'name': 'Ahmet Yılmaz', 'phone': '5321234567', 'paid': 'Evet'}
    assert updated['notes'] == 'ödendi'
    stored = json.loads(json.dumps(store.get(penalty_id)))
    assert stored['driver']['paid'] == 'Evet'


def test_update_fields_validates(store: PenaltyStore, make_record) -> None:
    store.insert_many([make_record(1001)])
    penalty_id = store.get_by_number(1001)['id']

    with pytest.raises(DocumentValidationError):
        store.update_fields(penalty_id, {'event_date': None})
    assert store.update_fields(penalty_id + 100, {'notes': 'x'}) is None


def test_stats_overview(store: PenaltyStore, make_record) -> None:
    a = make_record(1, event_date=date(2024, 1, 10), is_flagged=True)
    a.driver['paid'] = 'Evet'
    a.location['place'] = 'Kadıköy'
    b = make_record(2, event_date=date(2024, 1, 20), is_taxi_penalty=True)
    b.passenger['penalty_payable'] = 'Belirsiz'
    b.location['place'] = 'Kadıköy'
    c = make_record(3, event_date=date(2024, 2, 5))
    c.location['place'] = 'Beşiktaş'
    store.insert_many([a, b, c])

    stats = store.stats_overview(today=date(2024, 2, 10))

    assert stats['total_penalties'] == 3
    assert stats['flagged_count'] == 1
    assert stats['taxi_penalty_count'] == 1
    assert stats['normal_count'] == 1
    assert stats['driver_penalties'] == 1
    assert stats['passenger_penalties'] == 1
    assert stats['monthly'] == [
        {'year': 2024, 'month': 1, 'count': 2},
        {'year': 2024, 'month': 2, 'count': 1},
    ]
    assert stats['daily'] == [
        {'date': '2024-01-20', 'count': 1},
        {'date': '2024-02-05', 'count': 1},
    ]
    assert stats['top_locations'][0] == {'location': 'Kadıköy', 'count': 2}

    ranged = store.stats_overview(start_date=date(2024, 2, 1), end_date=date(2024, 2, 28))
    assert ranged['total_penalties'] == 1
    assert ranged['daily'] == [{'date': '2024-02-05', 'count': 1}]
