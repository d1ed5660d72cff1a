from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from penalty_import.api import create_app
from penalty_import.auth import Principal, TokenRegistry
from penalty_import.config_loader import ConfigLoader
from penalty_import.penalty_store import PenaltyStore

SERIAL = 45301
XLSX_MIME = 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'

ADMIN = {'Authorization': 'Bearer admin-token'}
CEZA = {'Authorization': 'Bearer ceza-token'}
UYE = {'Authorization': 'Bearer uye-token'}


@pytest.fixture
def registry() -> TokenRegistry:
    registry = TokenRegistry()
    registry.register('admin-token', Principal('u1', 'Yönetici', 'admin'))
    registry.register('ceza-token', Principal('u2', 'Ceza Ekibi', 'ceza'))
    registry.register('uye-token', Principal('u3', 'Üye', 'uye'))
    return registry


@pytest.fixture
def client(config: ConfigLoader, store: PenaltyStore, registry: TokenRegistry) -> TestClient:
    return TestClient(create_app(config, store=store, registry=registry))


def _staged_files(tmp_path: Path) -> list:
    staging = tmp_path / 'uploads'
    return list(staging.iterdir()) if staging.exists() else []


def _upload(path: Path, name: str = 'penalties.xlsx') -> dict:
    return {'excelFile': (name, path.read_bytes(), XLSX_MIME)}


def test_health(client: TestClient) -> None:
    response = client.get('/api/health')
    assert response.status_code == 200
    assert response.json()['status'] == 'OK'


def test_import_requires_token(client: TestClient) -> None:
    response = client.post('/api/traffic-penalties/import')
    assert response.status_code == 401
    assert response.json() == {'message': 'Access token required'}


def test_unknown_token_is_rejected(client: TestClient) -> None:
    response = client.get('/api/traffic-penalties', headers={'Authorization': 'Bearer nope'})
    assert response.status_code == 401


def test_expired_token_is_rejected(config, store) -> None:
    now = [1000.0]
    registry = TokenRegistry(ttl_seconds=60, clock=lambda: now[0])
    registry.register('short-token', Principal('u9', 'Geçici', 'uye'))
    client = TestClient(create_app(config, store=store, registry=registry))
    headers = {'Authorization': 'Bearer short-token'}

    assert client.get('/api/traffic-penalties', headers=headers).status_code == 200
    now[0] += 61
    assert client.get('/api/traffic-penalties', headers=headers).status_code == 401


def test_import_requires_admin(client: TestClient) -> None:
    response = client.post('/api/traffic-penalties/import', headers=UYE)
    assert response.status_code == 403


def test_import_rejects_non_excel(client: TestClient, tmp_path: Path) -> None:
    response = client.post(
        '/api/traffic-penalties/import',
        headers=ADMIN,
        files={'excelFile': ('notes.txt', b'Ceza no\n1001\n', 'text/plain')},
    )
    assert response.status_code == 400
    assert response.json() == {'message': 'Only Excel files are allowed'}
    assert _staged_files(tmp_path) == []


def test_import_rejects_oversized_upload(tmp_path: Path, store, registry, make_workbook) -> None:
    config = ConfigLoader(overrides={
        'import': {'default_workbook': None},
        'upload': {'staging_dir': str(tmp_path / 'uploads'), 'max_bytes': 100},
    })
    client = TestClient(create_app(config, store=store, registry=registry))
    path = make_workbook(liste_rows=[[1001, SERIAL, 0.5, 'Ahmet Yılmaz']])

    response = client.post('/api/traffic-penalties/import', headers=ADMIN, files=_upload(path))

    assert response.status_code == 400
    assert _staged_files(tmp_path) == []
    assert store.count() == 0


def test_import_upload(client: TestClient, store, make_workbook, tmp_path: Path) -> None:
    path = make_workbook(
        liste_rows=[[1001, SERIAL, 0.4375, 'Ahmet Yılmaz'], [1002, SERIAL, 0.5, 'Mehmet Kaya']],
        gunluk_rows=[[1, SERIAL, 'Ahmet Yılmaz', 'Evet', None]],
    )

    response = client.post(
        '/api/traffic-penalties/import',
        headers=ADMIN,
        files=_upload(path),
        data={'clearExisting': 'false'},
    )

    assert response.status_code == 200
    assert response.json() == {
        'message': 'Import completed', 'imported': 2, 'updated': 0, 'errors': 0, 'total': 2,
    }
    assert store.get_by_number(1001)['is_flagged'] is True
    assert _staged_files(tmp_path) == []


def test_import_clear_existing(client: TestClient, store, make_workbook, make_record) -> None:
    store.insert_many([make_record(900), make_record(901)])
    path = make_workbook(liste_rows=[[1001, SERIAL, 0.5, 'Ahmet Yılmaz']])

    response = client.post(
        '/api/traffic-penalties/import',
        headers=ADMIN,
        files=_upload(path),
        data={'clearExisting': 'true'},
    )

    assert response.status_code == 200
    assert store.count() == 1


def test_import_missing_sheet_is_500(client: TestClient, store, make_workbook, tmp_path: Path) -> None:
    path = make_workbook(liste_rows=[[1001, SERIAL, 0.5, 'Ahmet Yılmaz']], sheets=('Liste',))

    response = client.post('/api/traffic-penalties/import', headers=ADMIN, files=_upload(path))

    assert response.status_code == 500
    assert response.json() == {'message': 'Import failed', 'error': 'Günlük sheet not found'}
    assert _staged_files(tmp_path) == []
    assert store.count() == 0


def test_import_without_upload_or_default(client: TestClient) -> None:
    response = client.post('/api/traffic-penalties/import', headers=ADMIN, data={'clearExisting': 'false'})
    assert response.status_code == 500
    assert response.json()['message'] == 'Import failed'


def test_list_and_filter(client: TestClient, store, make_record) -> None:
    store.insert_many([
        make_record(1001, is_flagged=True),
        make_record(1002, driver='Mehmet Kaya'),
        make_record(1003, driver='Mehmet Kaya'),
    ])

    response = client.get('/api/traffic-penalties', headers=UYE, params={'limit': 2})
    body = response.json()
    assert response.status_code == 200
    assert body['pagination'] == {'page': 1, 'limit': 2, 'total': 3, 'pages': 2}
    assert len(body['penalties']) == 2

    response = client.get('/api/traffic-penalties', headers=UYE, params={'driverName': 'mehmet'})
    assert {p['penalty_number'] for p in response.json()['penalties']} == {1002, 1003}

    response = client.get('/api/traffic-penalties', headers=UYE, params={'isFlagged': 'true'})
    assert [p['penalty_number'] for p in response.json()['penalties']] == [1001]

    response = client.get('/api/traffic-penalties', headers=UYE, params={'penaltyNumber': 1003})
    assert [p['penalty_number'] for p in response.json()['penalties']] == [1003]


def test_get_penalty(client: TestClient, store, make_record) -> None:
    store.insert_many([make_record(1001)])
    penalty_id = store.get_by_number(1001)['id']

    response = client.get(f'/api/traffic-penalties/{penalty_id}', headers=UYE)
    assert response.status_code == 200
    assert response.json()['penalty_number'] == 1001

    missing = client.get(f'/api/traffic-penalties/{penalty_id + 50}', headers=UYE)
    assert missing.status_code == 404
    assert missing.json() == {'message': 'Penalty not found'}


def test_patch_penalty(client: TestClient, store, make_record) -> None:
    store.insert_many([make_record(1001)])
    penalty_id = store.get_by_number(1001)['id']
    url = f'/api/traffic-penalties/{penalty_id}'

    assert client.patch(url, headers=UYE, json={'notes': 'x'}).status_code == 403

    response = client.patch(url, headers=CEZA, json={'driver': {'paid': 'Evet'}})
    assert response.status_code == 200
    assert response.json()['driver']['paid'] == 'Evet'
    assert response.json()['driver']['name'] == 'Ahmet Yılmaz'

    assert client.patch(url, headers=ADMIN, json={'event_date': None}).status_code == 400
    assert client.patch(f'/api/traffic-penalties/{penalty_id + 50}', headers=ADMIN,
                        json={'notes': 'x'}).status_code == 404


def test_stats_overview(client: TestClient, store, make_record) -> None:
    store.insert_many([make_record(1, is_flagged=True), make_record(2, is_taxi_penalty=True), make_record(3)])

    response = client.get('/api/traffic-penalties/stats/overview', headers=UYE)

    assert response.status_code == 200
    body = response.json()
    assert body['total_penalties'] == 3
    assert body['flagged_count'] == 1
    assert body['taxi_penalty_count'] == 1
    assert body['normal_count'] == 1


def _client_with(tmp_path: Path, store, registry, **import_settings) -> TestClient:
    config = ConfigLoader(overrides={
        'import': import_settings,
        'upload': {'staging_dir': str(tmp_path / 'uploads')},
        'logging': {'log_dir': str(tmp_path / 'logs')},
    })
    return TestClient(create_app(config, store=store, registry=registry))


@pytest.mark.parametrize('flag, expected_count', [(True, 1), ('true', 1), ('TRUE', 1), (False, 3), ('no', 3)])
def test_import_clear_existing_from_json_body(tmp_path: Path, store, registry, make_workbook, make_record,
                                              flag, expected_count) -> None:
    store.insert_many([make_record(900), make_record(901)])
    default = make_workbook(liste_rows=[[1001, SERIAL, 0.5, 'Ahmet Yılmaz']], name='default.xlsx')
    client = _client_with(tmp_path, store, registry, default_workbook=str(default))

    response = client.post('/api/traffic-penalties/import', headers=ADMIN, json={'clearExisting': flag})

    assert response.status_code == 200
    assert response.json()['imported'] == 1
    assert store.count() == expected_count
    assert default.exists()


def test_import_malformed_json_body(client: TestClient, store) -> None:
    response = client.post(
        '/api/traffic-penalties/import',
        headers={**ADMIN, 'Content-Type': 'application/json'},
        content=b'{"clearExisting": tru',
    )
    assert response.status_code == 400
    assert response.json() == {'message': 'Invalid JSON body'}


def test_upload_removed_when_import_cannot_start(tmp_path: Path, store, registry, make_workbook) -> None:
    client = _client_with(tmp_path, store, registry, default_workbook=None, batch_size='fifty')
    path = make_workbook(liste_rows=[[1001, SERIAL, 0.5, 'Ahmet Yılmaz']])

    response = client.post('/api/traffic-penalties/import', headers=ADMIN, files=_upload(path))

    assert response.status_code == 500
    assert response.json()['message'] == 'Import failed'
    assert _staged_files(tmp_path) == []
    assert store.count() == 0
