from __future__ import annotations

import logging
from datetime import date
from pathlib import Path

import pytest
from openpyxl import Workbook

from penalty_import.config_loader import ConfigLoader
from penalty_import.models import PenaltyRecord
from penalty_import.penalty_store import PenaltyStore

LISTE_HEADER = [
    'Ceza no', 'Olay tarihi', 'Olay saati', 'Sürücü ismi',
    'Yolcu ismi', 'Araç plaka', 'Olay yeri', 'Sürücü ID',
]
GUNLUK_HEADER = ['Sıra', 'Tarih', 'Sürücü', 'Şaibeli mi?', 'Açıklama']

# 2024-01-10 as a spreadsheet serial
SERIAL_2024_01_10 = 45301


@pytest.fixture
def config(tmp_path: Path) -> ConfigLoader:
    return ConfigLoader(overrides={
        'import': {'default_workbook': None},
        'storage': {'db_path': str(tmp_path / 'penalties.db')},
        'upload': {'staging_dir': str(tmp_path / 'uploads')},
        'logging': {'log_dir': str(tmp_path / 'logs')},
    })


@pytest.fixture
def store(tmp_path: Path) -> PenaltyStore:
    return PenaltyStore(tmp_path / 'penalties.db')


@pytest.fixture
def make_workbook(tmp_path: Path):
    """Write a two-sheet penalty workbook and return its path."""

    def _make(liste_rows=(), gunluk_rows=(), name: str = 'penalties.xlsx',
              liste_header=None, gunluk_header=None, sheets=('Liste', 'Günlük')) -> Path:
        wb = Workbook()
        wb.remove(wb.active)
        contents = {
            'Liste': (liste_header or LISTE_HEADER, liste_rows),
            'Günlük': (gunluk_header or GUNLUK_HEADER, gunluk_rows),
        }
        for sheet_name in sheets:
            header, rows = contents[sheet_name]
            ws = wb.create_sheet(sheet_name)
            ws.append(list(header))
            for row in rows:
                ws.append(list(row))
        path = tmp_path / name
        wb.save(path)
        return path

    return _make


@pytest.fixture
def make_record():
    def _make(number: int, event_date=date(2024, 1, 10), driver='Ahmet Yılmaz', **kwargs) -> PenaltyRecord:
        record = PenaltyRecord(penalty_number=number, event_date=event_date, **kwargs)
        if driver:
            record.driver['name'] = driver
        return record

    return _make


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
