"""
Penalty store.
SQLite-backed document collection for penalty records: one JSON document per
penalty plus indexed projection columns for lookups and filters.
"""

import sqlite3
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from datetime import date, datetime, timedelta
from typing import Any, Optional
from contextlib import contextmanager
from .models import PenaltyRecord
from .utils import deep_merge


logger = logging.getLogger(__name__)

AUDIT_FIELDS = ('id', 'created_at', 'updated_at')
AFFIRMATIVE_OR_UNKNOWN = ('Evet', 'Bilinmiyor')


@dataclass
class WriteError:
    """A single row rejected by a bulk write."""
    index: int
    penalty_number: Optional[int]
    message: str


class BulkWriteError(Exception):
    """Some rows of an unordered bulk write failed; the others were written."""

    def __init__(self, inserted_count: int, write_errors: list[WriteError]):
        self.inserted_count = inserted_count
        self.write_errors = write_errors
        super().__init__(f"{len(write_errors)} write errors, {inserted_count} rows inserted")


class DocumentValidationError(ValueError):
    """Document is missing a required field."""


@dataclass
class PenaltyFilters:
    """Filters of the penalty listing."""
    penalty_number: Optional[int] = None
    driver_name: Optional[str] = None
    passenger_name: Optional[str] = None
    vehicle_plate: Optional[str] = None
    event_place: Optional[str] = None
    is_flagged: Optional[bool] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    # Case-insensitive "contains" filters -> projection column
    TEXT_COLUMNS = {
        'driver_name': 'driver_name',
        'passenger_name': 'passenger_name',
        'vehicle_plate': 'vehicle_plate',
        'event_place': 'event_place',
    }


def _casefold(value: Optional[str]) -> Optional[str]:
    return value.casefold() if isinstance(value, str) else value


class PenaltyStore:
    """SQLite-backed penalty collection with a unique penalty number."""

    def __init__(self, db_path: Path, required_fields: tuple = ('penalty_number', 'event_date')):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.required_fields = tuple(required_fields)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.create_function('casefold', 1, _casefold, deterministic=True)
        try:
            yield conn
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema on first run."""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute('''
                CREATE TABLE IF NOT EXISTS penalties (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    penalty_number INTEGER NOT NULL,
                    event_date TEXT,
                    driver_name TEXT,
                    passenger_name TEXT,
                    vehicle_plate TEXT,
                    event_place TEXT,
                    is_flagged INTEGER NOT NULL DEFAULT 0,
                    is_taxi_penalty INTEGER NOT NULL DEFAULT 0,
                    document TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            ''')

            cursor.execute('CREATE UNIQUE INDEX IF NOT EXISTS idx_penalties_number ON penalties(penalty_number)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_penalties_event_date ON penalties(event_date DESC)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_penalties_driver ON penalties(driver_name)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_penalties_passenger ON penalties(passenger_name)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_penalties_plate ON penalties(vehicle_plate)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_penalties_flagged ON penalties(is_flagged, event_date DESC)')
            cursor.execute('CREATE INDEX IF NOT EXISTS idx_penalties_taxi ON penalties(is_taxi_penalty, event_date DESC)')

            conn.commit()
            logger.info(f"Penalty store initialized: {self.db_path}")

    # Serialization

    @staticmethod
    def _projection(doc: dict[str, Any]) -> tuple:
        driver = doc.get('driver') or {}
        passenger = doc.get('passenger') or {}
        vehicle = doc.get('vehicle') or {}
        location = doc.get('location') or {}
        return (
            doc.get('event_date'),
            driver.get('name'),
            passenger.get('name'),
            vehicle.get('plate'),
            location.get('place'),
            1 if doc.get('is_flagged') else 0,
            1 if doc.get('is_taxi_penalty') else 0,
        )

    @staticmethod
    def _body(doc: dict[str, Any]) -> str:
        return json.dumps({k: v for k, v in doc.items() if k not in AUDIT_FIELDS},
                          ensure_ascii=False, default=str)

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> dict[str, Any]:
        doc = json.loads(row['document'])
        doc['id'] = row['id']
        doc['created_at'] = row['created_at']
        doc['updated_at'] = row['updated_at']
        return doc

    def _validate(self, doc: dict[str, Any]) -> None:
        for name in self.required_fields:
            if doc.get(name) in (None, ''):
                raise DocumentValidationError(f"{name} is required")

    # Bulk writes

    def insert_many(self, records: list[PenaltyRecord]) -> int:
        """
        Unordered bulk insert.

        Every row is attempted; rejected rows (duplicate penalty number,
        missing required field) do not roll back the others.

        Returns:
            Number of inserted rows

        Raises:
            BulkWriteError: If any row was rejected
        """
        now = datetime.now().isoformat()
        inserted = 0
        write_errors = []

        with self._get_connection() as conn:
            cursor = conn.cursor()
            for index, record in enumerate(records):
                doc = record.to_document()
                try:
                    self._validate(doc)
                    cursor.execute('''
                        INSERT INTO penalties (
                            penalty_number, event_date, driver_name, passenger_name,
                            vehicle_plate, event_place, is_flagged, is_taxi_penalty,
                            document, created_at, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ''', (doc['penalty_number'], *self._projection(doc), self._body(doc), now, now))
                    inserted += 1
                except (sqlite3.IntegrityError, DocumentValidationError) as e:
                    write_errors.append(WriteError(index, record.penalty_number, str(e)))
            conn.commit()

        logger.debug(f"Inserted {inserted}/{len(records)} penalties")
        if write_errors:
            raise BulkWriteError(inserted, write_errors)
        return inserted

    def update_many(self, records: list[PenaltyRecord]) -> int:
        """
        Unordered bulk update keyed by penalty number.

        All mapped fields are replaced and updated_at refreshed; created_at is
        kept. Runs in one transaction.

        Returns:
            Number of matched rows
        """
        now = datetime.now().isoformat()
        params = []
        for record in records:
            doc = record.to_document()
            params.append((*self._projection(doc), self._body(doc), now, doc['penalty_number']))

        with self._get_connection() as conn:
            try:
                cursor = conn.executemany('''
                    UPDATE penalties SET
                        event_date = ?, driver_name = ?, passenger_name = ?,
                        vehicle_plate = ?, event_place = ?, is_flagged = ?,
                        is_taxi_penalty = ?, document = ?, updated_at = ?
                    WHERE penalty_number = ?
                ''', params)
                matched = cursor.rowcount
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise

        logger.debug(f"Updated {matched}/{len(records)} penalties")
        return matched

    def delete_all(self) -> int:
        """Delete every penalty. Returns the number of deleted rows."""
        with self._get_connection() as conn:
            cursor = conn.execute('DELETE FROM penalties')
            conn.commit()
            return cursor.rowcount

    # Queries

    def count(self) -> int:
        with self._get_connection() as conn:
            return conn.execute('SELECT COUNT(1) FROM penalties').fetchone()[0]

    def keys_after(self, last_key: int, limit: int) -> list[int]:
        """Penalty numbers greater than last_key, ascending."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                'SELECT penalty_number FROM penalties WHERE penalty_number > ? '
                'ORDER BY penalty_number LIMIT ?',
                (last_key, limit),
            )
            return [row[0] for row in cursor.fetchall()]

    def get(self, penalty_id: int) -> Optional[dict[str, Any]]:
        """Retrieve a penalty document by row id."""
        with self._get_connection() as conn:
            row = conn.execute('SELECT * FROM penalties WHERE id = ?', (penalty_id,)).fetchone()
            return self._row_to_document(row) if row else None

    def get_by_number(self, penalty_number: int) -> Optional[dict[str, Any]]:
        """Retrieve a penalty document by penalty number."""
        with self._get_connection() as conn:
            row = conn.execute(
                'SELECT * FROM penalties WHERE penalty_number = ?', (penalty_number,)
            ).fetchone()
            return self._row_to_document(row) if row else None

    def _where(self, filters: PenaltyFilters) -> tuple[str, list]:
        clauses = []
        params = []
        if filters.penalty_number is not None:
            clauses.append('penalty_number = ?')
            params.append(filters.penalty_number)
        for attr, column in PenaltyFilters.TEXT_COLUMNS.items():
            value = getattr(filters, attr)
            if value:
                clauses.append(f'instr(casefold({column}), ?) > 0')
                params.append(value.casefold())
        if filters.is_flagged is not None:
            clauses.append('is_flagged = ?')
            params.append(1 if filters.is_flagged else 0)
        clauses_sql, date_params = self._date_range(filters.start_date, filters.end_date)
        clauses.extend(clauses_sql)
        params.extend(date_params)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ''
        return where, params

    @staticmethod
    def _date_range(start: Optional[date], end: Optional[date]) -> tuple[list[str], list]:
        clauses = []
        params = []
        if start:
            clauses.append('event_date >= ?')
            params.append(start.isoformat())
        if end:
            clauses.append('event_date <= ?')
            params.append(end.isoformat())
        return clauses, params

    def find(self, filters: Optional[PenaltyFilters] = None,
             page: int = 1, limit: int = 20) -> tuple[list[dict[str, Any]], int]:
        """
        Filtered, paginated listing, newest event first.

        Returns:
            Tuple of (documents, total matching)
        """
        where, params = self._where(filters or PenaltyFilters())
        offset = (max(page, 1) - 1) * limit
        with self._get_connection() as conn:
            total = conn.execute(f'SELECT COUNT(1) FROM penalties {where}', params).fetchone()[0]
            rows = conn.execute(
                f'SELECT * FROM penalties {where} ORDER BY event_date DESC, id DESC LIMIT ? OFFSET ?',
                params + [limit, offset],
            ).fetchall()
            return [self._row_to_document(r) for r in rows], total

    def update_fields(self, penalty_id: int, fields: dict[str, Any]) -> Optional[dict[str, Any]]:
        """
        Merge fields into a stored document and refresh updated_at.

        Returns:
            Updated document or None if the id is unknown
        """
        with self._get_connection() as conn:
            row = conn.execute('SELECT * FROM penalties WHERE id = ?', (penalty_id,)).fetchone()
            if not row:
                return None
            doc = deep_merge(json.loads(row['document']),
                              {k: v for k, v in fields.items() if k not in AUDIT_FIELDS})
            self._validate(doc)
            conn.execute('''
                UPDATE penalties SET
                    penalty_number = ?, event_date = ?, driver_name = ?, passenger_name = ?,
                    vehicle_plate = ?, event_place = ?, is_flagged = ?,
                    is_taxi_penalty = ?, document = ?, updated_at = ?
                WHERE id = ?
            ''', (doc['penalty_number'], *self._projection(doc), self._body(doc),
                  datetime.now().isoformat(), penalty_id))
            conn.commit()

        return self.get(penalty_id)

    # Statistics

    def stats_overview(self, start_date: Optional[date] = None,
                       end_date: Optional[date] = None,
                       today: Optional[date] = None) -> dict[str, Any]:
        """
        Aggregate counts for the dashboard.

        Daily breakdown covers the date range if given, otherwise the last
        30 days.
        """
        today = today or date.today()
        range_clauses, range_params = self._date_range(start_date, end_date)

        def where(*extra: str) -> str:
            clauses = list(range_clauses) + list(extra)
            return f"WHERE {' AND '.join(clauses)}" if clauses else ''

        driver_penalty = (
            "(json_extract(document, '$.driver.paid') IN (?, ?) "
            "OR json_extract(document, '$.driver.legacy_parking_payable') = 'Evet')"
        )
        passenger_penalty = (
            "(json_extract(document, '$.passenger.paid') IN (?, ?) "
            "OR json_extract(document, '$.passenger.penalty_payable') IN ('Evet', 'Belirsiz'))"
        )

        with self._get_connection() as conn:
            def scalar(sql: str, params: list) -> int:
                return conn.execute(sql, params).fetchone()[0]

            total = scalar(f'SELECT COUNT(1) FROM penalties {where()}', range_params)
            flagged = scalar(f'SELECT COUNT(1) FROM penalties {where("is_flagged = 1")}', range_params)
            taxi = scalar(f'SELECT COUNT(1) FROM penalties {where("is_taxi_penalty = 1")}', range_params)
            normal = scalar(
                f'SELECT COUNT(1) FROM penalties {where("is_flagged = 0", "is_taxi_penalty = 0")}',
                range_params,
            )
            driver_count = scalar(
                f'SELECT COUNT(1) FROM penalties {where(driver_penalty)}',
                range_params + list(AFFIRMATIVE_OR_UNKNOWN),
            )
            passenger_count = scalar(
                f'SELECT COUNT(1) FROM penalties {where(passenger_penalty)}',
                range_params + list(AFFIRMATIVE_OR_UNKNOWN),
            )

            monthly = conn.execute(f'''
                SELECT substr(event_date, 1, 4) AS year, substr(event_date, 6, 2) AS month,
                       COUNT(1) AS count
                FROM penalties {where("event_date IS NOT NULL")}
                GROUP BY year, month ORDER BY year, month
            ''', range_params).fetchall()

            if start_date or end_date:
                daily_clauses, daily_params = range_clauses, range_params
            else:
                daily_clauses, daily_params = self._date_range(today - timedelta(days=30), None)
            daily = conn.execute(f'''
                SELECT event_date, COUNT(1) AS count FROM penalties
                WHERE {' AND '.join(daily_clauses + ['event_date IS NOT NULL'])}
                GROUP BY event_date ORDER BY event_date
            ''', daily_params).fetchall()

            locations = conn.execute(f'''
                SELECT event_place, COUNT(1) AS count FROM penalties
                {where("event_place IS NOT NULL")}
                GROUP BY event_place ORDER BY count DESC, event_place LIMIT 10
            ''', range_params).fetchall()

        return {
            'total_penalties': total,
            'flagged_count': flagged,
            'taxi_penalty_count': taxi,
            'normal_count': normal,
            'driver_penalties': driver_count,
            'passenger_penalties': passenger_count,
            'monthly': [
                {'year': int(r['year']), 'month': int(r['month']), 'count': r['count']}
                for r in monthly
            ],
            'daily': [{'date': r['event_date'], 'count': r['count']} for r in daily],
            'top_locations': [{'location': r['event_place'], 'count': r['count']} for r in locations],
        }
