"""
SQLite record store for units, master files and job status.

This module provides the persistence layer the sequence engine talks to.
It deliberately exposes only filter-by-field access with ordering:

- create / get / find / query for loading records
- update_fields for writing a named subset of columns
- delete / delete_where / count

Records are the dataclasses defined in :mod:`dpg_jobs.records`.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Type, TypeVar, get_type_hints

from .records import JobEventRecord, JobStatusRecord, MasterFile, Metadata, StaffMember, TechMetadata, Unit

# Default database path
DEFAULT_DB_PATH = Path("data/dpg_jobs.db")

RecordT = TypeVar("RecordT")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS units (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id INTEGER,
        metadata_id INTEGER,
        staff_notes TEXT NOT NULL DEFAULT '',
        reorder INTEGER NOT NULL DEFAULT 0,
        master_files_count INTEGER NOT NULL DEFAULT 0,
        date_archived TEXT,
        date_dl_deliverables_ready TEXT,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS master_files (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        unit_id INTEGER NOT NULL REFERENCES units(id),
        filename TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        size INTEGER NOT NULL DEFAULT 0,
        checksum TEXT NOT NULL DEFAULT '',
        metadata_id INTEGER,
        component_id INTEGER,
        location_id INTEGER,
        original_id INTEGER,
        date_archived TEXT,
        deaccessioned_at TEXT,
        deaccession_note TEXT NOT NULL DEFAULT '',
        deaccessioned_by INTEGER,
        date_dl_ingest TEXT,
        date_dl_update TEXT,
        created_at TEXT,
        updated_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_master_files_unit ON master_files(unit_id, filename)",
    "CREATE INDEX IF NOT EXISTS idx_master_files_original ON master_files(original_id)",
    """
    CREATE TABLE IF NOT EXISTS image_tech_metas (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        master_file_id INTEGER NOT NULL,
        image_format TEXT NOT NULL DEFAULT '',
        width INTEGER NOT NULL DEFAULT 0,
        height INTEGER NOT NULL DEFAULT 0,
        resolution INTEGER NOT NULL DEFAULT 0,
        color_space TEXT NOT NULL DEFAULT '',
        depth INTEGER NOT NULL DEFAULT 0,
        compression TEXT NOT NULL DEFAULT '',
        color_profile TEXT NOT NULL DEFAULT '',
        equipment TEXT NOT NULL DEFAULT '',
        software TEXT NOT NULL DEFAULT '',
        model TEXT NOT NULL DEFAULT '',
        exif_version TEXT NOT NULL DEFAULT '',
        capture_date TEXT,
        iso INTEGER NOT NULL DEFAULT 0,
        exposure_bias TEXT NOT NULL DEFAULT '',
        exposure_time TEXT NOT NULL DEFAULT '',
        aperture TEXT NOT NULL DEFAULT '',
        focal_length REAL NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tech_metas_master_file ON image_tech_metas(master_file_id)",
    """
    CREATE TABLE IF NOT EXISTS metadata (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL DEFAULT '',
        date_dl_ingest TEXT,
        date_dl_update TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        computing_id TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_statuses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        originator_type TEXT NOT NULL,
        originator_id INTEGER NOT NULL,
        status TEXT NOT NULL,
        failures INTEGER NOT NULL DEFAULT 0,
        error TEXT NOT NULL DEFAULT '',
        started_at TEXT,
        ended_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS job_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        job_status_id INTEGER NOT NULL REFERENCES job_statuses(id),
        level INTEGER NOT NULL,
        text TEXT NOT NULL,
        created_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_status_id, id)",
]

RECORD_TYPES = (Unit, MasterFile, TechMetadata, Metadata, StaffMember, JobStatusRecord, JobEventRecord)


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


@lru_cache(maxsize=None)
def _column_kinds(record_type: type) -> Dict[str, str]:
    """Map each column of a record type to 'datetime', 'bool' or 'plain'."""
    hints = get_type_hints(record_type)
    kinds = {}
    for field in fields(record_type):
        hint = str(hints[field.name])
        if "datetime" in hint:
            kinds[field.name] = "datetime"
        elif hint in ("<class 'bool'>", "bool"):
            kinds[field.name] = "bool"
        else:
            kinds[field.name] = "plain"
    return kinds


def _to_column(kind: str, value: Any) -> Any:
    if kind == "datetime":
        return _serialize_datetime(value)
    if kind == "bool":
        return int(bool(value))
    return value


def _from_column(kind: str, value: Any) -> Any:
    if kind == "datetime":
        return _deserialize_datetime(value)
    if kind == "bool":
        return bool(value)
    return value


class RecordStore:
    """
    SQLite database for record persistence.

    Thread-safe: every operation opens its own connection and SQLite
    handles concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            for statement in SCHEMA:
                conn.execute(statement)

    @staticmethod
    def _check_columns(record_type: type, names) -> Dict[str, str]:
        kinds = _column_kinds(record_type)
        unknown = [name for name in names if name not in kinds]
        if unknown:
            raise ValueError(f"{record_type.__name__} has no column(s) {', '.join(unknown)}")
        return kinds

    def _where(self, record_type: type, filters: Dict[str, Any]) -> tuple[str, list]:
        kinds = self._check_columns(record_type, filters.keys())
        clauses = []
        values = []
        for name, value in filters.items():
            if value is None:
                clauses.append(f"{name} IS NULL")
            else:
                clauses.append(f"{name} = ?")
                values.append(_to_column(kinds[name], value))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, values

    def _row_to_record(self, record_type: Type[RecordT], row: sqlite3.Row) -> RecordT:
        """Convert a database row to a record instance."""
        kinds = _column_kinds(record_type)
        return record_type(**{name: _from_column(kind, row[name]) for name, kind in kinds.items()})

    def create(self, record: RecordT) -> RecordT:
        """
        Insert a record and assign its id.

        Args:
            record: Any record dataclass; its ``id`` must be unset

        Returns:
            The same record, with ``id`` (and timestamps, where present) filled in
        """
        record_type = type(record)
        kinds = _column_kinds(record_type)
        now = datetime.utcnow()
        for stamp in ("created_at", "updated_at"):
            if stamp in kinds and getattr(record, stamp) is None:
                setattr(record, stamp, now)
        names = [name for name in kinds if name != "id"]
        placeholders = ", ".join("?" for _ in names)
        values = [_to_column(kinds[name], getattr(record, name)) for name in names]
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"INSERT INTO {record_type.__table__} ({', '.join(names)}) VALUES ({placeholders})",
                values,
            )
            record.id = cursor.lastrowid
        return record

    def get(self, record_type: Type[RecordT], record_id: Optional[int]) -> Optional[RecordT]:
        """Retrieve a record by id, or None if not found."""
        if record_id is None:
            return None
        return self.find(record_type, id=record_id)

    def find(self, record_type: Type[RecordT], **filters: Any) -> Optional[RecordT]:
        """Retrieve the first record (lowest id) matching every filter."""
        records = self.query(record_type, limit=1, **filters)
        return records[0] if records else None

    def query(
        self,
        record_type: Type[RecordT],
        order_by: str = "id",
        descending: bool = False,
        limit: Optional[int] = None,
        **filters: Any,
    ) -> List[RecordT]:
        """
        List records matching every filter.

        Args:
            record_type: Record class to load
            order_by: Column to order by (ties broken by id)
            descending: Reverse the ordering
            limit: Maximum number of records
            **filters: column=value pairs; a value of None matches NULL

        Returns:
            Matching records in order
        """
        self._check_columns(record_type, [order_by])
        where, values = self._where(record_type, filters)
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {record_type.__table__}{where} ORDER BY {order_by} {direction}, id {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            values.append(limit)
        with self._get_connection() as conn:
            rows = conn.execute(sql, values).fetchall()
            return [self._row_to_record(record_type, row) for row in rows]

    def update_fields(self, record: Any, *field_names: str) -> None:
        """
        Persist the named fields of a record.

        ``updated_at`` is refreshed automatically when the record has one.

        Raises:
            LookupError: If the record no longer exists
        """
        record_type = type(record)
        kinds = self._check_columns(record_type, field_names)
        names = list(field_names)
        if "updated_at" in kinds and "updated_at" not in names:
            record.updated_at = datetime.utcnow()
            names.append("updated_at")
        assignments = ", ".join(f"{name} = ?" for name in names)
        values = [_to_column(kinds[name], getattr(record, name)) for name in names]
        values.append(record.id)
        with self._get_connection() as conn:
            cursor = conn.execute(f"UPDATE {record_type.__table__} SET {assignments} WHERE id = ?", values)
            if cursor.rowcount == 0:
                raise LookupError(f"{record_type.__name__} {record.id} not found")

    def delete(self, record: Any) -> bool:
        """
        Delete a record.

        Returns:
            True if deleted, False if not found
        """
        return self.delete_where(type(record), id=record.id) > 0

    def delete_where(self, record_type: type, **filters: Any) -> int:
        """Delete every record matching the filters and return how many were removed."""
        if not filters:
            raise ValueError("delete_where requires at least one filter")
        where, values = self._where(record_type, filters)
        with self._get_connection() as conn:
            cursor = conn.execute(f"DELETE FROM {record_type.__table__}{where}", values)
            return cursor.rowcount

    def count(self, record_type: type, **filters: Any) -> int:
        where, values = self._where(record_type, filters)
        with self._get_connection() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM {record_type.__table__}{where}", values).fetchone()
            return row[0]
