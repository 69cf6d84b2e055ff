"""SQLite storage for Doseline medications, schedules, doses and settings."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite

from .const import (
    DB_SCHEMA_VERSION,
    DEFAULT_FUTURE_DAYS,
    DEFAULT_LOOKBACK_DAYS,
    DEFAULT_SAMPLE_MINUTES,
    DEFAULT_TIMEZONE,
    SETTINGS_ID,
    SOURCE_MANUAL,
    SOURCE_SCHEDULED,
)
from .timezone import to_iso

_LOGGER = logging.getLogger(__name__)

# SQLite caps the number of bound parameters per statement
_IN_CLAUSE_CHUNK = 500

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS medications (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    ka_per_hour REAL NOT NULL,
    ke_per_hour REAL NOT NULL,
    scale REAL NOT NULL DEFAULT 1.0,
    notes TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS schedules (
    id TEXT PRIMARY KEY,
    medication_id TEXT NOT NULL,
    start_datetime_iso TEXT NOT NULL,
    timezone TEXT NOT NULL,
    dose_mg REAL NOT NULL,
    frequency TEXT NOT NULL DEFAULT 'custom',
    "interval" INTEGER NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS doses (
    id TEXT PRIMARY KEY,
    medication_id TEXT NOT NULL,
    dose_mg REAL NOT NULL,
    datetime_iso TEXT NOT NULL,
    timezone TEXT NOT NULL,
    source TEXT NOT NULL DEFAULT 'manual',
    schedule_id TEXT,
    occurrence_key TEXT,
    status TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settings (
    id TEXT PRIMARY KEY,
    default_timezone TEXT NOT NULL,
    chart_sample_minutes INTEGER NOT NULL,
    default_lookback_days REAL NOT NULL,
    default_future_days REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_doses_datetime
    ON doses(datetime_iso);
CREATE INDEX IF NOT EXISTS idx_doses_medication
    ON doses(medication_id);
CREATE INDEX IF NOT EXISTS idx_schedules_medication
    ON schedules(medication_id);
"""

CREATE_OCCURRENCE_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_doses_occurrence_key
    ON doses(occurrence_key)
"""

_MEDICATION_COLUMNS = (
    "id",
    "name",
    "ka_per_hour",
    "ke_per_hour",
    "scale",
    "notes",
    "created_at",
    "updated_at",
)

_SCHEDULE_COLUMNS = (
    "id",
    "medication_id",
    "start_datetime_iso",
    "timezone",
    "dose_mg",
    "frequency",
    "interval",
    "enabled",
    "created_at",
    "updated_at",
)

_DOSE_COLUMNS = (
    "id",
    "medication_id",
    "dose_mg",
    "datetime_iso",
    "timezone",
    "source",
    "schedule_id",
    "occurrence_key",
    "status",
    "created_at",
    "updated_at",
)

_SETTINGS_COLUMNS = (
    "default_timezone",
    "chart_sample_minutes",
    "default_lookback_days",
    "default_future_days",
)

DEFAULT_SETTINGS: dict[str, Any] = {
    "id": SETTINGS_ID,
    "default_timezone": DEFAULT_TIMEZONE,
    "chart_sample_minutes": DEFAULT_SAMPLE_MINUTES,
    "default_lookback_days": DEFAULT_LOOKBACK_DAYS,
    "default_future_days": DEFAULT_FUTURE_DAYS,
}


def generate_id() -> str:
    return str(uuid.uuid4())


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def _quoted(columns: Iterable[str]) -> str:
    return ", ".join(f'"{column}"' for column in columns)


def _insert_sql(table: str, columns: tuple[str, ...]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {table} ({_quoted(columns)}) VALUES ({placeholders})"


def _is_duplicate_occurrence(err: sqlite3.IntegrityError) -> bool:
    return "doses.occurrence_key" in str(err)


def _schedule_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    record = dict(row)
    record["enabled"] = bool(record["enabled"])
    return record


def _dose_from_row(row: aiosqlite.Row) -> dict[str, Any]:
    record = dict(row)
    if record.get("source") != SOURCE_SCHEDULED:
        for key in ("schedule_id", "occurrence_key", "status"):
            if record.get(key) is None:
                record.pop(key, None)
    return record


@dataclass
class BulkAddFailure:
    """A record rejected by a bulk insert, with the reason."""

    record: dict[str, Any]
    reason: str


@dataclass
class BulkAddResult:
    """Outcome of a bulk insert: rows created and per-record rejections."""

    created: int = 0
    failures: list[BulkAddFailure] = field(default_factory=list)


class DoselineDatabase:
    """Async SQLite database wrapper for doseline data."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._transaction_owner: asyncio.Task[Any] | None = None

    async def async_setup(self) -> None:
        """Open the database, create tables and apply migrations."""
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        # WAL mode allows concurrent reads during writes
        await self._db.execute("PRAGMA journal_mode = WAL")
        # Wait up to 5s for locks instead of failing immediately
        await self._db.execute("PRAGMA busy_timeout = 5000")
        await self._db.executescript(CREATE_TABLES)
        await self._async_migrate()
        await self._db.commit()
        _LOGGER.debug("Doseline database initialized at %s", self._db_path)

    async def async_close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Doseline database is not initialized")
        return self._db

    async def _async_migrate(self) -> None:
        """Bring an older database up to DB_SCHEMA_VERSION."""
        db = self._require_db()
        cursor = await db.execute(
            "SELECT value FROM meta WHERE key = 'schema_version'"
        )
        row = await cursor.fetchone()
        version = int(row["value"]) if row else 0

        if version < DB_SCHEMA_VERSION:
            # Before the unique index, duplicate occurrences could be stored.
            # Keep the oldest row of each occurrence.
            cursor = await db.execute(
                "DELETE FROM doses WHERE occurrence_key IS NOT NULL "
                "AND rowid NOT IN ("
                "SELECT MIN(rowid) FROM doses "
                "WHERE occurrence_key IS NOT NULL GROUP BY occurrence_key)"
            )
            if cursor.rowcount:
                _LOGGER.info(
                    "Removed %d duplicate scheduled doses during migration",
                    cursor.rowcount,
                )
            await db.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES ('schema_version', ?)",
                (str(DB_SCHEMA_VERSION),),
            )
        await db.execute(CREATE_OCCURRENCE_INDEX)

    # ── Transactions ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[DoselineDatabase]:
        """Group writes; commit on success, roll back on any exception."""
        db = self._require_db()
        async with self._write_lock:
            self._transaction_owner = asyncio.current_task()
            try:
                await db.execute("BEGIN")
                try:
                    yield self
                except BaseException:
                    await db.rollback()
                    raise
                await db.commit()
            finally:
                self._transaction_owner = None

    def _owns_transaction(self) -> bool:
        """Whether the running task opened the current transaction."""
        return (
            self._transaction_owner is not None
            and self._transaction_owner is asyncio.current_task()
        )

    @asynccontextmanager
    async def _write(self) -> AsyncIterator[aiosqlite.Connection]:
        """Single write outside a transaction, or a step inside one.

        Writes from other tasks wait on the write lock until an open
        transaction commits or rolls back.
        """
        db = self._require_db()
        if self._owns_transaction():
            yield db
            return
        async with self._write_lock:
            try:
                yield db
            except BaseException:
                await db.rollback()
                raise
            await db.commit()

    # ── Medications ──────────────────────────────────────────────────────────

    async def add_medication(
        self,
        name: str,
        ka_per_hour: float,
        ke_per_hour: float,
        scale: float = 1.0,
        notes: str = "",
    ) -> dict[str, Any]:
        """Create a medication profile and return the stored record."""
        timestamp = now_iso()
        record = {
            "id": generate_id(),
            "name": name,
            "ka_per_hour": ka_per_hour,
            "ke_per_hour": ke_per_hour,
            "scale": scale,
            "notes": notes,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        async with self._write() as db:
            await db.execute(
                _insert_sql("medications", _MEDICATION_COLUMNS),
                tuple(record[c] for c in _MEDICATION_COLUMNS),
            )
        return record

    async def get_medications(self) -> list[dict[str, Any]]:
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT {_quoted(_MEDICATION_COLUMNS)} FROM medications "
            "ORDER BY created_at ASC, name ASC"
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def get_medication(self, medication_id: str) -> dict[str, Any] | None:
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT {_quoted(_MEDICATION_COLUMNS)} FROM medications WHERE id = ?",
            (medication_id,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def update_medication(
        self, medication_id: str, updates: dict[str, Any]
    ) -> bool:
        return await self._update("medications", _MEDICATION_COLUMNS, medication_id, updates)

    async def delete_medication(self, medication_id: str) -> bool:
        return await self._delete("medications", medication_id)

    # ── Schedules ────────────────────────────────────────────────────────────

    async def add_schedule(
        self,
        medication_id: str,
        start_datetime_iso: str,
        timezone_name: str,
        dose_mg: float,
        interval: int,
        frequency: str = "custom",
        enabled: bool = True,
    ) -> dict[str, Any]:
        """Create a recurring schedule and return the stored record."""
        timestamp = now_iso()
        record = {
            "id": generate_id(),
            "medication_id": medication_id,
            "start_datetime_iso": start_datetime_iso,
            "timezone": timezone_name,
            "dose_mg": dose_mg,
            "frequency": frequency,
            "interval": interval,
            "enabled": enabled,
            "created_at": timestamp,
            "updated_at": timestamp,
        }
        async with self._write() as db:
            await db.execute(
                _insert_sql("schedules", _SCHEDULE_COLUMNS),
                tuple(record[c] for c in _SCHEDULE_COLUMNS),
            )
        return record

    async def get_schedules(self) -> list[dict[str, Any]]:
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT {_quoted(_SCHEDULE_COLUMNS)} FROM schedules "
            "ORDER BY created_at ASC"
        )
        rows = await cursor.fetchall()
        return [_schedule_from_row(row) for row in rows]

    async def get_schedule(self, schedule_id: str) -> dict[str, Any] | None:
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT {_quoted(_SCHEDULE_COLUMNS)} FROM schedules WHERE id = ?",
            (schedule_id,),
        )
        row = await cursor.fetchone()
        return _schedule_from_row(row) if row else None

    async def update_schedule(self, schedule_id: str, updates: dict[str, Any]) -> bool:
        return await self._update("schedules", _SCHEDULE_COLUMNS, schedule_id, updates)

    async def delete_schedule(self, schedule_id: str) -> bool:
        return await self._delete("schedules", schedule_id)

    # ── Doses ────────────────────────────────────────────────────────────────

    async def add_dose(self, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a dose record, filling id/timestamps/source when absent."""
        stored = self._prepare_dose(record)
        async with self._write() as db:
            await db.execute(
                _insert_sql("doses", _DOSE_COLUMNS),
                tuple(stored.get(c) for c in _DOSE_COLUMNS),
            )
        return stored

    async def bulk_add_doses(self, records: list[dict[str, Any]]) -> BulkAddResult:
        """Insert many doses, reporting duplicate occurrences per record.

        A duplicate occurrence key rejects only that record. Any other error
        propagates; when not already inside transaction() the whole batch is
        then rolled back.
        """
        if not self._owns_transaction():
            async with self.transaction():
                return await self.bulk_add_doses(records)

        db = self._require_db()
        result = BulkAddResult()
        sql = _insert_sql("doses", _DOSE_COLUMNS)
        for record in records:
            stored = self._prepare_dose(record)
            try:
                await db.execute(sql, tuple(stored.get(c) for c in _DOSE_COLUMNS))
            except sqlite3.IntegrityError as err:
                if not _is_duplicate_occurrence(err):
                    raise
                result.failures.append(BulkAddFailure(stored, str(err)))
            else:
                result.created += 1
        return result

    @staticmethod
    def _prepare_dose(record: dict[str, Any]) -> dict[str, Any]:
        timestamp = now_iso()
        stored = {
            "id": generate_id(),
            "created_at": timestamp,
            "updated_at": timestamp,
            **record,
        }
        source = stored.get("source") or SOURCE_MANUAL
        stored["source"] = source
        if source != SOURCE_SCHEDULED:
            stored["status"] = None
        return stored

    async def get_doses(
        self,
        since_iso: str | None = None,
        until_iso: str | None = None,
    ) -> list[dict[str, Any]]:
        """Get dose records, optionally limited to a datetime_iso range."""
        db = self._require_db()
        clauses: list[str] = []
        params: list[Any] = []
        if since_iso is not None:
            clauses.append("datetime_iso >= ?")
            params.append(since_iso)
        if until_iso is not None:
            clauses.append("datetime_iso <= ?")
            params.append(until_iso)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await db.execute(
            f"SELECT {_quoted(_DOSE_COLUMNS)} FROM doses{where} "
            "ORDER BY datetime_iso ASC",
            tuple(params),
        )
        rows = await cursor.fetchall()
        return [_dose_from_row(row) for row in rows]

    async def get_dose(self, dose_id: str) -> dict[str, Any] | None:
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT {_quoted(_DOSE_COLUMNS)} FROM doses WHERE id = ?",
            (dose_id,),
        )
        row = await cursor.fetchone()
        return _dose_from_row(row) if row else None

    async def get_dose_by_occurrence_key(
        self, occurrence_key: str
    ) -> dict[str, Any] | None:
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT {_quoted(_DOSE_COLUMNS)} FROM doses WHERE occurrence_key = ?",
            (occurrence_key,),
        )
        row = await cursor.fetchone()
        return _dose_from_row(row) if row else None

    async def get_existing_occurrence_keys(self, keys: Iterable[str]) -> set[str]:
        """Return the subset of *keys* already stored on a dose."""
        db = self._require_db()
        pending = list(dict.fromkeys(keys))
        found: set[str] = set()
        for offset in range(0, len(pending), _IN_CLAUSE_CHUNK):
            chunk = pending[offset : offset + _IN_CLAUSE_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await db.execute(
                "SELECT occurrence_key FROM doses "
                f"WHERE occurrence_key IN ({placeholders})",
                tuple(chunk),
            )
            rows = await cursor.fetchall()
            found.update(row["occurrence_key"] for row in rows)
        return found

    async def update_dose(self, dose_id: str, updates: dict[str, Any]) -> bool:
        return await self._update("doses", _DOSE_COLUMNS, dose_id, updates)

    async def delete_dose(self, dose_id: str) -> bool:
        return await self._delete("doses", dose_id)

    # ── Settings ─────────────────────────────────────────────────────────────

    async def get_settings(self) -> dict[str, Any]:
        """Return the settings singleton, or defaults if never stored."""
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT id, {_quoted(_SETTINGS_COLUMNS)} FROM settings WHERE id = ?",
            (SETTINGS_ID,),
        )
        row = await cursor.fetchone()
        return dict(row) if row else dict(DEFAULT_SETTINGS)

    async def upsert_settings(self, updates: dict[str, Any]) -> dict[str, Any]:
        existing = await self.get_settings()
        record = {
            **existing,
            **{k: v for k, v in updates.items() if k in _SETTINGS_COLUMNS},
            "id": SETTINGS_ID,
        }
        columns = ("id", *_SETTINGS_COLUMNS)
        placeholders = ", ".join("?" for _ in columns)
        async with self._write() as db:
            await db.execute(
                f"INSERT OR REPLACE INTO settings ({_quoted(columns)}) "
                f"VALUES ({placeholders})",
                tuple(record[c] for c in columns),
            )
        return record

    # ── Import / export ──────────────────────────────────────────────────────

    async def export_tables(self) -> dict[str, list[dict[str, Any]]]:
        """Snapshot every table as lists of records."""
        db = self._require_db()
        cursor = await db.execute(
            f"SELECT id, {_quoted(_SETTINGS_COLUMNS)} FROM settings"
        )
        settings = [dict(row) for row in await cursor.fetchall()]
        return {
            "medications": await self.get_medications(),
            "doses": await self.get_doses(),
            "schedules": await self.get_schedules(),
            "settings": settings,
        }

    async def import_replace_all(
        self, tables: dict[str, list[dict[str, Any]]]
    ) -> None:
        """Replace every table with *tables* atomically."""
        async with self.transaction() as tx:
            db = tx._require_db()
            for table in ("medications", "doses", "schedules", "settings"):
                await db.execute(f"DELETE FROM {table}")
            for record in tables.get("medications", []):
                await db.execute(
                    _insert_sql("medications", _MEDICATION_COLUMNS),
                    tuple(record.get(c) for c in _MEDICATION_COLUMNS),
                )
            for record in tables.get("schedules", []):
                await db.execute(
                    _insert_sql("schedules", _SCHEDULE_COLUMNS),
                    tuple(record.get(c) for c in _SCHEDULE_COLUMNS),
                )
            for record in tables.get("doses", []):
                await db.execute(
                    _insert_sql("doses", _DOSE_COLUMNS),
                    tuple(record.get(c) for c in _DOSE_COLUMNS),
                )
            settings_columns = ("id", *_SETTINGS_COLUMNS)
            for record in tables.get("settings", []):
                await db.execute(
                    _insert_sql("settings", settings_columns),
                    tuple(record.get(c) for c in settings_columns),
                )
        _LOGGER.info(
            "Imported %d medications, %d schedules, %d doses",
            len(tables.get("medications", [])),
            len(tables.get("schedules", [])),
            len(tables.get("doses", [])),
        )

    # ── Clear all data ───────────────────────────────────────────────────────

    async def clear_all_data(self) -> None:
        """Delete all medications, schedules, doses and settings."""
        async with self._write() as db:
            for table in ("medications", "doses", "schedules", "settings"):
                await db.execute(f"DELETE FROM {table}")
        _LOGGER.info("All doseline data cleared")

    # ── Helpers ──────────────────────────────────────────────────────────────

    async def _update(
        self,
        table: str,
        columns: tuple[str, ...],
        record_id: str,
        updates: dict[str, Any],
    ) -> bool:
        changes = {
            k: v for k, v in updates.items() if k in columns and k not in ("id", "created_at")
        }
        changes["updated_at"] = now_iso()
        assignments = ", ".join(f'"{column}" = ?' for column in changes)
        async with self._write() as db:
            cursor = await db.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*changes.values(), record_id),
            )
        return cursor.rowcount > 0

    async def _delete(self, table: str, record_id: str) -> bool:
        async with self._write() as db:
            cursor = await db.execute(
                f"DELETE FROM {table} WHERE id = ?", (record_id,)
            )
        return cursor.rowcount > 0
