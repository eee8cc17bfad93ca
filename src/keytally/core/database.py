"""Durable store for key events.

SQLite keeps all persisted records in a single database file. Batched writes are
transactional, reads are served by range queries over indexed columns, and
backups are plain file copies next to the store file whose metadata is recorded
inside the store itself.

The store is synchronous and thread-safe. Async callers offload calls to a worker
thread and never hold the event loop during I/O.
"""

from __future__ import annotations

import os
import shutil
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional

from loguru import logger
from pydantic import Field

from keytally.config.configabc import SettingsBaseModel
from keytally.core.errors import BackupNotFound, NotInitialized, StoreError, WriteFailed
from keytally.core.models import Backup, KeyEvent, KeyRecord, KeyStat, Period, StoreSummary
from keytally.utils.datetimeutil import (
    day_key,
    hour_of_day,
    period_day_range,
    to_timestamp_ms,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS keystrokes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        code INTEGER NOT NULL,
        name TEXT NOT NULL,
        timestamp_ms INTEGER NOT NULL,
        day_key TEXT NOT NULL,
        hour INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_timestamp ON keystrokes(timestamp_ms)",
    "CREATE INDEX IF NOT EXISTS idx_day_key ON keystrokes(day_key)",
    "CREATE INDEX IF NOT EXISTS idx_name ON keystrokes(name)",
    "CREATE INDEX IF NOT EXISTS idx_day_key_name ON keystrokes(day_key, name)",
    """
    CREATE TABLE IF NOT EXISTS backups (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        path TEXT NOT NULL,
        created_at_ms INTEGER NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_backup_created ON backups(created_at_ms)",
]

_INSERT_RECORD = (
    "INSERT INTO keystrokes (code, name, timestamp_ms, day_key, hour) VALUES (?, ?, ?, ?, ?)"
)

_STATS_BY_DAY_RANGE = """
    SELECT name, COUNT(*) AS count
    FROM keystrokes
    WHERE day_key >= ? AND day_key <= ?
    GROUP BY name
    ORDER BY count DESC
"""

_STATS_BY_DAY = """
    SELECT name, COUNT(*) AS count
    FROM keystrokes
    WHERE day_key = ?
    GROUP BY name
    ORDER BY count DESC
"""


_TABLE_NAMES = "SELECT name FROM sqlite_master WHERE type = 'table'"


class DatabaseCommonSettings(SettingsBaseModel):
    """Configuration model for the durable store.

    Attributes:
        file_name: Store file, relative to the data folder or absolute.
        timeout_sec: Seconds SQLite waits on a locked database before failing.
    """

    file_name: Path = Field(
        default=Path("keytally.db"),
        json_schema_extra={
            "description": "Store file name, relative to the data folder or absolute.",
            "examples": ["keytally.db"],
        },
    )

    timeout_sec: float = Field(
        default=10.0,
        gt=0,
        json_schema_extra={
            "description": "Seconds to wait on a locked database before failing.",
            "examples": [10.0],
        },
    )


class KeystrokeDatabase:
    """SQLite store of key events and backup metadata.

    All public operations raise `NotInitialized` until `open` was called.
    I/O errors are never swallowed: writes raise `WriteFailed`, everything else
    raises `StoreError`.

    Attributes:
        db_file: Path of the store file.
        lock: Re-entrant lock serialising access to the connection. Hold it to run
            several reads against one consistent state.
    """

    db_file: Path
    conn: Optional[sqlite3.Connection]

    def __init__(self, db_file: Path | str, timeout: float = 10.0) -> None:
        self.db_file = Path(db_file)
        self.timeout = timeout
        self.conn = None
        self.lock = threading.RLock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_open(self) -> bool:
        return self.conn is not None

    def open(self) -> None:
        """Open the SQLite connection and create the schema.

        Raises:
            StoreError: If the database can not be opened.
        """
        with self.lock:
            if self.conn is not None:
                return
            self.db_file.parent.mkdir(parents=True, exist_ok=True)
            try:
                conn = sqlite3.connect(
                    str(self.db_file),
                    timeout=self.timeout,
                    isolation_level=None,  # autocommit
                    check_same_thread=False,
                )
                for statement in _SCHEMA:
                    conn.execute(statement)
            except sqlite3.Error as e:
                raise StoreError(f"Cannot open store '{self.db_file}': {e}") from e
            self.conn = conn
        logger.debug("Opened store at {}", self.db_file)

    def close(self) -> None:
        """Close the SQLite connection. Closing a closed store is a no-op."""
        with self.lock:
            if self.conn is None:
                return
            self.conn.close()
            self.conn = None
        logger.debug("Closed store at {}", self.db_file)

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise NotInitialized(f"Store '{self.db_file}' is not open")
        return self.conn

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[tuple]:
        with self.lock:
            conn = self._connection()
            try:
                return conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StoreError(f"Query failed: {e}") from e

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    def save(self, events: Iterable[KeyEvent]) -> int:
        """Persist events in one transaction.

        Calendar fields are derived here, in UTC. Either all events of the call
        land or none do.

        Args:
            events: Events to persist.

        Returns:
            Number of records written.

        Raises:
            NotInitialized: If the store is not open.
            WriteFailed: If the transaction could not be committed.
        """
        self._connection()
        rows = [
            (
                event.code,
                event.name,
                event.timestamp_ms,
                day_key(event.timestamp_ms),
                hour_of_day(event.timestamp_ms),
            )
            for event in events
        ]
        if not rows:
            return 0

        with self.lock:
            conn = self._connection()
            try:
                conn.execute("BEGIN")
                conn.executemany(_INSERT_RECORD, rows)
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.warning("Rollback failed: {}", rollback_error)
                raise WriteFailed(f"Saving {len(rows)} records failed: {e}") from e

        return len(rows)

    def clear(self) -> None:
        """Delete all records. Backup metadata is kept.

        Raises:
            NotInitialized: If the store is not open.
            WriteFailed: If the records could not be deleted.
        """
        with self.lock:
            conn = self._connection()
            try:
                deleted = conn.execute("DELETE FROM keystrokes").rowcount
            except sqlite3.Error as e:
                raise WriteFailed(f"Clearing store failed: {e}") from e
        logger.info("Cleared store {}, {} records deleted", self.db_file, deleted)

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    def iterate_records(self, start_ms: int, end_ms: int) -> Iterator[KeyRecord]:
        """Iterate records with timestamp in [start_ms, end_ms].

        Rows are materialized while holding the lock, yielded after releasing it.
        """
        rows = self._query(
            "SELECT id, code, name, timestamp_ms, day_key, hour FROM keystrokes "
            "WHERE timestamp_ms >= ? AND timestamp_ms <= ? ORDER BY timestamp_ms, id",
            (start_ms, end_ms),
        )
        for row in rows:
            yield KeyRecord(
                id=row[0],
                code=row[1],
                name=row[2],
                timestamp_ms=row[3],
                day_key=row[4],
                hour=row[5],
            )

    def get_by_range(self, start: Any, end: Any) -> List[KeyRecord]:
        """Records with timestamp in [start, end], ascending by timestamp.

        Args:
            start: Inclusive start, epoch milliseconds or any datetime input.
            end: Inclusive end, epoch milliseconds or any datetime input.
        """
        return list(self.iterate_records(to_timestamp_ms(start), to_timestamp_ms(end)))

    def get_stats_by_period(self, period: Period | str, anchor: Any) -> List[KeyStat]:
        """Counts per name for the calendar period containing `anchor`.

        Day periods match the day key exactly. Month and year periods use an
        inclusive day key range so that the day key index serves the query.

        Args:
            period: Period granularity.
            anchor: Any point in time inside the period.

        Returns:
            Key statistics sorted by count, descending.
        """
        period = Period(period)
        first, last = period_day_range(period.value, anchor)
        if period == Period.DAY:
            rows = self._query(_STATS_BY_DAY, (first,))
        else:
            rows = self._query(_STATS_BY_DAY_RANGE, (first, last))
        return [KeyStat(name=name, count=count) for name, count in rows]

    def count_by_day_range(self, first_day: str, last_day: str) -> int:
        """Number of records with day key in [first_day, last_day]."""
        rows = self._query(
            "SELECT COUNT(*) FROM keystrokes WHERE day_key >= ? AND day_key <= ?",
            (first_day, last_day),
        )
        return int(rows[0][0])

    def summary(self) -> StoreSummary:
        """Totals over the whole store."""
        rows = self._query(
            "SELECT COUNT(*), MIN(timestamp_ms), MAX(timestamp_ms), COUNT(DISTINCT name) "
            "FROM keystrokes"
        )
        total, oldest, newest, unique_names = rows[0]
        return StoreSummary(
            total_count=total or 0,
            oldest_ms=oldest,
            newest_ms=newest,
            unique_names=unique_names or 0,
        )

    def explain_query(self, sql: str, params: Iterable[Any] = ()) -> List[tuple]:
        """Return the SQLite query plan rows of `sql`."""
        return self._query(f"EXPLAIN QUERY PLAN {sql}", params)

    def vacuum(self) -> None:
        """Run SQLite VACUUM to reduce file size."""
        with self.lock:
            conn = self._connection()
            try:
                conn.execute("VACUUM")
            except sqlite3.Error as e:
                raise StoreError(f"Vacuum failed: {e}") from e
        logger.info("Store vacuum completed")

    # ------------------------------------------------------------------
    # Backup / restore
    # ------------------------------------------------------------------

    def _backup_path(self, created_at_ms: int) -> Path:
        return self.db_file.with_name(f"{self.db_file.name}.backup.{created_at_ms}")

    def backup(self) -> Backup:
        """Copy the store file and record the copy in the store.

        The file copy completes before the metadata row is written, so listed
        backups always have a complete file.

        Returns:
            The new backup.

        Raises:
            NotInitialized: If the store is not open.
            StoreError: If the copy or the metadata write fails.
        """
        with self.lock:
            conn = self._connection()
            created_at_ms = int(time.time() * 1000)
            backup_path = self._backup_path(created_at_ms)
            while backup_path.exists():
                created_at_ms += 1
                backup_path = self._backup_path(created_at_ms)

            try:
                shutil.copy2(self.db_file, backup_path)
            except OSError as e:
                raise StoreError(f"Copying store to '{backup_path}' failed: {e}") from e

            try:
                conn.execute(
                    "INSERT INTO backups (path, created_at_ms) VALUES (?, ?)",
                    (str(backup_path), created_at_ms),
                )
            except sqlite3.Error as e:
                raise StoreError(f"Recording backup '{backup_path}' failed: {e}") from e

        logger.info("Backup created at {}", backup_path)
        return Backup(path=backup_path, created_at_ms=created_at_ms)

    def _backup_rows(self) -> List[tuple]:
        return self._query(
            "SELECT path, created_at_ms FROM backups ORDER BY created_at_ms DESC, id DESC"
        )

    def list_backups(self) -> List[Backup]:
        """Recorded backups whose file still exists, newest first."""
        return [
            Backup(path=Path(path), created_at_ms=created_at_ms)
            for path, created_at_ms in self._backup_rows()
            if Path(path).exists()
        ]

    @staticmethod
    def _check_snapshot(path: Path) -> None:
        """Raise `StoreError` unless `path` is an intact store file."""
        try:
            conn = sqlite3.connect(str(path))
            try:
                (status,) = conn.execute("PRAGMA integrity_check").fetchone()
                tables = {name for (name,) in conn.execute(_TABLE_NAMES)}
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Backup '{path}' is not a usable store: {e}") from e
        if status != "ok":
            raise StoreError(f"Backup '{path}' failed the integrity check: {status}")
        if not {"keystrokes", "backups"} <= tables:
            raise StoreError(f"Backup '{path}' does not contain a keystroke store")

    def restore(self, backup_path: Path | str) -> None:
        """Replace the store contents with a backup.

        The snapshot is copied next to the store file and checked first. Only an
        intact copy replaces the store file, otherwise the store is left as it
        was. The store is then reopened on the restored file.
        Backup metadata known before the restore is merged into the restored
        store, so restoring never hides an existing backup.

        Raises:
            NotInitialized: If the store is not open.
            BackupNotFound: If `backup_path` does not exist.
            StoreError: If the backup is not a usable store or the replacement fails.
        """
        backup_path = Path(backup_path)
        self._connection()
        if not backup_path.is_file():
            raise BackupNotFound(f"Backup file not found: {backup_path}")

        staged = self.db_file.with_name(f"{self.db_file.name}.restore")
        with self.lock:
            try:
                shutil.copyfile(backup_path, staged)
                self._check_snapshot(staged)
            except (OSError, StoreError) as e:
                staged.unlink(missing_ok=True)
                logger.error("Restoring store from {} failed, store unchanged: {}", backup_path, e)
                if isinstance(e, StoreError):
                    raise
                raise StoreError(f"Restoring '{backup_path}' failed: {e}") from e

            known_backups = self._backup_rows()
            self.close()
            try:
                os.replace(staged, self.db_file)
            except OSError as e:
                staged.unlink(missing_ok=True)
                logger.exception("Replacing store with backup {} failed", backup_path)
                self.open()
                raise StoreError(f"Restoring '{backup_path}' failed: {e}") from e
            self.open()

            restored = {(path, created) for path, created in self._backup_rows()}
            missing = [row for row in known_backups if tuple(row) not in restored]
            if missing:
                conn = self._connection()
                try:
                    conn.executemany(
                        "INSERT INTO backups (path, created_at_ms) VALUES (?, ?)",
                        list(reversed(missing)),
                    )
                except sqlite3.Error as e:
                    raise StoreError(f"Merging backup metadata failed: {e}") from e

        logger.info("Store restored from {}", backup_path)
