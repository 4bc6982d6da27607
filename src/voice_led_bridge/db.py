"""SQLite helpers and migrations for the voice LED bridge."""

from __future__ import annotations

import asyncio
import shutil
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, TypeVar

from .logging import get_logger

Migration = Callable[[sqlite3.Connection], None]

SCHEMA_VERSION_KEY = "schema_version"
DEFAULT_INTEGRITY_CHECK_INTERVAL = 6 * 60 * 60  # seconds
BUSY_TIMEOUT_MS = 5000
_CORRUPTION_MARKERS = ("malformed", "corrupt", "not a database")

T = TypeVar("T")


class DatabaseCorruptionError(RuntimeError):
    """Raised when a fatal SQLite corruption is detected."""


def _ensure_parent_dir(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _configure_connection(conn: sqlite3.Connection) -> None:
    """Apply connection-wide pragmas so the bridge and admin tools can share the file."""

    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )


def _get_schema_version(conn: sqlite3.Connection) -> int:
    _ensure_meta_table(conn)
    row = conn.execute(
        "SELECT value FROM meta WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ).fetchone()
    if row is None:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(
        """
        INSERT INTO meta (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (SCHEMA_VERSION_KEY, str(version)),
    )


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS user_lights (
            user_id TEXT PRIMARY KEY,
            username TEXT,
            device TEXT NOT NULL,
            led INTEGER NOT NULL CHECK (led >= 0),
            color TEXT NOT NULL DEFAULT '#00FFAA',
            join_effect TEXT NOT NULL DEFAULT 'wakeup',
            join_duration INTEGER NOT NULL DEFAULT 6000,
            next_effect TEXT NOT NULL DEFAULT 'breathe',
            speed TEXT NOT NULL DEFAULT 'medium',
            brightness INTEGER NOT NULL DEFAULT 255
                CHECK (brightness BETWEEN 0 AND 255),
            leave_effect TEXT NOT NULL DEFAULT 'sleep',
            leave_duration INTEGER NOT NULL DEFAULT 4000,
            enabled INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
            updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
        );
        """
    )


def _migration_enabled_index(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE INDEX IF NOT EXISTS idx_user_lights_enabled
            ON user_lights (enabled);

        CREATE INDEX IF NOT EXISTS idx_user_lights_device
            ON user_lights (device);
        """
    )


MIGRATIONS: List[Tuple[int, Migration]] = [
    (1, _migration_initial_schema),
    (2, _migration_enabled_index),
]


def apply_migrations(db_path: Path) -> None:
    """Apply any pending migrations to the SQLite database."""

    logger = get_logger("voiceled.migrations")
    conn = open_connection(db_path)
    try:
        current = _get_schema_version(conn)
        logger.info("Current schema version", extra={"version": current})

        for version, migration in _pending_migrations(current):
            logger.info("Applying migration", extra={"version": version})
            migration(conn)
            _set_schema_version(conn, version)
            conn.commit()
            logger.info("Migration applied", extra={"version": version})
    finally:
        conn.close()


def _pending_migrations(current_version: int) -> Iterable[Tuple[int, Migration]]:
    for version, migration in MIGRATIONS:
        if version > current_version:
            yield version, migration


def open_connection(db_path: Path) -> sqlite3.Connection:
    """Open and configure a connection; a file SQLite cannot read raises here."""

    _ensure_parent_dir(db_path)
    conn = sqlite3.connect(db_path, check_same_thread=False)
    try:
        _configure_connection(conn)
    except sqlite3.Error:
        conn.close()
        raise
    return conn


def is_corruption_error(exc: sqlite3.DatabaseError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


def integrity_failures(conn: sqlite3.Connection) -> List[str]:
    """Return the problems ``PRAGMA integrity_check`` reports; empty when healthy."""

    rows = conn.execute("PRAGMA integrity_check").fetchall()
    if not rows:
        return ["integrity check returned no rows"]
    return [str(row[0]) for row in rows if str(row[0]).lower() != "ok"]


def backup_corrupt_database(db_path: Path) -> Optional[Path]:
    """Copy a damaged database aside as ``<stem>.corrupt-<timestamp><suffix>``.

    Returns None when the copy cannot be made.
    """

    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    backup_path = db_path.with_suffix(f".corrupt-{timestamp}{db_path.suffix}")
    try:
        shutil.copy2(db_path, backup_path)
    except OSError:
        get_logger("voiceled.db").exception(
            "Failed to copy corrupted database", extra={"db_path": str(db_path)}
        )
        return None
    return backup_path


class DatabaseManager:
    """Runs store operations against one shared SQLite connection.

    Operations execute on a worker thread one at a time. An SQLite error
    that means the file itself is damaged is re-raised as
    `DatabaseCorruptionError` once the file has been copied aside.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.logger = get_logger("voiceled.db")
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()
        self._closed = False

    async def run(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._closed:
            raise RuntimeError("Database manager is closed")
        async with self._lock:
            try:
                return await asyncio.to_thread(self._call, operation)
            except sqlite3.DatabaseError as exc:
                if not is_corruption_error(exc):
                    raise
                raise self._corrupted(str(exc)) from exc

    async def check_integrity(self) -> None:
        failures = await self.run(integrity_failures)
        if failures:
            raise self._corrupted("; ".join(failures))

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            conn, self._conn = self._conn, None
        if conn is not None:
            await asyncio.to_thread(conn.close)

    def _call(self, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._conn is None:
            self._conn = open_connection(self.db_path)
        return operation(self._conn)

    def _corrupted(self, reason: str) -> DatabaseCorruptionError:
        backup_path = backup_corrupt_database(self.db_path)
        self.logger.error(
            "Database corruption detected",
            extra={
                "reason": reason,
                "db_path": str(self.db_path),
                "backup_path": str(backup_path) if backup_path else None,
            },
        )
        if backup_path is None:
            return DatabaseCorruptionError(
                f"Database {self.db_path} is corrupted ({reason}) and could not be copied aside"
            )
        return DatabaseCorruptionError(
            f"Database {self.db_path} is corrupted ({reason}); copied to {backup_path}. "
            "Restore a known-good copy or remove the file and re-run migrations."
        )
