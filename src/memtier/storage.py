"""Core storage layer for the memtier system.

Manages a SQLite database holding cognitive nodes, the consolidation
session audit trail and (optionally) the schedule registry.  All public
methods are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections -- each thread pool worker keeps one
      long-lived connection open, eliminating per-call open/close overhead.
    - WAL mode enables concurrent readers alongside a single writer.

Timestamps are written by the application as ISO-8601 UTC strings (see
:func:`to_iso`) so that the Python side can compare them exactly.

Usage::

    from memtier.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    changed = await store.execute_write_rowcount("UPDATE cognitive_nodes ...", (...))
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio

from memtier.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Return the current time as an aware UTC :class:`datetime`."""
    return datetime.now(tz=timezone.utc)


def to_iso(moment: datetime) -> str:
    """Serialise *moment* as a fixed-width ISO-8601 UTC string.

    Naive datetimes are assumed to already be in UTC.  The fixed width keeps
    SQL string comparisons in chronological order.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    """Parse a timestamp written by :func:`to_iso` (or SQLite's ``datetime()``).

    Always returns an aware UTC :class:`datetime`.
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Cognitive nodes: the tiered memory store
CREATE TABLE IF NOT EXISTS cognitive_nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    content TEXT NOT NULL,
    memory_tier TEXT NOT NULL DEFAULT 'working'
        CHECK(memory_tier IN ('working','short_term','long_term')),
    activation_strength REAL NOT NULL DEFAULT 1.0
        CHECK(activation_strength >= 0.0 AND activation_strength <= 1.0),
    consolidation_score REAL NOT NULL DEFAULT 0.0
        CHECK(consolidation_score >= 0.0 AND consolidation_score <= 1.0),
    is_sensitive INTEGER NOT NULL DEFAULT 0,
    access_count INTEGER NOT NULL DEFAULT 0,
    last_accessed_at TEXT NOT NULL,
    last_consolidated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- Append-only audit trail of consolidation runs
CREATE TABLE IF NOT EXISTS consolidation_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id TEXT NOT NULL,
    session_type TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    nodes_processed INTEGER NOT NULL DEFAULT 0,
    patterns_discovered INTEGER NOT NULL DEFAULT 0,
    connections_strengthened INTEGER NOT NULL DEFAULT 0,
    metadata TEXT
);

-- Persisted schedule registry (only used when persist_schedules is on)
CREATE TABLE IF NOT EXISTS schedules (
    type TEXT PRIMARY KEY CHECK(type IN ('hourly','daily','weekly')),
    enabled INTEGER NOT NULL,
    last_run TEXT,
    next_run TEXT NOT NULL,
    processing_nodes INTEGER NOT NULL DEFAULT 0
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_nodes_owner_tier
    ON cognitive_nodes(owner_id, memory_tier);
CREATE INDEX IF NOT EXISTS idx_nodes_owner_last_accessed
    ON cognitive_nodes(owner_id, last_accessed_at);
CREATE INDEX IF NOT EXISTS idx_sessions_owner_started
    ON consolidation_sessions(owner_id, started_at DESC);
"""

# Triggers that keep the audit trail append-only.
_AUDIT_GUARD_SQL = """\
CREATE TRIGGER IF NOT EXISTS consolidation_sessions_no_update
BEFORE UPDATE ON consolidation_sessions BEGIN
    SELECT RAISE(ABORT, 'consolidation_sessions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS consolidation_sessions_no_delete
BEFORE DELETE ON consolidation_sessions BEGIN
    SELECT RAISE(ABORT, 'consolidation_sessions is append-only');
END;
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend for the memtier system.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._write_lock = threading.Lock()
        self._local = threading.local()  # thread-local persistent connections
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()  # guards _all_connections
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory and backup directory.
        2. Creates all tables, indexes and audit triggers.
        3. Runs an automatic backup (pruning old backups).
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info("Storage initialised at %s", self._db_path)

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        # RETURNING clause support arrived in SQLite 3.35.0.
        sqlite_version = tuple(
            int(x) for x in sqlite3.sqlite_version.split(".")
        )
        if sqlite_version < (3, 35, 0):
            raise RuntimeError(
                f"SQLite {sqlite3.sqlite_version} is too old; memtier requires >= 3.35.0 "
                "(needed for RETURNING clause support)"
            )

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            conn.executescript(_INDEX_SQL)
            conn.executescript(_AUDIT_GUARD_SQL)
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with WAL journal mode, foreign key
        enforcement and :class:`sqlite3.Row` as the row factory.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write_rowcount(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a bulk UPDATE / DELETE under the write lock.

        Returns
        -------
        int
            Number of rows the statement changed.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_rowcount_sync(sql, params),
        )

    def _execute_write_rowcount_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return max(cursor.rowcount, 0)
            except Exception:
                conn.rollback()
                raise

    async def execute_write_returning(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a write query with a RETURNING clause under the write lock.

        Use this when the SQL statement includes a ``RETURNING`` clause and
        the caller needs the returned rows (e.g. ``UPDATE ... RETURNING *``).
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_returning_sync(sql, params),
        )

    def _execute_write_returning_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                rows = cursor.fetchall()
                conn.commit()
                return rows
            except Exception:
                conn.rollback()
                raise

    async def execute_many(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        """Execute a statement for each set of parameters under the write lock."""
        await anyio.to_thread.run_sync(
            lambda: self._execute_many_sync(sql, params_list),
        )

    def _execute_many_sync(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executemany(sql, params_list)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        a ``BEGIN IMMEDIATE`` transaction.  Commit happens on success and
        rollback on exception.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 10 minutes are automatically cleaned up
        before the acquisition attempt.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-10 minutes')",
            (name,),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given the lock is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute(
                "DELETE FROM locks WHERE name = ?",
                (name,),
            )

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def _backup_sync(self) -> Path:
        """Create a timestamped online backup and prune old ones."""
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = utcnow().strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"memtier_{timestamp}.db"

        # Online backup API gives a consistent snapshot.
        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("memtier_*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

