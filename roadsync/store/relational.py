"""SQLite connection pool and schema for the aggregation tables."""

from __future__ import annotations

import queue
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from roadsync.common.fs import ensure_dir

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS aggregated_locations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        grid_id TEXT NOT NULL UNIQUE,
        latitude REAL NOT NULL,
        longitude REAL NOT NULL,
        total_potholes INTEGER NOT NULL DEFAULT 0,
        total_patchy INTEGER NOT NULL DEFAULT 0,
        highest_severity TEXT NOT NULL DEFAULT 'Low',
        report_count INTEGER NOT NULL DEFAULT 0,
        first_reported_at TEXT,
        last_reported_at TEXT,
        status TEXT NOT NULL DEFAULT 'pending'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS source_events (
        source_ref TEXT PRIMARY KEY,
        grid_ids TEXT NOT NULL,
        event_types TEXT NOT NULL,
        aggregated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_aggregated_locations_status ON aggregated_locations(status)",
)


class ConnectionPool:
    """Fixed-size pool of sqlite connections shared across threads.

    Connections run in autocommit mode; ``transaction()`` issues an explicit
    ``BEGIN IMMEDIATE`` so the write lock is taken before the first read.
    """

    def __init__(self, path: str | Path, size: int = 4, *, busy_timeout: float = 30.0) -> None:
        self.path = str(path)
        self.size = max(1, int(size))
        self.busy_timeout = busy_timeout
        self._pool: queue.LifoQueue[sqlite3.Connection] = queue.LifoQueue(maxsize=self.size)
        self._created = 0
        self._lock = threading.Lock()
        self._closed = False
        if self.path != ":memory:" and not self.path.startswith("file:"):
            ensure_dir(Path(self.path).parent)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.path,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
            uri=self.path.startswith("file:"),
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def acquire(self) -> sqlite3.Connection:
        if self._closed:
            raise sqlite3.ProgrammingError("Connection pool is closed")
        try:
            return self._pool.get_nowait()
        except queue.Empty:
            pass
        with self._lock:
            if self._created < self.size:
                self._created += 1
                return self._connect()
        return self._pool.get(timeout=self.busy_timeout)

    def release(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        if self._closed:
            conn.close()
            return
        self._pool.put_nowait(conn)

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        conn = self.acquire()
        try:
            yield conn
        finally:
            self.release(conn)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def init_schema(self) -> None:
        with self.connection() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self._closed = True
        while True:
            try:
                self._pool.get_nowait().close()
            except queue.Empty:
                break
