"""
SQLite backend implementation.

Stores every key in one table of BLOB keys, which SQLite orders with
memcmp(), so prefix and range scans behave exactly as on LMDB.

Table schema:
    kv:
        - key BLOB PRIMARY KEY
        - value BLOB NOT NULL
        - WITHOUT ROWID

Invariants:
    - One connection per transaction, explicit BEGIN/COMMIT/ROLLBACK
    - Write transactions take the write lock up front (BEGIN IMMEDIATE),
      so writers serialize; a writer that cannot get the lock within
      busy_timeout_ms fails with ConflictError
    - In WAL mode readers never block the writer

How to change safely:
    - Keep the kv table layout; it is the on-disk format
    - Test lock contention with a short busy_timeout_ms
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Iterator, Optional, Tuple

from ..errors import BackendError, ConflictError

logger = logging.getLogger(__name__)

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS kv (
        key BLOB PRIMARY KEY,
        value BLOB NOT NULL
    ) WITHOUT ROWID
"""


def _wrap(op: str, e: sqlite3.Error) -> BackendError:
    message = f"{op} failed: {e}"
    if isinstance(e, sqlite3.OperationalError) and ("locked" in str(e) or "busy" in str(e)):
        return ConflictError(message, backend=SqliteBackend.name)
    return BackendError(message, backend=SqliteBackend.name)


class SqliteTransaction:
    """A SQLite connection holding one explicit transaction."""

    def __init__(self, conn: sqlite3.Connection, write: bool) -> None:
        self._conn = conn
        self._write = write
        self._closed = False

    @property
    def write(self) -> bool:
        return self._write

    def _execute(self, op: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._closed:
            raise BackendError("Transaction already ended", backend=SqliteBackend.name)
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise _wrap(op, e) from e

    def get(self, key: bytes) -> Optional[bytes]:
        row = self._execute("get", "SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return None if row is None else bytes(row[0])

    def put(self, key: bytes, value: bytes) -> None:
        if not self._write:
            raise BackendError("Write in a read-only transaction", backend=SqliteBackend.name)
        self._execute(
            "put",
            "INSERT INTO kv (key, value) VALUES (?, ?) "
            "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
            (key, value),
        )

    def delete(self, key: bytes) -> bool:
        if not self._write:
            raise BackendError("Write in a read-only transaction", backend=SqliteBackend.name)
        cursor = self._execute("delete", "DELETE FROM kv WHERE key = ?", (key,))
        return cursor.rowcount > 0

    def scan(self, start: bytes, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        if end is None:
            cursor = self._execute(
                "scan", "SELECT key, value FROM kv WHERE key >= ? ORDER BY key", (start,)
            )
        else:
            cursor = self._execute(
                "scan",
                "SELECT key, value FROM kv WHERE key >= ? AND key < ? ORDER BY key",
                (start, end),
            )
        try:
            for key, value in cursor:
                yield bytes(key), bytes(value)
        except sqlite3.Error as e:
            raise _wrap("scan", e) from e
        finally:
            cursor.close()

    def commit(self) -> None:
        if self._closed:
            raise BackendError("Transaction already ended", backend=SqliteBackend.name)
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            self.abort()
            raise _wrap("commit", e) from e
        self._close()

    def abort(self) -> None:
        if self._closed:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning(f"SQLite rollback failed: {e}")
        finally:
            self._close()

    def _close(self) -> None:
        self._closed = True
        self._conn.close()


class SqliteBackend:
    """SQLite database file as a StashDB backend.

    Thread safety:
        Each transaction gets its own connection, so transactions may run on
        different threads. SQLite arbitrates the locks.

    Example:
        >>> backend = SqliteBackend("/var/lib/app/stash.db")
        >>> backend.open()
        >>> txn = backend.begin(write=True)
    """

    name = "sqlite"

    def __init__(
        self,
        path: str,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the backend.

        Args:
            path: Database file path
            busy_timeout_ms: How long a writer waits for the lock
            wal_mode: Enable SQLite WAL journal mode
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # explicit transactions only
            check_same_thread=False,
        )
        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def open(self) -> None:
        if self._open:
            return
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = self._connect()
            try:
                if self.wal_mode:
                    conn.execute("PRAGMA journal_mode = WAL")
                conn.execute(_SCHEMA)
            finally:
                conn.close()
        except (OSError, sqlite3.Error) as e:
            raise BackendError(f"Cannot open SQLite database at {self.path}: {e}", backend=self.name) from e
        self._open = True
        logger.info(f"Opened SQLite database at {self.path}", extra={"wal_mode": self.wal_mode})

    def close(self) -> None:
        if self._open:
            self._open = False
            logger.info(f"Closed SQLite database at {self.path}")

    def begin(self, write: bool = False) -> SqliteTransaction:
        if not self._open:
            raise BackendError("Backend is not open", backend=self.name)
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise _wrap("connect", e) from e
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        except sqlite3.Error as e:
            conn.close()
            raise _wrap("begin", e) from e
        return SqliteTransaction(conn, write)

    def stats(self) -> dict:
        """Database statistics (entries, pages)."""
        txn = self.begin()
        try:
            entries = txn._execute("stats", "SELECT COUNT(*) FROM kv").fetchone()[0]
            page_count = txn._execute("stats", "PRAGMA page_count").fetchone()[0]
            page_size = txn._execute("stats", "PRAGMA page_size").fetchone()[0]
        finally:
            txn.abort()
        return {"entries": entries, "page_count": page_count, "page_size": page_size}
