"""
LMDB backend implementation.

Reference engine for StashDB: a memory-mapped B+tree with MVCC readers and a
single writer. All namespaces live in the main (unnamed) database and are
separated by key prefix.

Invariants:
    - Readers see the snapshot taken at begin(), never blocking the writer
    - Read-write transactions serialize on the environment's writer lock,
      so commits never conflict
    - Keys are limited to the environment's max key size (511 bytes by
      default); longer keys fail with BackendError

How to change safely:
    - map_size can grow between runs; shrinking it below the data size fails
    - Never begin two write transactions from the same thread; the second
      waits for a lock the first one holds
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator, Optional, Tuple

import lmdb

from ..errors import BackendError

logger = logging.getLogger(__name__)


class LmdbTransaction:
    """A py-lmdb transaction wrapped in the BackendTransaction protocol."""

    def __init__(self, txn: lmdb.Transaction, write: bool) -> None:
        self._txn = txn
        self._write = write

    @property
    def write(self) -> bool:
        return self._write

    def get(self, key: bytes) -> Optional[bytes]:
        try:
            return self._txn.get(key)
        except lmdb.Error as e:
            raise BackendError(f"get failed: {e}", backend=LmdbBackend.name) from e

    def put(self, key: bytes, value: bytes) -> None:
        try:
            self._txn.put(key, value)
        except lmdb.Error as e:
            raise BackendError(f"put failed: {e}", backend=LmdbBackend.name) from e

    def delete(self, key: bytes) -> bool:
        try:
            return self._txn.delete(key)
        except lmdb.Error as e:
            raise BackendError(f"delete failed: {e}", backend=LmdbBackend.name) from e

    def scan(self, start: bytes, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        try:
            cursor = self._txn.cursor()
        except lmdb.Error as e:
            raise BackendError(f"cursor open failed: {e}", backend=LmdbBackend.name) from e
        try:
            found = cursor.set_range(start)
            while found:
                key = cursor.key()
                if end is not None and key >= end:
                    return
                yield key, cursor.value()
                found = cursor.next()
        except lmdb.Error as e:
            raise BackendError(f"scan failed: {e}", backend=LmdbBackend.name) from e
        finally:
            cursor.close()

    def commit(self) -> None:
        try:
            self._txn.commit()
        except lmdb.Error as e:
            raise BackendError(f"commit failed: {e}", backend=LmdbBackend.name) from e

    def abort(self) -> None:
        try:
            self._txn.abort()
        except lmdb.Error as e:
            logger.warning(f"LMDB abort failed: {e}")


class LmdbBackend:
    """LMDB environment as a StashDB backend.

    Attributes:
        path: Environment directory
        max_size: Memory map size in bytes (upper bound on the data size)
        max_readers: Maximum number of concurrent read transactions
        sync: Flush to disk on every commit

    Example:
        >>> backend = LmdbBackend("/var/lib/app/stash", max_size=1 << 30)
        >>> backend.open()
        >>> txn = backend.begin(write=True)
    """

    name = "lmdb"

    def __init__(
        self,
        path: str,
        max_size: int = 256 * 1024 * 1024,
        max_readers: int = 126,
        sync: bool = True,
    ) -> None:
        self.path = Path(path)
        self.max_size = max_size
        self.max_readers = max_readers
        self.sync = sync
        self._env: Optional[lmdb.Environment] = None

    @property
    def is_open(self) -> bool:
        return self._env is not None

    def open(self) -> None:
        if self._env is not None:
            return
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            self._env = lmdb.open(
                str(self.path),
                map_size=self.max_size,
                max_readers=self.max_readers,
                sync=self.sync,
                metasync=self.sync,
                subdir=True,
            )
        except (OSError, lmdb.Error) as e:
            raise BackendError(f"Cannot open LMDB environment at {self.path}: {e}", backend=self.name) from e
        logger.info(
            f"Opened LMDB environment at {self.path}",
            extra={"map_size": self.max_size, "max_readers": self.max_readers},
        )

    def close(self) -> None:
        if self._env is None:
            return
        self._env.close()
        self._env = None
        logger.info(f"Closed LMDB environment at {self.path}")

    def begin(self, write: bool = False) -> LmdbTransaction:
        if self._env is None:
            raise BackendError("Backend is not open", backend=self.name)
        try:
            return LmdbTransaction(self._env.begin(write=write), write)
        except lmdb.Error as e:
            raise BackendError(f"Cannot begin transaction: {e}", backend=self.name) from e

    def stats(self) -> dict:
        """Environment statistics (entries, pages, map usage)."""
        if self._env is None:
            raise BackendError("Backend is not open", backend=self.name)
        info = self._env.info()
        stat = self._env.stat()
        return {
            "entries": stat["entries"],
            "depth": stat["depth"],
            "map_size": info["map_size"],
            "last_pgno": info["last_pgno"],
            "page_size": stat["psize"],
        }
