"""
In-memory backend implementation for testing.

This module provides a simple in-memory storage engine for:
- Unit tests
- Local development without a database file

Invariants:
    - All data is lost when the process exits
    - Committed state is immutable; a commit swaps in a new one
    - Readers see the snapshot taken at begin() plus their own writes
    - Writers are optimistic: the first to commit wins, later writers that
      started from an older snapshot get ConflictError

How to change safely:
    - This is test-only code, changes don't affect production stores
    - Keep interface compatible with the Backend protocol
"""

from __future__ import annotations

import heapq
import logging
import threading
from bisect import bisect_left
from typing import Dict, Iterator, List, Optional, Tuple

from ..errors import BackendError, ConflictError

logger = logging.getLogger(__name__)


class MemoryTransaction:
    """Transaction over a snapshot of a MemoryBackend.

    Writes are buffered in an overlay (None marks a deletion) and published
    on commit.
    """

    def __init__(
        self,
        backend: MemoryBackend,
        write: bool,
        data: Dict[bytes, bytes],
        keys: List[bytes],
        version: int,
    ) -> None:
        self._backend = backend
        self._write = write
        self._data = data
        self._keys = keys
        self._version = version
        self._writes: Dict[bytes, Optional[bytes]] = {}
        self._done = False

    @property
    def write(self) -> bool:
        return self._write

    def _check(self, mutating: bool = False) -> None:
        if self._done:
            raise BackendError("Transaction already ended", backend=MemoryBackend.name)
        if mutating and not self._write:
            raise BackendError("Write in a read-only transaction", backend=MemoryBackend.name)

    def get(self, key: bytes) -> Optional[bytes]:
        self._check()
        if key in self._writes:
            return self._writes[key]
        return self._data.get(key)

    def put(self, key: bytes, value: bytes) -> None:
        self._check(mutating=True)
        self._writes[bytes(key)] = bytes(value)

    def delete(self, key: bytes) -> bool:
        self._check(mutating=True)
        if self.get(key) is None:
            return False
        self._writes[bytes(key)] = None
        return True

    def scan(self, start: bytes, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        self._check()
        keys = self._keys
        lo = bisect_left(keys, start)
        hi = len(keys) if end is None else bisect_left(keys, end)
        committed = (keys[i] for i in range(lo, hi))
        pending = sorted(
            k for k in self._writes if k >= start and (end is None or k < end)
        )

        last: Optional[bytes] = None
        for key in heapq.merge(committed, pending):
            self._check()
            if key == last:
                continue
            last = key
            if key in self._writes:
                value = self._writes[key]
                if value is None:
                    continue
            else:
                value = self._data[key]
            yield key, value

    def commit(self) -> None:
        self._check()
        self._done = True
        if not self._writes:
            return
        self._backend._publish(self._version, self._writes)

    def abort(self) -> None:
        self._done = True
        self._writes = {}


class MemoryBackend:
    """In-memory implementation of Backend for testing.

    Thread safety:
        Commits are serialized by an internal lock. Transactions themselves
        belong to one caller.

    Example:
        >>> backend = MemoryBackend()
        >>> backend.open()
        >>> txn = backend.begin(write=True)
    """

    name = "memory"

    def __init__(self) -> None:
        self._data: Dict[bytes, bytes] = {}
        self._keys: List[bytes] = []
        self._version = 0
        self._lock = threading.Lock()
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True
        logger.debug("Opened in-memory backend")

    def close(self) -> None:
        self._open = False

    def begin(self, write: bool = False) -> MemoryTransaction:
        if not self._open:
            raise BackendError("Backend is not open", backend=self.name)
        with self._lock:
            return MemoryTransaction(self, write, self._data, self._keys, self._version)

    def _publish(self, version: int, writes: Dict[bytes, Optional[bytes]]) -> None:
        with self._lock:
            if version != self._version:
                raise ConflictError(
                    f"Snapshot version {version} is stale (current {self._version})",
                    backend=self.name,
                )
            data = dict(self._data)
            for key, value in writes.items():
                if value is None:
                    data.pop(key, None)
                else:
                    data[key] = value
            self._data = data
            self._keys = sorted(data)
            self._version += 1
            logger.debug(
                f"Committed {len(writes)} writes",
                extra={"backend": self.name, "version": self._version},
            )

    def __len__(self) -> int:
        """Number of committed keys."""
        return len(self._data)

    def stats(self) -> dict:
        """Committed entry count and version."""
        return {"entries": len(self._data), "version": self._version}
