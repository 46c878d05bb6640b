"""
Base protocol for storage backends.

This module defines the Backend and BackendTransaction protocols that every
storage adapter implements. A backend is an ordered, byte-keyed store with
transactions and range cursors; everything typed lives above it.

Invariants:
    - Keys compare as unsigned bytes (memcmp order)
    - scan() reflects exactly what the transaction can see: its own
      uncommitted writes plus its snapshot
    - Concurrent read-write transactions serialize or fail with
      ConflictError at commit; updates are never silently lost
    - Every engine exception surfaces as BackendError

How to change safely:
    - Protocol changes require updating all implementations
    - Run tests/unit/test_backends.py against every adapter
"""

from __future__ import annotations

from abc import abstractmethod
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterator,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

if TYPE_CHECKING:
    from ..config import StoreSettings


@runtime_checkable
class BackendTransaction(Protocol):
    """A read or read-write transaction on a backend.

    A transaction must be ended exactly once by commit() or abort(). Scans
    opened from it are only valid until then.
    """

    @property
    @abstractmethod
    def write(self) -> bool:
        """Whether this is a read-write transaction."""
        ...

    @abstractmethod
    def get(self, key: bytes) -> Optional[bytes]:
        """Get the value of a key, or None when absent.

        Raises:
            BackendError: On engine failure
        """
        ...

    @abstractmethod
    def put(self, key: bytes, value: bytes) -> None:
        """Insert or overwrite a key.

        Raises:
            BackendError: On engine failure (map full, read-only txn, ...)
        """
        ...

    @abstractmethod
    def delete(self, key: bytes) -> bool:
        """Delete a key.

        Returns:
            True if the key existed
        """
        ...

    @abstractmethod
    def scan(self, start: bytes, end: Optional[bytes] = None) -> Iterator[Tuple[bytes, bytes]]:
        """Iterate (key, value) pairs with start <= key < end, ascending.

        Lazy and finite. The underlying cursor is released when the iterator
        is exhausted, closed, or abandoned through an exception. An end of
        None means no upper bound.
        """
        ...

    @abstractmethod
    def commit(self) -> None:
        """Make the writes of this transaction durable and visible.

        Raises:
            ConflictError: If a concurrent writer won
            BackendError: On engine failure
        """
        ...

    @abstractmethod
    def abort(self) -> None:
        """Discard the writes of this transaction. Never raises."""
        ...


@runtime_checkable
class Backend(Protocol):
    """Protocol for storage engines.

    Example:
        >>> backend = MemoryBackend()
        >>> backend.open()
        >>> txn = backend.begin(write=True)
        >>> txn.put(b"k", b"v")
        >>> txn.commit()
    """

    name: str

    @abstractmethod
    def open(self) -> None:
        """Open the engine (create files as needed).

        Raises:
            BackendError: If the engine cannot be opened
        """
        ...

    @abstractmethod
    def close(self) -> None:
        """Release the engine. Idempotent."""
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        """Whether the backend is open."""
        ...

    @abstractmethod
    def begin(self, write: bool = False) -> BackendTransaction:
        """Begin a transaction.

        Args:
            write: True for a read-write transaction

        Raises:
            BackendError: If the backend is closed or the engine refuses
        """
        ...

    @abstractmethod
    def stats(self) -> Dict[str, Any]:
        """Engine statistics. Always includes 'entries' (total key count)."""
        ...


def create_backend(settings: "StoreSettings") -> Backend:
    """Factory function to create a backend from configuration.

    Args:
        settings: Store settings

    Returns:
        Appropriate Backend implementation (not yet opened)

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import BackendKind
    from .lmdb import LmdbBackend
    from .memory import MemoryBackend
    from .sqlite import SqliteBackend

    if settings.backend == BackendKind.LMDB:
        return LmdbBackend(
            settings.path,
            max_size=settings.max_size,
            max_readers=settings.max_readers,
            sync=settings.sync,
        )
    elif settings.backend == BackendKind.SQLITE:
        return SqliteBackend(
            str(Path(settings.path) / settings.sqlite_filename),
            busy_timeout_ms=settings.busy_timeout_ms,
            wal_mode=settings.wal_mode,
        )
    elif settings.backend == BackendKind.MEMORY:
        return MemoryBackend()
    else:
        raise ValueError(f"Unsupported backend: {settings.backend}")
