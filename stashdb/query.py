"""
Query/cursor engine for StashDB.

Cursors turn a backend range scan into a lazy sequence of typed records.
They are opened by Transaction.scan() and Transaction.scan_by_index().

Invariants:
    - Iteration is ascending in key order, finite and not restartable
    - A cursor is valid only while its transaction is active; using it
      afterwards raises UseAfterEndError
    - The backend cursor is released on exhaustion, on close(), on leaving
      a `with` block, on an error during iteration, and when the
      transaction ends
    - A failure while iterating (backend, decode, index integrity) poisons
      the owning transaction

How to change safely:
    - Keep fetching lazy; never materialize a whole range
    - Any new cursor type must register with the transaction so that it is
      closed when the transaction ends
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Iterator, Optional, Tuple

from .errors import IndexIntegrityError
from .keys import PREFIX_LEN, decode_key, decode_value

if TYPE_CHECKING:
    from .schema.registry import RegisteredType
    from .schema.types import IndexDef
    from .transaction import Transaction

logger = logging.getLogger(__name__)


class RecordCursor:
    """Lazy, ascending cursor over the records of one type.

    Use it as an iterator, optionally inside a `with` block:

    Example:
        >>> with txn.scan(User, start=(10,), end=(20,)) as cursor:
        ...     for user in cursor:
        ...         print(user.email)

    Attributes:
        rtype: Registered type being scanned
        start: First key of the byte range (inclusive)
        end: End of the byte range (exclusive, None for unbounded)
        limit: Maximum number of records to yield, or None
    """

    def __init__(
        self,
        txn: Transaction,
        rtype: RegisteredType,
        start: bytes,
        end: Optional[bytes],
        limit: Optional[int] = None,
    ) -> None:
        self._txn = txn
        self.rtype = rtype
        self.start = start
        self.end = end
        self.limit = limit
        self._scan: Optional[Iterator[Tuple[bytes, bytes]]] = None
        self._yielded = 0
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _open_scan(self) -> Iterator[Tuple[bytes, bytes]]:
        return self._txn._btxn.scan(self.start, self.end)

    def _resolve(self, key: bytes, value: bytes) -> Tuple[bytes, bytes]:
        """Map a scanned pair to (primary key, encoded record)."""
        return key, value

    def _fetch(self) -> Optional[Tuple[bytes, bytes]]:
        """Next (primary key, encoded record), or None when exhausted."""
        self._txn._check_active()
        if self._closed:
            return None
        if self.limit is not None and self._yielded >= self.limit:
            self.close()
            return None
        try:
            if self._scan is None:
                self._scan = self._open_scan()
            pair = next(self._scan, None)
            if pair is None:
                self.close()
                return None
            resolved = self._resolve(*pair)
        except Exception as e:
            self._txn._poison(e)
            self.close()
            raise
        self._yielded += 1
        return resolved

    def _decode(self, value: bytes) -> Any:
        try:
            return self.rtype.codec.decode(value)
        except Exception as e:
            self._txn._poison(e)
            self.close()
            raise

    def __iter__(self) -> RecordCursor:
        return self

    def __next__(self) -> Any:
        pair = self._fetch()
        if pair is None:
            raise StopIteration
        return self._decode(pair[1])

    def items(self) -> Iterator[Tuple[tuple, Any]]:
        """Yield (identifying fields, record) pairs from the current position."""
        while True:
            pair = self._fetch()
            if pair is None:
                return
            yield decode_key(self.rtype, pair[0]), self._decode(pair[1])

    def keys(self) -> Iterator[tuple]:
        """Yield identifying-field tuples without decoding the records."""
        while True:
            pair = self._fetch()
            if pair is None:
                return
            yield decode_key(self.rtype, pair[0])

    def first(self) -> Any:
        """Return the next record (or None) and close the cursor."""
        try:
            return next(self, None)
        finally:
            self.close()

    def count(self) -> int:
        """Consume the remaining entries without decoding and count them."""
        n = 0
        while self._fetch() is not None:
            n += 1
        return n

    def close(self) -> None:
        """Release the backend cursor. Idempotent."""
        if self._closed:
            return
        self._closed = True
        scan, self._scan = self._scan, None
        if scan is not None:
            scan.close()

    def __enter__(self) -> RecordCursor:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"{type(self).__name__}({self.rtype.name}, {state}, yielded={self._yielded})"


class IndexCursor(RecordCursor):
    """Cursor over the records whose indexed field equals one value.

    Scans the index namespace for the encoded value, then reads each
    referenced primary record in the same transaction. An entry whose
    primary record is missing raises IndexIntegrityError.

    Attributes:
        index: The index being scanned
    """

    def __init__(
        self,
        txn: Transaction,
        rtype: RegisteredType,
        index: IndexDef,
        start: bytes,
        end: Optional[bytes],
        limit: Optional[int] = None,
    ) -> None:
        super().__init__(txn, rtype, start, end, limit)
        self.index = index

    def _resolve(self, key: bytes, value: bytes) -> Tuple[bytes, bytes]:
        _, offset = decode_value(key, PREFIX_LEN, self.index.kind)
        primary_key = key[offset:]
        record = self._txn._btxn.get(primary_key)
        if record is None:
            logger.error(
                f"Index {self.index.name} references missing record {primary_key.hex()}",
                extra={"record_type": self.rtype.name, "index": self.index.name},
            )
            raise IndexIntegrityError(self.index.name, primary_key)
        return primary_key, record
