"""
Transaction context for StashDB.

A Transaction wraps one backend transaction and offers typed operations
composed from the key convention, the record codec and the backend:

    get / exists / put / put_many / delete
    scan / scan_by_index / find / count
    truncate / drop / rebuild_indexes
    commit / abort

Invariants:
    - A typed mutation is applied completely or poisons the transaction;
      a poisoned transaction can only abort, and commit() aborts it
    - Keys, encoded values and new index entries are computed before the
      first write, so input errors (InvalidKeyError, SchemaError,
      EncodeError) leave the transaction untouched and usable
    - Backend, decode and index-integrity failures poison the transaction
    - After commit() or abort() every operation raises UseAfterEndError
    - Ending the transaction closes every cursor it opened

How to change safely:
    - Keep all writes of a typed operation inside one _guard() block
    - Compute everything that can fail on bad input before entering it
"""

from __future__ import annotations

import logging
import weakref
from contextlib import contextmanager
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, List, Optional

from .catalog import type_key
from .errors import (
    ReadOnlyTransactionError,
    SchemaError,
    TransactionPoisonedError,
    UseAfterEndError,
)
from .indexes import IndexMaintainer
from .keys import derive_key, index_value_prefix, key_of, range_for_prefix, scan_range
from .query import IndexCursor, RecordCursor

if TYPE_CHECKING:
    from .backend.base import BackendTransaction
    from .schema.registry import RegisteredType, SchemaRegistry, TypeIdentity

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Lifecycle state of a transaction."""

    ACTIVE = "ACTIVE"
    COMMITTED = "COMMITTED"
    ABORTED = "ABORTED"


class Transaction:
    """Typed unit of work over one backend transaction.

    Use as a context manager: the transaction commits when the block exits
    cleanly and aborts when it raises.

    Example:
        >>> with store.begin(write=True) as txn:
        ...     txn.put(User, User(id=1, email="a@x.com"))
        ...     txn.get(User, 1)
        User(id=1, email='a@x.com')

    Record types may be named by their record class, registered name,
    type_id or RegisteredType.
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        btxn: BackendTransaction,
        maintainer: Optional[IndexMaintainer] = None,
    ) -> None:
        self._registry = registry
        self._btxn = btxn
        self._maintainer = maintainer or IndexMaintainer()
        self._state = TransactionState.ACTIVE
        self._poisoned: Optional[BaseException] = None
        self._cursors: "weakref.WeakSet[RecordCursor]" = weakref.WeakSet()

    # ─── State ───────────────────────────────────────────────────────────

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def write(self) -> bool:
        """Whether this is a read-write transaction."""
        return self._btxn.write

    @property
    def is_active(self) -> bool:
        return self._state == TransactionState.ACTIVE

    @property
    def poisoned(self) -> bool:
        return self._poisoned is not None

    def _check_active(self) -> None:
        if self._state != TransactionState.ACTIVE:
            raise UseAfterEndError(self._state.value)
        if self._poisoned is not None:
            raise TransactionPoisonedError(
                f"Transaction is poisoned by an earlier failure ({self._poisoned!r}); abort it",
                cause=self._poisoned,
            )

    def _check_writable(self, operation: str) -> None:
        self._check_active()
        if not self._btxn.write:
            raise ReadOnlyTransactionError(operation)

    def _poison(self, cause: BaseException) -> None:
        if self._poisoned is None:
            self._poisoned = cause
            logger.warning(f"Transaction poisoned: {cause!r}")

    @contextmanager
    def _guard(self) -> Iterator[None]:
        """Poison the transaction if anything inside fails."""
        try:
            yield
        except Exception as e:
            self._poison(e)
            raise

    def _lookup(self, record_type: TypeIdentity) -> RegisteredType:
        return self._registry.lookup(record_type)

    def _check_record(self, rt: RegisteredType, record: Any) -> None:
        if not isinstance(record, rt.record_cls):
            raise SchemaError(
                f"Cannot write {type(record).__name__} as record type '{rt.name}' "
                f"(expects {rt.record_cls.__name__})",
                type_name=rt.name,
            )

    # ─── Reads ───────────────────────────────────────────────────────────

    def get(self, record_type: TypeIdentity, key: Any) -> Optional[Any]:
        """Get a record by its identifying fields.

        Args:
            record_type: Record class, name or type_id
            key: Scalar for single-field keys, tuple in key order, or a
                mapping by field name

        Returns:
            The record, or None if absent

        Raises:
            InvalidKeyError: If the identifying fields are invalid
            DecodeError: If the stored bytes cannot be decoded (poisons)
        """
        self._check_active()
        rt = self._lookup(record_type)
        pk = derive_key(rt, key)
        with self._guard():
            raw = self._btxn.get(pk)
            return None if raw is None else rt.codec.decode(raw)

    def exists(self, record_type: TypeIdentity, key: Any) -> bool:
        """Whether a record exists, without decoding it."""
        self._check_active()
        rt = self._lookup(record_type)
        pk = derive_key(rt, key)
        with self._guard():
            return self._btxn.get(pk) is not None

    def scan(
        self,
        record_type: TypeIdentity,
        start: Any = None,
        end: Any = None,
        *,
        prefix: Any = None,
        limit: Optional[int] = None,
    ) -> RecordCursor:
        """Open a lazy cursor over records in identifying-field order.

        Args:
            record_type: Record class, name or type_id
            start: Inclusive lower bound (possibly partial key tuple)
            end: Exclusive upper bound (possibly partial key tuple)
            prefix: Only records whose leading key fields equal these
            limit: Maximum number of records to yield

        Returns:
            RecordCursor valid until this transaction ends
        """
        self._check_active()
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        rt = self._lookup(record_type)
        lo, hi = scan_range(rt, start, end, prefix)
        cursor = RecordCursor(self, rt, lo, hi, limit)
        self._cursors.add(cursor)
        return cursor

    def scan_by_index(
        self,
        record_type: TypeIdentity,
        index_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
    ) -> IndexCursor:
        """Open a lazy cursor over the records whose indexed field equals value.

        Args:
            record_type: Record class, name or type_id
            index_name: Index name, or the name of the indexed field
            value: Indexed value to match (None is never indexed)
            limit: Maximum number of records to yield

        Returns:
            IndexCursor in primary-key order

        Raises:
            NotFoundError: If the type has no such index
            InvalidKeyError: If value cannot be encoded for the index
        """
        self._check_active()
        if limit is not None and limit < 0:
            raise ValueError(f"limit must be >= 0, got {limit}")
        rt = self._lookup(record_type)
        idx = rt.get_index(index_name)
        value_prefix = index_value_prefix(rt.index_prefixes[idx.name], idx.kind, value, idx.field)
        lo, hi = range_for_prefix(value_prefix)
        cursor = IndexCursor(self, rt, idx, lo, hi, limit)
        self._cursors.add(cursor)
        return cursor

    def find(
        self,
        record_type: TypeIdentity,
        predicate: Callable[[Any], bool],
        *,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Records of a type matching a predicate, in key order.

        Full scan of the namespace; use scan_by_index for selective lookups.
        """
        results: List[Any] = []
        with self.scan(record_type) as cursor:
            for record in cursor:
                if predicate(record):
                    results.append(record)
                    if limit is not None and len(results) >= limit:
                        break
        return results

    def count(
        self,
        record_type: TypeIdentity,
        start: Any = None,
        end: Any = None,
        *,
        prefix: Any = None,
    ) -> int:
        """Number of records in a range, without decoding them."""
        with self.scan(record_type, start, end, prefix=prefix) as cursor:
            return cursor.count()

    # ─── Writes ──────────────────────────────────────────────────────────

    def put(self, record_type: TypeIdentity, record: Any) -> None:
        """Insert or replace a record and maintain its indexes.

        Raises:
            ReadOnlyTransactionError: In a read-only transaction
            SchemaError: If the record is not an instance of the type's class
            InvalidKeyError: If a key or indexed field cannot be encoded
            EncodeError: If the codec cannot serialize the record
        """
        self._check_writable("put")
        rt = self._lookup(record_type)
        self._check_record(rt, record)
        pk = key_of(rt, record)
        value = rt.codec.encode(record)
        entries = self._maintainer.entries(rt, record, pk)

        with self._guard():
            self._write(rt, pk, record, value, entries)

    def put_many(self, record_type: TypeIdentity, records: Iterable[Any]) -> int:
        """Insert or replace several records of one type.

        Every record is validated and encoded before the first write, so a
        bad record leaves the transaction untouched.

        Returns:
            Number of records written
        """
        self._check_writable("put_many")
        rt = self._lookup(record_type)
        prepared = []
        for record in records:
            self._check_record(rt, record)
            pk = key_of(rt, record)
            prepared.append((pk, record, rt.codec.encode(record), self._maintainer.entries(rt, record, pk)))

        with self._guard():
            for pk, record, value, entries in prepared:
                self._write(rt, pk, record, value, entries)
        logger.debug(f"Wrote {len(prepared)} {rt.name} records", extra={"record_type": rt.name})
        return len(prepared)

    def _write(self, rt: RegisteredType, pk: bytes, record: Any, value: bytes, entries: dict) -> None:
        raw = self._btxn.get(pk)
        old = None if raw is None else rt.codec.decode(raw)
        changes = self._maintainer.diff(rt, pk, old, record, new_entries=entries)
        self._maintainer.apply(self._btxn, changes)
        self._btxn.put(pk, value)
        logger.debug(
            f"put {rt.name} {pk.hex()}",
            extra={"record_type": rt.name, "index_changes": len(changes), "replaced": old is not None},
        )

    def delete(self, record_type: TypeIdentity, key: Any) -> bool:
        """Delete a record and its index entries.

        Returns:
            True if the record existed
        """
        self._check_writable("delete")
        rt = self._lookup(record_type)
        pk = derive_key(rt, key)

        with self._guard():
            raw = self._btxn.get(pk)
            if raw is None:
                return False
            old = rt.codec.decode(raw)
            changes = self._maintainer.diff(rt, pk, old, None)
            self._maintainer.apply(self._btxn, changes)
            self._btxn.delete(pk)
        logger.debug(f"delete {rt.name} {pk.hex()}", extra={"record_type": rt.name})
        return True

    def truncate(self, record_type: TypeIdentity) -> int:
        """Delete every record of a type and all of its index entries.

        Returns:
            Number of records deleted
        """
        self._check_writable("truncate")
        rt = self._lookup(record_type)
        lo, hi = range_for_prefix(rt.prefix)

        with self._guard():
            self._maintainer.clear(self._btxn, rt)
            doomed = [key for key, _ in self._btxn.scan(lo, hi)]
            for key in doomed:
                self._btxn.delete(key)
        logger.info(f"Truncated {rt.name}: {len(doomed)} records", extra={"record_type": rt.name})
        return len(doomed)

    def drop(self, record_type: TypeIdentity) -> int:
        """Delete every record of a type, its index entries and its catalog layout.

        Once committed, the next open records the type as new, so its
        layout may then change in ways the catalog would otherwise refuse.

        Returns:
            Number of records deleted
        """
        self._check_writable("drop")
        rt = self._lookup(record_type)
        lo, hi = range_for_prefix(rt.prefix)

        with self._guard():
            self._maintainer.clear(self._btxn, rt)
            doomed = [key for key, _ in self._btxn.scan(lo, hi)]
            for key in doomed:
                self._btxn.delete(key)
            self._btxn.delete(type_key(rt.type_id))
        logger.info(f"Dropped {rt.name}: {len(doomed)} records", extra={"record_type": rt.name})
        return len(doomed)

    def rebuild_indexes(self, record_type: TypeIdentity) -> int:
        """Drop and rebuild every index entry of a type from its records.

        Returns:
            Number of index entries written
        """
        self._check_writable("rebuild_indexes")
        rt = self._lookup(record_type)
        with self._guard():
            return self._maintainer.rebuild(self._btxn, rt)

    # ─── Termination ─────────────────────────────────────────────────────

    def _close_cursors(self) -> None:
        for cursor in list(self._cursors):
            cursor.close()
        self._cursors = weakref.WeakSet()

    def commit(self) -> None:
        """Commit the transaction.

        Raises:
            UseAfterEndError: If already committed or aborted
            TransactionPoisonedError: If poisoned (the transaction is aborted)
            ConflictError: If a concurrent writer won
        """
        if self._state != TransactionState.ACTIVE:
            raise UseAfterEndError(self._state.value)
        self._close_cursors()

        if self._poisoned is not None:
            cause = self._poisoned
            self._btxn.abort()
            self._state = TransactionState.ABORTED
            raise TransactionPoisonedError(
                f"Transaction was poisoned ({cause!r}) and has been aborted",
                cause=cause,
            )

        try:
            self._btxn.commit()
        except Exception:
            self._state = TransactionState.ABORTED
            raise
        self._state = TransactionState.COMMITTED

    def abort(self) -> None:
        """Discard every write of the transaction.

        Raises:
            UseAfterEndError: If already committed or aborted
        """
        if self._state != TransactionState.ACTIVE:
            raise UseAfterEndError(self._state.value)
        self._close_cursors()
        self._btxn.abort()
        self._state = TransactionState.ABORTED

    def __enter__(self) -> Transaction:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> bool:
        if self._state == TransactionState.ACTIVE:
            if exc_type is None:
                self.commit()
            else:
                self.abort()
        return False

    def __repr__(self) -> str:
        mode = "write" if self.write else "read"
        return f"Transaction({mode}, {self._state.value}, poisoned={self.poisoned})"
