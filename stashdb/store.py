"""
Store facade for StashDB.

A Store ties together a frozen SchemaRegistry and an open backend. It hands
out transactions and offers one-shot helpers that each run in their own
transaction.

Lifecycle:
    1. Register record types on a SchemaRegistry
    2. Store(registry, settings).open(): freezes the registry, opens the
       backend and syncs the type catalog
    3. begin() transactions, or use the one-shot helpers
    4. close()

Invariants:
    - The registry is frozen before the first transaction
    - A registered type incompatible with the stored catalog prevents open
    - Every one-shot helper commits or aborts its own transaction before
      returning (query() holds its read transaction until the iterator is
      exhausted or closed)

Example:
    >>> registry = SchemaRegistry()
    >>> registry.register(Users)
    >>> with Store(registry, StoreSettings(path="/tmp/stash")) as store:
    ...     store.save(User(id=1, email="a@x.com"))
    ...     store.get(User, 1)
    User(id=1, email='a@x.com')
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Iterator, List, Optional

from .backend.base import create_backend
from .catalog import SchemaChange, sync_catalog
from .config import StoreSettings
from .errors import BackendError
from .indexes import IndexMaintainer
from .transaction import Transaction

if TYPE_CHECKING:
    from .backend.base import Backend
    from .schema.registry import SchemaRegistry, TypeIdentity

logger = logging.getLogger(__name__)


class Store:
    """Typed object store over one backend.

    Attributes:
        registry: Schema registry (frozen on open)
        settings: Store settings
        backend: Storage backend
        changes: Catalog changes detected by the last open()
    """

    def __init__(
        self,
        registry: SchemaRegistry,
        settings: Optional[StoreSettings] = None,
        backend: Optional[Backend] = None,
    ) -> None:
        """Initialize the store without opening it.

        Args:
            registry: Registry holding every record type the store serves
            settings: Store settings (defaults read from the environment)
            backend: Explicit backend, overriding settings.backend
        """
        self.registry = registry
        self.settings = settings or StoreSettings()
        self.backend = backend if backend is not None else create_backend(self.settings)
        self.changes: List[SchemaChange] = []
        self._maintainer = IndexMaintainer()

    @property
    def is_open(self) -> bool:
        return self.backend.is_open

    def open(self) -> Store:
        """Freeze the registry, open the backend and sync the catalog.

        Raises:
            BackendError: If the backend cannot be opened
            CatalogMismatchError: If a registered type is incompatible with
                the stored layout
        """
        if self.backend.is_open:
            return self
        if not self.registry.frozen:
            self.registry.freeze()

        self.backend.open()
        try:
            self.changes = sync_catalog(self.registry, self.backend)
        except BaseException:
            self.backend.close()
            raise

        logger.info(
            f"Store opened: backend={self.backend.name}, types={len(self.registry)}, "
            f"fingerprint={self.registry.fingerprint}"
        )
        return self

    def close(self) -> None:
        """Close the backend. Idempotent."""
        if self.backend.is_open:
            self.backend.close()
            logger.info(f"Store closed: backend={self.backend.name}")

    def __enter__(self) -> Store:
        return self.open()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def begin(self, write: bool = False) -> Transaction:
        """Begin a transaction.

        Args:
            write: True for a read-write transaction

        Raises:
            BackendError: If the store is not open
        """
        if not self.backend.is_open:
            raise BackendError("Store is not open", backend=self.backend.name)
        return Transaction(self.registry, self.backend.begin(write=write), self._maintainer)

    # ─── One-shot helpers ────────────────────────────────────────────────

    def save(self, record: Any, record_type: Optional[TypeIdentity] = None) -> None:
        """Insert or replace one record in its own transaction."""
        with self.begin(write=True) as txn:
            txn.put(record_type if record_type is not None else type(record), record)

    def save_batch(self, records: Iterable[Any], record_type: Optional[TypeIdentity] = None) -> int:
        """Insert or replace many records in one transaction.

        Records may be of different types when record_type is None.

        Returns:
            Number of records written
        """
        if record_type is not None:
            groups: Dict[Any, List[Any]] = {record_type: list(records)}
        else:
            groups = defaultdict(list)
            for record in records:
                groups[type(record)].append(record)

        written = 0
        with self.begin(write=True) as txn:
            for identity, batch in groups.items():
                written += txn.put_many(identity, batch)
        return written

    def get(self, record_type: TypeIdentity, key: Any) -> Optional[Any]:
        """Get one record, or None."""
        with self.begin() as txn:
            return txn.get(record_type, key)

    def delete(self, record_type: TypeIdentity, key: Any) -> bool:
        """Delete one record. Returns True if it existed."""
        with self.begin(write=True) as txn:
            return txn.delete(record_type, key)

    def query(
        self,
        record_type: TypeIdentity,
        start: Any = None,
        end: Any = None,
        *,
        prefix: Any = None,
        limit: Optional[int] = None,
    ) -> Iterator[Any]:
        """Lazily iterate records in key order inside a dedicated read transaction.

        The transaction stays open until the iterator is exhausted or closed.
        """
        txn = self.begin()
        try:
            with txn.scan(record_type, start, end, prefix=prefix, limit=limit) as cursor:
                yield from cursor
        finally:
            if txn.is_active:
                txn.abort()

    def query_index(
        self,
        record_type: TypeIdentity,
        index_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
    ) -> Iterator[Any]:
        """Lazily iterate records whose indexed field equals value."""
        txn = self.begin()
        try:
            with txn.scan_by_index(record_type, index_name, value, limit=limit) as cursor:
                yield from cursor
        finally:
            if txn.is_active:
                txn.abort()

    def find(
        self,
        record_type: TypeIdentity,
        predicate: Callable[[Any], bool],
        *,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Records matching a predicate (full scan)."""
        with self.begin() as txn:
            return txn.find(record_type, predicate, limit=limit)

    def count(self, record_type: TypeIdentity) -> int:
        """Number of records of a type."""
        with self.begin() as txn:
            return txn.count(record_type)

    def truncate(self, record_type: TypeIdentity) -> int:
        """Delete every record of a type. Returns the number deleted."""
        with self.begin(write=True) as txn:
            return txn.truncate(record_type)

    def drop(self, record_type: TypeIdentity) -> int:
        """Delete a type's records and stored layout. Returns the number deleted."""
        with self.begin(write=True) as txn:
            return txn.drop(record_type)

    def rebuild_indexes(self, record_type: TypeIdentity) -> int:
        """Rebuild every index of a type. Returns the number of entries written."""
        with self.begin(write=True) as txn:
            return txn.rebuild_indexes(record_type)

    def stats(self) -> Dict[str, Any]:
        """Backend statistics plus the record count of every registered type."""
        counts: Dict[str, int] = {}
        with self.begin() as txn:
            for rt in self.registry:
                counts[rt.name] = txn.count(rt)
        return {
            "backend": self.backend.name,
            "fingerprint": self.registry.fingerprint,
            "records": counts,
            **self.backend.stats(),
        }

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"Store({self.backend.name}, {state}, types={len(self.registry)})"
