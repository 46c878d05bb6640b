"""
Secondary index maintenance for StashDB.

An index entry is a key in the index namespace of its record type:

    index prefix | encoded indexed value | full primary key  ->  b""

Looking up a value is a prefix scan over "index prefix | encoded value";
the primary key is the tail of each entry key.

Invariants:
    - Entries are written only through the caller's backend transaction
    - None values are not indexed
    - diff() followed by apply() is idempotent: re-running it inside the same
      transaction leaves the same entries
    - After a committed put/delete, every index of the type has exactly one
      entry per record with a non-None indexed value

How to change safely:
    - The entry layout is part of the on-disk format
    - Indexes added to a type that already has records are backfilled
      when the store opens (backfill()); rebuild() recreates all of them
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Tuple

from .keys import index_entry_key, range_for_prefix

if TYPE_CHECKING:
    from .backend.base import BackendTransaction
    from .schema.registry import RegisteredType

logger = logging.getLogger(__name__)

INDEX_MARKER = b""


@dataclass(frozen=True)
class IndexChanges:
    """Index entry keys to delete and to insert for one mutation.

    Attributes:
        deletes: Entry keys that no longer hold
        inserts: Entry keys that must exist
    """

    deletes: Tuple[bytes, ...] = ()
    inserts: Tuple[bytes, ...] = ()

    def __bool__(self) -> bool:
        return bool(self.deletes or self.inserts)

    def __len__(self) -> int:
        return len(self.deletes) + len(self.inserts)


class IndexMaintainer:
    """Computes and applies index entry changes.

    Stateless; one instance can be shared by every transaction.

    Example:
        >>> maintainer = IndexMaintainer()
        >>> changes = maintainer.diff(users, pk, old_user, new_user)
        >>> maintainer.apply(btxn, changes)
    """

    def entries(self, rtype: RegisteredType, record: Any, primary_key: bytes) -> Dict[str, bytes]:
        """Index entry key per index name for one record.

        Args:
            rtype: Registered record type
            record: Record, or None for an absent record
            primary_key: Primary key of the record

        Returns:
            Mapping of index name to entry key (indexes whose value is None
            are left out)

        Raises:
            InvalidKeyError: If an indexed value cannot be encoded
        """
        result: Dict[str, bytes] = {}
        if record is None:
            return result
        for idx in rtype.indexes:
            value = getattr(record, idx.field, None)
            if value is None:
                continue
            result[idx.name] = index_entry_key(
                rtype.index_prefixes[idx.name], idx.kind, value, idx.field, primary_key
            )
        return result

    def diff(
        self,
        rtype: RegisteredType,
        primary_key: bytes,
        old: Any,
        new: Any,
        new_entries: Optional[Dict[str, bytes]] = None,
    ) -> IndexChanges:
        """Changes that move the indexes of one record from `old` to `new`.

        Args:
            rtype: Registered record type
            primary_key: Primary key shared by old and new
            old: Previous record (None on insert)
            new: Next record (None on delete)
            new_entries: Precomputed entries(rtype, new, primary_key)

        Returns:
            IndexChanges with only the entries whose value changed
        """
        before = self.entries(rtype, old, primary_key)
        after = new_entries if new_entries is not None else self.entries(rtype, new, primary_key)

        deletes = sorted(key for name, key in before.items() if after.get(name) != key)
        inserts = sorted(key for name, key in after.items() if before.get(name) != key)
        return IndexChanges(deletes=tuple(deletes), inserts=tuple(inserts))

    def apply(self, btxn: BackendTransaction, changes: IndexChanges) -> None:
        """Apply index changes inside the caller's backend transaction."""
        for key in changes.deletes:
            btxn.delete(key)
        for key in changes.inserts:
            btxn.put(key, INDEX_MARKER)

    def clear(self, btxn: BackendTransaction, rtype: RegisteredType) -> int:
        """Delete every index entry of a record type.

        Returns:
            Number of entries deleted
        """
        count = 0
        for name, idx_prefix in rtype.index_prefixes.items():
            start, end = range_for_prefix(idx_prefix)
            stale: List[bytes] = [key for key, _ in btxn.scan(start, end)]
            for key in stale:
                btxn.delete(key)
            count += len(stale)
            logger.debug(
                f"Cleared {len(stale)} entries of index {name}",
                extra={"record_type": rtype.name, "index": name},
            )
        return count

    def backfill(
        self, btxn: BackendTransaction, rtype: RegisteredType, index_ids: Iterable[int]
    ) -> int:
        """Write the entries of newly added indexes for every stored record.

        Other indexes of the type are left as they are.

        Args:
            btxn: Write transaction
            rtype: Registered record type
            index_ids: Indexes to fill

        Returns:
            Number of entries written

        Raises:
            DecodeError: If a stored record cannot be decoded
        """
        ids = set(index_ids)
        wanted = {idx.name for idx in rtype.indexes if idx.index_id in ids}
        if not wanted:
            return 0

        start, end = range_for_prefix(rtype.prefix)
        pending: List[bytes] = []
        for primary_key, value in btxn.scan(start, end):
            record = rtype.codec.decode(value)
            entries = self.entries(rtype, record, primary_key)
            pending.extend(key for name, key in entries.items() if name in wanted)

        for key in pending:
            btxn.put(key, INDEX_MARKER)
        logger.info(
            f"Backfilled {len(wanted)} new indexes of {rtype.name}: {len(pending)} entries",
            extra={"record_type": rtype.name},
        )
        return len(pending)

    def rebuild(self, btxn: BackendTransaction, rtype: RegisteredType) -> int:
        """Drop and recreate every index entry of a record type.

        Records are read from the primary namespace and decoded with the
        type's codec.

        Returns:
            Number of entries written

        Raises:
            DecodeError: If a stored record cannot be decoded
        """
        if not rtype.indexes:
            return 0
        self.clear(btxn, rtype)

        start, end = range_for_prefix(rtype.prefix)
        pending: List[bytes] = []
        for primary_key, value in btxn.scan(start, end):
            record = rtype.codec.decode(value)
            pending.extend(self.entries(rtype, record, primary_key).values())

        for key in pending:
            btxn.put(key, INDEX_MARKER)
        logger.info(
            f"Rebuilt {len(rtype.indexes)} indexes of {rtype.name}: {len(pending)} entries",
            extra={"record_type": rtype.name},
        )
        return len(pending)
