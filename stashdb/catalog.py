"""
Persistent type catalog for StashDB.

The catalog records the layout of every registered record type (name, key
kinds, indexes, codec) in the reserved meta namespace. When a store opens,
the registered layouts are compared with the stored ones so that a type
whose on-disk format changed is caught before any record is misread.

Evolution rules:
- type_id, key field kinds and key order are immutable
- An index_id is bound to one field and kind forever
- The codec of a type cannot change
- Renaming types, key fields or indexes is allowed
- Indexes can be added (existing records are backfilled) and removed
  (their entries are purged)

Invariants:
    - Breaking changes are NEVER written to the catalog
    - The catalog is updated in one write transaction
    - Types stored but not registered are left untouched

Catalog keys:
    META_PREFIX | b"format"                    -> format version (ASCII)
    META_PREFIX | b"types/" | type_id (u16 BE) -> layout JSON
"""

from __future__ import annotations

import json
import logging
import struct
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .errors import CatalogMismatchError, DecodeError
from .indexes import IndexMaintainer
from .keys import META_PREFIX, index_prefix, range_for_prefix

if TYPE_CHECKING:
    from .backend.base import Backend, BackendTransaction
    from .schema.registry import SchemaRegistry

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1

_FORMAT_KEY = META_PREFIX + b"format"
_TYPES_PREFIX = META_PREFIX + b"types/"


class ChangeKind(Enum):
    """Types of layout changes between the catalog and the registry."""

    # Non-breaking changes (allowed)
    TYPE_ADDED = auto()
    NAME_CHANGED = auto()
    KEY_FIELD_RENAMED = auto()
    INDEX_ADDED = auto()
    INDEX_REMOVED = auto()
    INDEX_RENAMED = auto()

    # Breaking changes (forbidden)
    KEY_CHANGED = auto()
    INDEX_ID_REUSED = auto()
    CODEC_CHANGED = auto()

    @property
    def is_breaking(self) -> bool:
        """Whether this change kind is a breaking change."""
        return self in {
            ChangeKind.KEY_CHANGED,
            ChangeKind.INDEX_ID_REUSED,
            ChangeKind.CODEC_CHANGED,
        }


@dataclass
class SchemaChange:
    """A single difference between a stored and a registered layout.

    Attributes:
        kind: The type of change
        type_id: Record type the change belongs to
        path: Path to the changed element (e.g., "User.index:2")
        old_value: Stored value (if applicable)
        new_value: Registered value (if applicable)
        index_id: Index the change belongs to (index changes only)
    """

    kind: ChangeKind
    type_id: int
    path: str
    old_value: Optional[Any] = None
    new_value: Optional[Any] = None
    index_id: Optional[int] = None

    @property
    def is_breaking(self) -> bool:
        return self.kind.is_breaking

    def __str__(self) -> str:
        status = "BREAKING" if self.is_breaking else "OK"
        return f"[{status}] {self.kind.name}: {self.path} ({self.old_value!r} -> {self.new_value!r})"


def type_key(type_id: int) -> bytes:
    """Catalog key of one record type layout."""
    return _TYPES_PREFIX + struct.pack(">H", type_id)


def compare_layouts(stored: Dict[str, Any], registered: Dict[str, Any]) -> List[SchemaChange]:
    """Compare a stored layout with a registered one.

    Args:
        stored: Layout read from the catalog
        registered: Layout of the registered type

    Returns:
        List of changes (empty when the layouts are equivalent)
    """
    type_id = registered["type_id"]
    name = registered["name"]
    changes: List[SchemaChange] = []

    def change(
        kind: ChangeKind, path: str, old: Any = None, new: Any = None, index_id: Optional[int] = None
    ) -> None:
        changes.append(SchemaChange(kind, type_id, f"{name}{path}", old, new, index_id))

    if stored.get("name") != name:
        change(ChangeKind.NAME_CHANGED, "", stored.get("name"), name)

    stored_kinds = [k["kind"] for k in stored.get("key", [])]
    registered_kinds = [k["kind"] for k in registered["key"]]
    if stored_kinds != registered_kinds:
        change(ChangeKind.KEY_CHANGED, ".key", stored_kinds, registered_kinds)
    else:
        for old, new in zip(stored.get("key", []), registered["key"]):
            if old["name"] != new["name"]:
                change(ChangeKind.KEY_FIELD_RENAMED, ".key", old["name"], new["name"])

    if stored.get("codec") != registered.get("codec"):
        change(ChangeKind.CODEC_CHANGED, ".codec", stored.get("codec"), registered.get("codec"))

    stored_indexes = {i["index_id"]: i for i in stored.get("indexes", [])}
    registered_indexes = {i["index_id"]: i for i in registered.get("indexes", [])}
    for index_id in sorted(set(stored_indexes) | set(registered_indexes)):
        old = stored_indexes.get(index_id)
        new = registered_indexes.get(index_id)
        path = f".index:{index_id}"
        if old is None:
            change(ChangeKind.INDEX_ADDED, path, None, new["name"], index_id)
        elif new is None:
            change(ChangeKind.INDEX_REMOVED, path, old["name"], None, index_id)
        elif (old["field"], old["kind"]) != (new["field"], new["kind"]):
            change(
                ChangeKind.INDEX_ID_REUSED,
                path,
                f"{old['field']}:{old['kind']}",
                f"{new['field']}:{new['kind']}",
                index_id,
            )
        elif old["name"] != new["name"]:
            change(ChangeKind.INDEX_RENAMED, path, old["name"], new["name"], index_id)

    return changes


def read_layouts(btxn: BackendTransaction) -> Dict[int, Dict[str, Any]]:
    """All layouts stored in the catalog, by type_id."""
    start, end = range_for_prefix(_TYPES_PREFIX)
    layouts: Dict[int, Dict[str, Any]] = {}
    for key, value in btxn.scan(start, end):
        try:
            layout = json.loads(value.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"Corrupt catalog entry {key.hex()}: {e}", codec="json") from e
        layouts[struct.unpack(">H", key[len(_TYPES_PREFIX):])[0]] = layout
    return layouts


def _purge_index(btxn: BackendTransaction, type_id: int, index_id: int) -> int:
    start, end = range_for_prefix(index_prefix(type_id, index_id))
    stale = [key for key, _ in btxn.scan(start, end)]
    for key in stale:
        btxn.delete(key)
    return len(stale)


def sync_catalog(registry: SchemaRegistry, backend: Backend) -> List[SchemaChange]:
    """Check the registry against the catalog and record its layouts.

    Args:
        registry: Registry whose types are about to be used
        backend: Open backend

    Returns:
        All detected changes (none of them breaking)

    Raises:
        CatalogMismatchError: If any registered type changed incompatibly;
            nothing is written in that case
    """
    btxn = backend.begin(write=True)
    try:
        stored_format = btxn.get(_FORMAT_KEY)
        if stored_format is not None and int(stored_format) != FORMAT_VERSION:
            raise CatalogMismatchError(
                f"Database format {int(stored_format)} is not supported "
                f"(expected {FORMAT_VERSION})",
            )

        stored = read_layouts(btxn)
        registered = registry.to_dict()["record_types"]
        all_changes: List[SchemaChange] = []

        for layout in registered:
            type_id = layout["type_id"]
            previous = stored.get(type_id)
            if previous is None:
                all_changes.append(SchemaChange(ChangeKind.TYPE_ADDED, type_id, layout["name"]))
                continue
            changes = compare_layouts(previous, layout)
            breaking = [c for c in changes if c.is_breaking]
            if breaking:
                raise CatalogMismatchError(
                    f"Record type '{layout['name']}' (type_id={type_id}) is incompatible "
                    f"with the stored layout: " + "; ".join(str(c) for c in breaking),
                    type_name=layout["name"],
                    stored=previous,
                    registered=layout,
                )
            all_changes.extend(changes)

        added: Dict[int, List[int]] = {}
        for c in all_changes:
            if c.kind == ChangeKind.INDEX_REMOVED:
                purged = _purge_index(btxn, c.type_id, c.index_id)
                logger.warning(f"Index removed: {c}; purged {purged} stale entries")
            elif c.kind == ChangeKind.INDEX_ADDED:
                added.setdefault(c.type_id, []).append(c.index_id)
                logger.warning(f"Index added: {c}")
            elif c.kind != ChangeKind.TYPE_ADDED:
                logger.warning(f"Schema change: {c}")

        maintainer = IndexMaintainer()
        for type_id, index_ids in added.items():
            maintainer.backfill(btxn, registry.lookup(type_id), index_ids)

        btxn.put(_FORMAT_KEY, str(FORMAT_VERSION).encode("ascii"))
        for layout in registered:
            encoded = json.dumps(layout, sort_keys=True, separators=(",", ":")).encode("utf-8")
            btxn.put(type_key(layout["type_id"]), encoded)
    except BaseException:
        btxn.abort()
        raise
    btxn.commit()

    unregistered = sorted(set(stored) - {layout["type_id"] for layout in registered})
    if unregistered:
        logger.info(f"Catalog holds unregistered type_ids {unregistered}; left untouched")
    logger.debug(
        f"Catalog synced: {len(registered)} types, {len(all_changes)} changes",
        extra={"fingerprint": registry.fingerprint},
    )
    return all_changes
