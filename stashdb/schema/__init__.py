"""
Schema module for StashDB.

This module provides the declaration side of the mapping layer:
- Type definitions (RecordType, KeyField, IndexDef)
- Schema registry binding types to prefixes and codecs

Invariants:
    - type_id and index_id are immutable once data is stored
    - Key field kinds never change for a stored type
    - All record types must be registered before the store opens

How to change safely:
    - Add new record types with new type_ids
    - Add new indexes with new index_ids; the store backfills them on open
    - Never reuse an index_id for a different field
"""

from .registry import RegisteredType, SchemaRegistry
from .types import (
    MAX_INDEX_ID,
    MAX_TYPE_ID,
    FieldKind,
    IndexDef,
    KeyField,
    RecordType,
    index,
    key_field,
)

__all__ = [
    # Types
    "RecordType",
    "KeyField",
    "IndexDef",
    "FieldKind",
    "key_field",
    "index",
    "MAX_TYPE_ID",
    "MAX_INDEX_ID",
    # Registry
    "SchemaRegistry",
    "RegisteredType",
]
