"""
Core type definitions for the StashDB schema system.

This module defines how application code declares record types:
- FieldKind: Encodable kinds for key and index fields
- KeyField: One identifying field of a record type
- IndexDef: A secondary index declaration
- RecordType: Definition of a record type (namespace)

Invariants:
    - type_id must be in 1..65535 and is canonical (it becomes the prefix)
    - index_id must be in 1..255 and unique within its record type
    - Names are labels; IDs decide the on-disk layout
    - Key and index fields must exist on the record class

How to change safely:
    - Add new record types with new type_ids
    - Add new indexes with new index_ids; they are backfilled on open
    - Never change the kind or order of key fields of a stored type
    - Never reuse an index_id for a different field

Example:
    >>> from dataclasses import dataclass
    >>> @dataclass
    ... class User:
    ...     id: int
    ...     email: str
    >>> Users = RecordType(
    ...     type_id=1,
    ...     name="User",
    ...     record_cls=User,
    ...     key=(key_field("id", "u64"),),
    ...     indexes=(index(1, "user_by_email", "email", "str"),),
    ... )
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..codec import Codec

MAX_TYPE_ID = 65535
MAX_INDEX_ID = 255


class FieldKind(Enum):
    """Field kinds that have an order-preserving key encoding."""

    UINT64 = "u64"
    INT64 = "i64"
    FLOAT = "float"
    STRING = "str"
    BYTES = "bytes"
    BOOLEAN = "bool"
    UUID = "uuid"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Args:
            value: String name of the field kind

        Returns:
            Corresponding FieldKind enum value

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")


def record_field_names(record_cls: type) -> tuple[str, ...]:
    """Names of the fields declared by a dataclass or pydantic model."""
    if dataclasses.is_dataclass(record_cls):
        return tuple(f.name for f in dataclasses.fields(record_cls))
    model_fields = getattr(record_cls, "model_fields", None)
    if isinstance(model_fields, dict):
        return tuple(model_fields)
    raise ValueError(
        f"record_cls must be a dataclass or a pydantic model, got {record_cls!r}"
    )


@dataclass(frozen=True)
class KeyField:
    """One identifying field of a record type.

    Attributes:
        name: Attribute name on the record class
        kind: Encoding used in the primary key
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    description: str = ""

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Key field name cannot be empty")

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "kind": self.kind.value}


@dataclass(frozen=True)
class IndexDef:
    """Secondary index on one field of a record type.

    The index name is the index namespace name and must be unique across the
    whole registry.

    Attributes:
        index_id: Stable numeric identifier within the record type (1-255)
        name: Index namespace name
        field: Indexed attribute name on the record class
        kind: Encoding of the indexed value
        description: Human-readable description
    """

    index_id: int
    name: str
    field: str
    kind: FieldKind
    description: str = ""

    def __post_init__(self) -> None:
        if self.index_id <= 0 or self.index_id > MAX_INDEX_ID:
            raise ValueError(f"index_id must be 1-{MAX_INDEX_ID}, got {self.index_id}")
        if not self.name:
            raise ValueError("Index name cannot be empty")
        if not self.field:
            raise ValueError(f"Index '{self.name}' must name a field")

    def to_dict(self) -> dict[str, Any]:
        return {
            "index_id": self.index_id,
            "name": self.name,
            "field": self.field,
            "kind": self.kind.value,
        }


def key_field(name: str, kind: str | FieldKind, *, description: str = "") -> KeyField:
    """Convenience function to create a KeyField.

    Example:
        >>> key_field("id", "u64")
        KeyField(name='id', kind=<FieldKind.UINT64: 'u64'>, description='')
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return KeyField(name=name, kind=kind, description=description)


def index(
    index_id: int,
    name: str,
    field: str,
    kind: str | FieldKind,
    *,
    description: str = "",
) -> IndexDef:
    """Convenience function to create an IndexDef.

    Args:
        index_id: Stable numeric identifier within the record type
        name: Index namespace name (unique per registry)
        field: Indexed attribute name
        kind: Field kind (string or FieldKind enum)
        description: Human-readable description

    Returns:
        IndexDef instance

    Example:
        >>> by_email = index(1, "user_by_email", "email", "str")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return IndexDef(
        index_id=index_id,
        name=name,
        field=field,
        kind=kind,
        description=description,
    )


@dataclass(frozen=True)
class RecordType:
    """Definition of a record type.

    A record type maps one application class onto one key namespace of the
    store. Its identifying fields, in order, form the primary key.

    Attributes:
        type_id: Stable numeric identifier (1-65535, never changes)
        name: Namespace name (unique per registry)
        record_cls: Dataclass or pydantic model holding the record
        key: Ordered identifying fields
        indexes: Secondary index declarations
        codec: Codec for record values (registry default when None)
        description: Human-readable description

    Invariants:
        - key is non-empty and its field names are unique
        - index ids and names are unique within the type
        - every key and index field exists on record_cls
    """

    type_id: int
    name: str
    record_cls: type
    key: tuple[KeyField, ...]
    indexes: tuple[IndexDef, ...] = dataclass_field(default_factory=tuple)
    codec: Codec | None = None
    description: str = ""

    def __post_init__(self) -> None:
        """Validate record type definition."""
        if self.type_id <= 0 or self.type_id > MAX_TYPE_ID:
            raise ValueError(f"type_id must be 1-{MAX_TYPE_ID}, got {self.type_id}")
        if not self.name:
            raise ValueError("Record type name cannot be empty")
        if not self.key:
            raise ValueError(f"Record type '{self.name}' needs at least one key field")

        key_names = [k.name for k in self.key]
        if len(key_names) != len(set(key_names)):
            raise ValueError(f"Duplicate key field in record type '{self.name}'")

        index_ids = [i.index_id for i in self.indexes]
        if len(index_ids) != len(set(index_ids)):
            raise ValueError(f"Duplicate index_id in record type '{self.name}'")
        index_names = [i.name for i in self.indexes]
        if len(index_names) != len(set(index_names)):
            raise ValueError(f"Duplicate index name in record type '{self.name}'")

        available = record_field_names(self.record_cls)
        for name in key_names + [i.field for i in self.indexes]:
            if name not in available:
                raise ValueError(
                    f"Field '{name}' does not exist on {self.record_cls.__name__}. "
                    f"Available: {list(available)}"
                )

    @property
    def key_names(self) -> tuple[str, ...]:
        return tuple(k.name for k in self.key)

    def get_index(self, name_or_id: str | int) -> IndexDef | None:
        """Get an index by name or index_id.

        Args:
            name_or_id: Index name (str) or index_id (int)

        Returns:
            IndexDef if found, None otherwise
        """
        for idx in self.indexes:
            if isinstance(name_or_id, int):
                if idx.index_id == name_or_id:
                    return idx
            elif idx.name == name_or_id:
                return idx
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the layout dictionary used for fingerprints and the catalog."""
        result: dict[str, Any] = {
            "type_id": self.type_id,
            "name": self.name,
            "key": [k.to_dict() for k in self.key],
            "indexes": [i.to_dict() for i in sorted(self.indexes, key=lambda i: i.index_id)],
        }
        if self.description:
            result["description"] = self.description
        return result
