"""
Schema Registry for StashDB.

The SchemaRegistry is the central authority for all record types.
It provides:
- Registration of record types, assigning namespace prefixes and codecs
- Lookup by record class, name or type_id
- Schema fingerprinting for consistency checks
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before the store opens
    - Once frozen, no new types can be registered, and none are removed
    - type_id, name, record class, index name and every prefix are unique
    - Lookups after freeze are lock-free

How to change safely:
    - Register all types before opening a Store
    - Pass the registry explicitly; there is no process-global instance
    - Never change the type_id of a type that has stored data

Example:
    >>> registry = SchemaRegistry()
    >>> users = registry.register(Users)
    >>> registry.freeze()
    'sha256:...'
    >>> registry.lookup(User) is users
    True
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional, Union

from .. import keys
from ..codec import Codec, make_codec
from ..errors import DuplicateRegistrationError, NotFoundError, RegistryFrozenError
from .types import IndexDef, KeyField, RecordType

logger = logging.getLogger(__name__)

TypeIdentity = Union[type, str, int, "RegisteredType"]


@dataclass(frozen=True)
class RegisteredType:
    """A record type bound to its namespace prefix and resolved codec.

    Attributes:
        descriptor: The registered RecordType
        prefix: Record namespace prefix
        codec: Codec used for record values
        index_prefixes: Index namespace prefix per index name
    """

    descriptor: RecordType
    prefix: bytes
    codec: Codec
    index_prefixes: Mapping[str, bytes]

    @property
    def type_id(self) -> int:
        return self.descriptor.type_id

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def record_cls(self) -> type:
        return self.descriptor.record_cls

    @property
    def key(self) -> tuple[KeyField, ...]:
        return self.descriptor.key

    @property
    def indexes(self) -> tuple[IndexDef, ...]:
        return self.descriptor.indexes

    def get_index(self, name: str) -> IndexDef:
        """Get an index by its name, or by the field it indexes.

        Raises:
            NotFoundError: If no index matches, or the field is indexed twice
        """
        idx = self.descriptor.get_index(name)
        if idx is not None:
            return idx
        by_field = [i for i in self.descriptor.indexes if i.field == name]
        if len(by_field) != 1:
            raise NotFoundError(f"{self.name}.{name}")
        return by_field[0]

    def __repr__(self) -> str:
        return f"RegisteredType(name={self.name!r}, type_id={self.type_id})"


class SchemaRegistry:
    """Central registry for all record type definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible

    Attributes:
        default_codec: Codec name used when a RecordType declares none
        frozen: Whether the registry is frozen (immutable)
        fingerprint: SHA-256 hash of the schema (computed on freeze)
    """

    def __init__(self, default_codec: str = "msgpack") -> None:
        """Initialize an empty, mutable registry.

        Args:
            default_codec: Codec name for types without an explicit codec
        """
        self.default_codec = default_codec
        self._by_id: Dict[int, RegisteredType] = {}
        self._by_name: Dict[str, RegisteredType] = {}
        self._by_cls: Dict[type, RegisteredType] = {}
        self._index_names: Dict[str, str] = {}
        self._prefixes: Dict[bytes, str] = {}
        self._frozen = False
        self._fingerprint: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    @property
    def fingerprint(self) -> Optional[str]:
        """Schema fingerprint (available after freeze)."""
        return self._fingerprint

    def register(self, record_type: RecordType) -> RegisteredType:
        """Register a record type.

        Args:
            record_type: The record type to register

        Returns:
            RegisteredType bundling the descriptor, its prefixes and codec

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If the type_id, name, record class,
                an index name or a prefix is already registered
        """
        with self._lock:
            name = record_type.name
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register record type '{name}': registry is frozen",
                    type_name=name,
                )

            if record_type.type_id in self._by_id:
                existing = self._by_id[record_type.type_id]
                raise DuplicateRegistrationError(
                    f"type_id {record_type.type_id} already registered as '{existing.name}'",
                    type_name=name,
                )

            if name in self._index_names:
                raise DuplicateRegistrationError(
                    f"Record type name '{name}' is already an index of '{self._index_names[name]}'",
                    type_name=name,
                )

            if name in self._by_name:
                existing = self._by_name[name]
                raise DuplicateRegistrationError(
                    f"Record type name '{name}' already registered with type_id {existing.type_id}",
                    type_name=name,
                )

            if record_type.record_cls in self._by_cls:
                existing = self._by_cls[record_type.record_cls]
                raise DuplicateRegistrationError(
                    f"Class {record_type.record_cls.__name__} already registered as '{existing.name}'",
                    type_name=name,
                )

            for idx in record_type.indexes:
                if idx.name in self._index_names or idx.name in self._by_name:
                    owner = self._index_names.get(idx.name, idx.name)
                    raise DuplicateRegistrationError(
                        f"Index name '{idx.name}' already used by '{owner}'",
                        type_name=name,
                    )

            prefix = keys.record_prefix(record_type.type_id)
            index_prefixes = {
                idx.name: keys.index_prefix(record_type.type_id, idx.index_id)
                for idx in record_type.indexes
            }
            for candidate in (prefix, *index_prefixes.values()):
                if candidate in self._prefixes:
                    raise DuplicateRegistrationError(
                        f"Prefix {candidate.hex()} already assigned to '{self._prefixes[candidate]}'",
                        type_name=name,
                    )

            codec = record_type.codec or make_codec(self.default_codec, record_type.record_cls)
            registered = RegisteredType(
                descriptor=record_type,
                prefix=prefix,
                codec=codec,
                index_prefixes=index_prefixes,
            )

            self._by_id[record_type.type_id] = registered
            self._by_name[name] = registered
            self._by_cls[record_type.record_cls] = registered
            self._prefixes[prefix] = name
            for idx_name, idx_prefix in index_prefixes.items():
                self._index_names[idx_name] = name
                self._prefixes[idx_prefix] = f"{name}.{idx_name}"

            logger.debug(
                f"Registered record type: {name} (type_id={record_type.type_id}, "
                f"codec={codec.name}, indexes={len(index_prefixes)})"
            )
            return registered

    def get(self, identity: TypeIdentity) -> Optional[RegisteredType]:
        """Get a registered type by class, name, type_id or RegisteredType.

        Returns:
            RegisteredType if found, None otherwise
        """
        if isinstance(identity, RegisteredType):
            found = self._by_id.get(identity.type_id)
            return found if found is identity else None
        if isinstance(identity, bool):
            return None
        if isinstance(identity, int):
            return self._by_id.get(identity)
        if isinstance(identity, str):
            return self._by_name.get(identity)
        if isinstance(identity, type):
            return self._by_cls.get(identity)
        return None

    def lookup(self, identity: TypeIdentity) -> RegisteredType:
        """Get a registered type, failing loudly when it is unknown.

        Raises:
            NotFoundError: If no such type is registered
        """
        registered = self.get(identity)
        if registered is None:
            raise NotFoundError(identity)
        return registered

    def types(self) -> Iterator[RegisteredType]:
        """Iterate over all registered types in type_id order."""
        for type_id in sorted(self._by_id):
            yield self._by_id[type_id]

    def __iter__(self) -> Iterator[RegisteredType]:
        return self.types()

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, identity: Any) -> bool:
        return self.get(identity) is not None

    def freeze(self) -> str:
        """Freeze the registry and compute fingerprint.

        Returns:
            Schema fingerprint string

        Raises:
            RegistryFrozenError: If already frozen
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")

            self._fingerprint = self._compute_fingerprint()
            self._frozen = True
            logger.info(
                f"Schema registry frozen with {len(self._by_id)} record types, "
                f"fingerprint={self._fingerprint}"
            )
            return self._fingerprint

    def _compute_fingerprint(self) -> str:
        """SHA-256 of the canonical JSON layout, sorted by type_id."""
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        hash_bytes = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
        return f"sha256:{hash_bytes}"

    def to_dict(self) -> dict:
        """Convert registry to dictionary representation.

        Returns:
            Dictionary with a 'record_types' list sorted by type_id.
        """
        return {
            "record_types": [
                {**rt.descriptor.to_dict(), "codec": rt.codec.name}
                for rt in self.types()
            ],
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True)
