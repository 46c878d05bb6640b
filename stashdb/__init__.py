"""
StashDB - Typed object mapping over an embedded ordered key-value store.

StashDB lets application code declare record types once and get:
- Order-preserving key derivation from identifying fields
- Pluggable record codecs (msgpack, JSON)
- Transactional get/put/delete with secondary index maintenance
- Lazy typed cursors over key ranges and index values
- Pluggable storage engines (LMDB, SQLite, in-memory)

Example:
    >>> from dataclasses import dataclass
    >>> from stashdb import RecordType, SchemaRegistry, Store, StoreSettings, index, key_field
    >>>
    >>> @dataclass
    ... class User:
    ...     id: int
    ...     email: str
    >>>
    >>> registry = SchemaRegistry()
    >>> registry.register(RecordType(
    ...     type_id=1,
    ...     name="User",
    ...     record_cls=User,
    ...     key=(key_field("id", "u64"),),
    ...     indexes=(index(1, "user_by_email", "email", "str"),),
    ... ))
    >>>
    >>> with Store(registry, StoreSettings(path="./data")) as store:
    ...     with store.begin(write=True) as txn:
    ...         txn.put(User, User(id=1, email="a@x.com"))
    ...     with store.begin() as txn:
    ...         list(txn.scan_by_index(User, "email", "a@x.com"))
    [User(id=1, email='a@x.com')]

Invariants:
    - type_id, index_id and key field kinds are immutable once data is stored
    - Writes are atomic per transaction
    - Absence is None/False, never an error

Version: 0.1.0
"""

__version__ = "0.1.0"

from .schema import (
    FieldKind,
    IndexDef,
    KeyField,
    RecordType,
    RegisteredType,
    SchemaRegistry,
    index,
    key_field,
)
from .codec import Codec, JsonCodec, MsgpackCodec, make_codec
from .backend import (
    Backend,
    BackendTransaction,
    LmdbBackend,
    MemoryBackend,
    SqliteBackend,
    create_backend,
)
from .config import BackendKind, StoreSettings, setup_logging
from .errors import (
    BackendError,
    CatalogMismatchError,
    ConflictError,
    DecodeError,
    DuplicateRegistrationError,
    EncodeError,
    IndexIntegrityError,
    InvalidKeyError,
    NotFoundError,
    ReadOnlyTransactionError,
    RegistryFrozenError,
    SchemaError,
    StashError,
    TransactionPoisonedError,
    UseAfterEndError,
)
from .query import IndexCursor, RecordCursor
from .store import Store
from .transaction import Transaction, TransactionState

__all__ = [
    # Schema
    "RecordType",
    "KeyField",
    "IndexDef",
    "FieldKind",
    "key_field",
    "index",
    "SchemaRegistry",
    "RegisteredType",
    # Codecs
    "Codec",
    "MsgpackCodec",
    "JsonCodec",
    "make_codec",
    # Backends
    "Backend",
    "BackendTransaction",
    "LmdbBackend",
    "SqliteBackend",
    "MemoryBackend",
    "create_backend",
    # Config
    "StoreSettings",
    "BackendKind",
    "setup_logging",
    # Store and transactions
    "Store",
    "Transaction",
    "TransactionState",
    "RecordCursor",
    "IndexCursor",
    # Errors
    "StashError",
    "SchemaError",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    "NotFoundError",
    "CatalogMismatchError",
    "InvalidKeyError",
    "EncodeError",
    "DecodeError",
    "BackendError",
    "ConflictError",
    "IndexIntegrityError",
    "UseAfterEndError",
    "TransactionPoisonedError",
    "ReadOnlyTransactionError",
]
