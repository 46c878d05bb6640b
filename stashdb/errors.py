"""
Error types for StashDB.

This module defines every exception raised by the mapping layer:
- StashError: Base exception
- SchemaError: Registration and type lookup failures
- InvalidKeyError: Malformed or incomplete identifying fields
- EncodeError / DecodeError: Codec failures
- BackendError / ConflictError: Storage engine failures
- IndexIntegrityError: Secondary index points at a missing record
- UseAfterEndError / TransactionPoisonedError / ReadOnlyTransactionError:
  Transaction misuse

Invariants:
    - All errors inherit from StashError
    - Errors include context for debugging in `details`
    - Absence (key not found) is never an error
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class StashError(Exception):
    """Base exception for all StashDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "STASH_ERROR"
        self.details = details or {}


class SchemaError(StashError):
    """Schema-related error.

    Raised when:
    - A record type cannot be registered
    - A record type is unknown to the registry
    - A record does not belong to the type it is written as
    """

    def __init__(
        self,
        message: str,
        type_name: Optional[str] = None,
        code: str = "SCHEMA_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"type_name": type_name})
        self.type_name = type_name


class DuplicateRegistrationError(SchemaError):
    """A type_id, name, record class, index name or prefix is already taken."""

    def __init__(self, message: str, type_name: Optional[str] = None) -> None:
        super().__init__(message, type_name=type_name, code="DUPLICATE_REGISTRATION")


class RegistryFrozenError(SchemaError):
    """The registry is frozen and cannot be modified."""

    def __init__(self, message: str, type_name: Optional[str] = None) -> None:
        super().__init__(message, type_name=type_name, code="REGISTRY_FROZEN")


class NotFoundError(SchemaError):
    """Record type is not registered.

    Attributes:
        identity: The class, name or type_id that was looked up
    """

    def __init__(self, identity: Any) -> None:
        label = getattr(identity, "__name__", identity)
        super().__init__(
            f"Record type {label!r} is not registered",
            type_name=str(label),
            code="TYPE_NOT_FOUND",
        )
        self.identity = identity


class CatalogMismatchError(SchemaError):
    """Registered type layout is incompatible with the layout stored on disk.

    Attributes:
        stored: Layout found in the database
        registered: Layout of the registered type
    """

    def __init__(
        self,
        message: str,
        type_name: Optional[str] = None,
        stored: Optional[Dict[str, Any]] = None,
        registered: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, type_name=type_name, code="CATALOG_MISMATCH")
        self.details.update({"stored": stored, "registered": registered})
        self.stored = stored
        self.registered = registered


class InvalidKeyError(StashError, ValueError):
    """Identifying fields are incomplete, of the wrong arity or wrong type.

    Attributes:
        reason: Why the key could not be derived
        field_name: Offending field, when known
    """

    def __init__(self, reason: str, field_name: Optional[str] = None) -> None:
        super().__init__(
            reason,
            code="INVALID_KEY",
            details={"field": field_name},
        )
        self.reason = reason
        self.field_name = field_name


class EncodeError(StashError):
    """A record could not be serialized by its codec."""

    def __init__(self, reason: str, codec: Optional[str] = None) -> None:
        super().__init__(reason, code="ENCODE_ERROR", details={"codec": codec})
        self.reason = reason
        self.codec = codec


class DecodeError(StashError):
    """Stored bytes are truncated, malformed or fail validation.

    The transaction that observed the error is poisoned.
    """

    def __init__(self, reason: str, codec: Optional[str] = None) -> None:
        super().__init__(reason, code="DECODE_ERROR", details={"codec": codec})
        self.reason = reason
        self.codec = codec


class BackendError(StashError):
    """Storage engine failure.

    Attributes:
        backend: Name of the backend adapter that failed
    """

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        code: str = "BACKEND_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"backend": backend})
        self.backend = backend


class ConflictError(BackendError):
    """Concurrent read-write transactions conflicted.

    Expected under contention. Retrying is left to the caller.
    """

    def __init__(self, message: str, backend: Optional[str] = None) -> None:
        super().__init__(message, backend=backend, code="CONFLICT")


class IndexIntegrityError(StashError):
    """A secondary index entry references a primary record that does not exist.

    Never expected in correct operation. Rebuild the indexes of the type to
    recover.
    """

    def __init__(self, index_name: str, primary_key: bytes) -> None:
        super().__init__(
            f"Index '{index_name}' references missing record {primary_key.hex()}",
            code="INDEX_INTEGRITY",
            details={"index": index_name, "primary_key": primary_key.hex()},
        )
        self.index_name = index_name
        self.primary_key = primary_key


class UseAfterEndError(StashError):
    """A transaction (or one of its cursors) was used after commit or abort."""

    def __init__(self, state: str) -> None:
        super().__init__(
            f"Transaction is already {state.lower()}",
            code="USE_AFTER_END",
            details={"state": state},
        )
        self.state = state


class TransactionPoisonedError(StashError):
    """A previous failure poisoned the transaction; it can only abort."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            message,
            code="TRANSACTION_POISONED",
            details={"cause": repr(cause) if cause is not None else None},
        )
        self.cause = cause


class ReadOnlyTransactionError(StashError):
    """A mutating operation was called on a read-only transaction."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} in a read-only transaction",
            code="READ_ONLY_TRANSACTION",
            details={"operation": operation},
        )
        self.operation = operation
