"""
Key convention for StashDB.

Order-preserving binary encoding of identifying fields, namespace prefixes
and byte ranges. Encoded keys compare with memcmp in the same order as the
Python values (and tuples of values) they were built from.

Prefix layout (4 bytes, fixed):
    meta     0x00 0x00 0x00 0x00
    record   0x01 | type_id (u16 BE) | 0x00
    index    0x02 | type_id (u16 BE) | index_id (u8)

Encoding rules:
    u64    -> big-endian uint64 (8 bytes)
    i64    -> big-endian int64 with the sign bit flipped (8 bytes)
    float  -> IEEE 754 sortable transform (8 bytes). NaN is rejected,
              -0.0 and +0.0 share one encoding.
    str    -> UTF-8 with 0x00 escaped as 0x00 0x01, terminated by 0x00 0x00
    bytes  -> same escaping and terminator as str
    bool   -> 0x00 / 0x01
    uuid   -> 16 raw bytes

Invariants:
    - This layout is the on-disk format; it never changes for a stored type
    - Encoding is injective and order-preserving per field and per tuple
    - Every key of a namespace starts with that namespace's prefix
"""

from __future__ import annotations

import math
import struct
import uuid
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Optional, Tuple

from .errors import InvalidKeyError
from .schema.types import FieldKind, KeyField

if TYPE_CHECKING:
    from .schema.registry import RegisteredType

PREFIX_LEN = 4

_TAG_RECORD = 0x01
_TAG_INDEX = 0x02

META_PREFIX = b"\x00\x00\x00\x00"

_U64_MAX = (1 << 64) - 1
_I64_MIN = -(1 << 63)
_I64_MAX = (1 << 63) - 1


# ─── Prefixes ────────────────────────────────────────────────────────────────

def record_prefix(type_id: int) -> bytes:
    """Namespace prefix of a record type."""
    return bytes([_TAG_RECORD]) + struct.pack(">H", type_id) + b"\x00"


def index_prefix(type_id: int, index_id: int) -> bytes:
    """Namespace prefix of one secondary index of a record type."""
    return bytes([_TAG_INDEX]) + struct.pack(">H", type_id) + bytes([index_id])


def prefix(rtype: RegisteredType) -> bytes:
    """Namespace prefix of a registered record type."""
    return rtype.prefix


def next_prefix(data: bytes) -> Optional[bytes]:
    """Smallest byte string greater than every string starting with `data`.

    Returns None when no such string exists (data is empty or all 0xFF).
    """
    for i in range(len(data) - 1, -1, -1):
        if data[i] != 0xFF:
            return data[:i] + bytes([data[i] + 1])
    return None


def range_for_prefix(data: bytes) -> Tuple[bytes, Optional[bytes]]:
    """Half-open range [start, end) covering every key under a prefix.

    An end of None means the range is unbounded above.
    """
    return data, next_prefix(data)


# ─── Values ──────────────────────────────────────────────────────────────────

def encode_value(value: Any, kind: FieldKind, field_name: Optional[str] = None) -> bytes:
    """Encode one value to its order-preserving key form.

    Raises:
        InvalidKeyError: If the value is None, NaN, out of range or of the
            wrong type for the kind
    """
    if value is None:
        raise InvalidKeyError(f"Field '{field_name}' is missing (None)", field_name)

    if kind == FieldKind.UINT64:
        _require_int(value, kind, field_name)
        if value < 0 or value > _U64_MAX:
            raise InvalidKeyError(f"Field '{field_name}' is out of u64 range: {value}", field_name)
        return struct.pack(">Q", value)

    if kind == FieldKind.INT64:
        _require_int(value, kind, field_name)
        if value < _I64_MIN or value > _I64_MAX:
            raise InvalidKeyError(f"Field '{field_name}' is out of i64 range: {value}", field_name)
        return struct.pack(">Q", value - _I64_MIN)

    if kind == FieldKind.FLOAT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _wrong_type(value, kind, field_name)
        fval = float(value)
        if math.isnan(fval):
            raise InvalidKeyError(f"Field '{field_name}' is NaN and cannot be a key", field_name)
        if fval == 0.0:
            fval = 0.0
        return _encode_float(fval)

    if kind == FieldKind.STRING:
        if not isinstance(value, str):
            raise _wrong_type(value, kind, field_name)
        try:
            encoded = value.encode("utf-8")
        except UnicodeEncodeError as e:
            raise InvalidKeyError(f"Field '{field_name}' is not valid UTF-8: {e}", field_name) from e
        return _escape(encoded)

    if kind == FieldKind.BYTES:
        if not isinstance(value, (bytes, bytearray, memoryview)):
            raise _wrong_type(value, kind, field_name)
        return _escape(bytes(value))

    if kind == FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            raise _wrong_type(value, kind, field_name)
        return b"\x01" if value else b"\x00"

    if kind == FieldKind.UUID:
        if isinstance(value, str):
            try:
                value = uuid.UUID(value)
            except ValueError as e:
                raise InvalidKeyError(f"Field '{field_name}' is not a UUID: {e}", field_name) from e
        if not isinstance(value, uuid.UUID):
            raise _wrong_type(value, kind, field_name)
        return value.bytes

    raise InvalidKeyError(f"Unsupported key kind: {kind}", field_name)


def decode_value(data: bytes, offset: int, kind: FieldKind) -> Tuple[Any, int]:
    """Decode one value at `offset`. Returns (value, new_offset)."""
    if kind == FieldKind.UINT64:
        return struct.unpack_from(">Q", data, offset)[0], offset + 8
    if kind == FieldKind.INT64:
        return struct.unpack_from(">Q", data, offset)[0] + _I64_MIN, offset + 8
    if kind == FieldKind.FLOAT:
        return _decode_float(data, offset), offset + 8
    if kind == FieldKind.STRING:
        raw, new_off = _unescape(data, offset)
        return raw.decode("utf-8"), new_off
    if kind == FieldKind.BYTES:
        return _unescape(data, offset)
    if kind == FieldKind.BOOLEAN:
        return data[offset] != 0, offset + 1
    if kind == FieldKind.UUID:
        return uuid.UUID(bytes=bytes(data[offset:offset + 16])), offset + 16
    raise ValueError(f"Unsupported key kind: {kind}")


def _require_int(value: Any, kind: FieldKind, field_name: Optional[str]) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _wrong_type(value, kind, field_name)


def _wrong_type(value: Any, kind: FieldKind, field_name: Optional[str]) -> InvalidKeyError:
    return InvalidKeyError(
        f"Field '{field_name}' expects {kind.value}, got {type(value).__name__}",
        field_name,
    )


def _encode_float(val: float) -> bytes:
    raw = bytearray(struct.pack(">d", val))
    if raw[0] & 0x80:
        for i in range(8):
            raw[i] ^= 0xFF
    else:
        raw[0] ^= 0x80
    return bytes(raw)


def _decode_float(data: bytes, offset: int) -> float:
    raw = bytearray(data[offset:offset + 8])
    if raw[0] & 0x80:
        raw[0] ^= 0x80
    else:
        for i in range(8):
            raw[i] ^= 0xFF
    return struct.unpack(">d", bytes(raw))[0]


def _escape(raw: bytes) -> bytes:
    return raw.replace(b"\x00", b"\x00\x01") + b"\x00\x00"


def _unescape(data: bytes, offset: int) -> Tuple[bytes, int]:
    result = bytearray()
    i = offset
    while i < len(data):
        b = data[i]
        if b != 0x00:
            result.append(b)
            i += 1
            continue
        if i + 1 >= len(data):
            break
        next_b = data[i + 1]
        if next_b == 0x00:
            return bytes(result), i + 2
        if next_b == 0x01:
            result.append(0x00)
            i += 2
            continue
        raise ValueError(f"Invalid escape sequence 0x00 0x{next_b:02X} at offset {i}")
    raise ValueError(f"Unterminated string key at offset {offset}")


# ─── Identifying fields ──────────────────────────────────────────────────────

def normalize_key(
    identifying: Any,
    fields: Sequence[KeyField],
    *,
    partial: bool = False,
) -> tuple:
    """Turn a scalar, tuple/list or mapping of identifying fields into a tuple.

    Args:
        identifying: Scalar (single-field keys), sequence in key order, or
            mapping keyed by field name
        fields: Key fields of the record type
        partial: Allow a non-empty leading subset of the fields (for bounds)

    Raises:
        InvalidKeyError: On wrong arity, unknown or missing fields
    """
    names = [f.name for f in fields]

    if isinstance(identifying, Mapping):
        unknown = set(identifying) - set(names)
        if unknown:
            raise InvalidKeyError(f"Unknown identifying field(s): {sorted(unknown)}")
        values = []
        for name in names:
            if name not in identifying:
                break
            values.append(identifying[name])
        if len(values) != len(identifying):
            missing = names[len(values)]
            raise InvalidKeyError(f"Identifying field '{missing}' is missing", missing)
        result = tuple(values)
    elif isinstance(identifying, (tuple, list)):
        result = tuple(identifying)
    else:
        result = (identifying,)

    if partial:
        if not 1 <= len(result) <= len(names):
            raise InvalidKeyError(
                f"Key bound needs 1-{len(names)} fields of {names}, got {len(result)}"
            )
    elif len(result) != len(names):
        missing = names[len(result)] if len(result) < len(names) else None
        raise InvalidKeyError(
            f"Key needs {len(names)} field(s) {names}, got {len(result)}",
            missing,
        )
    return result


def encode_fields(values: Sequence[Any], fields: Sequence[KeyField]) -> bytes:
    """Concatenate the encodings of values against their leading key fields."""
    return b"".join(
        encode_value(value, f.kind, f.name) for value, f in zip(values, fields)
    )


def derive_key(rtype: RegisteredType, identifying: Any) -> bytes:
    """Primary key bytes for a registered type and its identifying fields.

    Raises:
        InvalidKeyError: If the identifying fields are incomplete or invalid
    """
    fields = rtype.descriptor.key
    values = normalize_key(identifying, fields)
    return rtype.prefix + encode_fields(values, fields)


def key_of(rtype: RegisteredType, record: Any) -> bytes:
    """Primary key bytes of a record, read from its key attributes."""
    fields = rtype.descriptor.key
    values = tuple(getattr(record, f.name) for f in fields)
    return rtype.prefix + encode_fields(values, fields)


def decode_key(rtype: RegisteredType, key: bytes) -> tuple:
    """Decode the identifying fields of a primary key."""
    if not key.startswith(rtype.prefix):
        raise ValueError(f"Key {key.hex()} is not in namespace '{rtype.name}'")
    offset = PREFIX_LEN
    values = []
    for f in rtype.descriptor.key:
        value, offset = decode_value(key, offset, f.kind)
        values.append(value)
    return tuple(values)


def scan_range(
    rtype: RegisteredType,
    start: Any = None,
    end: Any = None,
    prefix: Any = None,
) -> Tuple[bytes, Optional[bytes]]:
    """Byte range for a scan over a record namespace.

    Bounds may be partial tuples; they compare lexicographically against the
    identifying-field tuples (start inclusive, end exclusive). `prefix`
    restricts the range to keys whose leading fields equal the given values.
    """
    fields = rtype.descriptor.key
    if prefix is not None:
        values = normalize_key(prefix, fields, partial=True)
        lo, hi = range_for_prefix(rtype.prefix + encode_fields(values, fields))
    else:
        lo, hi = range_for_prefix(rtype.prefix)

    if start is not None:
        values = normalize_key(start, fields, partial=True)
        lo = max(lo, rtype.prefix + encode_fields(values, fields))
    if end is not None:
        values = normalize_key(end, fields, partial=True)
        bound = rtype.prefix + encode_fields(values, fields)
        hi = bound if hi is None else min(hi, bound)
    return lo, hi


# ─── Secondary index entries ─────────────────────────────────────────────────

def index_value_prefix(prefix_bytes: bytes, kind: FieldKind, value: Any, field_name: str) -> bytes:
    """Prefix shared by every index entry for one indexed value."""
    return prefix_bytes + encode_value(value, kind, field_name)


def index_entry_key(
    prefix_bytes: bytes,
    kind: FieldKind,
    value: Any,
    field_name: str,
    primary_key: bytes,
) -> bytes:
    """Index entry key: index prefix + encoded value + full primary key."""
    return index_value_prefix(prefix_bytes, kind, value, field_name) + primary_key
