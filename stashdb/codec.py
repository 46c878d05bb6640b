"""
Record codecs for StashDB.

A codec turns a typed record into bytes and back. Records are dumped and
validated through a pydantic TypeAdapter, so dataclasses and pydantic models
are both supported.

Invariants:
    - encode() is deterministic: one logical record, one byte string
    - decode() never returns a partial or defaulted record for bad input;
      it raises DecodeError instead
    - Codecs are pure and hold no per-call state
"""

from __future__ import annotations

import datetime
import decimal
import enum
import uuid
from typing import Any, Dict, Protocol, Type, runtime_checkable

import msgpack
from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from .errors import DecodeError, EncodeError


@runtime_checkable
class Codec(Protocol):
    """Protocol for record codecs.

    Example:
        >>> codec = MsgpackCodec(User)
        >>> codec.decode(codec.encode(User(id=1, email="a@x.com")))
        User(id=1, email='a@x.com')
    """

    name: str

    def encode(self, record: Any) -> bytes:
        """Serialize a record.

        Raises:
            EncodeError: If the record cannot be serialized
        """
        ...

    def decode(self, data: bytes) -> Any:
        """Deserialize a record.

        Raises:
            DecodeError: If data is truncated, malformed or invalid
        """
        ...


class _AdapterCodec:
    """Shared plumbing for codecs built on a pydantic TypeAdapter."""

    name = "adapter"

    def __init__(self, record_cls: type) -> None:
        self.record_cls = record_cls
        self._adapter: TypeAdapter[Any] = TypeAdapter(record_cls)

    def _check_type(self, record: Any) -> None:
        if not isinstance(record, self.record_cls):
            raise EncodeError(
                f"{self.name} codec for {self.record_cls.__name__} "
                f"cannot encode {type(record).__name__}",
                codec=self.name,
            )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.record_cls.__name__})"


def _msgpack_default(obj: Any) -> Any:
    """Convert values msgpack has no native type for."""
    if isinstance(obj, (datetime.datetime, datetime.date, datetime.time)):
        return obj.isoformat()
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, enum.Enum):
        return obj.value
    if isinstance(obj, decimal.Decimal):
        return str(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=repr)
    raise TypeError(f"Cannot serialize {type(obj).__name__}")


class MsgpackCodec(_AdapterCodec):
    """Compact binary codec (default)."""

    name = "msgpack"

    def encode(self, record: Any) -> bytes:
        self._check_type(record)
        try:
            data = self._adapter.dump_python(record, mode="python")
            return msgpack.packb(data, use_bin_type=True, default=_msgpack_default)
        except (TypeError, ValueError, PydanticSerializationError) as e:
            raise EncodeError(f"Failed to encode {self.record_cls.__name__}: {e}", codec=self.name) from e

    def decode(self, data: bytes) -> Any:
        try:
            obj = msgpack.unpackb(data, raw=False)
        except (TypeError, ValueError, msgpack.exceptions.UnpackException) as e:
            raise DecodeError(f"Malformed msgpack for {self.record_cls.__name__}: {e}", codec=self.name) from e
        try:
            return self._adapter.validate_python(obj)
        except ValidationError as e:
            raise DecodeError(f"Invalid {self.record_cls.__name__} record: {e}", codec=self.name) from e


class JsonCodec(_AdapterCodec):
    """Human-readable codec, handy for debugging stored values."""

    name = "json"

    def encode(self, record: Any) -> bytes:
        self._check_type(record)
        try:
            return self._adapter.dump_json(record)
        except PydanticSerializationError as e:
            raise EncodeError(f"Failed to encode {self.record_cls.__name__}: {e}", codec=self.name) from e

    def decode(self, data: bytes) -> Any:
        try:
            return self._adapter.validate_json(data)
        except ValidationError as e:
            raise DecodeError(f"Invalid {self.record_cls.__name__} record: {e}", codec=self.name) from e


CODECS: Dict[str, Type[_AdapterCodec]] = {
    MsgpackCodec.name: MsgpackCodec,
    JsonCodec.name: JsonCodec,
}


def make_codec(name: str, record_cls: type) -> Codec:
    """Build a codec by name for a record class.

    Raises:
        ValueError: If the codec name is unknown
    """
    try:
        codec_cls = CODECS[name]
    except KeyError:
        raise ValueError(f"Unknown codec '{name}'. Valid codecs: {sorted(CODECS)}")
    return codec_cls(record_cls)
