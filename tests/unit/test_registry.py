"""
Unit tests for record type definitions and the schema registry.

Tests cover:
- RecordType validation
- Type registration and lookup
- Duplicate detection
- Registry freezing
- Fingerprint generation
"""

from dataclasses import dataclass

import pytest
from pydantic import BaseModel

from stashdb.codec import JsonCodec, MsgpackCodec
from stashdb.errors import (
    DuplicateRegistrationError,
    NotFoundError,
    RegistryFrozenError,
    SchemaError,
)
from stashdb.keys import index_prefix, record_prefix
from stashdb.schema import FieldKind, RecordType, SchemaRegistry, index, key_field

from tests.models import ACCOUNTS, EVENTS, USERS, Event, User, make_registry


@dataclass
class Note:
    note_id: int
    author: str
    body: str = ""


class Tag(BaseModel):
    label: str
    color: str = "red"


def note_type(type_id=10, name="Note", indexes=()):
    return RecordType(
        type_id=type_id,
        name=name,
        record_cls=Note,
        key=(key_field("note_id", "u64"),),
        indexes=indexes,
    )


class TestRecordType:
    """Tests for RecordType validation."""

    def test_valid_dataclass(self):
        """A dataclass with existing fields is accepted."""
        rt = note_type(indexes=(index(1, "note_by_author", "author", "str"),))

        assert rt.key_names == ("note_id",)
        assert rt.get_index("note_by_author").field == "author"
        assert rt.get_index(1).name == "note_by_author"
        assert rt.get_index(2) is None

    def test_valid_pydantic_model(self):
        """A pydantic model is accepted."""
        rt = RecordType(type_id=11, name="Tag", record_cls=Tag, key=(key_field("label", "str"),))
        assert rt.key[0].kind == FieldKind.STRING

    @pytest.mark.parametrize("type_id", [0, -1, 65536])
    def test_type_id_range(self, type_id):
        """type_id must fit in two bytes and be positive."""
        with pytest.raises(ValueError, match="type_id must be 1-65535"):
            note_type(type_id=type_id)

    def test_empty_key(self):
        """A record type needs at least one key field."""
        with pytest.raises(ValueError, match="at least one key field"):
            RecordType(type_id=1, name="Note", record_cls=Note, key=())

    def test_missing_key_field(self):
        """Key fields must exist on the record class."""
        with pytest.raises(ValueError, match="Field 'id' does not exist on Note"):
            RecordType(type_id=1, name="Note", record_cls=Note, key=(key_field("id", "u64"),))

    def test_missing_index_field(self):
        """Indexed fields must exist on the record class."""
        with pytest.raises(ValueError, match="Field 'title' does not exist"):
            note_type(indexes=(index(1, "note_by_title", "title", "str"),))

    def test_duplicate_index_id(self):
        """Index ids are unique within a type."""
        with pytest.raises(ValueError, match="Duplicate index_id"):
            note_type(
                indexes=(
                    index(1, "note_by_author", "author", "str"),
                    index(1, "note_by_body", "body", "str"),
                )
            )

    def test_index_id_range(self):
        """index_id must fit in one byte."""
        with pytest.raises(ValueError, match="index_id must be 1-255"):
            index(256, "too_big", "author", "str")

    def test_unknown_kind(self):
        """Unknown field kinds are rejected."""
        with pytest.raises(ValueError, match="Invalid field kind 'decimal'"):
            key_field("note_id", "decimal")

    def test_plain_class_rejected(self):
        """Record classes must be dataclasses or pydantic models."""

        class Plain:
            note_id: int

        with pytest.raises(ValueError, match="dataclass or a pydantic model"):
            RecordType(type_id=1, name="Plain", record_cls=Plain, key=(key_field("note_id", "u64"),))


class TestSchemaRegistry:
    """Tests for SchemaRegistry."""

    def test_register_assigns_prefixes(self):
        """Registration binds the record and index prefixes."""
        registry = SchemaRegistry()

        users = registry.register(USERS)

        assert users.prefix == record_prefix(1)
        assert users.index_prefixes == {
            "user_by_email": index_prefix(1, 1),
            "user_by_age": index_prefix(1, 2),
        }

    def test_default_codec(self):
        """Types without a codec get the registry default."""
        assert isinstance(SchemaRegistry().register(USERS).codec, MsgpackCodec)
        assert isinstance(SchemaRegistry(default_codec="json").register(USERS).codec, JsonCodec)

    def test_explicit_codec_kept(self):
        """A codec declared on the type wins over the default."""
        registry = SchemaRegistry(default_codec="msgpack")
        assert registry.register(ACCOUNTS).codec is ACCOUNTS.codec

    def test_lookup_by_every_identity(self):
        """Types are found by class, name, type_id and RegisteredType."""
        registry = make_registry()
        users = registry.lookup(User)

        assert registry.lookup("User") is users
        assert registry.lookup(1) is users
        assert registry.lookup(users) is users
        assert users in registry
        assert len(registry) == 3

    def test_lookup_unknown(self):
        """Unknown types raise NotFoundError, a SchemaError."""
        registry = make_registry()

        with pytest.raises(NotFoundError, match="'Nope' is not registered"):
            registry.lookup("Nope")
        with pytest.raises(SchemaError):
            registry.lookup(Note)
        assert registry.get(99) is None
        assert registry.get(True) is None

    def test_index_by_field_name(self):
        """An index can be named by the field it indexes."""
        users = make_registry().lookup(User)

        assert users.get_index("email").name == "user_by_email"
        assert users.get_index("user_by_age").field == "age"
        with pytest.raises(NotFoundError):
            users.get_index("name")

    def test_iteration_in_type_id_order(self):
        """Iteration yields types sorted by type_id."""
        registry = SchemaRegistry()
        registry.register(ACCOUNTS)
        registry.register(USERS)
        assert [rt.name for rt in registry] == ["User", "Account"]

    def test_duplicate_type_id_raises(self):
        """Registering a duplicate type_id raises."""
        registry = make_registry()

        with pytest.raises(DuplicateRegistrationError, match="type_id 1 already registered"):
            registry.register(note_type(type_id=1))

    def test_duplicate_name_raises(self):
        """Registering a duplicate name raises."""
        registry = make_registry()

        with pytest.raises(DuplicateRegistrationError, match="name 'User' already registered"):
            registry.register(note_type(name="User"))

    def test_duplicate_class_raises(self):
        """One record class maps to one type."""
        registry = make_registry()
        again = RecordType(type_id=20, name="Event2", record_cls=Event, key=(key_field("seq", "i64"),))

        with pytest.raises(DuplicateRegistrationError, match="Class Event already registered"):
            registry.register(again)

    def test_duplicate_index_name_raises(self):
        """Index namespace names are unique across the registry."""
        registry = make_registry()

        with pytest.raises(DuplicateRegistrationError, match="Index name 'user_by_email'"):
            registry.register(note_type(indexes=(index(1, "user_by_email", "author", "str"),)))

    def test_type_name_clashing_with_index_raises(self):
        """A type cannot take the name of an existing index namespace."""
        registry = make_registry()

        with pytest.raises(DuplicateRegistrationError, match="already an index"):
            registry.register(note_type(name="user_by_email"))

    def test_failed_registration_leaves_no_trace(self):
        """A rejected type is not partially registered."""
        registry = make_registry()

        with pytest.raises(DuplicateRegistrationError):
            registry.register(note_type(indexes=(index(1, "user_by_email", "author", "str"),)))

        assert registry.get("Note") is None
        assert registry.get(Note) is None
        registry.register(note_type())

    def test_freeze_registry(self):
        """Can freeze registry."""
        registry = make_registry()

        fingerprint = registry.freeze()

        assert registry.frozen is True
        assert fingerprint.startswith("sha256:")
        assert registry.fingerprint == fingerprint

    def test_freeze_twice_raises(self):
        """Freezing twice raises error."""
        registry = SchemaRegistry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError):
            registry.freeze()

    def test_register_after_freeze_raises(self):
        """Cannot register after freeze."""
        registry = make_registry()
        registry.freeze()

        with pytest.raises(RegistryFrozenError, match="registry is frozen"):
            registry.register(note_type())

    def test_fingerprint_is_order_independent(self):
        """Same types in any registration order give the same fingerprint."""
        first = SchemaRegistry()
        for rt in (USERS, EVENTS, ACCOUNTS):
            first.register(rt)
        second = SchemaRegistry()
        for rt in (ACCOUNTS, USERS, EVENTS):
            second.register(rt)

        assert first.freeze() == second.freeze()

    def test_fingerprint_changes_with_layout(self):
        """Adding an index changes the fingerprint."""
        plain = SchemaRegistry()
        plain.register(note_type())
        indexed = SchemaRegistry()
        indexed.register(note_type(indexes=(index(1, "note_by_author", "author", "str"),)))

        assert plain.freeze() != indexed.freeze()

    def test_to_dict(self):
        """to_dict lists layouts in type_id order with their codec."""
        data = make_registry().to_dict()

        assert [t["type_id"] for t in data["record_types"]] == [1, 2, 3]
        assert data["record_types"][0]["key"] == [{"name": "id", "kind": "u64"}]
        assert data["record_types"][2]["codec"] == "json"
