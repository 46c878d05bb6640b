"""
Unit tests for typed transactions.

Tests cover:
- get/put/delete/exists across every backend
- Context-manager commit and abort
- Use after end and read-only misuse
- Input errors that leave the transaction usable
- Poisoning by decode and backend failures
- put_many, truncate, drop and rebuild_indexes
"""

import uuid

import pytest

from stashdb import Transaction, TransactionState
from stashdb.catalog import type_key
from stashdb.errors import (
    BackendError,
    DecodeError,
    InvalidKeyError,
    NotFoundError,
    ReadOnlyTransactionError,
    SchemaError,
    TransactionPoisonedError,
    UseAfterEndError,
)
from stashdb.keys import derive_key, range_for_prefix

from tests.models import Account, Event, User


def index_entries(store, index_name):
    """Raw entry keys of one index namespace."""
    users = store.registry.lookup(User)
    start, end = range_for_prefix(users.index_prefixes[index_name])
    btxn = store.backend.begin()
    try:
        return [key for key, _ in btxn.scan(start, end)]
    finally:
        btxn.abort()


def put_raw(store, key, value):
    btxn = store.backend.begin(write=True)
    btxn.put(key, value)
    btxn.commit()


class TestReadWrite:
    """get/put/delete on every backend."""

    def test_put_then_get(self, any_store):
        """A committed record reads back equal."""
        user = User(id=1, email="a@x.com", name="Ann", age=30)
        with any_store.begin(write=True) as txn:
            txn.put(User, user)

        with any_store.begin() as txn:
            assert txn.get(User, 1) == user
            assert txn.exists(User, 1) is True

    def test_absent_is_none(self, any_store):
        """Missing records are None and False, never errors."""
        with any_store.begin(write=True) as txn:
            assert txn.get(User, 404) is None
            assert txn.exists(User, 404) is False
            assert txn.delete(User, 404) is False

    def test_overwrite(self, any_store):
        """put replaces the record with the same key."""
        with any_store.begin(write=True) as txn:
            txn.put(User, User(id=1, email="old@x.com"))
            txn.put(User, User(id=1, email="new@x.com"))
            assert txn.get(User, 1).email == "new@x.com"

        with any_store.begin() as txn:
            assert txn.count(User) == 1

    def test_delete(self, any_store):
        """delete removes the record and reports it existed."""
        with any_store.begin(write=True) as txn:
            txn.put(User, User(id=1, email="a@x.com"))

        with any_store.begin(write=True) as txn:
            assert txn.delete(User, 1) is True
            assert txn.get(User, 1) is None

        with any_store.begin() as txn:
            assert txn.get(User, 1) is None

    def test_composite_key(self, any_store):
        """Composite keys accept tuples and mappings."""
        with any_store.begin(write=True) as txn:
            txn.put(Event, Event("orders", -3, "x"))

        with any_store.begin() as txn:
            assert txn.get(Event, ("orders", -3)).payload == "x"
            assert txn.get(Event, {"stream": "orders", "seq": -3}).payload == "x"
            assert txn.get(Event, ("orders", 3)) is None

    def test_pydantic_record_with_json_codec(self, any_store):
        """Pydantic records with a UUID key round-trip through JSON."""
        account = Account(account_id=uuid.UUID(int=9), owner="ann", balance=1.5, tags=["a"])
        with any_store.begin(write=True) as txn:
            txn.put(Account, account)

        with any_store.begin() as txn:
            assert txn.get(Account, uuid.UUID(int=9)) == account
            assert txn.get("Account", str(uuid.UUID(int=9))) == account

    def test_type_identities(self, any_store):
        """Types can be named by class, name or type_id."""
        with any_store.begin(write=True) as txn:
            txn.put("User", User(id=1, email="a@x.com"))

        with any_store.begin() as txn:
            assert txn.get(1, 1) == txn.get(User, 1) == txn.get("User", 1)

    def test_own_writes_visible(self, any_store):
        """A transaction reads its uncommitted writes."""
        with any_store.begin(write=True) as txn:
            txn.put(User, User(id=1, email="a@x.com"))
            assert txn.exists(User, 1)
            txn.delete(User, 1)
            assert not txn.exists(User, 1)


class TestLifecycle:
    """Commit, abort and use after end."""

    def test_context_manager_commits(self, store):
        """A clean `with` block commits."""
        with store.begin(write=True) as txn:
            txn.put(User, User(id=1, email="a@x.com"))

        assert txn.state == TransactionState.COMMITTED
        assert store.get(User, 1) is not None

    def test_context_manager_aborts_on_exception(self, store):
        """An exception aborts and propagates."""
        with pytest.raises(RuntimeError, match="boom"):
            with store.begin(write=True) as txn:
                txn.put(User, User(id=1, email="a@x.com"))
                raise RuntimeError("boom")

        assert txn.state == TransactionState.ABORTED
        assert store.get(User, 1) is None

    def test_explicit_abort(self, store):
        """abort() discards every write."""
        txn = store.begin(write=True)
        txn.put(User, User(id=1, email="a@x.com"))
        txn.abort()

        assert store.get(User, 1) is None
        assert index_entries(store, "user_by_email") == []

    @pytest.mark.parametrize("end", ["commit", "abort"])
    def test_use_after_end(self, store, end):
        """Every operation after commit or abort raises UseAfterEndError."""
        txn = store.begin(write=True)
        getattr(txn, end)()

        with pytest.raises(UseAfterEndError):
            txn.get(User, 1)
        with pytest.raises(UseAfterEndError):
            txn.put(User, User(id=1, email="a@x.com"))
        with pytest.raises(UseAfterEndError):
            txn.scan(User)
        with pytest.raises(UseAfterEndError):
            txn.commit()
        with pytest.raises(UseAfterEndError):
            txn.abort()
        assert not txn.is_active

    def test_exit_after_explicit_commit(self, store):
        """Leaving the block after an explicit commit is a no-op."""
        with store.begin(write=True) as txn:
            txn.put(User, User(id=1, email="a@x.com"))
            txn.commit()
        assert txn.state == TransactionState.COMMITTED

    @pytest.mark.parametrize(
        "operation",
        [
            lambda txn: txn.put(User, User(id=1, email="a@x.com")),
            lambda txn: txn.put_many(User, []),
            lambda txn: txn.delete(User, 1),
            lambda txn: txn.truncate(User),
            lambda txn: txn.rebuild_indexes(User),
            lambda txn: txn.drop(User),
        ],
    )
    def test_read_only_rejects_mutations(self, store, operation):
        """Mutations in a read transaction raise ReadOnlyTransactionError."""
        with store.begin() as txn:
            assert txn.write is False
            with pytest.raises(ReadOnlyTransactionError):
                operation(txn)
            assert not txn.poisoned

    def test_commit_closes_cursors(self, store):
        """Ending the transaction closes its cursors."""
        store.save(User(id=1, email="a@x.com"))
        txn = store.begin()
        cursor = txn.scan(User)
        txn.commit()

        assert cursor.closed
        with pytest.raises(UseAfterEndError):
            next(cursor)

    def test_repr(self, store):
        """repr shows mode and state."""
        txn = store.begin(write=True)
        assert repr(txn) == "Transaction(write, ACTIVE, poisoned=False)"
        txn.abort()
        assert isinstance(txn, Transaction)


class TestInputErrors:
    """Errors in caller input leave the transaction usable."""

    def test_invalid_key_does_not_poison(self, store):
        """InvalidKeyError is raised before any write."""
        with store.begin(write=True) as txn:
            txn.put(User, User(id=1, email="a@x.com"))
            with pytest.raises(InvalidKeyError):
                txn.put(User, User(id=-1, email="neg@x.com"))
            with pytest.raises(InvalidKeyError):
                txn.get(Event, ("only-stream",))
            assert not txn.poisoned

        assert store.get(User, 1) is not None

    def test_missing_identifying_field(self, store):
        """A None key field is rejected."""
        with store.begin(write=True) as txn:
            with pytest.raises(InvalidKeyError, match="missing"):
                txn.put(User, User(id=None, email="a@x.com"))

    def test_unencodable_indexed_value(self, store):
        """An indexed value of the wrong kind fails before writing."""
        with store.begin(write=True) as txn:
            with pytest.raises(InvalidKeyError, match="expects str"):
                txn.put(User, User(id=1, email=42))
            assert txn.get(User, 1) is None
            assert not txn.poisoned

    def test_wrong_record_class(self, store):
        """Writing a record as another type raises SchemaError."""
        with store.begin(write=True) as txn:
            with pytest.raises(SchemaError, match="Cannot write Event as record type 'User'"):
                txn.put(User, Event("s", 1))
            assert not txn.poisoned

    def test_unknown_type(self, store):
        """Unregistered types raise NotFoundError."""
        with store.begin() as txn:
            with pytest.raises(NotFoundError):
                txn.get("Ghost", 1)

    def test_negative_limit(self, store):
        """Negative limits are rejected."""
        with store.begin() as txn:
            with pytest.raises(ValueError, match="limit"):
                txn.scan(User, limit=-1)


class TestPoisoning:
    """Failures that poison the transaction."""

    def test_decode_error_poisons(self, store):
        """Corrupt stored bytes raise DecodeError and poison."""
        users = store.registry.lookup(User)
        put_raw(store, derive_key(users, 1), b"\xc1garbage")

        txn = store.begin()
        with pytest.raises(DecodeError):
            txn.get(User, 1)

        assert txn.poisoned
        with pytest.raises(TransactionPoisonedError):
            txn.get(User, 2)
        with pytest.raises(TransactionPoisonedError, match="has been aborted"):
            txn.commit()
        assert txn.state == TransactionState.ABORTED

    def test_poisoned_writes_are_discarded(self, store):
        """Committing a poisoned transaction discards its earlier writes."""
        users = store.registry.lookup(User)
        put_raw(store, derive_key(users, 2), b"\xc1")

        with pytest.raises(TransactionPoisonedError):
            with store.begin(write=True) as txn:
                txn.put(User, User(id=1, email="a@x.com"))
                with pytest.raises(DecodeError):
                    txn.put(User, User(id=2, email="b@x.com"))

        assert store.get(User, 1) is None

    def test_backend_failure_poisons(self, store, monkeypatch):
        """A backend error in the middle of a put poisons."""
        txn = store.begin(write=True)

        def fail(key, value):
            raise BackendError("disk full", backend="memory")

        monkeypatch.setattr(txn._btxn, "put", fail)
        with pytest.raises(BackendError, match="disk full"):
            txn.put(User, User(id=1, email="a@x.com"))

        assert txn.poisoned
        with pytest.raises(TransactionPoisonedError) as exc_info:
            txn.exists(User, 1)
        assert isinstance(exc_info.value.cause, BackendError)
        txn.abort()
        assert txn.state == TransactionState.ABORTED

    def test_decode_error_while_iterating_poisons(self, store):
        """A corrupt record met by a cursor poisons the transaction."""
        users = store.registry.lookup(User)
        store.save(User(id=1, email="a@x.com"))
        put_raw(store, derive_key(users, 2), b"\xc1")

        txn = store.begin()
        cursor = txn.scan(User)
        assert next(cursor).id == 1
        with pytest.raises(DecodeError):
            next(cursor)
        assert cursor.closed
        assert txn.poisoned
        txn.abort()


class TestPutMany:
    """Tests for put_many."""

    def test_writes_all(self, any_store):
        """Every record is written and counted."""
        users = [User(id=i, email=f"u{i}@x.com") for i in range(5)]
        with any_store.begin(write=True) as txn:
            assert txn.put_many(User, users) == 5

        assert any_store.count(User) == 5

    def test_all_or_nothing(self, store):
        """One invalid record means no record is written."""
        with store.begin(write=True) as txn:
            with pytest.raises(InvalidKeyError):
                txn.put_many(User, [User(id=1, email="a@x.com"), User(id=None, email="b@x.com")])
            assert txn.get(User, 1) is None
            assert not txn.poisoned

    def test_accepts_generator(self, store):
        """Any iterable of records works."""
        with store.begin(write=True) as txn:
            written = txn.put_many(User, (User(id=i, email=f"{i}@x") for i in range(3)))
        assert written == 3


class TestTruncateAndRebuild:
    """Tests for truncate, drop and rebuild_indexes."""

    def test_truncate_removes_records_and_entries(self, any_store):
        """truncate empties the namespace and its indexes only."""
        any_store.save_batch([User(id=i, email=f"u{i}@x.com", age=i) for i in range(4)])
        any_store.save(Event("s", 1))

        with any_store.begin(write=True) as txn:
            assert txn.truncate(User) == 4
            assert txn.count(User) == 0

        assert index_entries(any_store, "user_by_email") == []
        assert index_entries(any_store, "user_by_age") == []
        assert any_store.count(Event) == 1

    def test_drop_forgets_layout(self, any_store):
        """drop removes records, index entries and the catalog layout."""
        any_store.save_batch([User(id=i, email=f"u{i}@x.com") for i in range(3)])
        any_store.save(Event("s", 1))
        users = any_store.registry.lookup(User)

        with any_store.begin(write=True) as txn:
            assert txn.drop(User) == 3

        btxn = any_store.backend.begin()
        assert btxn.get(type_key(users.type_id)) is None
        assert btxn.get(type_key(any_store.registry.lookup(Event).type_id)) is not None
        btxn.abort()
        assert index_entries(any_store, "user_by_email") == []
        assert any_store.count(User) == 0
        assert any_store.count(Event) == 1

    def test_drop_rolls_back_with_transaction(self, store):
        """An aborted drop leaves records and layout in place."""
        store.save(User(id=1, email="a@x.com"))

        with pytest.raises(RuntimeError):
            with store.begin(write=True) as txn:
                txn.drop(User)
                raise RuntimeError("abort")

        assert store.get(User, 1) is not None
        assert store.backend.begin().get(type_key(store.registry.lookup(User).type_id)) is not None

    def test_rebuild_restores_lost_entries(self, store):
        """rebuild_indexes recreates entries from the records."""
        store.save_batch([User(id=1, email="a@x.com", age=20), User(id=2, email="b@x.com")])
        lost = index_entries(store, "user_by_email")
        btxn = store.backend.begin(write=True)
        for key in lost:
            btxn.delete(key)
        btxn.commit()

        assert list(store.query_index(User, "email", "a@x.com")) == []
        assert store.rebuild_indexes(User) == 3
        assert [u.id for u in store.query_index(User, "email", "a@x.com")] == [1]

    def test_rebuild_drops_stale_entries(self, store):
        """Entries pointing at nothing are removed by a rebuild."""
        users = store.registry.lookup(User)
        store.save(User(id=1, email="a@x.com"))
        stale = users.index_prefixes["user_by_email"] + b"ghost\x00\x00" + derive_key(users, 99)
        put_raw(store, stale, b"")

        store.rebuild_indexes(User)

        assert stale not in index_entries(store, "user_by_email")

    def test_rebuild_type_without_indexes(self, store):
        """Types without indexes have nothing to rebuild."""
        store.save(Event("s", 1))
        assert store.rebuild_indexes(Event) == 0
