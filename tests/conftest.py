"""
Shared fixtures for the StashDB test suite.

The `backend` fixture is parametrized over every adapter, so any test that
uses it (directly or through `store`) runs once per engine.
"""

from typing import Generator

import pytest

from stashdb import LmdbBackend, MemoryBackend, SchemaRegistry, SqliteBackend, Store, StoreSettings
from stashdb.backend.base import Backend

from tests.models import make_registry

BACKENDS = ["memory", "sqlite", "lmdb"]


def build_backend(kind: str, tmp_path) -> Backend:
    """Create an unopened backend of the given kind under tmp_path."""
    if kind == "memory":
        return MemoryBackend()
    if kind == "sqlite":
        return SqliteBackend(str(tmp_path / "stash.db"), busy_timeout_ms=100)
    if kind == "lmdb":
        return LmdbBackend(str(tmp_path / "lmdb"), max_size=32 * 1024 * 1024)
    raise ValueError(kind)


@pytest.fixture(params=BACKENDS)
def backend(request, tmp_path) -> Generator[Backend, None, None]:
    """An opened backend, one per adapter."""
    b = build_backend(request.param, tmp_path)
    b.open()
    yield b
    b.close()


@pytest.fixture
def registry() -> SchemaRegistry:
    """Fresh registry with the shared test record types."""
    return make_registry()


@pytest.fixture
def store(request, tmp_path) -> Generator[Store, None, None]:
    """An opened store over the memory backend.

    Parametrize indirectly with a backend name to run on another engine.
    """
    kind = getattr(request, "param", "memory")
    s = Store(make_registry(), StoreSettings(), backend=build_backend(kind, tmp_path))
    s.open()
    yield s
    s.close()


@pytest.fixture(params=BACKENDS)
def any_store(request, tmp_path) -> Generator[Store, None, None]:
    """An opened store, one per backend adapter."""
    s = Store(make_registry(), StoreSettings(), backend=build_backend(request.param, tmp_path))
    s.open()
    yield s
    s.close()
