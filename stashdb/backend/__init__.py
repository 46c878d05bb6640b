"""
Storage backend abstraction for StashDB.

This module provides a pluggable engine interface supporting:
- LMDB (reference engine)
- SQLite
- In-memory (for testing)

Invariants:
    - Keys are ordered as unsigned bytes
    - Transactions see their own writes plus a consistent snapshot
    - Write-write races serialize or fail with ConflictError at commit

How to change safely:
    - New backends must implement the Backend protocol
    - Run the backend contract tests against them
"""

from .base import Backend, BackendTransaction, create_backend
from .lmdb import LmdbBackend
from .memory import MemoryBackend
from .sqlite import SqliteBackend

__all__ = [
    # Protocol
    "Backend",
    "BackendTransaction",
    # Factory
    "create_backend",
    # Implementations
    "LmdbBackend",
    "SqliteBackend",
    "MemoryBackend",
]
