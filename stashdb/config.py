"""
Configuration for StashDB.

Settings are loaded from environment variables (prefix STASHDB_) or passed
explicitly, and validated by pydantic.

Environment variables:
    STASHDB_BACKEND: Storage engine (lmdb, sqlite, memory)
    STASHDB_PATH: Database location (directory)
    STASHDB_MAX_SIZE: LMDB map size in bytes
    STASHDB_MAX_READERS: LMDB concurrent reader ceiling
    STASHDB_SYNC: Flush on every LMDB commit
    STASHDB_BUSY_TIMEOUT_MS: SQLite lock wait before ConflictError
    STASHDB_WAL_MODE: SQLite WAL journal mode
    STASHDB_DEFAULT_CODEC: Codec for types without one (msgpack, json)
    STASHDB_LOG_LEVEL: Logging level
    STASHDB_LOG_FORMAT: Log format (text, json)

Invariants:
    - Settings are immutable once the store is open
    - Invalid values fail at construction, never at first use

How to change safely:
    - Add new settings with defaults that keep existing databases working
    - Document the environment variable here
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Literal

import json_log_formatter
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 256 * 1024 * 1024


class BackendKind(str, Enum):
    """Supported storage engines."""

    LMDB = "lmdb"
    SQLITE = "sqlite"
    MEMORY = "memory"


class StoreSettings(BaseSettings):
    """Store configuration loaded from environment."""

    # Engine selection
    backend: BackendKind = Field(default=BackendKind.LMDB, description="Storage engine")
    path: str = Field(default="./stashdb-data", description="Database directory")

    # LMDB
    max_size: int = Field(
        default=DEFAULT_MAX_SIZE,
        ge=1024 * 1024,
        description="LMDB map size in bytes (upper bound on data size)",
    )
    max_readers: int = Field(default=126, ge=1, description="Max concurrent read transactions")
    sync: bool = Field(default=True, description="Flush to disk on every commit")

    # SQLite
    busy_timeout_ms: int = Field(default=5000, ge=0, description="SQLite lock wait in milliseconds")
    wal_mode: bool = Field(default=True, description="Enable SQLite WAL journal mode")
    sqlite_filename: str = Field(default="stash.db", description="SQLite file inside path")

    # Records
    default_codec: Literal["msgpack", "json"] = Field(
        default="msgpack",
        description="Codec for record types that declare none",
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    log_format: Literal["text", "json"] = Field(default="text")

    model_config = {"env_prefix": "STASHDB_", "frozen": True}

    def log_config(self) -> None:
        """Log the effective settings."""
        logger.info(
            f"StashDB settings: backend={self.backend.value}, path={self.path}, "
            f"max_size={self.max_size}, max_readers={self.max_readers}, "
            f"default_codec={self.default_codec}"
        )


def setup_logging(settings: StoreSettings) -> None:
    """Configure root logging based on settings.

    Args:
        settings: Store settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
