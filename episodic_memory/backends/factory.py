"""
Backend construction from resolved configuration.

There is no process-wide provider: callers build a backend here and own
its lifecycle (``async with`` or explicit initialize/close).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..exceptions import ConfigurationError
from .base import StorageBackend
from .postgres import PostgresBackend
from .sqlite import SQLiteBackend, SQLiteConfig

if TYPE_CHECKING:
    from ..config import DatabaseConfig

logger = logging.getLogger(__name__)


def create_backend(config: DatabaseConfig | None = None) -> StorageBackend:
    """Build an uninitialized backend for the configured provider.

    Args:
        config: Resolved configuration (defaults to ``load_database_config()``)

    Raises:
        ConfigurationError: When the provider's section is missing
    """
    if config is None:
        from ..config import load_database_config

        config = load_database_config()

    if config.is_postgresql:
        if config.postgresql is None:
            raise ConfigurationError("PostgreSQL provider selected without settings", "postgresql")
        logger.debug(f"Creating backend: {config.describe()}")
        return PostgresBackend(config.postgresql)

    logger.debug(f"Creating backend: {config.describe()}")
    return SQLiteBackend(config.sqlite or SQLiteConfig.from_env())


async def open_backend(config: DatabaseConfig | None = None) -> StorageBackend:
    """Build and initialize a backend for the configured provider."""
    backend = create_backend(config)
    await backend.initialize()
    return backend
