"""
Database configuration resolution.

Precedence:
1. Environment variables (highest priority)
2. Config file (``<index dir>/config.yaml`` or legacy ``config.json``)
3. Default (embedded SQLite)

Environment variables:
- EPISODIC_MEMORY_DB_PROVIDER: 'sqlite' | 'postgresql'
- EPISODIC_MEMORY_POSTGRES_URL: PostgreSQL connection URL
- EPISODIC_MEMORY_POSTGRES_POOL_SIZE: Connection pool size (default: 10)
- EPISODIC_MEMORY_POSTGRES_SSL: Enable SSL (default: false)
- EPISODIC_MEMORY_VECTOR_DIMENSIONS: Embedding width (default: 384)
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .backends.base import DEFAULT_VECTOR_DIMENSIONS
from .backends.postgres import DEFAULT_POOL_SIZE, PostgresConfig
from .backends.sqlite import SQLiteConfig
from .exceptions import ConfigurationError, mask_url
from .paths import get_config_paths, get_db_path

logger = logging.getLogger(__name__)


class DatabaseProvider(Enum):
    """Supported storage backends."""

    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


@dataclass
class DatabaseConfig:
    """Resolved database configuration."""

    provider: DatabaseProvider
    sqlite: SQLiteConfig | None = None
    postgresql: PostgresConfig | None = None

    @property
    def is_postgresql(self) -> bool:
        return self.provider is DatabaseProvider.POSTGRESQL

    @property
    def is_sqlite(self) -> bool:
        return self.provider is DatabaseProvider.SQLITE

    def describe(self) -> str:
        """Human-readable description with the password masked."""
        if self.is_postgresql and self.postgresql is not None:
            pg = self.postgresql
            return f"PostgreSQL: {mask_url(pg.url)} (pool: {pg.pool_size}, ssl: {pg.ssl})"
        path = self.sqlite.db_path if self.sqlite else get_db_path()
        return f"SQLite: {path}"


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _parse_int(value: Any, field: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{field} must be an integer, got {value!r}", field) from e


def load_config_file(path: Path | None = None) -> dict[str, Any] | None:
    """Load the config file if one exists.

    YAML is a superset of the JSON the legacy ``config.json`` uses,
    so both are read with ``yaml.safe_load``.

    Raises:
        ConfigurationError: If the file exists but cannot be parsed
    """
    candidates = [path] if path is not None else get_config_paths()
    for candidate in candidates:
        if not candidate.exists():
            continue
        try:
            with open(candidate, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Failed to parse config file {candidate}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {candidate} must contain a mapping")
        logger.debug(f"Loaded config file {candidate}")
        return data
    return None


def _sqlite_config(dimensions: int) -> SQLiteConfig:
    return SQLiteConfig(db_path=get_db_path(), vector_dimensions=dimensions)


def load_database_config(
    env: Mapping[str, str] | None = None,
    config_path: Path | None = None,
) -> DatabaseConfig:
    """
    Resolve the database configuration.

    Args:
        env: Environment mapping (defaults to ``os.environ``)
        config_path: Explicit config file (defaults to the index dir lookup)

    Raises:
        ConfigurationError: Missing PostgreSQL URL, unknown provider or bad config file
    """
    env = os.environ if env is None else env

    dimensions = _parse_int(
        env.get("EPISODIC_MEMORY_VECTOR_DIMENSIONS", DEFAULT_VECTOR_DIMENSIONS),
        "EPISODIC_MEMORY_VECTOR_DIMENSIONS",
    )

    # 1. Environment variables
    env_provider = env.get("EPISODIC_MEMORY_DB_PROVIDER")
    if env_provider:
        try:
            provider = DatabaseProvider(env_provider.strip().lower())
        except ValueError as e:
            raise ConfigurationError(
                f"Unknown database provider {env_provider!r}", "EPISODIC_MEMORY_DB_PROVIDER"
            ) from e

        if provider is DatabaseProvider.POSTGRESQL:
            url = env.get("EPISODIC_MEMORY_POSTGRES_URL")
            if not url:
                raise ConfigurationError(
                    "EPISODIC_MEMORY_POSTGRES_URL is required when "
                    "EPISODIC_MEMORY_DB_PROVIDER=postgresql",
                    "EPISODIC_MEMORY_POSTGRES_URL",
                )
            return DatabaseConfig(
                provider=provider,
                postgresql=PostgresConfig(
                    url=url,
                    pool_size=_parse_int(
                        env.get("EPISODIC_MEMORY_POSTGRES_POOL_SIZE", DEFAULT_POOL_SIZE),
                        "EPISODIC_MEMORY_POSTGRES_POOL_SIZE",
                    ),
                    ssl=_parse_bool(env.get("EPISODIC_MEMORY_POSTGRES_SSL", "false")),
                    vector_dimensions=dimensions,
                ),
            )

        return DatabaseConfig(provider=provider, sqlite=_sqlite_config(dimensions))

    # 2. Config file
    file_config = load_config_file(config_path) or {}
    database = file_config.get("database") or {}
    if database.get("provider") == DatabaseProvider.POSTGRESQL.value:
        pg = database.get("postgresql") or {}
        url = pg.get("url")
        if not url:
            raise ConfigurationError(
                "PostgreSQL URL is required in config file when provider is postgresql",
                "database.postgresql.url",
            )
        return DatabaseConfig(
            provider=DatabaseProvider.POSTGRESQL,
            postgresql=PostgresConfig(
                url=url,
                pool_size=_parse_int(
                    pg.get("poolSize", DEFAULT_POOL_SIZE), "database.postgresql.poolSize"
                ),
                ssl=_parse_bool(pg.get("ssl", False)),
                vector_dimensions=dimensions,
            ),
        )

    # 3. Default
    return DatabaseConfig(provider=DatabaseProvider.SQLITE, sqlite=_sqlite_config(dimensions))
