"""
Episodic Memory Storage

Dual-backend storage for indexed conversation exchanges.

Provides:
- Embedded SQLite backend with sqlite-vec nearest-neighbour search
- PostgreSQL backend with pgvector HNSW search, sync state and summaries
- One-shot SQLite to PostgreSQL migration with verification
- Backend-aware sync and summary bookkeeping for the indexing pipeline

Usage:

    >>> from episodic_memory import create_backend, load_database_config, SearchOptions
    >>> async with create_backend(load_database_config()) as storage:
    ...     await storage.insert_exchange(exchange, embedding)
    ...     results = await storage.search_by_vector(embedding, SearchOptions(limit=5))

Backend Selection:

    # Embedded, single file (default)
    from episodic_memory.backends import SQLiteBackend, SQLiteConfig

    # Shared server
    from episodic_memory.backends import PostgresBackend, PostgresConfig
"""

from .backends import (
    PostgresBackend,
    PostgresConfig,
    SQLiteBackend,
    SQLiteConfig,
    StorageBackend,
    SummaryStore,
    SyncStateStore,
    create_backend,
    open_backend,
    supports_summaries,
    supports_sync_state,
)
from .config import DatabaseConfig, DatabaseProvider, load_database_config
from .exceptions import (
    ConfigurationError,
    DimensionMismatchError,
    SchemaMigrationError,
    SourceNotFoundError,
    StorageConnectionError,
    StorageError,
    StorageIOError,
    StorageNotInitializedError,
)
from .models import (
    DatabaseStats,
    Exchange,
    ProjectCount,
    SearchOptions,
    SearchResult,
    ToolCall,
)

__all__ = [
    # Backends
    "StorageBackend",
    "SQLiteBackend",
    "SQLiteConfig",
    "PostgresBackend",
    "PostgresConfig",
    "SyncStateStore",
    "SummaryStore",
    "supports_sync_state",
    "supports_summaries",
    "create_backend",
    "open_backend",
    # Configuration
    "DatabaseConfig",
    "DatabaseProvider",
    "load_database_config",
    # Models
    "Exchange",
    "ToolCall",
    "SearchOptions",
    "SearchResult",
    "DatabaseStats",
    "ProjectCount",
    # Exceptions
    "StorageError",
    "StorageNotInitializedError",
    "ConfigurationError",
    "DimensionMismatchError",
    "SourceNotFoundError",
    "SchemaMigrationError",
    "StorageConnectionError",
    "StorageIOError",
]

__version__ = "0.1.0"
