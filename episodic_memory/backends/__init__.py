"""
Storage backend abstraction layer.

Provides one contract over two stores (embedded SQLite with sqlite-vec,
PostgreSQL with pgvector). Each backend implements the same interface,
allowing the indexing pipeline to switch stores through configuration.
"""

from .base import (
    DEFAULT_VECTOR_DIMENSIONS,
    StorageBackend,
    SummaryStore,
    SyncStateStore,
    supports_summaries,
    supports_sync_state,
)
from .factory import create_backend, open_backend
from .postgres import PostgresBackend, PostgresConfig
from .sqlite import SQLiteBackend, SQLiteConfig

__all__ = [
    # Core classes
    "StorageBackend",
    "DEFAULT_VECTOR_DIMENSIONS",
    # Capabilities
    "SyncStateStore",
    "SummaryStore",
    "supports_sync_state",
    "supports_summaries",
    # Implementations
    "SQLiteBackend",
    "SQLiteConfig",
    "PostgresBackend",
    "PostgresConfig",
    # Construction
    "create_backend",
    "open_backend",
]
