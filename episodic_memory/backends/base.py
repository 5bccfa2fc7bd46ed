"""
Abstract storage contract shared by all backends.

Both the SQLite and PostgreSQL backends implement StorageBackend with the
same observable semantics. Operations that only make sense without a local
archive (sync state, summaries) are separate capability protocols that only
the PostgreSQL backend provides.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

from ..exceptions import DimensionMismatchError
from ..models import DatabaseStats, Exchange, SearchOptions, SearchResult, SyncRecord

DEFAULT_VECTOR_DIMENSIONS = 384

# Additive column migrations applied to the exchanges table on every
# initialize(). Backends pair each name with their own column type.
EXCHANGE_COLUMN_MIGRATIONS = (
    "last_indexed",
    "parent_uuid",
    "is_sidechain",
    "session_id",
    "cwd",
    "git_branch",
    "claude_version",
    "thinking_level",
    "thinking_disabled",
    "thinking_triggers",
)

# Columns returned by both search paths, in SELECT order
EXCHANGE_READ_COLUMNS = (
    "id",
    "project",
    "timestamp",
    "user_message",
    "assistant_message",
    "archive_path",
    "line_start",
    "line_end",
    "parent_uuid",
    "is_sidechain",
    "session_id",
    "cwd",
    "git_branch",
    "claude_version",
    "thinking_level",
    "thinking_disabled",
    "thinking_triggers",
)


def escape_like(query: str, escape: str = "\\") -> str:
    """Escape LIKE wildcards so the query matches as a literal substring."""
    return (
        query.replace(escape, escape + escape)
        .replace("%", escape + "%")
        .replace("_", escape + "_")
    )


class StorageBackend(ABC):
    """
    Abstract base for all storage backends.

    Every operation raises StorageNotInitializedError when called before
    initialize() or after close(), and DimensionMismatchError when an
    embedding does not match the configured width.
    """

    name: str = "abstract"

    @property
    @abstractmethod
    def vector_dimensions(self) -> int:
        """Fixed embedding width of the vector index."""
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """Create schema and indexes if absent and apply column migrations.

        Safe to call on an already-initialized store.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release all connections and handles."""
        pass

    async def __aenter__(self) -> StorageBackend:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def _check_dimensions(self, embedding: Sequence[float]) -> None:
        if len(embedding) != self.vector_dimensions:
            raise DimensionMismatchError(self.vector_dimensions, len(embedding))

    # =========================================================================
    # Exchange Operations
    # =========================================================================

    @abstractmethod
    async def insert_exchange(
        self,
        exchange: Exchange,
        embedding: Sequence[float],
        tool_names: Sequence[str] | None = None,
    ) -> None:
        """
        Upsert an exchange with its embedding and tool calls.

        The exchange row, its vector and its tool calls are written
        atomically. Existing tool calls of the exchange are replaced.

        Args:
            exchange: Exchange to store (tool calls included)
            embedding: Embedding vector for the exchange
            tool_names: Tool names used when generating the embedding.
                Accepted for interface compatibility; tool calls are
                taken from ``exchange.tool_calls``.
        """
        pass

    @abstractmethod
    async def delete_exchange(self, exchange_id: str) -> None:
        """Delete an exchange, its vector and its tool calls."""
        pass

    @abstractmethod
    async def get_all_exchanges(self) -> list[tuple[str, str]]:
        """Return every (id, archive_path) pair."""
        pass

    @abstractmethod
    async def get_file_last_indexed(self, archive_path: str) -> int | None:
        """Latest last-indexed time (epoch ms) among exchanges of an archive file."""
        pass

    @abstractmethod
    async def has_exchanges_for_archive(self, archive_path: str) -> bool:
        """Check whether any exchange was indexed from an archive file."""
        pass

    # =========================================================================
    # Search
    # =========================================================================

    @abstractmethod
    async def search_by_vector(
        self,
        embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """
        Nearest-neighbour search by L2 distance.

        Returns at most ``options.limit`` results, closest first, restricted
        to the inclusive time window.
        """
        pass

    @abstractmethod
    async def search_by_text(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """
        Case-insensitive substring search over user and assistant messages.

        Results are ordered by timestamp, newest first, with distance 0.0.
        """
        pass

    # =========================================================================
    # Analytics & Passthrough
    # =========================================================================

    @abstractmethod
    async def get_stats(self) -> DatabaseStats:
        """Aggregate counts over the stored exchanges."""
        pass

    @abstractmethod
    async def raw_query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        """Run backend-specific SQL and return rows as dicts."""
        pass

    @abstractmethod
    async def raw_execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a backend-specific statement and return the affected row count."""
        pass


# =============================================================================
# Optional capabilities
# =============================================================================


@runtime_checkable
class SyncStateStore(Protocol):
    """Tracks ingested source files in the database (stateless sync)."""

    async def get_synced_file(self, source_path: str) -> SyncRecord | None:
        """Return the sync record of a source file, if any."""
        ...

    async def set_synced_file(self, source_path: str, mtime_ms: float, size_bytes: int) -> None:
        """Record a source file as synced."""
        ...

    async def needs_sync(self, source_path: str, mtime_ms: float, size_bytes: int) -> bool:
        """Check whether a source file is new or changed since last sync."""
        ...


@runtime_checkable
class SummaryStore(Protocol):
    """Stores one summary per conversation session."""

    async def get_summary(self, session_id: str) -> str | None: ...

    async def has_summary(self, session_id: str) -> bool: ...

    async def set_summary(self, session_id: str, project: str, summary: str) -> None: ...

    async def get_sessions_needing_summaries(self, limit: int = 10) -> list[tuple[str, str]]:
        """Return (session_id, project) pairs that have exchanges but no summary."""
        ...


def supports_sync_state(backend: object) -> bool:
    """True when the backend can track source files without a local archive."""
    return isinstance(backend, SyncStateStore)


def supports_summaries(backend: object) -> bool:
    """True when the backend stores session summaries itself."""
    return isinstance(backend, SummaryStore)
