"""
PostgreSQL storage backend with pgvector.

Server-side store for setups without a local conversation archive. Besides
the exchanges it keeps the sync-state and summary tables, so the indexing
pipeline can decide what to process from the database alone.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import asyncpg
import numpy as np
from pgvector.asyncpg import register_vector

from ..exceptions import (
    ConfigurationError,
    SchemaMigrationError,
    StorageConnectionError,
    StorageNotInitializedError,
    mask_url,
)
from ..models import (
    DatabaseStats,
    Exchange,
    ProjectCount,
    SearchOptions,
    SearchResult,
    SummaryRecord,
    SyncRecord,
    TimeWindow,
    epoch_millis,
    format_timestamp,
    parse_timestamp,
)
from .base import (
    DEFAULT_VECTOR_DIMENSIONS,
    EXCHANGE_COLUMN_MIGRATIONS,
    EXCHANGE_READ_COLUMNS,
    StorageBackend,
    escape_like,
)

logger = logging.getLogger(__name__)

DEFAULT_POOL_SIZE = 10

_MIGRATION_COLUMN_TYPES = {
    "last_indexed": "BIGINT",
    "parent_uuid": "TEXT",
    "is_sidechain": "BOOLEAN DEFAULT FALSE",
    "session_id": "TEXT",
    "cwd": "TEXT",
    "git_branch": "TEXT",
    "claude_version": "TEXT",
    "thinking_level": "TEXT",
    "thinking_disabled": "BOOLEAN",
    "thinking_triggers": "TEXT",
}

_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_timestamp ON exchanges(timestamp DESC)",
    "CREATE INDEX IF NOT EXISTS idx_session_id ON exchanges(session_id)",
    "CREATE INDEX IF NOT EXISTS idx_project ON exchanges(project)",
    "CREATE INDEX IF NOT EXISTS idx_sidechain ON exchanges(is_sidechain)",
    "CREATE INDEX IF NOT EXISTS idx_git_branch ON exchanges(git_branch)",
    "CREATE INDEX IF NOT EXISTS idx_archive_path ON exchanges(archive_path)",
    "CREATE INDEX IF NOT EXISTS idx_tool_name ON tool_calls(tool_name)",
    "CREATE INDEX IF NOT EXISTS idx_tool_exchange ON tool_calls(exchange_id)",
    "CREATE INDEX IF NOT EXISTS idx_embedding_hnsw ON exchanges "
    "USING hnsw (embedding vector_l2_ops)",
)

_SELECT_COLUMNS = ", ".join(f"e.{col}" for col in EXCHANGE_READ_COLUMNS)


def _row_to_exchange(row: Any) -> Exchange:
    return Exchange(
        id=row["id"],
        project=row["project"],
        timestamp=format_timestamp(row["timestamp"]),
        user_message=row["user_message"],
        assistant_message=row["assistant_message"],
        archive_path=row["archive_path"],
        line_start=row["line_start"],
        line_end=row["line_end"],
        parent_uuid=row["parent_uuid"],
        is_sidechain=bool(row["is_sidechain"]),
        session_id=row["session_id"],
        cwd=row["cwd"],
        git_branch=row["git_branch"],
        claude_version=row["claude_version"],
        thinking_level=row["thinking_level"],
        thinking_disabled=bool(row["thinking_disabled"]),
        thinking_triggers=row["thinking_triggers"],
    )


def _time_clauses(window: TimeWindow, first_param: int) -> tuple[list[str], list[Any]]:
    """Build timestamptz comparisons numbered from ``$first_param``."""
    clauses: list[str] = []
    params: list[Any] = []
    n = first_param
    if window.start is not None:
        clauses.append(f"e.timestamp >= ${n}")
        params.append(window.start)
        n += 1
    if window.end is not None:
        op = "<" if window.end_exclusive else "<="
        clauses.append(f"e.timestamp {op} ${n}")
        params.append(window.end)
    return clauses, params


def _rows_affected(status: str) -> int:
    """Parse the trailing row count of a command status like ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


@dataclass
class PostgresConfig:
    """Configuration for PostgreSQL storage."""

    url: str
    pool_size: int = DEFAULT_POOL_SIZE
    ssl: bool = False
    vector_dimensions: int = DEFAULT_VECTOR_DIMENSIONS

    @classmethod
    def from_env(cls) -> PostgresConfig:
        """Create config from environment variables."""
        url = os.environ.get("EPISODIC_MEMORY_POSTGRES_URL")
        if not url:
            raise ConfigurationError(
                "EPISODIC_MEMORY_POSTGRES_URL environment variable is required",
                "EPISODIC_MEMORY_POSTGRES_URL",
            )

        return cls(
            url=url,
            pool_size=int(
                os.environ.get("EPISODIC_MEMORY_POSTGRES_POOL_SIZE", str(DEFAULT_POOL_SIZE))
            ),
            ssl=os.environ.get("EPISODIC_MEMORY_POSTGRES_SSL", "false").lower() == "true",
            vector_dimensions=int(
                os.environ.get(
                    "EPISODIC_MEMORY_VECTOR_DIMENSIONS", str(DEFAULT_VECTOR_DIMENSIONS)
                )
            ),
        )

    @property
    def ssl_mode(self) -> str:
        return "require" if self.ssl else "disable"


class PostgresBackend(StorageBackend):
    """
    PostgreSQL storage backend with pgvector HNSW search.

    Implements StorageBackend plus the SyncStateStore and SummaryStore
    capabilities.
    """

    name = "postgresql"

    def __init__(self, config: PostgresConfig):
        self.config = config
        self.pool: asyncpg.Pool | None = None
        self._initialized = False

    @classmethod
    async def create(cls, config: PostgresConfig | None = None) -> PostgresBackend:
        """Create and initialize PostgreSQL backend."""
        if config is None:
            config = PostgresConfig.from_env()

        backend = cls(config)
        await backend.initialize()
        return backend

    @property
    def vector_dimensions(self) -> int:
        return self.config.vector_dimensions

    def _require_pool(self, operation: str) -> asyncpg.Pool:
        if self.pool is None or not self._initialized:
            raise StorageNotInitializedError(operation)
        return self.pool

    async def initialize(self) -> None:
        """Create the vector extension, open the pool and bootstrap the schema."""
        if self._initialized:
            return

        try:
            # The vector type must exist before register_vector runs on pool connections
            bootstrap = await asyncpg.connect(dsn=self.config.url, ssl=self.config.ssl_mode)
            try:
                await bootstrap.execute("CREATE EXTENSION IF NOT EXISTS vector")
            finally:
                await bootstrap.close()

            self.pool = await asyncpg.create_pool(
                dsn=self.config.url,
                min_size=1,
                max_size=self.config.pool_size,
                init=register_vector,
                ssl=self.config.ssl_mode,
            )
        except Exception as e:
            await self._release()
            raise StorageConnectionError(self.config.url, e) from e

        try:
            await self._create_schema()
        except Exception:
            await self._release()
            raise

        self._initialized = True
        logger.info(
            f"PostgreSQL backend initialized: {mask_url(self.config.url)} "
            f"(pool: {self.config.pool_size})"
        )

    async def _release(self) -> None:
        if self.pool is not None:
            await self.pool.close()
            self.pool = None
        self._initialized = False

    async def close(self) -> None:
        """Close the connection pool."""
        await self._release()

    # =========================================================================
    # Schema Management
    # =========================================================================

    async def _create_schema(self) -> None:
        assert self.pool is not None
        dims = self.config.vector_dimensions

        async with self.pool.acquire() as conn:
            await conn.execute(f"""
                CREATE TABLE IF NOT EXISTS exchanges (
                    id TEXT PRIMARY KEY,
                    project TEXT NOT NULL,
                    timestamp TIMESTAMPTZ NOT NULL,
                    user_message TEXT NOT NULL,
                    assistant_message TEXT NOT NULL,
                    archive_path TEXT NOT NULL,
                    line_start INTEGER NOT NULL,
                    line_end INTEGER NOT NULL,
                    embedding vector({dims}),
                    last_indexed BIGINT,
                    parent_uuid TEXT,
                    is_sidechain BOOLEAN DEFAULT FALSE,
                    session_id TEXT,
                    cwd TEXT,
                    git_branch TEXT,
                    claude_version TEXT,
                    thinking_level TEXT,
                    thinking_disabled BOOLEAN,
                    thinking_triggers TEXT
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS tool_calls (
                    id TEXT PRIMARY KEY,
                    exchange_id TEXT NOT NULL REFERENCES exchanges(id) ON DELETE CASCADE,
                    tool_name TEXT NOT NULL,
                    tool_input TEXT,
                    tool_result TEXT,
                    is_error BOOLEAN DEFAULT FALSE,
                    timestamp TIMESTAMPTZ NOT NULL
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS synced_files (
                    source_path TEXT PRIMARY KEY,
                    mtime_ms BIGINT NOT NULL,
                    size_bytes BIGINT NOT NULL,
                    last_synced TIMESTAMPTZ DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS summaries (
                    session_id TEXT PRIMARY KEY,
                    project TEXT NOT NULL,
                    summary TEXT NOT NULL,
                    created_at TIMESTAMPTZ DEFAULT NOW()
                )
            """)

            await self._migrate_schema(conn)

            for statement in _INDEXES:
                await conn.execute(statement)

    async def _migrate_schema(self, conn: asyncpg.Connection) -> None:
        """Add any exchanges column an older database is missing."""
        rows = await conn.fetch("""
            SELECT column_name FROM information_schema.columns
            WHERE table_schema = current_schema() AND table_name = 'exchanges'
        """)
        existing = {row["column_name"] for row in rows}

        for column in EXCHANGE_COLUMN_MIGRATIONS:
            if column in existing:
                continue
            logger.info(f"Migrating schema: adding {column} column")
            try:
                await conn.execute(
                    f"ALTER TABLE exchanges ADD COLUMN IF NOT EXISTS "
                    f"{column} {_MIGRATION_COLUMN_TYPES[column]}"
                )
            except Exception as e:
                raise SchemaMigrationError(column, e) from e

    # =========================================================================
    # Exchange Operations
    # =========================================================================

    async def insert_exchange(
        self,
        exchange: Exchange,
        embedding: Sequence[float],
        tool_names: Sequence[str] | None = None,
    ) -> None:
        """Upsert an exchange and replace its tool calls in one transaction."""
        pool = self._require_pool("insert_exchange")
        self._check_dimensions(embedding)

        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO exchanges (
                        id, project, timestamp, user_message, assistant_message,
                        archive_path, line_start, line_end, embedding, last_indexed,
                        parent_uuid, is_sidechain, session_id, cwd, git_branch,
                        claude_version, thinking_level, thinking_disabled, thinking_triggers
                    ) VALUES (
                        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10,
                        $11, $12, $13, $14, $15, $16, $17, $18, $19
                    )
                    ON CONFLICT (id) DO UPDATE SET
                        project = EXCLUDED.project,
                        timestamp = EXCLUDED.timestamp,
                        user_message = EXCLUDED.user_message,
                        assistant_message = EXCLUDED.assistant_message,
                        archive_path = EXCLUDED.archive_path,
                        line_start = EXCLUDED.line_start,
                        line_end = EXCLUDED.line_end,
                        embedding = EXCLUDED.embedding,
                        last_indexed = EXCLUDED.last_indexed,
                        parent_uuid = EXCLUDED.parent_uuid,
                        is_sidechain = EXCLUDED.is_sidechain,
                        session_id = EXCLUDED.session_id,
                        cwd = EXCLUDED.cwd,
                        git_branch = EXCLUDED.git_branch,
                        claude_version = EXCLUDED.claude_version,
                        thinking_level = EXCLUDED.thinking_level,
                        thinking_disabled = EXCLUDED.thinking_disabled,
                        thinking_triggers = EXCLUDED.thinking_triggers
                    """,
                    exchange.id,
                    exchange.project,
                    parse_timestamp(exchange.timestamp),
                    exchange.user_message,
                    exchange.assistant_message,
                    exchange.archive_path,
                    exchange.line_start,
                    exchange.line_end,
                    np.asarray(embedding, dtype=np.float32),
                    epoch_millis(),
                    exchange.parent_uuid,
                    exchange.is_sidechain,
                    exchange.session_id,
                    exchange.cwd,
                    exchange.git_branch,
                    exchange.claude_version,
                    exchange.thinking_level,
                    exchange.thinking_disabled,
                    exchange.thinking_triggers,
                )

                await conn.execute("DELETE FROM tool_calls WHERE exchange_id = $1", exchange.id)
                for tool_call in exchange.tool_calls:
                    await conn.execute(
                        """
                        INSERT INTO tool_calls (
                            id, exchange_id, tool_name, tool_input, tool_result, is_error, timestamp
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                        ON CONFLICT (id) DO UPDATE SET
                            exchange_id = EXCLUDED.exchange_id,
                            tool_name = EXCLUDED.tool_name,
                            tool_input = EXCLUDED.tool_input,
                            tool_result = EXCLUDED.tool_result,
                            is_error = EXCLUDED.is_error,
                            timestamp = EXCLUDED.timestamp
                        """,
                        tool_call.id,
                        exchange.id,
                        tool_call.tool_name,
                        json.dumps(tool_call.tool_input)
                        if tool_call.tool_input is not None
                        else None,
                        tool_call.tool_result,
                        tool_call.is_error,
                        parse_timestamp(tool_call.timestamp),
                    )

    async def delete_exchange(self, exchange_id: str) -> None:
        """Delete an exchange; tool calls go with it through the cascade."""
        pool = self._require_pool("delete_exchange")
        await pool.execute("DELETE FROM exchanges WHERE id = $1", exchange_id)

    async def get_all_exchanges(self) -> list[tuple[str, str]]:
        pool = self._require_pool("get_all_exchanges")
        rows = await pool.fetch("SELECT id, archive_path FROM exchanges")
        return [(row["id"], row["archive_path"]) for row in rows]

    async def get_file_last_indexed(self, archive_path: str) -> int | None:
        pool = self._require_pool("get_file_last_indexed")
        return await pool.fetchval(
            "SELECT MAX(last_indexed) FROM exchanges WHERE archive_path = $1",
            archive_path,
        )

    async def has_exchanges_for_archive(self, archive_path: str) -> bool:
        pool = self._require_pool("has_exchanges_for_archive")
        row = await pool.fetchrow(
            "SELECT 1 FROM exchanges WHERE archive_path = $1 LIMIT 1",
            archive_path,
        )
        return row is not None

    # =========================================================================
    # Search
    # =========================================================================

    async def search_by_vector(
        self,
        embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """HNSW nearest-neighbour search by L2 distance."""
        pool = self._require_pool("search_by_vector")
        self._check_dimensions(embedding)
        options = options or SearchOptions()

        clauses, time_params = _time_clauses(TimeWindow.from_options(options), first_param=2)
        where_parts = ["e.embedding IS NOT NULL", *clauses]
        limit_param = 2 + len(time_params)

        query = f"""
            SELECT {_SELECT_COLUMNS}, e.embedding <-> $1 AS distance
            FROM exchanges AS e
            WHERE {' AND '.join(where_parts)}
            ORDER BY distance ASC, e.id ASC
            LIMIT ${limit_param}
        """
        rows = await pool.fetch(
            query, np.asarray(embedding, dtype=np.float32), *time_params, options.limit
        )

        return [
            SearchResult(exchange=_row_to_exchange(row), distance=float(row["distance"]))
            for row in rows
        ]

    async def search_by_text(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """ILIKE substring match on either message column."""
        pool = self._require_pool("search_by_text")
        options = options or SearchOptions()

        clauses, time_params = _time_clauses(TimeWindow.from_options(options), first_param=2)
        where_parts = [
            "(e.user_message ILIKE $1 ESCAPE '\\' OR e.assistant_message ILIKE $1 ESCAPE '\\')",
            *clauses,
        ]
        limit_param = 2 + len(time_params)

        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM exchanges AS e
            WHERE {' AND '.join(where_parts)}
            ORDER BY e.timestamp DESC, e.id DESC
            LIMIT ${limit_param}
        """
        pattern = f"%{escape_like(query)}%"
        rows = await pool.fetch(sql, pattern, *time_params, options.limit)

        return [SearchResult(exchange=_row_to_exchange(row), distance=0.0) for row in rows]

    # =========================================================================
    # Analytics & Passthrough
    # =========================================================================

    async def get_stats(self) -> DatabaseStats:
        pool = self._require_pool("get_stats")

        async with pool.acquire() as conn:
            totals = await conn.fetchrow("""
                SELECT
                    COUNT(DISTINCT archive_path) AS total_conversations,
                    COUNT(*) AS total_exchanges,
                    COUNT(DISTINCT project) AS project_count,
                    MIN(timestamp) AS earliest,
                    MAX(timestamp) AS latest
                FROM exchanges
            """)
            project_rows = await conn.fetch("""
                SELECT project, COUNT(DISTINCT archive_path) AS count
                FROM exchanges
                GROUP BY project
                ORDER BY count DESC, project ASC
                LIMIT 10
            """)
            path_rows = await conn.fetch("SELECT DISTINCT archive_path FROM exchanges")

        date_range = None
        if totals["earliest"] is not None:
            date_range = (format_timestamp(totals["earliest"]), format_timestamp(totals["latest"]))

        return DatabaseStats(
            total_conversations=totals["total_conversations"],
            total_exchanges=totals["total_exchanges"],
            project_count=totals["project_count"],
            date_range=date_range,
            top_projects=[ProjectCount(row["project"], row["count"]) for row in project_rows],
            archive_paths=[row["archive_path"] for row in path_rows],
        )

    async def raw_query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        pool = self._require_pool("raw_query")
        rows = await pool.fetch(sql, *params)
        return [dict(row) for row in rows]

    async def raw_execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        pool = self._require_pool("raw_execute")
        status = await pool.execute(sql, *params)
        return _rows_affected(status)

    # =========================================================================
    # Sync State (SyncStateStore)
    # =========================================================================

    async def get_synced_file(self, source_path: str) -> SyncRecord | None:
        pool = self._require_pool("get_synced_file")
        row = await pool.fetchrow(
            """
            SELECT source_path, mtime_ms, size_bytes, last_synced
            FROM synced_files WHERE source_path = $1
            """,
            source_path,
        )
        if row is None:
            return None
        return SyncRecord(
            source_path=row["source_path"],
            mtime_ms=row["mtime_ms"],
            size_bytes=row["size_bytes"],
            last_synced=format_timestamp(row["last_synced"]) if row["last_synced"] else None,
        )

    async def set_synced_file(self, source_path: str, mtime_ms: float, size_bytes: int) -> None:
        pool = self._require_pool("set_synced_file")
        await pool.execute(
            """
            INSERT INTO synced_files (source_path, mtime_ms, size_bytes, last_synced)
            VALUES ($1, $2, $3, NOW())
            ON CONFLICT (source_path) DO UPDATE SET
                mtime_ms = EXCLUDED.mtime_ms,
                size_bytes = EXCLUDED.size_bytes,
                last_synced = NOW()
            """,
            source_path,
            int(mtime_ms),
            size_bytes,
        )

    async def needs_sync(self, source_path: str, mtime_ms: float, size_bytes: int) -> bool:
        """A file needs sync when unseen, or when its mtime or size changed."""
        existing = await self.get_synced_file(source_path)
        if existing is None:
            return True
        return existing.mtime_ms != int(mtime_ms) or existing.size_bytes != size_bytes

    # =========================================================================
    # Summaries (SummaryStore)
    # =========================================================================

    async def get_summary_record(self, session_id: str) -> SummaryRecord | None:
        pool = self._require_pool("get_summary_record")
        row = await pool.fetchrow(
            """
            SELECT session_id, project, summary, created_at
            FROM summaries WHERE session_id = $1
            """,
            session_id,
        )
        if row is None:
            return None
        return SummaryRecord(
            session_id=row["session_id"],
            project=row["project"],
            summary=row["summary"],
            created_at=format_timestamp(row["created_at"]) if row["created_at"] else None,
        )

    async def get_summary(self, session_id: str) -> str | None:
        record = await self.get_summary_record(session_id)
        return record.summary if record else None

    async def has_summary(self, session_id: str) -> bool:
        pool = self._require_pool("has_summary")
        row = await pool.fetchrow("SELECT 1 FROM summaries WHERE session_id = $1", session_id)
        return row is not None

    async def set_summary(self, session_id: str, project: str, summary: str) -> None:
        pool = self._require_pool("set_summary")
        await pool.execute(
            """
            INSERT INTO summaries (session_id, project, summary, created_at)
            VALUES ($1, $2, $3, NOW())
            ON CONFLICT (session_id) DO UPDATE SET
                project = EXCLUDED.project,
                summary = EXCLUDED.summary,
                created_at = NOW()
            """,
            session_id,
            project,
            summary,
        )

    async def get_sessions_needing_summaries(self, limit: int = 10) -> list[tuple[str, str]]:
        pool = self._require_pool("get_sessions_needing_summaries")
        rows = await pool.fetch(
            """
            SELECT DISTINCT e.session_id, e.project
            FROM exchanges e
            LEFT JOIN summaries s ON e.session_id = s.session_id
            WHERE e.session_id IS NOT NULL AND s.session_id IS NULL
            ORDER BY e.session_id
            LIMIT $1
            """,
            limit,
        )
        return [(row["session_id"], row["project"]) for row in rows]
