"""
SQLite storage backend with vector search support.

Uses the sqlite-vec extension (``vec0`` virtual table) for nearest-neighbour
search over a local single-file database. This is the default backend and
keeps a local archive of conversation files next to it.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiosqlite
import numpy as np
import sqlite_vec

from ..exceptions import (
    SchemaMigrationError,
    SourceNotFoundError,
    StorageConnectionError,
    StorageError,
    StorageNotInitializedError,
)
from ..models import (
    DatabaseStats,
    Exchange,
    ProjectCount,
    SearchOptions,
    SearchResult,
    TimeWindow,
    epoch_millis,
)
from .base import (
    DEFAULT_VECTOR_DIMENSIONS,
    EXCHANGE_COLUMN_MIGRATIONS,
    EXCHANGE_READ_COLUMNS,
    StorageBackend,
)

logger = logging.getLogger(__name__)

# Column types for the additive migrations in base.EXCHANGE_COLUMN_MIGRATIONS
_MIGRATION_COLUMN_TYPES = {
    "last_indexed": "INTEGER",
    "parent_uuid": "TEXT",
    "is_sidechain": "BOOLEAN DEFAULT 0",
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
)

_SELECT_COLUMNS = ", ".join(f"e.{col}" for col in EXCHANGE_READ_COLUMNS)

# Largest k sqlite-vec accepts in a KNN query
MAX_KNN_K = 4096


def serialize_embedding(embedding: Sequence[float]) -> bytes:
    """Pack an embedding as little-endian float32, the format vec0 stores."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def deserialize_embedding(blob: bytes) -> list[float]:
    """Unpack a vec0 float32 blob."""
    return np.frombuffer(blob, dtype=np.float32).tolist()


def _contains_casefold(haystack: str | None, needle: str | None) -> bool:
    if haystack is None or needle is None:
        return False
    return needle.casefold() in haystack.casefold()


def _row_to_exchange(row: Any) -> Exchange:
    return Exchange(
        id=row["id"],
        project=row["project"],
        timestamp=row["timestamp"],
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


def _time_clauses(window: TimeWindow) -> tuple[list[str], list[Any]]:
    """Build julianday() comparisons so differently formatted timestamps compare correctly."""
    clauses: list[str] = []
    params: list[Any] = []
    if window.start is not None:
        clauses.append("julianday(e.timestamp) >= julianday(?)")
        params.append(window.start.isoformat())
    if window.end is not None:
        op = "<" if window.end_exclusive else "<="
        clauses.append(f"julianday(e.timestamp) {op} julianday(?)")
        params.append(window.end.isoformat())
    return clauses, params


@dataclass
class SQLiteConfig:
    """Configuration for SQLite storage."""

    db_path: str | Path = ":memory:"
    vector_dimensions: int = DEFAULT_VECTOR_DIMENSIONS
    read_only: bool = False

    @classmethod
    def from_env(cls) -> SQLiteConfig:
        """Create config from environment variables."""
        from ..paths import get_db_path

        dimensions_str = os.environ.get(
            "EPISODIC_MEMORY_VECTOR_DIMENSIONS", str(DEFAULT_VECTOR_DIMENSIONS)
        )
        return cls(db_path=get_db_path(), vector_dimensions=int(dimensions_str))


class SQLiteBackend(StorageBackend):
    """
    SQLite storage backend with vector similarity search.

    Features:
    - Single file database in WAL mode
    - sqlite-vec ``vec0`` table keyed by exchange id
    - Per-exchange transactions
    - Read-only mode for migration sources
    """

    name = "sqlite"

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.conn: aiosqlite.Connection | None = None
        self._initialized = False
        # One connection means one transaction; writers take turns
        self._write_lock = asyncio.Lock()

    @classmethod
    async def create(cls, config: SQLiteConfig | None = None) -> SQLiteBackend:
        """Create and initialize SQLite backend."""
        if config is None:
            config = SQLiteConfig.from_env()

        backend = cls(config)
        await backend.initialize()
        return backend

    @property
    def vector_dimensions(self) -> int:
        return self.config.vector_dimensions

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None or not self._initialized:
            raise StorageNotInitializedError(operation)
        return self.conn

    async def initialize(self) -> None:
        """Open the database, load sqlite-vec and bootstrap the schema."""
        if self._initialized:
            return

        db_path = str(self.config.db_path)
        try:
            self.conn = await self._connect(db_path)
            self.conn.row_factory = aiosqlite.Row

            # The extension lives and dies with this connection
            await self.conn.enable_load_extension(True)
            await self.conn.load_extension(sqlite_vec.loadable_path())
            await self.conn.enable_load_extension(False)

            await self.conn.create_function(
                "contains_ci", 2, _contains_casefold, deterministic=True
            )

            if not self.config.read_only:
                await self._create_schema()

            self._initialized = True
            logger.info(
                f"SQLite backend initialized: {db_path}"
                + (" (read-only)" if self.config.read_only else "")
            )

        except StorageError:
            await self._release()
            raise
        except Exception as e:
            await self._release()
            raise StorageConnectionError(db_path, e) from e

    async def _connect(self, db_path: str) -> aiosqlite.Connection:
        if self.config.read_only:
            path = Path(db_path)
            if not path.exists():
                raise SourceNotFoundError(db_path)
            return await aiosqlite.connect(f"file:{path.as_posix()}?mode=ro", uri=True)

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return await aiosqlite.connect(db_path)

    async def _release(self) -> None:
        if self.conn is not None:
            await self.conn.close()
            self.conn = None
        self._initialized = False

    async def close(self) -> None:
        """Close the connection (and with it the vector extension)."""
        await self._release()

    # =========================================================================
    # Schema Management
    # =========================================================================

    async def _create_schema(self) -> None:
        assert self.conn is not None

        await self.conn.execute("PRAGMA foreign_keys = ON")
        if str(self.config.db_path) != ":memory:":
            await self.conn.execute("PRAGMA journal_mode = WAL")

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS exchanges (
                id TEXT PRIMARY KEY,
                project TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                user_message TEXT NOT NULL,
                assistant_message TEXT NOT NULL,
                archive_path TEXT NOT NULL,
                line_start INTEGER NOT NULL,
                line_end INTEGER NOT NULL,
                embedding BLOB,
                last_indexed INTEGER,
                parent_uuid TEXT,
                is_sidechain BOOLEAN DEFAULT 0,
                session_id TEXT,
                cwd TEXT,
                git_branch TEXT,
                claude_version TEXT,
                thinking_level TEXT,
                thinking_disabled BOOLEAN,
                thinking_triggers TEXT
            )
        """)

        await self.conn.execute("""
            CREATE TABLE IF NOT EXISTS tool_calls (
                id TEXT PRIMARY KEY,
                exchange_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                tool_input TEXT,
                tool_result TEXT,
                is_error BOOLEAN DEFAULT 0,
                timestamp TEXT NOT NULL,
                FOREIGN KEY (exchange_id) REFERENCES exchanges(id) ON DELETE CASCADE
            )
        """)

        await self.conn.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS vec_exchanges USING vec0(
                id TEXT PRIMARY KEY,
                embedding FLOAT[{self.config.vector_dimensions}]
            )
        """)

        await self._migrate_schema()

        for statement in _INDEXES:
            await self.conn.execute(statement)

        await self.conn.commit()

    async def _get_exchange_columns(self) -> set[str]:
        assert self.conn is not None
        async with self.conn.execute(
            "SELECT name FROM pragma_table_info('exchanges')"
        ) as cursor:
            rows = await cursor.fetchall()
        return {row[0] for row in rows}

    async def _migrate_schema(self) -> None:
        """Add any exchanges column an older database is missing."""
        assert self.conn is not None
        existing = await self._get_exchange_columns()

        migrated = False
        for column in EXCHANGE_COLUMN_MIGRATIONS:
            if column in existing:
                continue
            logger.info(f"Migrating schema: adding {column} column")
            try:
                await self.conn.execute(
                    f"ALTER TABLE exchanges ADD COLUMN {column} {_MIGRATION_COLUMN_TYPES[column]}"
                )
            except Exception as e:
                raise SchemaMigrationError(column, e) from e
            migrated = True

        if migrated:
            logger.info("Schema migration complete")

    # =========================================================================
    # Exchange Operations
    # =========================================================================

    async def insert_exchange(
        self,
        exchange: Exchange,
        embedding: Sequence[float],
        tool_names: Sequence[str] | None = None,
    ) -> None:
        """Upsert an exchange, its vector and its tool calls in one transaction."""
        conn = self._require_conn("insert_exchange")
        self._check_dimensions(embedding)

        async with self._write_lock:
            try:
                await self._write_exchange(conn, exchange, embedding)
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def _write_exchange(
        self,
        conn: aiosqlite.Connection,
        exchange: Exchange,
        embedding: Sequence[float],
    ) -> None:
        await conn.execute(
            """
            INSERT INTO exchanges (
                id, project, timestamp, user_message, assistant_message,
                archive_path, line_start, line_end, last_indexed,
                parent_uuid, is_sidechain, session_id, cwd, git_branch,
                claude_version, thinking_level, thinking_disabled, thinking_triggers
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                project = excluded.project,
                timestamp = excluded.timestamp,
                user_message = excluded.user_message,
                assistant_message = excluded.assistant_message,
                archive_path = excluded.archive_path,
                line_start = excluded.line_start,
                line_end = excluded.line_end,
                last_indexed = excluded.last_indexed,
                parent_uuid = excluded.parent_uuid,
                is_sidechain = excluded.is_sidechain,
                session_id = excluded.session_id,
                cwd = excluded.cwd,
                git_branch = excluded.git_branch,
                claude_version = excluded.claude_version,
                thinking_level = excluded.thinking_level,
                thinking_disabled = excluded.thinking_disabled,
                thinking_triggers = excluded.thinking_triggers
            """,
            (
                exchange.id,
                exchange.project,
                exchange.timestamp,
                exchange.user_message,
                exchange.assistant_message,
                exchange.archive_path,
                exchange.line_start,
                exchange.line_end,
                epoch_millis(),
                exchange.parent_uuid,
                1 if exchange.is_sidechain else 0,
                exchange.session_id,
                exchange.cwd,
                exchange.git_branch,
                exchange.claude_version,
                exchange.thinking_level,
                1 if exchange.thinking_disabled else 0,
                exchange.thinking_triggers,
            ),
        )

        # vec0 tables don't support REPLACE
        await conn.execute("DELETE FROM vec_exchanges WHERE id = ?", (exchange.id,))
        await conn.execute(
            "INSERT INTO vec_exchanges (id, embedding) VALUES (?, ?)",
            (exchange.id, serialize_embedding(embedding)),
        )

        await conn.execute("DELETE FROM tool_calls WHERE exchange_id = ?", (exchange.id,))
        for tool_call in exchange.tool_calls:
            await conn.execute(
                """
                INSERT INTO tool_calls (
                    id, exchange_id, tool_name, tool_input, tool_result, is_error, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    exchange_id = excluded.exchange_id,
                    tool_name = excluded.tool_name,
                    tool_input = excluded.tool_input,
                    tool_result = excluded.tool_result,
                    is_error = excluded.is_error,
                    timestamp = excluded.timestamp
                """,
                (
                    tool_call.id,
                    exchange.id,
                    tool_call.tool_name,
                    json.dumps(tool_call.tool_input)
                    if tool_call.tool_input is not None
                    else None,
                    tool_call.tool_result,
                    1 if tool_call.is_error else 0,
                    tool_call.timestamp,
                ),
            )

    async def delete_exchange(self, exchange_id: str) -> None:
        """Delete an exchange with its vector and tool calls."""
        conn = self._require_conn("delete_exchange")

        async with self._write_lock:
            try:
                await conn.execute("DELETE FROM vec_exchanges WHERE id = ?", (exchange_id,))
                # Databases created before the cascade was declared still need this
                await conn.execute(
                    "DELETE FROM tool_calls WHERE exchange_id = ?", (exchange_id,)
                )
                await conn.execute("DELETE FROM exchanges WHERE id = ?", (exchange_id,))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise

    async def get_all_exchanges(self) -> list[tuple[str, str]]:
        conn = self._require_conn("get_all_exchanges")
        async with conn.execute("SELECT id, archive_path FROM exchanges") as cursor:
            rows = await cursor.fetchall()
        return [(row["id"], row["archive_path"]) for row in rows]

    async def get_file_last_indexed(self, archive_path: str) -> int | None:
        conn = self._require_conn("get_file_last_indexed")
        async with conn.execute(
            "SELECT MAX(last_indexed) FROM exchanges WHERE archive_path = ?",
            (archive_path,),
        ) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def has_exchanges_for_archive(self, archive_path: str) -> bool:
        conn = self._require_conn("has_exchanges_for_archive")
        async with conn.execute(
            "SELECT 1 FROM exchanges WHERE archive_path = ? LIMIT 1",
            (archive_path,),
        ) as cursor:
            row = await cursor.fetchone()
        return row is not None

    # =========================================================================
    # Search
    # =========================================================================

    async def search_by_vector(
        self,
        embedding: Sequence[float],
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """KNN over vec_exchanges, joined back to exchanges, then time-filtered."""
        conn = self._require_conn("search_by_vector")
        self._check_dimensions(embedding)
        options = options or SearchOptions()

        clauses, time_params = _time_clauses(TimeWindow.from_options(options))
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        query = f"""
            SELECT {_SELECT_COLUMNS}, knn.distance AS distance
            FROM (
                SELECT id, distance
                FROM vec_exchanges
                WHERE embedding MATCH ? AND k = ?
            ) AS knn
            JOIN exchanges AS e ON e.id = knn.id
            {where_clause}
            ORDER BY knn.distance ASC, e.id ASC
        """
        k = min(options.limit, MAX_KNN_K)
        if k < options.limit:
            logger.debug(f"Vector search limit {options.limit} capped at {MAX_KNN_K}")
        params = [serialize_embedding(embedding), k, *time_params]

        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()

        return [
            SearchResult(exchange=_row_to_exchange(row), distance=float(row["distance"]))
            for row in rows
        ]

    async def search_by_text(
        self,
        query: str,
        options: SearchOptions | None = None,
    ) -> list[SearchResult]:
        """Case-insensitive substring match on either message column."""
        conn = self._require_conn("search_by_text")
        options = options or SearchOptions()

        clauses, time_params = _time_clauses(TimeWindow.from_options(options))
        where_parts = [
            "(contains_ci(e.user_message, ?) OR contains_ci(e.assistant_message, ?))",
            *clauses,
        ]

        sql = f"""
            SELECT {_SELECT_COLUMNS}
            FROM exchanges AS e
            WHERE {' AND '.join(where_parts)}
            ORDER BY julianday(e.timestamp) DESC, e.id DESC
            LIMIT ?
        """
        params = [query, query, *time_params, options.limit]

        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()

        return [SearchResult(exchange=_row_to_exchange(row), distance=0.0) for row in rows]

    # =========================================================================
    # Analytics & Passthrough
    # =========================================================================

    async def _scalar(self, conn: aiosqlite.Connection, sql: str) -> Any:
        async with conn.execute(sql) as cursor:
            row = await cursor.fetchone()
        return row[0] if row else None

    async def get_stats(self) -> DatabaseStats:
        conn = self._require_conn("get_stats")

        total_conversations = await self._scalar(
            conn, "SELECT COUNT(DISTINCT archive_path) FROM exchanges"
        )
        total_exchanges = await self._scalar(conn, "SELECT COUNT(*) FROM exchanges")
        project_count = await self._scalar(conn, "SELECT COUNT(DISTINCT project) FROM exchanges")

        async with conn.execute(
            "SELECT MIN(timestamp) AS earliest, MAX(timestamp) AS latest FROM exchanges"
        ) as cursor:
            range_row = await cursor.fetchone()
        date_range = None
        if range_row is not None and range_row["earliest"]:
            date_range = (range_row["earliest"], range_row["latest"])

        async with conn.execute("""
            SELECT project, COUNT(DISTINCT archive_path) AS count
            FROM exchanges
            GROUP BY project
            ORDER BY count DESC, project ASC
            LIMIT 10
        """) as cursor:
            project_rows = await cursor.fetchall()

        async with conn.execute("SELECT DISTINCT archive_path FROM exchanges") as cursor:
            path_rows = await cursor.fetchall()

        return DatabaseStats(
            total_conversations=total_conversations or 0,
            total_exchanges=total_exchanges or 0,
            project_count=project_count or 0,
            date_range=date_range,
            top_projects=[ProjectCount(row["project"], row["count"]) for row in project_rows],
            archive_paths=[row["archive_path"] for row in path_rows],
        )

    async def raw_query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        conn = self._require_conn("raw_query")
        async with conn.execute(sql, tuple(params)) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def raw_execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        conn = self._require_conn("raw_execute")

        async with self._write_lock:
            try:
                cursor = await conn.execute(sql, tuple(params))
                await conn.commit()
            except Exception:
                await conn.rollback()
                raise
        return cursor.rowcount
