"""
SQLite to PostgreSQL migrator.

Reads exchanges, vectors and tool calls straight from a local SQLite index
(opened read-only) and upserts them through the target backend. Rows are
independent: a failure is counted and the run continues, and rows written
before an interruption stay written.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from ..backends.base import StorageBackend
from ..backends.postgres import PostgresBackend, PostgresConfig
from ..backends.sqlite import SQLiteBackend, SQLiteConfig, deserialize_embedding
from ..exceptions import SourceNotFoundError
from ..logging_utils import StorageLoggerAdapter, get_storage_logger
from ..models import Exchange, ToolCall
from ..paths import get_db_path
from .types import MigrationReport, RowResult, RowStatus, VerificationResult

logger = StorageLoggerAdapter(get_storage_logger("migration"), {"component": "migrator"})

ProgressCallback = Callable[[MigrationReport], None]


def _parse_tool_input(raw: Any) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return raw


def _exchange_from_row(row: dict[str, Any], tool_rows: list[dict[str, Any]]) -> Exchange:
    """Build an Exchange from a source row; columns an old database lacks default."""
    return Exchange(
        id=row["id"],
        project=row["project"],
        timestamp=row["timestamp"],
        user_message=row["user_message"],
        assistant_message=row["assistant_message"],
        archive_path=row["archive_path"],
        line_start=row["line_start"],
        line_end=row["line_end"],
        parent_uuid=row.get("parent_uuid"),
        is_sidechain=bool(row.get("is_sidechain")),
        session_id=row.get("session_id"),
        cwd=row.get("cwd"),
        git_branch=row.get("git_branch"),
        claude_version=row.get("claude_version"),
        thinking_level=row.get("thinking_level"),
        thinking_disabled=bool(row.get("thinking_disabled")),
        thinking_triggers=row.get("thinking_triggers"),
        tool_calls=[
            ToolCall(
                id=tool["id"],
                exchange_id=row["id"],
                tool_name=tool["tool_name"],
                timestamp=tool["timestamp"],
                tool_input=_parse_tool_input(tool.get("tool_input")),
                tool_result=tool.get("tool_result"),
                is_error=bool(tool.get("is_error")),
            )
            for tool in tool_rows
        ],
    )


async def _has_table(source: SQLiteBackend, table: str) -> bool:
    rows = await source.raw_query(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
    )
    return bool(rows)


def _open_source(source_path: Path) -> SQLiteBackend:
    if not source_path.exists():
        raise SourceNotFoundError(str(source_path))
    return SQLiteBackend(SQLiteConfig(db_path=source_path, read_only=True))


class SQLiteToPostgresMigrator:
    """Copies a SQLite index into another backend.

    The target is normally a PostgresBackend, but any StorageBackend works.
    In a dry run the target is never touched and may be None.
    """

    def __init__(
        self,
        source_path: str | Path,
        target: StorageBackend | None,
        batch_size: int = 100,
        dry_run: bool = False,
    ) -> None:
        """Initialize the migrator.

        Args:
            source_path: SQLite database to read
            target: Initialized backend to write into
            batch_size: Rows per progress report
            dry_run: Read and count without writing
        """
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        if target is None and not dry_run:
            raise ValueError("A target backend is required unless dry_run is set")

        self.source_path = Path(source_path)
        self.target = target
        self.batch_size = batch_size
        self.dry_run = dry_run

    async def run(self, on_progress: ProgressCallback | None = None) -> MigrationReport:
        """Migrate every exchange of the source, oldest first.

        Raises:
            SourceNotFoundError: If the source database does not exist
        """
        report = MigrationReport(dry_run=self.dry_run, started_at=datetime.now(UTC))

        async with _open_source(self.source_path) as source:
            rows = await source.raw_query("SELECT * FROM exchanges ORDER BY timestamp")
            report.total = len(rows)
            has_tool_calls = await _has_table(source, "tool_calls")

            logger.info(
                f"Migrating {report.total} exchanges from {self.source_path}"
                + (" (dry run)" if self.dry_run else "")
            )

            for start in range(0, len(rows), self.batch_size):
                for row in rows[start : start + self.batch_size]:
                    result = await self.migrate_row(source, row, has_tool_calls)
                    report.add_result(result)

                logger.info(report.format_progress())
                if on_progress:
                    on_progress(report)

        report.completed_at = datetime.now(UTC)
        logger.info(
            f"Migration complete: {report.migrated} migrated, "
            f"{report.skipped} skipped, {report.errors} errors"
        )
        return report

    async def migrate_row(
        self,
        source: SQLiteBackend,
        row: dict[str, Any],
        has_tool_calls: bool = True,
    ) -> RowResult:
        """Migrate one exchange row; never raises."""
        exchange_id = row["id"]
        try:
            vectors = await source.raw_query(
                "SELECT embedding FROM vec_exchanges WHERE id = ?", (exchange_id,)
            )
            if not vectors or vectors[0]["embedding"] is None:
                logger.warning(f"Skipping {exchange_id}: no embedding")
                return RowResult(exchange_id, RowStatus.SKIPPED, reason="no embedding")

            embedding = deserialize_embedding(vectors[0]["embedding"])

            tool_rows: list[dict[str, Any]] = []
            if has_tool_calls:
                tool_rows = await source.raw_query(
                    "SELECT * FROM tool_calls WHERE exchange_id = ?", (exchange_id,)
                )

            exchange = _exchange_from_row(row, tool_rows)

            if not self.dry_run:
                assert self.target is not None
                await self.target.insert_exchange(exchange, embedding, exchange.tool_names)

            return RowResult(exchange_id, RowStatus.MIGRATED, tool_calls=len(tool_rows))

        except Exception as e:
            logger.error(f"Error migrating {exchange_id}: {e}")
            return RowResult(exchange_id, RowStatus.FAILED, reason=str(e))

    async def verify(self) -> VerificationResult:
        """Compare source and target exchange counts."""
        if self.target is None:
            raise ValueError("Verification needs a target backend")
        return await verify_against(self.source_path, self.target)


async def verify_against(source_path: str | Path, target: StorageBackend) -> VerificationResult:
    """Compare a SQLite source with an initialized target backend.

    Raises:
        SourceNotFoundError: If the source database does not exist
    """
    async with _open_source(Path(source_path)) as source:
        exchange_rows = await source.raw_query("SELECT COUNT(*) AS count FROM exchanges")
        tool_rows = [{"count": 0}]
        if await _has_table(source, "tool_calls"):
            tool_rows = await source.raw_query("SELECT COUNT(*) AS count FROM tool_calls")

    target_stats = await target.get_stats()
    result = VerificationResult(
        source_exchanges=exchange_rows[0]["count"],
        source_tool_calls=tool_rows[0]["count"],
        target_exchanges=target_stats.total_exchanges,
    )

    logger.info(
        f"Verification: source {result.source_exchanges} exchanges "
        f"({result.source_tool_calls} tool calls), target {result.target_exchanges} exchanges"
    )
    if result.passed:
        logger.info("Verification passed")
    else:
        logger.warning(f"Verification failed. Missing: {result.discrepancy}")
    return result


async def migrate_to_postgres(
    postgres_url: str,
    batch_size: int = 100,
    dry_run: bool = False,
    sqlite_path: str | Path | None = None,
    on_progress: ProgressCallback | None = None,
    config: PostgresConfig | None = None,
) -> MigrationReport:
    """Migrate the local SQLite index into PostgreSQL.

    In a dry run no PostgreSQL connection is opened.

    Args:
        postgres_url: Target connection URL
        batch_size: Rows per progress report
        dry_run: Read and count without writing
        sqlite_path: Source database (defaults to the configured index)
        on_progress: Called with the running report after each batch
        config: Extra PostgreSQL settings (pool size, ssl, dimensions)
    """
    source_path = Path(sqlite_path) if sqlite_path is not None else get_db_path()
    if not source_path.exists():
        raise SourceNotFoundError(str(source_path))

    if dry_run:
        migrator = SQLiteToPostgresMigrator(source_path, None, batch_size, dry_run=True)
        return await migrator.run(on_progress)

    pg_config = replace(config, url=postgres_url) if config else PostgresConfig(url=postgres_url)
    async with PostgresBackend(pg_config) as target:
        migrator = SQLiteToPostgresMigrator(source_path, target, batch_size)
        return await migrator.run(on_progress)


async def verify_migration(
    postgres_url: str,
    sqlite_path: str | Path | None = None,
    config: PostgresConfig | None = None,
) -> VerificationResult:
    """Compare exchange counts between the SQLite index and PostgreSQL."""
    source_path = Path(sqlite_path) if sqlite_path is not None else get_db_path()
    if not source_path.exists():
        raise SourceNotFoundError(str(source_path))

    pg_config = replace(config, url=postgres_url) if config else PostgresConfig(url=postgres_url)
    async with PostgresBackend(pg_config) as target:
        return await verify_against(source_path, target)
