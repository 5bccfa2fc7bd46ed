"""
Index statistics: database aggregates plus summary coverage.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .backends.base import StorageBackend
from .models import ProjectCount, parse_timestamp
from .sync.bookkeeping import extract_session_id, has_summary


@dataclass
class IndexStats:
    total_conversations: int = 0
    conversations_with_summaries: int = 0
    total_exchanges: int = 0
    project_count: int = 0
    date_range: tuple[str, str] | None = None
    top_projects: list[ProjectCount] = field(default_factory=list)
    database_provider: str | None = None

    @property
    def conversations_without_summaries(self) -> int:
        return self.total_conversations - self.conversations_with_summaries


async def get_index_stats(backend: StorageBackend) -> IndexStats:
    """Collect statistics from an initialized backend."""
    stats = await backend.get_stats()

    with_summaries = 0
    for archive_path in stats.archive_paths:
        if await has_summary(backend, extract_session_id(archive_path), archive_path):
            with_summaries += 1

    return IndexStats(
        total_conversations=stats.total_conversations,
        conversations_with_summaries=with_summaries,
        total_exchanges=stats.total_exchanges,
        project_count=stats.project_count,
        date_range=stats.date_range,
        top_projects=stats.top_projects,
        database_provider=backend.name,
    )


def _format_date(value: str) -> str:
    try:
        return parse_timestamp(value).date().isoformat()
    except ValueError:
        return value


def format_stats(stats: IndexStats) -> str:
    """Render statistics as a plain-text report."""
    lines = ["Episodic Memory Index Statistics", "=" * 50, ""]

    if stats.database_provider:
        lines += [f"Database Provider: {stats.database_provider}", ""]

    lines += [
        f"Total Conversations: {stats.total_conversations:,}",
        f"Total Exchanges: {stats.total_exchanges:,}",
        "",
        f"With Summaries: {stats.conversations_with_summaries:,}",
        f"Without Summaries: {stats.conversations_without_summaries:,}",
    ]
    if stats.conversations_without_summaries > 0 and stats.total_conversations > 0:
        missing = stats.conversations_without_summaries / stats.total_conversations * 100
        lines.append(f"  ({missing:.1f}% missing summaries)")
    lines.append("")

    if stats.date_range:
        earliest, latest = stats.date_range
        lines += [
            "Date Range:",
            f"  Earliest: {_format_date(earliest)}",
            f"  Latest: {_format_date(latest)}",
            "",
        ]

    lines += [f"Unique Projects: {stats.project_count:,}", ""]

    if stats.top_projects:
        lines.append("Top Projects by Conversation Count:")
        for entry in stats.top_projects:
            lines.append(f"  {entry.count:>4} - {entry.project or '(unknown)'}")

    return "\n".join(lines) + "\n"
