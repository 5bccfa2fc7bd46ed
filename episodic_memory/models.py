"""
Data transfer objects shared by all storage backends.

Callers never hold row handles; they pass and receive these dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from typing import Any


@dataclass
class ToolCall:
    """A single tool invocation made during an exchange."""

    id: str
    exchange_id: str
    tool_name: str
    timestamp: str
    tool_input: Any | None = None  # Any JSON-serializable value
    tool_result: str | None = None
    is_error: bool = False


@dataclass
class Exchange:
    """One user/assistant turn pair with its provenance metadata."""

    id: str
    project: str
    timestamp: str  # ISO 8601
    user_message: str
    assistant_message: str
    archive_path: str
    line_start: int
    line_end: int

    # Threading
    parent_uuid: str | None = None
    is_sidechain: bool = False
    session_id: str | None = None

    # Free-form provenance
    cwd: str | None = None
    git_branch: str | None = None
    claude_version: str | None = None
    thinking_level: str | None = None
    thinking_disabled: bool = False
    thinking_triggers: str | None = None

    tool_calls: list[ToolCall] = field(default_factory=list)

    @property
    def tool_names(self) -> list[str]:
        return [tc.tool_name for tc in self.tool_calls]


@dataclass
class SearchOptions:
    """Options shared by vector and text search.

    ``after`` and ``before`` are inclusive and accept either a date
    (``YYYY-MM-DD``) or a full ISO 8601 timestamp. A date-only ``before``
    covers the whole day.
    """

    limit: int = 10
    after: str | None = None
    before: str | None = None


@dataclass
class SearchResult:
    """An exchange returned by search, with its distance to the query.

    Vector search: L2 distance, smaller is closer.
    Text search: always 0.0.
    """

    exchange: Exchange
    distance: float

    @property
    def id(self) -> str:
        return self.exchange.id


@dataclass
class ProjectCount:
    """Conversation count for one project."""

    project: str
    count: int


@dataclass
class DatabaseStats:
    """Aggregate counts over the exchanges table."""

    total_conversations: int
    total_exchanges: int
    project_count: int
    date_range: tuple[str, str] | None = None  # (earliest, latest)
    top_projects: list[ProjectCount] = field(default_factory=list)
    archive_paths: list[str] = field(default_factory=list)


@dataclass
class SyncRecord:
    """Ingestion state of a source file, kept in the database."""

    source_path: str
    mtime_ms: int
    size_bytes: int
    last_synced: str | None = None


@dataclass
class SummaryRecord:
    """Summary of a conversation session."""

    session_id: str
    project: str
    summary: str
    created_at: str | None = None


# =============================================================================
# Timestamp helpers
# =============================================================================


def epoch_millis() -> int:
    """Current time in epoch milliseconds."""
    return int(datetime.now(UTC).timestamp() * 1000)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 date or timestamp into an aware UTC datetime.

    Naive values are taken to be UTC.
    """
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime | str) -> str:
    """Render a datetime as ISO 8601 UTC with a ``Z`` suffix."""
    if isinstance(value, str):
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _is_date_only(value: str) -> bool:
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return len(value) == 10


@dataclass(frozen=True)
class TimeWindow:
    """Resolved search window.

    ``start`` is inclusive. ``end`` is inclusive unless ``end_exclusive``
    is set, which happens when ``before`` was a bare date and ``end`` has
    been moved to the following midnight.
    """

    start: datetime | None = None
    end: datetime | None = None
    end_exclusive: bool = False

    @classmethod
    def from_options(cls, options: SearchOptions) -> TimeWindow:
        start = parse_timestamp(options.after) if options.after else None
        end = None
        end_exclusive = False
        if options.before:
            end = parse_timestamp(options.before)
            if _is_date_only(options.before):
                end = end + timedelta(days=1)
                end_exclusive = True
        return cls(start=start, end=end, end_exclusive=end_exclusive)
