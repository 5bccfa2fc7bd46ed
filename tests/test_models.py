"""
Tests for shared models and timestamp helpers.
"""

from datetime import UTC, datetime, timedelta, timezone

from conftest import make_exchange, make_tool_call

from episodic_memory.backends.base import escape_like
from episodic_memory.models import (
    SearchOptions,
    SearchResult,
    TimeWindow,
    format_timestamp,
    parse_timestamp,
)


class TestTimestamps:
    def test_parse_zulu(self):
        assert parse_timestamp("2025-01-15T12:00:00Z") == datetime(2025, 1, 15, 12, tzinfo=UTC)

    def test_parse_naive_is_utc(self):
        assert parse_timestamp("2025-01-15T12:00:00") == datetime(2025, 1, 15, 12, tzinfo=UTC)

    def test_parse_offset_converted(self):
        parsed = parse_timestamp("2025-01-15T14:00:00+02:00")
        assert parsed == datetime(2025, 1, 15, 12, tzinfo=UTC)
        assert parsed.utcoffset() == timedelta(0)

    def test_format(self):
        value = datetime(2025, 1, 15, 14, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(value) == "2025-01-15T12:00:00Z"
        assert format_timestamp("already-a-string") == "already-a-string"


class TestTimeWindow:
    def test_empty(self):
        window = TimeWindow.from_options(SearchOptions())
        assert window.start is None
        assert window.end is None

    def test_date_only_before_covers_whole_day(self):
        window = TimeWindow.from_options(SearchOptions(after="2025-01-10", before="2025-01-12"))
        assert window.start == datetime(2025, 1, 10, tzinfo=UTC)
        assert window.end == datetime(2025, 1, 13, tzinfo=UTC)
        assert window.end_exclusive is True

    def test_full_timestamp_before_is_inclusive(self):
        window = TimeWindow.from_options(SearchOptions(before="2025-01-12T08:00:00Z"))
        assert window.end == datetime(2025, 1, 12, 8, tzinfo=UTC)
        assert window.end_exclusive is False


class TestExchange:
    def test_tool_names(self):
        exchange = make_exchange()
        exchange.tool_calls = [
            make_tool_call("t1", exchange.id),
            make_tool_call("t2", exchange.id, tool_name="Read"),
        ]
        assert exchange.tool_names == ["Bash", "Read"]

    def test_search_result_id(self):
        assert SearchResult(exchange=make_exchange("x"), distance=0.0).id == "x"


class TestEscapeLike:
    def test_wildcards_escaped(self):
        assert escape_like("50%_off\\") == "50\\%\\_off\\\\"

    def test_plain_text_unchanged(self):
        assert escape_like("docker") == "docker"
