"""
Shared test configuration and fixtures.

SQLite tests run against real databases (in-memory or under tmp_path) with
a small vector width. PostgreSQL tests either mock the asyncpg pool or, when
EPISODIC_MEMORY_TEST_POSTGRES_URL is set, run against a live server.
"""

import logging
import os

import pytest

from episodic_memory.backends.sqlite import SQLiteBackend, SQLiteConfig
from episodic_memory.models import Exchange, SyncRecord, ToolCall

logger = logging.getLogger(__name__)

# Small width keeps vec0 tables cheap; live PostgreSQL tests use the default
DIMS = 8

POSTGRES_TEST_URL = os.environ.get("EPISODIC_MEMORY_TEST_POSTGRES_URL")


def make_exchange(exchange_id: str = "ex-1", **overrides) -> Exchange:
    """Build an exchange with sensible defaults."""
    fields = {
        "id": exchange_id,
        "project": "demo-project",
        "timestamp": "2025-01-15T12:00:00Z",
        "user_message": f"How do I configure Docker for {exchange_id}?",
        "assistant_message": "Use a compose file and mount the volume.",
        "archive_path": "/archive/demo-project/conversation.jsonl",
        "line_start": 1,
        "line_end": 2,
    }
    fields.update(overrides)
    return Exchange(**fields)


def make_tool_call(tool_id: str, exchange_id: str, **overrides) -> ToolCall:
    fields = {
        "id": tool_id,
        "exchange_id": exchange_id,
        "tool_name": "Bash",
        "timestamp": "2025-01-15T12:00:01Z",
        "tool_input": {"command": "docker ps"},
        "tool_result": "CONTAINER ID",
    }
    fields.update(overrides)
    return ToolCall(**fields)


def unit_vector(index: int, dims: int = DIMS) -> list[float]:
    """One-hot vector; distinct indexes are sqrt(2) apart."""
    vector = [0.0] * dims
    vector[index % dims] = 1.0
    return vector


def scaled_vector(scale: float, dims: int = DIMS) -> list[float]:
    """Vector along the first axis; distance to unit_vector(0) is |scale - 1|."""
    vector = [0.0] * dims
    vector[0] = scale
    return vector


class ServerLikeBackend(SQLiteBackend):
    """In-memory backend that also provides sync state and summaries.

    Stands in for the PostgreSQL backend where only the capabilities matter.
    """

    def __init__(self, config: SQLiteConfig):
        super().__init__(config)
        self.synced: dict[str, SyncRecord] = {}
        self.summaries: dict[str, tuple[str, str]] = {}

    async def get_synced_file(self, source_path: str) -> SyncRecord | None:
        return self.synced.get(source_path)

    async def set_synced_file(self, source_path: str, mtime_ms: float, size_bytes: int) -> None:
        self.synced[source_path] = SyncRecord(source_path, int(mtime_ms), size_bytes)

    async def needs_sync(self, source_path: str, mtime_ms: float, size_bytes: int) -> bool:
        existing = self.synced.get(source_path)
        return existing is None or (existing.mtime_ms, existing.size_bytes) != (
            int(mtime_ms),
            size_bytes,
        )

    async def get_summary(self, session_id: str) -> str | None:
        entry = self.summaries.get(session_id)
        return entry[1] if entry else None

    async def has_summary(self, session_id: str) -> bool:
        return session_id in self.summaries

    async def set_summary(self, session_id: str, project: str, summary: str) -> None:
        self.summaries[session_id] = (project, summary)

    async def get_sessions_needing_summaries(self, limit: int = 10) -> list[tuple[str, str]]:
        rows = await self.raw_query(
            "SELECT DISTINCT session_id, project FROM exchanges "
            "WHERE session_id IS NOT NULL ORDER BY session_id"
        )
        pending = [
            (row["session_id"], row["project"])
            for row in rows
            if row["session_id"] not in self.summaries
        ]
        return pending[:limit]


@pytest.fixture
async def sqlite_backend():
    """Fixture providing an initialized in-memory SQLite backend."""
    backend = await SQLiteBackend.create(SQLiteConfig(db_path=":memory:", vector_dimensions=DIMS))
    yield backend
    await backend.close()


@pytest.fixture
async def server_like_backend():
    backend = ServerLikeBackend(SQLiteConfig(db_path=":memory:", vector_dimensions=DIMS))
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Point every index location at tmp_path and clear provider settings."""
    for var in (
        "EPISODIC_MEMORY_DB_PROVIDER",
        "EPISODIC_MEMORY_POSTGRES_URL",
        "EPISODIC_MEMORY_POSTGRES_POOL_SIZE",
        "EPISODIC_MEMORY_POSTGRES_SSL",
        "EPISODIC_MEMORY_VECTOR_DIMENSIONS",
    ):
        monkeypatch.delenv(var, raising=False)

    monkeypatch.setenv("EPISODIC_MEMORY_CONFIG_DIR", str(tmp_path / "index"))
    monkeypatch.setenv("EPISODIC_MEMORY_DB_PATH", str(tmp_path / "index" / "db.sqlite"))
    monkeypatch.setenv("EPISODIC_MEMORY_ARCHIVE_DIR", str(tmp_path / "archive"))
    return tmp_path


@pytest.fixture
def postgres_url():
    """Live PostgreSQL URL, or skip."""
    if not POSTGRES_TEST_URL:
        pytest.skip("EPISODIC_MEMORY_TEST_POSTGRES_URL not set")
    return POSTGRES_TEST_URL
