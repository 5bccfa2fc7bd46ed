"""
Backend-conditional sync and summary bookkeeping.

With the embedded backend, the local archive is the record of what has been
processed: a conversation is synced once its archive copy is current, and
summarized once its ``-summary.txt`` sibling exists. The server backend has
no local archive, so the same questions are answered from its sync-state
and summary tables.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import TypeVar

import aiofiles.os

from ..backends.base import StorageBackend, SummaryStore, SyncStateStore
from ..exceptions import SourceNotFoundError
from .archive import copy_to_archive, file_fingerprint, read_text, write_text_atomic

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_SESSION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


def extract_session_id(path: str | Path) -> str | None:
    """Session id of a conversation file named ``<uuid>.jsonl``."""
    stem = Path(path).stem
    if _SESSION_ID_RE.match(stem):
        return stem
    return None


def summary_path_for(archive_path: str | Path) -> Path:
    """Sibling summary file: ``foo.jsonl`` -> ``foo-summary.txt``."""
    path = Path(archive_path)
    return path.with_name(f"{path.stem}-summary.txt")


async def _fingerprint_or_raise(source_path: Path) -> tuple[int, int]:
    fingerprint = await file_fingerprint(source_path)
    if fingerprint is None:
        raise SourceNotFoundError(str(source_path))
    return fingerprint


# =============================================================================
# File sync
# =============================================================================


async def file_needs_sync(
    backend: StorageBackend,
    source_path: str | Path,
    archive_path: str | Path,
) -> bool:
    """Check whether a source conversation file is new or changed.

    Raises:
        SourceNotFoundError: If the source file does not exist
    """
    source_path = Path(source_path)
    mtime_ms, size_bytes = await _fingerprint_or_raise(source_path)

    if isinstance(backend, SyncStateStore):
        return await backend.needs_sync(str(source_path), mtime_ms, size_bytes)

    archived = await file_fingerprint(Path(archive_path))
    if archived is None:
        return True
    archived_mtime, archived_size = archived
    return mtime_ms > archived_mtime or size_bytes != archived_size


async def record_file_synced(
    backend: StorageBackend,
    source_path: str | Path,
    archive_path: str | Path,
) -> None:
    """Mark a source file as processed.

    Server backend: upsert its sync record. Embedded backend: copy it into
    the archive.
    """
    source_path = Path(source_path)

    if isinstance(backend, SyncStateStore):
        mtime_ms, size_bytes = await _fingerprint_or_raise(source_path)
        await backend.set_synced_file(str(source_path), mtime_ms, size_bytes)
        logger.debug(f"Recorded sync state for {source_path}")
        return

    await copy_to_archive(source_path, Path(archive_path))
    logger.debug(f"Archived {source_path} -> {archive_path}")


# =============================================================================
# Summaries
# =============================================================================


async def has_summary(
    backend: StorageBackend,
    session_id: str | None,
    archive_path: str | Path,
) -> bool:
    if session_id and isinstance(backend, SummaryStore):
        return await backend.has_summary(session_id)
    return await aiofiles.os.path.exists(summary_path_for(archive_path))


async def store_summary(
    backend: StorageBackend,
    session_id: str | None,
    project: str,
    archive_path: str | Path,
    summary: str,
) -> None:
    if session_id and isinstance(backend, SummaryStore):
        await backend.set_summary(session_id, project, summary)
        return
    await write_text_atomic(summary_path_for(archive_path), summary)


async def load_summary(
    backend: StorageBackend,
    session_id: str | None,
    archive_path: str | Path,
) -> str | None:
    if session_id and isinstance(backend, SummaryStore):
        return await backend.get_summary(session_id)
    return await read_text(summary_path_for(archive_path))


async def sessions_needing_summaries(
    backend: StorageBackend, limit: int = 10
) -> list[tuple[str, str]]:
    """(session_id, project) pairs without a summary; server backend only."""
    if not isinstance(backend, SummaryStore):
        return []
    return await backend.get_sessions_needing_summaries(limit)


# =============================================================================
# Concurrency
# =============================================================================


async def process_in_batches(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    concurrency: int,
) -> list[R]:
    """Run ``worker`` over ``items`` with at most ``concurrency`` in flight.

    Items are dispatched in windows of ``concurrency``; the next window
    starts once the whole previous one has finished. Results keep input
    order. The first failure propagates.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be positive, got {concurrency}")

    pending = list(items)
    results: list[R] = []
    for start in range(0, len(pending), concurrency):
        window = pending[start : start + concurrency]
        results.extend(await asyncio.gather(*(worker(item) for item in window)))
    return results
