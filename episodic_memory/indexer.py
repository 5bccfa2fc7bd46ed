"""
Indexing pipeline over the storage contract.

Parsing, embedding and summarization are external collaborators, given as
protocols. The indexer decides which conversation files need work (through
the sync bookkeeping), summarizes the ones without a summary, then embeds
and stores every exchange.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .backends.base import StorageBackend
from .models import Exchange
from .sync.bookkeeping import (
    extract_session_id,
    file_needs_sync,
    has_summary,
    process_in_batches,
    record_file_synced,
    store_summary,
)

logger = logging.getLogger(__name__)


class ConversationParser(Protocol):
    async def parse(self, source_path: Path, project: str, archive_path: Path) -> list[Exchange]:
        """Split a conversation file into exchanges."""
        ...


class EmbeddingGenerator(Protocol):
    async def generate(
        self,
        user_message: str,
        assistant_message: str,
        tool_names: Sequence[str] | None = None,
    ) -> list[float]:
        """Embed one exchange."""
        ...


class Summarizer(Protocol):
    async def summarize(self, exchanges: list[Exchange]) -> str: ...


@dataclass
class ConversationSource:
    """A conversation file and where its archive copy lives."""

    source_path: Path
    project: str
    archive_path: Path

    @property
    def session_id(self) -> str | None:
        return extract_session_id(self.source_path)


@dataclass
class IndexResult:
    """Tally of an indexing run."""

    indexed: int = 0
    skipped: int = 0
    summarized: int = 0
    exchanges: int = 0
    errors: int = 0
    failed_paths: list[str] = field(default_factory=list)

    def record_failure(self, path: Path) -> None:
        self.errors += 1
        self.failed_paths.append(str(path))


@dataclass
class _PendingConversation:
    source: ConversationSource
    exchanges: list[Exchange]


class ConversationIndexer:
    """Indexes conversation files into a storage backend.

    The backend must already be initialized; the indexer never opens or
    closes it.
    """

    def __init__(
        self,
        backend: StorageBackend,
        parser: ConversationParser,
        embedder: EmbeddingGenerator,
        summarizer: Summarizer | None = None,
        concurrency: int = 1,
    ) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        self.backend = backend
        self.parser = parser
        self.embedder = embedder
        self.summarizer = summarizer
        self.concurrency = concurrency

    async def index_conversation(
        self,
        source_path: str | Path,
        project: str,
        archive_path: str | Path,
    ) -> IndexResult:
        """Index a single conversation file."""
        source = ConversationSource(Path(source_path), project, Path(archive_path))
        return await self.index_unprocessed([source])

    async def index_unprocessed(self, sources: Iterable[ConversationSource]) -> IndexResult:
        """Index every source that is new or changed since it was last synced."""
        result = IndexResult()
        pending: list[_PendingConversation] = []

        for source in sources:
            if not await file_needs_sync(self.backend, source.source_path, source.archive_path):
                result.skipped += 1
                continue

            exchanges = await self.parser.parse(
                source.source_path, source.project, source.archive_path
            )
            if not exchanges:
                # Nothing to index; remember the file so it isn't re-parsed
                await record_file_synced(self.backend, source.source_path, source.archive_path)
                result.skipped += 1
                continue

            pending.append(_PendingConversation(source, exchanges))

        if not pending:
            logger.info("All conversations are already processed")
            return result

        logger.info(f"Found {len(pending)} unprocessed conversations")

        if self.summarizer is not None:
            await self._summarize_missing(pending, result)

        for conversation in pending:
            await self._index_exchanges(conversation, result)

        logger.info(
            f"Indexed {result.indexed} conversations ({result.exchanges} exchanges), "
            f"{result.skipped} skipped, {result.errors} errors"
        )
        return result

    async def _summarize_missing(
        self,
        pending: list[_PendingConversation],
        result: IndexResult,
    ) -> None:
        needs_summary = [
            conversation
            for conversation in pending
            if not await has_summary(
                self.backend, conversation.source.session_id, conversation.source.archive_path
            )
        ]
        if not needs_summary:
            return

        logger.info(
            f"Generating {len(needs_summary)} summaries (concurrency: {self.concurrency})"
        )
        outcomes = await process_in_batches(needs_summary, self._summarize_one, self.concurrency)
        for conversation, ok in zip(needs_summary, outcomes):
            if ok:
                result.summarized += 1
            else:
                result.record_failure(conversation.source.source_path)

    async def _summarize_one(self, conversation: _PendingConversation) -> bool:
        assert self.summarizer is not None
        source = conversation.source
        try:
            summary = await self.summarizer.summarize(conversation.exchanges)
            await store_summary(
                self.backend, source.session_id, source.project, source.archive_path, summary
            )
        except Exception as e:
            logger.error(f"Summary failed for {source.project}/{source.source_path.name}: {e}")
            return False

        logger.info(
            f"Summarized {source.project}/{source.source_path.name}: "
            f"{len(summary.split())} words"
        )
        return True

    async def _index_exchanges(
        self,
        conversation: _PendingConversation,
        result: IndexResult,
    ) -> None:
        source = conversation.source
        try:
            for exchange in conversation.exchanges:
                tool_names = exchange.tool_names
                embedding = await self.embedder.generate(
                    exchange.user_message, exchange.assistant_message, tool_names
                )
                await self.backend.insert_exchange(exchange, embedding, tool_names)
                result.exchanges += 1

            await record_file_synced(self.backend, source.source_path, source.archive_path)
        except Exception as e:
            logger.error(f"Indexing failed for {source.source_path}: {e}")
            result.record_failure(source.source_path)
            return

        result.indexed += 1
