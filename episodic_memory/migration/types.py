"""
Migration types and data structures.

Defines the per-row outcomes of a SQLite to PostgreSQL migration and the
report and verification values folded from them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class RowStatus(Enum):
    """Outcome of migrating a single exchange row."""

    MIGRATED = "migrated"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class RowResult:
    """Result of migrating a single exchange row."""

    exchange_id: str
    status: RowStatus
    reason: str | None = None
    tool_calls: int = 0


@dataclass
class MigrationReport:
    """Running tally of a migration.

    ``migrated`` counts rows written to the target, or rows that would
    have been written in a dry run.
    """

    total: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0
    dry_run: bool = False
    failures: list[RowResult] = field(default_factory=list)

    # Timing
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def processed(self) -> int:
        return self.migrated + self.skipped + self.errors

    @property
    def progress_percent(self) -> float:
        """Processed rows as a percentage of the total."""
        if self.total == 0:
            return 100.0
        return (self.processed / self.total) * 100

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def add_result(self, result: RowResult) -> None:
        """Fold a row result into the tally."""
        if result.status == RowStatus.MIGRATED:
            self.migrated += 1
        elif result.status == RowStatus.SKIPPED:
            self.skipped += 1
        elif result.status == RowStatus.FAILED:
            self.errors += 1
            self.failures.append(result)

    def format_progress(self) -> str:
        return (
            f"Progress: {self.processed}/{self.total} ({self.progress_percent:.1f}%) - "
            f"{self.migrated} migrated, {self.skipped} skipped, {self.errors} errors"
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "total": self.total,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "errors": self.errors,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "failures": [
                {"exchange_id": f.exchange_id, "reason": f.reason} for f in self.failures
            ],
        }


@dataclass
class VerificationResult:
    """Source and target counts after a migration.

    ``discrepancy`` is signed: positive when the target is missing rows.
    """

    source_exchanges: int
    source_tool_calls: int
    target_exchanges: int

    @property
    def discrepancy(self) -> int:
        return self.source_exchanges - self.target_exchanges

    @property
    def passed(self) -> bool:
        return self.discrepancy == 0

    def __bool__(self) -> bool:
        return self.passed
