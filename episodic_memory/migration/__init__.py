"""
Migration utilities.

Copies a local SQLite index into PostgreSQL and verifies the result.
"""

from .migrator import (
    SQLiteToPostgresMigrator,
    migrate_to_postgres,
    verify_against,
    verify_migration,
)
from .types import MigrationReport, RowResult, RowStatus, VerificationResult

__all__ = [
    "MigrationReport",
    "RowResult",
    "RowStatus",
    "VerificationResult",
    "SQLiteToPostgresMigrator",
    "migrate_to_postgres",
    "verify_against",
    "verify_migration",
]
