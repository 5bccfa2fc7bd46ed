"""
Custom exceptions for episodic memory storage.

All backends raise these exceptions so callers can handle
errors the same way regardless of the configured store.
"""

import re

_PASSWORD_RE = re.compile(r":([^:@/]+)@")


def mask_url(url: str) -> str:
    """Hide the password part of a connection URL for display."""
    return _PASSWORD_RE.sub(":***@", url)


class StorageError(Exception):
    """Base exception for all storage errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StorageNotInitializedError(StorageError):
    """Raised when an operation runs before initialize() or after close()."""

    def __init__(self, operation: str):
        super().__init__(
            f"Database not initialized (during {operation})",
            {"operation": operation},
        )
        self.operation = operation


class ConfigurationError(StorageError):
    """Raised when the database configuration is missing or malformed."""

    def __init__(self, message: str, field: str | None = None):
        details = {}
        if field:
            details["field"] = field
        super().__init__(message, details)
        self.field = field


class DimensionMismatchError(StorageError):
    """Raised when an embedding does not match the index width."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding has {actual} dimensions, index expects {expected}",
            {"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class SourceNotFoundError(StorageError):
    """Raised when a required file or database does not exist."""

    def __init__(self, path: str):
        super().__init__(f"Not found: {path}", {"path": path})
        self.path = path


class SchemaMigrationError(StorageError):
    """Raised when an additive column migration cannot be applied."""

    def __init__(self, column: str, cause: Exception | None = None):
        details = {"column": column}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Schema migration failed for column {column}", details)
        self.column = column
        self.cause = cause


class StorageIOError(StorageError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(StorageError):
    """Raised when connecting to a database fails.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        endpoint = mask_url(endpoint)
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause
