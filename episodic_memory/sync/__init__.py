"""
Sync and summary bookkeeping.

Answers "has this file / session already been processed?" against the
local archive (embedded backend) or the database (server backend).
"""

from .bookkeeping import (
    extract_session_id,
    file_needs_sync,
    has_summary,
    load_summary,
    process_in_batches,
    record_file_synced,
    sessions_needing_summaries,
    store_summary,
    summary_path_for,
)

__all__ = [
    "extract_session_id",
    "summary_path_for",
    "file_needs_sync",
    "record_file_synced",
    "has_summary",
    "store_summary",
    "load_summary",
    "sessions_needing_summaries",
    "process_in_batches",
]
