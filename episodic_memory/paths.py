"""
Filesystem locations for the index, database and conversation archive.

Every location can be overridden through the environment so tests and
alternate installs never touch the user's real index.
"""

from __future__ import annotations

import os
from pathlib import Path

_DEFAULT_ROOT = Path.home() / ".config" / "superpowers"


def get_index_dir() -> Path:
    """Directory holding the SQLite database and config file."""
    override = os.environ.get("EPISODIC_MEMORY_CONFIG_DIR")
    if override:
        return Path(override)
    return _DEFAULT_ROOT / "conversation-index"


def get_db_path() -> Path:
    """Path of the embedded SQLite database."""
    override = os.environ.get("EPISODIC_MEMORY_DB_PATH")
    if override:
        return Path(override)
    return get_index_dir() / "db.sqlite"


def get_archive_dir() -> Path:
    """Root of the archive tree mirroring the source conversation directories."""
    override = os.environ.get("EPISODIC_MEMORY_ARCHIVE_DIR")
    if override:
        return Path(override)
    return _DEFAULT_ROOT / "conversation-archive"


def get_config_paths() -> list[Path]:
    """Candidate config files, in lookup order."""
    index_dir = get_index_dir()
    return [index_dir / "config.yaml", index_dir / "config.json"]
