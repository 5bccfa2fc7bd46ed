"""
Local archive file operations.

The embedded backend keeps a copy of every ingested conversation file and
a ``-summary.txt`` sibling per conversation. Provides:
- Atomic writes using temp file + rename
- mtime-preserving archive copies
- (mtime_ms, size) fingerprints for change detection
"""

import os
import tempfile
from pathlib import Path

import aiofiles
import aiofiles.os

from ..exceptions import StorageIOError


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary."""
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise StorageIOError("create_directory", str(path), e) from e


async def file_fingerprint(path: Path) -> tuple[int, int] | None:
    """Return (mtime_ms, size_bytes) of a file, or None if it doesn't exist."""
    try:
        st = await aiofiles.os.stat(path)
    except FileNotFoundError:
        return None
    except OSError as e:
        raise StorageIOError("stat", str(path), e) from e
    return st.st_mtime_ns // 1_000_000, st.st_size


async def _write_atomic(path: Path, data: bytes, mtime_ns: int | None = None) -> None:
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=".tmp_", suffix=path.suffix)
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "wb") as f:
            await f.write(data)
            await f.flush()
            os.fsync(f.fileno())

        if mtime_ns is not None:
            os.utime(temp_path, ns=(mtime_ns, mtime_ns))

        await aiofiles.os.replace(temp_path, path)
    except Exception as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        raise StorageIOError("write", str(path), e) from e


async def copy_to_archive(source: Path, destination: Path) -> None:
    """Copy a conversation file into the archive atomically, keeping its mtime."""
    try:
        st = await aiofiles.os.stat(source)
        async with aiofiles.open(source, "rb") as f:
            data = await f.read()
    except OSError as e:
        raise StorageIOError("read", str(source), e) from e

    await _write_atomic(destination, data, mtime_ns=st.st_mtime_ns)


async def read_text(path: Path) -> str | None:
    """Read a UTF-8 text file, or None if it doesn't exist."""
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            return await f.read()
    except OSError as e:
        raise StorageIOError("read", str(path), e) from e


async def write_text_atomic(path: Path, text: str) -> None:
    """Write a UTF-8 text file atomically using temp file + rename."""
    await _write_atomic(path, text.encode("utf-8"))
