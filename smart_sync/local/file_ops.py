"""
JSON file operations for the local cache.

Provides atomic read/write operations for JSON files with:
- Atomic writes using temp file + rename
- Temp file cleanup when a write fails or is cancelled
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from ..exceptions import PersistenceError


async def ensure_directory(path: Path) -> None:
    """Ensure directory exists, creating if necessary.

    Args:
        path: Directory path to ensure exists
    """
    try:
        await aiofiles.os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise PersistenceError("create_directory", str(path), e) from e


async def read_json(path: Path) -> Any | None:
    """Read a JSON file.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON data or None if file doesn't exist
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return None
        async with aiofiles.open(path, encoding="utf-8") as f:
            content = await f.read()
            return json.loads(content) if content.strip() else None
    except json.JSONDecodeError as e:
        raise PersistenceError("parse_json", str(path), e) from e
    except OSError as e:
        raise PersistenceError("read_json", str(path), e) from e


async def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON file atomically using temp file + rename.

    Readers see either the previous content or the new content, never
    a partially written file.

    Args:
        path: Target path for JSON file
        data: Data to serialize as JSON
    """
    await ensure_directory(path.parent)

    fd, temp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=".tmp_",
        suffix=".json",
    )
    try:
        os.close(fd)
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2, default=_json_serializer))
            await f.flush()
            os.fsync(f.fileno())

        # Atomic rename
        await aiofiles.os.replace(temp_path, path)
    except (Exception, asyncio.CancelledError) as e:
        try:
            await aiofiles.os.remove(temp_path)
        except OSError:
            pass
        if isinstance(e, asyncio.CancelledError):
            raise
        raise PersistenceError("write_json", str(path), e) from e


async def remove_file(path: Path) -> bool:
    """Remove a file if it exists.

    Args:
        path: Path to remove

    Returns:
        True if file was removed, False if it didn't exist
    """
    try:
        if await aiofiles.os.path.exists(path):
            await aiofiles.os.remove(path)
            return True
        return False
    except OSError as e:
        raise PersistenceError("remove", str(path), e) from e


async def list_files(path: Path, suffix: str) -> list[str]:
    """List file names with a suffix in a directory (non-recursive).

    Args:
        path: Directory to list
        suffix: File suffix to match, e.g. ".json"

    Returns:
        Sorted list of matching file names
    """
    try:
        if not await aiofiles.os.path.exists(path):
            return []
        entries = await aiofiles.os.listdir(path)
        return sorted(
            entry for entry in entries if entry.endswith(suffix) and not entry.startswith(".")
        )
    except OSError as e:
        raise PersistenceError("list_files", str(path), e) from e


def _json_serializer(obj: Any) -> Any:
    """Custom JSON serializer for types not handled by default.

    Args:
        obj: Object to serialize

    Returns:
        JSON-serializable representation
    """
    if isinstance(obj, datetime):
        return obj.isoformat()
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")
