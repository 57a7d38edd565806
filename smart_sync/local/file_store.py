"""
File-backed local cache.

Stores one JSON document per key under a base directory:

    ~/.smart_sync/cache/
        officers.json
        students.json
        _sync_metadata.json
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from .base import CacheStore
from .file_ops import list_files, read_json, remove_file, write_json_atomic

logger = logging.getLogger(__name__)

_SUFFIX = ".json"


class FileCacheStore(CacheStore):
    """Cache store writing each key to its own JSON file atomically."""

    def __init__(self, base_path: Path | str | None = None):
        """Initialize the file store.

        Args:
            base_path: Directory for cache files (default: ~/.smart_sync/cache)
        """
        self.base_path = Path(base_path) if base_path else Path.home() / ".smart_sync" / "cache"

    def path_for(self, key: str) -> Path:
        """Get the file path for a key. Keys are percent-encoded."""
        return self.base_path / f"{quote(key, safe='')}{_SUFFIX}"

    async def load(self, key: str) -> Any | None:
        return await read_json(self.path_for(key))

    async def save(self, key: str, value: Any) -> None:
        await write_json_atomic(self.path_for(key), value)
        logger.debug("Saved cache key %s", key)

    async def delete(self, key: str) -> bool:
        return await remove_file(self.path_for(key))

    async def keys(self) -> list[str]:
        names = await list_files(self.base_path, _SUFFIX)
        return [unquote(name[: -len(_SUFFIX)]) for name in names]
