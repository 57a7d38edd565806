"""
Local cache storage.

Key classes:
- CacheStore: Abstract keyed store for cached records and sync metadata
- FileCacheStore: One JSON file per key, atomic writes
- MemoryCacheStore: In-process store
"""

from .base import CacheStore
from .file_ops import read_json, remove_file, write_json_atomic
from .file_store import FileCacheStore
from .memory_store import MemoryCacheStore

__all__ = [
    "CacheStore",
    "FileCacheStore",
    "MemoryCacheStore",
    # Low-level file operations
    "read_json",
    "write_json_atomic",
    "remove_file",
]
