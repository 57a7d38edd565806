"""In-process cache store."""

from __future__ import annotations

import copy
from typing import Any

from .base import CacheStore


class MemoryCacheStore(CacheStore):
    """Dictionary-backed cache store.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._data: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    async def load(self, key: str) -> Any | None:
        value = self._data.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def save(self, key: str, value: Any) -> None:
        self._data[key] = copy.deepcopy(value)

    async def delete(self, key: str) -> bool:
        return self._data.pop(key, None) is not None

    async def keys(self) -> list[str]:
        return sorted(self._data)
