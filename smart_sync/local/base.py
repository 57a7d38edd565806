"""
Abstract local cache interface.

Defines the contract for the keyed store that holds each collection's
cached records and the reserved sync metadata entry.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class CacheStore(ABC):
    """Keyed persistence for JSON-compatible values.

    Keys are collection names plus one reserved key for sync metadata.
    Implementations must make `save` atomic: after a failed or
    cancelled save, `load` returns the previous value.
    All failures are raised as PersistenceError.
    """

    @abstractmethod
    async def load(self, key: str) -> Any | None:
        """Load the value stored under key, or None if absent."""
        ...

    @abstractmethod
    async def save(self, key: str, value: Any) -> None:
        """Replace the value stored under key."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if it existed."""
        ...

    @abstractmethod
    async def keys(self) -> list[str]:
        """List stored keys."""
        ...
