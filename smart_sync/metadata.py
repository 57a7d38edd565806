"""
Timestamp store for per-collection sync metadata.

Persists the instant of the last successful sync of each collection
under a reserved cache key as a human-readable mapping:

    {"officers": "2024-05-01T08:30:00+00:00", "students": "..."}

An operator may inspect or edit this entry directly. Removing a
collection's entry (or the whole mapping) makes the next cycle for it
a full fetch.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from .local.base import CacheStore
from .records import format_instant, parse_instant

logger = logging.getLogger(__name__)

SYNC_METADATA_KEY = "_sync_metadata"


class TimestampStore:
    """Sole reader/writer of SyncMetadata.

    Every operation reloads the mapping from the cache store so manual
    edits made between cycles are honored.
    """

    def __init__(self, store: CacheStore, key: str = SYNC_METADATA_KEY):
        """Initialize the timestamp store.

        Args:
            store: Cache store holding the metadata entry
            key: Reserved key for the metadata entry
        """
        self.store = store
        self.key = key

    async def _load(self) -> dict[str, Any]:
        data = await self.store.load(self.key)
        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning("Sync metadata is not a mapping, treating as empty")
            return {}
        return data

    async def get(self, collection: str) -> datetime | None:
        """Get the last successful sync instant for a collection.

        Returns:
            Aware datetime, or None when the collection has never synced
            or its entry cannot be parsed
        """
        raw = (await self._load()).get(collection)
        instant = parse_instant(raw)
        if raw is not None and instant is None:
            logger.warning("Unreadable sync metadata for %s, forcing full resync", collection)
        return instant

    async def advance(self, collection: str, instant: datetime) -> None:
        """Record a successful sync of collection at instant."""
        data = await self._load()
        data[collection] = format_instant(instant)
        await self.store.save(self.key, data)

    async def restore(self, collection: str, instant: datetime | None) -> None:
        """Put a collection's entry back to a previously read value."""
        if instant is None:
            await self.reset(collection)
        else:
            await self.advance(collection, instant)

    async def reset(self, collection: str | None = None) -> list[str]:
        """Clear metadata so the next cycle performs a full fetch.

        Args:
            collection: Collection to reset, or None for all collections

        Returns:
            Names of the collections whose entries were removed
        """
        data = await self._load()
        if collection is None:
            removed = sorted(data)
            if await self.store.delete(self.key):
                logger.info("Cleared sync metadata for all collections")
            return removed

        if collection not in data:
            return []
        del data[collection]
        await self.store.save(self.key, data)
        logger.info("Cleared sync metadata for %s", collection)
        return [collection]

    async def snapshot(self) -> dict[str, str]:
        """Get the metadata mapping as stored, for inspection."""
        return {str(name): str(value) for name, value in (await self._load()).items()}
