"""
Shared test configuration and fixtures.

Provides in-memory fakes for the remote document store and the local
cache so sync cycles can be exercised without Cosmos DB or a disk.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from smart_sync.config import SyncConfig
from smart_sync.exceptions import PersistenceError, QueryUnsupportedError
from smart_sync.local.memory_store import MemoryCacheStore
from smart_sync.metadata import TimestampStore
from smart_sync.orchestrator import SyncOrchestrator
from smart_sync.records import parse_instant
from smart_sync.remote.base import RemoteFetcher, RemoteSource

T0 = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


class FakeRemoteSource(RemoteSource):
    """
    In-memory remote store.

    Filtered queries return documents whose updatedAt is at or after
    `since`, the way a server-side index would.
    """

    def __init__(self, collections: dict[str, list[dict[str, Any]]] | None = None):
        self.collections = collections or {}
        self.supports_filter = True
        self.fail_with: Exception | None = None
        self.delay: float = 0.0
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()
        self.calls: list[tuple[str, datetime | None]] = []
        self.closed = False

    async def query(self, collection: str, since: datetime | None) -> list[dict[str, Any]]:
        self.calls.append((collection, since))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

        documents = [dict(doc) for doc in self.collections.get(collection, [])]
        if since is None:
            return documents
        if not self.supports_filter:
            raise QueryUnsupportedError(collection, "missing index on updatedAt")
        return [
            doc
            for doc in documents
            if (instant := parse_instant(doc.get("updatedAt"))) is not None and instant >= since
        ]

    async def close(self) -> None:
        self.closed = True


class FlakyCacheStore(MemoryCacheStore):
    """
    Memory store that can fail or block writes for chosen keys.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        super().__init__(initial)
        self.fail_keys: set[str] = set()
        self.gate_keys: set[str] = set()
        self.gate = asyncio.Event()
        self.saving = asyncio.Event()
        self.saves: list[str] = []

    async def save(self, key: str, value: Any) -> None:
        self.saves.append(key)
        if key in self.gate_keys:
            self.saving.set()
            await self.gate.wait()
        if key in self.fail_keys:
            raise PersistenceError("save", key, OSError("disk full"))
        await super().save(key, value)

    def snapshot(self) -> dict[str, Any]:
        """Raw copy of everything stored."""
        return copy.deepcopy(self._data)


class Clock:
    """Deterministic clock advancing one minute per reading."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(minutes=1)):
        self.now = start
        self.step = step
        self.readings: list[datetime] = []

    def __call__(self) -> datetime:
        current = self.now
        self.readings.append(current)
        self.now = current + self.step
        return current


def doc(record_id: str, updated: datetime | str | None = None, **fields: Any) -> dict[str, Any]:
    """Build a raw document."""
    data: dict[str, Any] = {"id": record_id, **fields}
    if updated is not None:
        data["updatedAt"] = updated.isoformat() if isinstance(updated, datetime) else updated
    return data


@pytest.fixture
def remote() -> FakeRemoteSource:
    return FakeRemoteSource()


@pytest.fixture
def store() -> FlakyCacheStore:
    return FlakyCacheStore()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def config() -> SyncConfig:
    return SyncConfig(fetch_timeout=5.0, persist_timeout=5.0)


@pytest.fixture
def orchestrator(remote, store, clock, config) -> SyncOrchestrator:
    return SyncOrchestrator(
        fetcher=RemoteFetcher(remote),
        store=store,
        timestamps=TimestampStore(store),
        config=config,
        clock=clock,
    )


