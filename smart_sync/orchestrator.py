"""
Sync orchestrator for smart sync.

Drives one sync cycle per collection:

    IDLE -> FETCHING -> MERGING -> PERSISTING -> DONE
               |          |           |
               +----------+-----------+------> FAILED

- Fetch: read the last sync instant, load the local cache, fetch the
  remote delta (bounded by a timeout)
- Merge: reconcile local and remote records (pure, no suspension)
- Persist: write the merged records, then advance SyncMetadata to the
  cycle start time (bounded by a timeout, shielded from cancellation)

A failed cycle leaves the local cache and SyncMetadata exactly as they
were. Failures are returned as CycleResult values, never raised.
Cache entries that are not valid records are kept as they are.

Known tolerance: SyncMetadata is set to the cycle start time, so with
clock skew between this host and the remote store a record written
between cycle start and fetch completion may be missed until a later
change touches it or an operator resets the metadata.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from .config import SyncConfig
from .exceptions import (
    PersistenceError,
    SmartSyncError,
    SyncCancelledError,
    SyncInProgressError,
    SyncTimeoutError,
)
from .local.base import CacheStore
from .logging_utils import CollectionLoggerAdapter
from .merge import MergeResult, merge_records
from .metadata import TimestampStore
from .records import Record, partition_records
from .remote.base import RemoteFetcher, RemoteSource, filter_since

logger = logging.getLogger(__name__)


class SyncPhase(Enum):
    """Phase of a collection's sync cycle."""

    IDLE = "idle"
    FETCHING = "fetching"
    MERGING = "merging"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CycleResult:
    """Result of one sync cycle.

    Attributes:
        collection: Collection that was synced
        phase: Final phase (DONE or FAILED)
        started_at: Cycle start time; becomes the new SyncMetadata value
        failed_during: Phase in which the cycle failed, if it failed
        merge: Merge outcome (None if the cycle failed before merging)
        fetched: Number of remote records received
        used_filtered_query: Whether only the remote delta was fetched
        duration_ms: Wall-clock duration of the cycle
        error: Failure cause, None on success
    """

    collection: str
    phase: SyncPhase
    started_at: datetime
    failed_during: SyncPhase | None = None
    merge: MergeResult | None = None
    fetched: int = 0
    used_filtered_query: bool = False
    duration_ms: int = 0
    error: SmartSyncError | None = None

    @property
    def success(self) -> bool:
        return self.phase == SyncPhase.DONE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and CLI output."""
        return {
            "collection": self.collection,
            "phase": self.phase.value,
            "success": self.success,
            "started_at": self.started_at.isoformat(),
            "failed_during": self.failed_during.value if self.failed_during else None,
            "fetched": self.fetched,
            "used_filtered_query": self.used_filtered_query,
            "added": self.merge.added if self.merge else 0,
            "overridden": self.merge.overridden if self.merge else 0,
            "total": len(self.merge.records) if self.merge else None,
            "duration_ms": self.duration_ms,
            "error": self.error.message if self.error else None,
        }


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SyncOrchestrator:
    """Runs sync cycles for named collections.

    Concurrency:
    - At most one cycle (or local edit) per collection at a time
    - Different collections sync concurrently and share no mutable state
    - Reads of the local cache never wait for a cycle
    """

    def __init__(
        self,
        fetcher: RemoteFetcher,
        store: CacheStore,
        timestamps: TimestampStore | None = None,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            fetcher: Remote fetcher
            store: Local cache store (collections and metadata)
            timestamps: Timestamp store (default: one over `store`)
            config: Sync configuration
            clock: Source of the current UTC time
        """
        self.fetcher = fetcher
        self.store = store
        self.config = config or SyncConfig()
        self.timestamps = timestamps or TimestampStore(store, self.config.metadata_key)
        self.clock = clock or _utcnow

        self._locks: dict[str, asyncio.Lock] = {}
        self._phases: dict[str, SyncPhase] = {}
        self._tasks: dict[str, asyncio.Task[CycleResult]] = {}
        # Task currently running each collection's cycle
        self._owners: dict[str, asyncio.Task[Any] | None] = {}

    def _lock(self, collection: str) -> asyncio.Lock:
        if collection not in self._locks:
            self._locks[collection] = asyncio.Lock()
        return self._locks[collection]

    def _check_collection(self, collection: str) -> None:
        if not collection or collection == self.config.metadata_key:
            raise ValueError(f"Invalid collection name: {collection!r}")

    def phase(self, collection: str) -> SyncPhase:
        """Current phase of a collection's cycle."""
        return self._phases.get(collection, SyncPhase.IDLE)

    def is_syncing(self, collection: str) -> bool:
        return self._lock(collection).locked()

    # =========================================================================
    # Local cache access
    # =========================================================================

    async def _load_local(self, collection: str) -> tuple[Any, list[Record], list[Any]]:
        """Load the cache as (raw value, records, entries that are not valid records).

        Invalid entries, such as offline edits that never got an identifier,
        are written back unchanged by every later save.
        """
        raw = await self.store.load(collection)
        if raw is None:
            return None, [], []
        if not isinstance(raw, list):
            raise PersistenceError(
                "load", collection, TypeError(f"expected a list, got {type(raw).__name__}")
            )
        records, unparsed = partition_records(raw, self.config.id_fallbacks)
        return raw, records, unparsed

    async def read(self, collection: str) -> list[Record]:
        """Read the cached records of a collection without waiting for a cycle.

        The result may be stale; it is always the last committed value.
        """
        self._check_collection(collection)
        _, records, _ = await self._load_local(collection)
        return records

    async def upsert_local(self, collection: str, record: Record, **changes: Any) -> Record:
        """Write a local edit into the cache, stamped with the current time.

        Waits for an in-flight cycle of the same collection to finish.

        Args:
            collection: Collection name
            record: Record to insert or replace
            **changes: Field updates applied on top of record

        Returns:
            The stored record

        Raises:
            PersistenceError: If the cache cannot be read or written
        """
        self._check_collection(collection)
        async with self._lock(collection):
            _, records, unparsed = await self._load_local(collection)
            stamped = record.touched(self.clock(), **changes)
            updated = [stamped if r.id == stamped.id else r for r in records]
            if not any(r.id == stamped.id for r in records):
                updated.append(stamped)
            await self.store.save(collection, [r.to_dict() for r in updated] + unparsed)
            return stamped

    # =========================================================================
    # Sync cycle
    # =========================================================================

    async def _bounded(
        self,
        awaitable: Any,
        timeout: float | None,
        collection: str,
        step: str,
    ) -> Any:
        """Await with an optional timeout, converting expiry to SyncTimeoutError."""
        if timeout is None:
            return await awaitable

        start = time.monotonic()
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except TimeoutError:
            elapsed = time.monotonic() - start
            logger.warning(
                "%s for %s abandoned after %.3fs (limit %.3fs)",
                step,
                collection,
                elapsed,
                timeout,
                extra={"collection": collection, "step": step, "elapsed_s": elapsed},
            )
            raise SyncTimeoutError(collection, step, timeout) from None

    async def sync(
        self,
        collection: str,
        *,
        timeout: float | None = None,
        wait: bool = False,
    ) -> CycleResult:
        """Run one sync cycle for a collection.

        Args:
            collection: Collection name
            timeout: Bound for each suspending step; overrides the
                configured fetch/persist timeouts
            wait: Wait for an in-flight cycle instead of failing fast

        Returns:
            CycleResult; errors are reported in the result, not raised.
            asyncio.CancelledError still propagates.
        """
        self._check_collection(collection)
        lock = self._lock(collection)

        if lock.locked() and not wait:
            return CycleResult(
                collection=collection,
                phase=SyncPhase.FAILED,
                started_at=self.clock(),
                failed_during=SyncPhase.IDLE,
                error=SyncInProgressError(collection),
            )

        async with lock:
            self._owners[collection] = asyncio.current_task()
            try:
                return await self._run_cycle(collection, timeout)
            finally:
                self._owners.pop(collection, None)

    async def _run_cycle(self, collection: str, timeout: float | None) -> CycleResult:
        log = CollectionLoggerAdapter(logger, {"collection": collection})
        fetch_timeout = timeout if timeout is not None else self.config.fetch_timeout
        persist_timeout = timeout if timeout is not None else self.config.persist_timeout

        started_at = self.clock()
        start = time.monotonic()
        result = CycleResult(collection=collection, phase=SyncPhase.FETCHING, started_at=started_at)

        def fail(error: SmartSyncError) -> CycleResult:
            result.failed_during = self.phase(collection)
            result.phase = SyncPhase.FAILED
            result.error = error
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self._phases[collection] = SyncPhase.FAILED
            log.warning(
                "Sync of %s failed during %s: %s",
                collection,
                result.failed_during.value,
                error.message,
            )
            return result

        self._phases[collection] = SyncPhase.FETCHING
        try:
            since = await self.timestamps.get(collection)
            previous_raw, local, unparsed = await self._load_local(collection)
            log.info(
                "Sync of %s started (%s)",
                collection,
                f"since {since.isoformat()}" if since else "full fetch",
            )

            fetched = await self._bounded(
                self.fetcher.fetch_since(collection, since), fetch_timeout, collection, "fetch"
            )
            if not fetched.ok:
                return fail(fetched.error)

            remote = fetched.records
            fell_back = not fetched.used_filtered_query and since is not None
            if fell_back and self.config.client_side_filter:
                remote = filter_since(remote, since)
            result.fetched = len(fetched.records)
            result.used_filtered_query = fetched.used_filtered_query

            self._phases[collection] = SyncPhase.MERGING
            merged = merge_records(local, remote)
            result.merge = merged

            self._phases[collection] = SyncPhase.PERSISTING
            if unparsed:
                log.warning(
                    "Keeping %d unparseable cache entries of %s as they are",
                    len(unparsed),
                    collection,
                )
            payload = [record.to_dict() for record in merged.records] + unparsed
            await self._commit(
                collection, previous_raw, since, payload, started_at, persist_timeout
            )
        except asyncio.CancelledError:
            if self.phase(collection) in (SyncPhase.FETCHING, SyncPhase.MERGING):
                fail(SyncCancelledError(collection))
            raise
        except SmartSyncError as e:
            return fail(e)
        except Exception as e:
            log.exception("Unexpected error while syncing %s", collection)
            return fail(SmartSyncError(f"Unexpected error: {e}", {"collection": collection}))

        self._phases[collection] = SyncPhase.DONE
        result.phase = SyncPhase.DONE
        result.duration_ms = int((time.monotonic() - start) * 1000)
        log.info(
            "Sync of %s done: %d fetched, %d added, %d overridden, %d total",
            collection,
            result.fetched,
            merged.added,
            merged.overridden,
            len(merged.records),
            extra={"duration_ms": result.duration_ms},
        )
        return result

    async def _commit(
        self,
        collection: str,
        previous_raw: Any,
        previous_since: datetime | None,
        payload: list[Any],
        started_at: datetime,
        timeout: float | None,
    ) -> None:
        """Persist the merged records and advance SyncMetadata.

        Runs shielded: an external cancellation waits for the commit to
        complete or fail, then propagates.
        """
        commit = asyncio.ensure_future(
            self._persist(collection, previous_raw, previous_since, payload, started_at, timeout)
        )
        try:
            await asyncio.shield(commit)
        except asyncio.CancelledError:
            await asyncio.wait([commit])
            if commit.cancelled() or commit.exception() is not None:
                self._phases[collection] = SyncPhase.FAILED
                logger.warning("Commit of %s failed during cancellation", collection)
            else:
                self._phases[collection] = SyncPhase.DONE
            raise

    async def _persist(
        self,
        collection: str,
        previous_raw: Any,
        previous_since: datetime | None,
        payload: list[Any],
        started_at: datetime,
        timeout: float | None,
    ) -> None:
        await self._bounded(self.store.save(collection, payload), timeout, collection, "persist")

        try:
            await self._bounded(
                self.timestamps.advance(collection, started_at), timeout, collection, "persist"
            )
        except SmartSyncError:
            await self._rollback(collection, previous_raw, previous_since)
            raise

    async def _rollback(
        self,
        collection: str,
        previous_raw: Any,
        previous_since: datetime | None,
    ) -> None:
        """Put back the pre-cycle cache value after a failed metadata write."""
        try:
            if previous_raw is None:
                await self.store.delete(collection)
            else:
                await self.store.save(collection, previous_raw)
            logger.info("Restored previous cache of %s", collection)
        except SmartSyncError as e:
            # Metadata was not advanced, so the next cycle refetches the same delta
            logger.error("Could not restore previous cache of %s: %s", collection, e.message)
        # A timed-out metadata write may still have landed
        try:
            if await self.timestamps.get(collection) != previous_since:
                await self.timestamps.restore(collection, previous_since)
        except SmartSyncError as e:
            logger.error("Could not restore sync metadata of %s: %s", collection, e.message)

    async def sync_many(
        self,
        collections: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> dict[str, CycleResult]:
        """Sync several collections concurrently.

        Returns:
            Mapping of collection name to its cycle result
        """
        names = list(dict.fromkeys(collections))
        results = await asyncio.gather(*(self.sync(name, timeout=timeout) for name in names))
        return dict(zip(names, results, strict=True))

    # =========================================================================
    # Background cycles and cancellation
    # =========================================================================

    def start(self, collection: str, *, timeout: float | None = None) -> asyncio.Task[CycleResult]:
        """Start a cycle in the background.

        Returns the existing task if a background cycle is already running.
        """
        self._check_collection(collection)
        existing = self._tasks.get(collection)
        if existing is not None and not existing.done():
            return existing

        task = asyncio.create_task(self.sync(collection, timeout=timeout, wait=True))
        self._tasks[collection] = task

        def forget(done: asyncio.Task[CycleResult]) -> None:
            if self._tasks.get(collection) is done:
                del self._tasks[collection]

        task.add_done_callback(forget)
        return task

    def cancel(self, collection: str) -> bool:
        """Cancel a background cycle that has not started persisting.

        Returns:
            True if cancellation was requested, False if there is no
            cancellable cycle (none running, or already persisting)
        """
        task = self._tasks.get(collection)
        if task is None or task.done():
            return False
        if self._owners.get(collection) is task and self.phase(collection) == SyncPhase.PERSISTING:
            return False
        task.cancel()
        return True

    async def close(self) -> None:
        """Cancel background cycles and release the remote source."""
        pending = list(self._tasks.values())
        for collection in list(self._tasks):
            self.cancel(collection)
        pending = [task for task in pending if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await self.fetcher.source.close()


def create_orchestrator(
    config: SyncConfig | None = None,
    source: RemoteSource | None = None,
    store: CacheStore | None = None,
) -> SyncOrchestrator:
    """Create an orchestrator wired to Cosmos DB and the file cache.

    Args:
        config: Sync configuration (default: from environment)
        source: Remote source (default: CosmosRemoteSource from config)
        store: Cache store (default: FileCacheStore at config.local_path)

    Returns:
        Initialized SyncOrchestrator
    """
    from .local.file_store import FileCacheStore

    config = config or SyncConfig.from_environment()
    if source is None:
        from .remote.cosmos import CosmosRemoteSource

        source = CosmosRemoteSource(config)
    if store is None:
        store = FileCacheStore(Path(config.local_path) if config.local_path else None)

    return SyncOrchestrator(
        fetcher=RemoteFetcher(source, config.id_fallbacks),
        store=store,
        config=config,
    )
