"""Tests for sync cycles driven by the orchestrator.

Covers first sync, incremental sync, fallback, failure handling that
leaves the cache and SyncMetadata untouched, timeouts, per-collection
exclusivity and cancellation.
"""

import asyncio
import warnings
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from conftest import T0, doc

import smart_sync.orchestrator as orchestrator_module
from smart_sync.config import SyncConfig
from smart_sync.exceptions import (
    PersistenceError,
    SmartSyncError,
    SyncCancelledError,
    SyncInProgressError,
    SyncTimeoutError,
    TransportError,
)
from smart_sync.metadata import SYNC_METADATA_KEY
from smart_sync.orchestrator import SyncOrchestrator, SyncPhase, create_orchestrator
from smart_sync.records import Record
from smart_sync.remote.base import RemoteFetcher

JAN_1 = datetime(2024, 1, 1, tzinfo=UTC)
JAN_2 = datetime(2024, 1, 2, tzinfo=UTC)


async def wait_for_event(event: asyncio.Event) -> None:
    await asyncio.wait_for(event.wait(), timeout=1.0)


class TestFirstSync:
    """Tests for the first cycle of a collection."""

    @pytest.mark.asyncio
    async def test_full_fetch_and_metadata_set(self, orchestrator, remote, store):
        remote.collections["officers"] = [doc("1", JAN_1, name="A"), doc("2", JAN_2, name="B")]

        result = await orchestrator.sync("officers")

        assert result.success
        assert result.phase == SyncPhase.DONE
        assert remote.calls == [("officers", None)]
        assert result.used_filtered_query is False
        assert result.merge.added == 2
        assert [r.id for r in await orchestrator.read("officers")] == ["1", "2"]
        assert await orchestrator.timestamps.get("officers") == T0

    @pytest.mark.asyncio
    async def test_metadata_is_cycle_start_not_record_time(self, orchestrator, remote):
        remote.collections["officers"] = [doc("1", T0 + timedelta(days=30))]

        result = await orchestrator.sync("officers")

        assert await orchestrator.timestamps.get("officers") == result.started_at == T0

    @pytest.mark.asyncio
    async def test_empty_remote_collection(self, orchestrator, store):
        result = await orchestrator.sync("students")

        assert result.success
        assert await store.load("students") == []
        assert await orchestrator.timestamps.get("students") == T0


class TestIncrementalSync:
    """Tests for cycles after the first one."""

    @pytest.mark.asyncio
    async def test_second_cycle_uses_last_sync_instant(self, orchestrator, remote, clock):
        remote.collections["officers"] = [doc("1", JAN_1)]
        await orchestrator.sync("officers")
        first_start = clock.readings[0]

        result = await orchestrator.sync("officers")

        assert remote.calls[-1] == ("officers", first_start)
        assert result.used_filtered_query is True
        assert await orchestrator.timestamps.get("officers") == result.started_at

    @pytest.mark.asyncio
    async def test_newer_remote_replaces_local(self, orchestrator, remote, store):
        await store.save("officers", [doc("1", JAN_1, name="old")])
        await orchestrator.timestamps.advance("officers", JAN_1)
        remote.collections["officers"] = [doc("1", JAN_2, name="X")]

        result = await orchestrator.sync("officers")

        [record] = await orchestrator.read("officers")
        assert record.get("name") == "X"
        assert record.updated_at == JAN_2
        assert result.merge.overridden == 1

    @pytest.mark.asyncio
    async def test_unsynced_local_edit_survives(self, orchestrator, remote, store):
        await store.save("officers", [doc("1", JAN_2, name="edited offline")])
        await orchestrator.timestamps.advance("officers", JAN_1)
        remote.collections["officers"] = [doc("1", JAN_2, name="server copy")]

        await orchestrator.sync("officers")

        [record] = await orchestrator.read("officers")
        assert record.get("name") == "edited offline"

    @pytest.mark.asyncio
    async def test_unknown_local_fields_preserved(self, orchestrator, store):
        await store.save("logs", [doc("1", JAN_1, timeIn="08:00", extra={"k": [1]})])

        await orchestrator.sync("logs")

        assert await store.load("logs") == [
            {"id": "1", "updatedAt": JAN_1.isoformat(), "timeIn": "08:00", "extra": {"k": [1]}}
        ]

    @pytest.mark.asyncio
    async def test_fallback_still_completes_and_advances(self, orchestrator, remote):
        await orchestrator.timestamps.advance("officers", JAN_1)
        remote.supports_filter = False
        remote.collections["officers"] = [doc("1", JAN_2), doc("2", JAN_1 - timedelta(days=1))]

        result = await orchestrator.sync("officers")

        assert result.success
        assert result.used_filtered_query is False
        assert remote.calls == [("officers", JAN_1), ("officers", None)]
        assert {r.id for r in await orchestrator.read("officers")} == {"1", "2"}
        assert await orchestrator.timestamps.get("officers") == result.started_at

    @pytest.mark.asyncio
    async def test_client_side_filter_on_fallback(self, remote, store, clock):
        orchestrator = SyncOrchestrator(
            RemoteFetcher(remote), store, config=SyncConfig(client_side_filter=True), clock=clock
        )
        await orchestrator.timestamps.advance("officers", JAN_1)
        remote.supports_filter = False
        remote.collections["officers"] = [doc("1", JAN_2), doc("2", JAN_1 - timedelta(days=1))]

        result = await orchestrator.sync("officers")

        assert result.fetched == 2
        assert [r.id for r in await orchestrator.read("officers")] == ["1"]

    @pytest.mark.asyncio
    async def test_reset_forces_full_fetch(self, orchestrator, remote):
        await orchestrator.sync("officers")
        await orchestrator.timestamps.reset("officers")

        await orchestrator.sync("officers")

        assert remote.calls[-1] == ("officers", None)


class TestFailurePreservesState:
    """A failed cycle never partially commits."""

    @pytest.fixture
    async def seeded(self, orchestrator, remote, store):
        await store.save("officers", [doc("1", JAN_1, name="cached")])
        await orchestrator.timestamps.advance("officers", JAN_1)
        remote.collections["officers"] = [doc("1", JAN_2, name="new"), doc("2", JAN_2)]
        return store.snapshot()

    @pytest.mark.asyncio
    async def test_transport_error(self, orchestrator, remote, store, seeded):
        remote.fail_with = TransportError("offline", "officers")

        result = await orchestrator.sync("officers")

        assert not result.success
        assert result.failed_during == SyncPhase.FETCHING
        assert isinstance(result.error, TransportError)
        assert store.snapshot() == seeded
        assert orchestrator.phase("officers") == SyncPhase.FAILED

    @pytest.mark.asyncio
    async def test_persistence_error_on_records(self, orchestrator, store, seeded):
        store.fail_keys.add("officers")

        result = await orchestrator.sync("officers")

        assert not result.success
        assert result.failed_during == SyncPhase.PERSISTING
        assert isinstance(result.error, PersistenceError)
        assert store.snapshot() == seeded

    @pytest.mark.asyncio
    async def test_persistence_error_on_metadata_rolls_back_records(
        self, orchestrator, store, seeded
    ):
        store.fail_keys.add(SYNC_METADATA_KEY)

        result = await orchestrator.sync("officers")

        assert not result.success
        assert isinstance(result.error, PersistenceError)
        assert store.snapshot() == seeded

    @pytest.mark.asyncio
    async def test_metadata_failure_on_first_sync_removes_new_cache(
        self, orchestrator, remote, store
    ):
        remote.collections["students"] = [doc("1", JAN_1)]
        store.fail_keys.add(SYNC_METADATA_KEY)

        result = await orchestrator.sync("students")

        assert not result.success
        assert await store.load("students") is None

    @pytest.mark.asyncio
    async def test_corrupt_local_cache(self, orchestrator, store):
        await store.save("officers", {"not": "a list"})

        result = await orchestrator.sync("officers")

        assert isinstance(result.error, PersistenceError)
        assert await store.load("officers") == {"not": "a list"}

    @pytest.mark.asyncio
    async def test_entries_without_identifier_survive_sync(self, orchestrator, store):
        offline_log = {"officerId": "X", "timeIn": 1, "firebaseId": None}
        await store.save("logs", [doc("1", JAN_1), offline_log])

        result = await orchestrator.sync("logs")

        assert result.success
        assert result.merge.records == [Record("1", JAN_1, {})]
        stored = await store.load("logs")
        assert len(stored) == 2
        assert offline_log in stored

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_reported(self, orchestrator, store, seeded, monkeypatch):
        async def broken_fetch(collection, since):
            raise ValueError("bug")

        monkeypatch.setattr(orchestrator.fetcher, "fetch_since", broken_fetch)

        result = await orchestrator.sync("officers")

        assert isinstance(result.error, SmartSyncError)
        assert store.snapshot() == seeded

    @pytest.mark.asyncio
    async def test_stale_cache_readable_after_failure(self, orchestrator, remote, seeded):
        remote.fail_with = TransportError("offline")

        await orchestrator.sync("officers")

        [record] = await orchestrator.read("officers")
        assert record.get("name") == "cached"


class TestTimeouts:
    """Tests for bounded suspension points."""

    @pytest.mark.asyncio
    async def test_fetch_timeout(self, orchestrator, remote, store, caplog):
        remote.delay = 1.0
        before = store.snapshot()

        result = await orchestrator.sync("officers", timeout=0.05)

        assert isinstance(result.error, SyncTimeoutError)
        assert result.error.step == "fetch"
        assert result.failed_during == SyncPhase.FETCHING
        assert store.snapshot() == before
        assert "abandoned after" in caplog.text

    @pytest.mark.asyncio
    async def test_configured_fetch_timeout(self, remote, store, clock):
        orchestrator = SyncOrchestrator(
            RemoteFetcher(remote), store, config=SyncConfig(fetch_timeout=0.05), clock=clock
        )
        remote.delay = 1.0

        result = await orchestrator.sync("officers")

        assert isinstance(result.error, SyncTimeoutError)

    @pytest.mark.asyncio
    async def test_persist_timeout(self, orchestrator, store):
        store.gate_keys.add("officers")
        before = store.snapshot()

        result = await orchestrator.sync("officers", timeout=0.05)

        assert isinstance(result.error, SyncTimeoutError)
        assert result.error.step == "persist"
        assert store.snapshot() == before


class TestConcurrency:
    """Tests for per-collection exclusivity and concurrent collections."""

    @pytest.mark.asyncio
    async def test_second_cycle_rejected_while_running(self, orchestrator, remote):
        remote.gate = asyncio.Event()
        task = orchestrator.start("officers")
        await wait_for_event(remote.entered)

        rejected = await orchestrator.sync("officers")

        assert isinstance(rejected.error, SyncInProgressError)
        assert orchestrator.phase("officers") == SyncPhase.FETCHING
        remote.gate.set()
        assert (await task).success

    @pytest.mark.asyncio
    async def test_waiting_cycle_runs_after_current(self, orchestrator, remote):
        remote.gate = asyncio.Event()
        first = asyncio.create_task(orchestrator.sync("officers"))
        await wait_for_event(remote.entered)
        second = asyncio.create_task(orchestrator.sync("officers", wait=True))
        await asyncio.sleep(0)

        assert len(remote.calls) == 1
        remote.gate.set()
        first_result, second_result = await asyncio.gather(first, second)

        assert first_result.success and second_result.success
        assert remote.calls[1] == ("officers", first_result.started_at)

    @pytest.mark.asyncio
    async def test_collections_sync_concurrently(self, orchestrator, remote):
        remote.collections = {"officers": [doc("1", JAN_1)], "students": [doc("s1", JAN_1)]}

        results = await orchestrator.sync_many(["officers", "students", "officers"])

        assert list(results) == ["officers", "students"]
        assert all(result.success for result in results.values())
        assert set((await orchestrator.timestamps.snapshot())) == {"officers", "students"}

    @pytest.mark.asyncio
    async def test_one_failing_collection_does_not_affect_another(self, orchestrator, store):
        await store.save("officers", {"corrupt": True})

        results = await orchestrator.sync_many(["officers", "students"])

        assert not results["officers"].success
        assert results["students"].success

    @pytest.mark.asyncio
    async def test_read_does_not_wait_for_cycle(self, orchestrator, remote, store):
        await store.save("officers", [doc("1", JAN_1)])
        remote.gate = asyncio.Event()
        task = orchestrator.start("officers")
        await wait_for_event(remote.entered)

        records = await asyncio.wait_for(orchestrator.read("officers"), timeout=1.0)

        assert [r.id for r in records] == ["1"]
        remote.gate.set()
        await task

    @pytest.mark.asyncio
    async def test_start_returns_running_task(self, orchestrator, remote):
        remote.gate = asyncio.Event()
        task = orchestrator.start("officers")

        assert orchestrator.start("officers") is task
        remote.gate.set()
        await task


class TestCancellation:
    """Tests for external cancellation of cycles."""

    @pytest.mark.asyncio
    async def test_cancel_during_fetch_has_no_side_effects(self, orchestrator, remote, store):
        await store.save("officers", [doc("1", JAN_1)])
        before = store.snapshot()
        remote.gate = asyncio.Event()
        task = orchestrator.start("officers")
        await wait_for_event(remote.entered)

        assert orchestrator.cancel("officers") is True
        with pytest.raises(asyncio.CancelledError):
            await task

        assert store.snapshot() == before
        assert orchestrator.phase("officers") == SyncPhase.FAILED
        assert not orchestrator.is_syncing("officers")

    @pytest.mark.asyncio
    async def test_cancel_refused_while_persisting(self, orchestrator, store):
        store.gate_keys.add("officers")
        task = orchestrator.start("officers")
        await wait_for_event(store.saving)

        assert orchestrator.phase("officers") == SyncPhase.PERSISTING
        assert orchestrator.cancel("officers") is False
        store.gate.set()
        assert (await task).success

    @pytest.mark.asyncio
    async def test_forced_cancel_while_persisting_completes_commit(self, orchestrator, store):
        store.gate_keys.add("officers")
        task = orchestrator.start("officers")
        await wait_for_event(store.saving)

        task.cancel()
        await asyncio.sleep(0)
        store.gate.set()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert await store.load("officers") == []
        assert await orchestrator.timestamps.get("officers") == T0
        assert orchestrator.phase("officers") == SyncPhase.DONE

    @pytest.mark.asyncio
    async def test_cancel_without_task(self, orchestrator):
        assert orchestrator.cancel("officers") is False

    @pytest.mark.asyncio
    async def test_cancelled_cycle_error_type(self):
        assert "officers" in SyncCancelledError("officers").message


class TestLocalEdits:
    """Tests for upsert_local and read."""

    @pytest.mark.asyncio
    async def test_upsert_inserts_and_stamps(self, orchestrator):
        stored = await orchestrator.upsert_local("officers", Record("9"), name="New")

        assert stored.updated_at == T0
        [record] = await orchestrator.read("officers")
        assert record == stored

    @pytest.mark.asyncio
    async def test_upsert_replaces_existing(self, orchestrator, store):
        await store.save("officers", [doc("1", JAN_1, name="A"), doc("2", JAN_1)])

        await orchestrator.upsert_local("officers", Record("1", JAN_1, {"name": "A"}), name="B")

        records = await orchestrator.read("officers")
        assert [r.id for r in records] == ["1", "2"]
        assert records[0].get("name") == "B"

    @pytest.mark.asyncio
    async def test_upsert_keeps_entries_without_identifier(self, orchestrator, store):
        offline_log = {"officerId": "X", "timeIn": 1}
        await store.save("logs", [offline_log])

        await orchestrator.upsert_local("logs", Record("1"), officerId="Y")

        stored = await store.load("logs")
        assert offline_log in stored
        assert [r.id for r in await orchestrator.read("logs")] == ["1"]

    @pytest.mark.asyncio
    async def test_local_edit_beats_older_remote_on_next_sync(self, orchestrator, remote):
        await orchestrator.upsert_local("officers", Record("1"), name="mine")
        remote.collections["officers"] = [doc("1", T0 - timedelta(hours=1), name="theirs")]

        await orchestrator.sync("officers")

        [record] = await orchestrator.read("officers")
        assert record.get("name") == "mine"

    @pytest.mark.asyncio
    async def test_metadata_key_is_not_a_collection(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.sync(SYNC_METADATA_KEY)


class TestLifecycle:
    """Tests for construction and shutdown."""

    @pytest.mark.asyncio
    async def test_close_releases_source(self, orchestrator, remote):
        await orchestrator.close()
        assert remote.closed

    @pytest.mark.asyncio
    async def test_create_orchestrator_uses_file_store(self, tmp_path, remote):
        config = SyncConfig(local_path=str(tmp_path))
        remote.collections["officers"] = [doc("1", JAN_1)]

        orchestrator = create_orchestrator(config, source=remote)
        result = await orchestrator.sync("officers")

        assert result.success
        assert (tmp_path / "officers.json").exists()
        assert (tmp_path / "_sync_metadata.json").exists()

    @pytest.mark.asyncio
    async def test_cycle_result_to_dict(self, orchestrator, remote):
        remote.collections["officers"] = [doc("1", JAN_1)]

        summary = (await orchestrator.sync("officers")).to_dict()

        assert summary["success"] is True
        assert summary["added"] == 1
        assert summary["total"] == 1
        assert summary["error"] is None


class TestModuleSource:
    """Tests for the orchestrator module source itself."""

    def test_compiles_with_warnings_as_errors(self):
        path = Path(orchestrator_module.__file__)

        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(path.read_text(encoding="utf-8"), str(path), "exec")
