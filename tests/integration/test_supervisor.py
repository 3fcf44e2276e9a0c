"""
Integration tests for SyncSupervisor with in-memory stores.

Tests cover:
- Initial sync followed by live streaming
- Resync after the stream ends or fails
- Writes made during reconciliation are not lost
- Fault isolation inside the live stream
- Startup connection failure is fatal
"""

import asyncio
import logging
import time

import pytest

from replica.docmirror.config import ServerConfig
from replica.docmirror.main import Server
from replica.docmirror.store.base import ChangeEvent, StoreConnectionError, documents_equal
from replica.docmirror.store.memory import InMemoryDocumentStore
from replica.docmirror.sync.supervisor import StreamState, SyncPhase, SyncSupervisor


async def wait_until(predicate, timeout: float = 3.0) -> bool:
    """Poll predicate until it holds or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return False


def converged(primary: InMemoryDocumentStore, mirror: InMemoryDocumentStore) -> bool:
    expected = primary.documents
    actual = mirror.documents
    return all(k in actual and documents_equal(actual[k], v) for k, v in expected.items())


class TestSyncSupervisor:
    """Integration tests for SyncSupervisor."""

    @pytest.fixture
    def primary(self):
        return InMemoryDocumentStore(
            name="primary",
            documents=[{"_id": 1, "name": "a"}, {"_id": 2, "name": "b"}],
        )

    @pytest.fixture
    def mirror(self):
        return InMemoryDocumentStore(name="mirror")

    @pytest.fixture
    async def supervisor(self, primary, mirror):
        """Create a supervisor and stop it after the test."""
        supervisor = SyncSupervisor(primary, mirror, restart_delay_ms=50, max_restart_delay_ms=200)
        tasks = []

        def run():
            task = asyncio.create_task(supervisor.start())
            tasks.append(task)
            return task

        supervisor.run_in_background = run
        yield supervisor

        await supervisor.stop()
        for task in tasks:
            await asyncio.wait_for(asyncio.gather(task, return_exceptions=True), timeout=3.0)

    @pytest.mark.asyncio
    async def test_initial_sync_then_streaming(self, supervisor, primary, mirror):
        supervisor.run_in_background()

        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)
        assert mirror.documents == {
            "1": {"_id": 1, "name": "a"},
            "2": {"_id": 2, "name": "b"},
        }
        assert supervisor.stats["last_reconcile"]["converged"] == 2
        assert supervisor.stream_state == StreamState.LIVE

    @pytest.mark.asyncio
    async def test_insert_then_delete_streams(self, supervisor, primary, mirror):
        supervisor.run_in_background()
        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

        await primary.upsert(3, {"name": "c"})
        assert await wait_until(lambda: mirror.get(3) is not None)

        await primary.delete(3)
        assert await wait_until(lambda: mirror.get(3) is None)

    @pytest.mark.asyncio
    async def test_updates_for_same_key_keep_order(self, supervisor, primary, mirror):
        supervisor.run_in_background()
        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

        for value in range(20):
            await primary.apply_partial_update(1, {"a": value})

        assert await wait_until(lambda: supervisor.stats["streamed_count"] == 20)
        assert mirror.get(1) == {"_id": 1, "name": "a", "a": 19}

    @pytest.mark.asyncio
    async def test_bad_events_do_not_stop_stream(self, supervisor, primary, mirror):
        supervisor.run_in_background()
        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

        await primary.upsert(3, {"name": "c"})
        primary.emit(ChangeEvent(kind="drop", key=None))
        primary.emit(ChangeEvent(kind="update", key=99, updated_fields={"x": 1}))
        await primary.upsert(4, {"name": "d"})

        assert await wait_until(lambda: mirror.get(4) is not None)
        assert mirror.get(3) == {"_id": 3, "name": "c"}
        assert mirror.get(99) is None
        assert supervisor.stats["error_count"] == 1
        assert supervisor.stats["ignored_count"] == 1
        assert supervisor.phase == SyncPhase.STREAMING

    @pytest.mark.asyncio
    async def test_resync_after_stream_end(self, supervisor, primary, mirror):
        """Writes missed while disconnected are recovered by reconciliation."""
        supervisor.run_in_background()
        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

        primary.disconnect_watchers()
        # No stream is open: these writes are only visible to the next snapshot
        await primary.upsert(5, {"name": "missed"})
        await primary.apply_partial_update(1, {"name": "changed"})

        assert await wait_until(lambda: converged(primary, mirror))
        assert mirror.get(5) == {"_id": 5, "name": "missed"}
        assert supervisor.stats["restarts"] >= 1
        assert supervisor.stats["cycles"] >= 2

        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)
        await primary.upsert(6, {"name": "live again"})
        assert await wait_until(lambda: mirror.get(6) is not None)

    @pytest.mark.asyncio
    async def test_resync_after_stream_error(self, supervisor, primary, mirror):
        supervisor.run_in_background()
        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

        primary.disconnect_watchers(StoreConnectionError("network partition"))
        await primary.upsert(7, {"name": "g"})

        assert await wait_until(lambda: mirror.get(7) is not None)
        assert supervisor.stats["restarts"] >= 1
        assert supervisor.stats["last_error"] == "network partition"

    @pytest.mark.asyncio
    async def test_stream_open_failure_is_retried(self, supervisor, primary, mirror):
        primary.fail_next(StoreConnectionError("no change streams"), operation="watch_changes")

        supervisor.run_in_background()

        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)
        assert converged(primary, mirror)
        assert supervisor.stats["restarts"] == 1

    @pytest.mark.asyncio
    async def test_snapshot_read_failure_is_retried(self, supervisor, primary, mirror):
        primary.fail_next(StoreConnectionError("primary restarting"), operation="get_all")

        supervisor.run_in_background()

        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)
        assert converged(primary, mirror)

    async def _drop_stream_after_cycle(self, supervisor, primary, cycle):
        assert await wait_until(
            lambda: supervisor.stats["cycles"] == cycle and supervisor.phase == SyncPhase.STREAMING
        )
        primary.disconnect_watchers()

    @pytest.mark.asyncio
    async def test_backoff_grows_while_no_events_stream(self, supervisor, primary, caplog):
        with caplog.at_level(logging.WARNING, logger="replica.docmirror.sync.supervisor"):
            supervisor.run_in_background()
            for cycle in (1, 2, 3):
                await self._drop_stream_after_cycle(supervisor, primary, cycle)
            assert await wait_until(lambda: supervisor.stats["restarts"] == 3)

        delays = [r.delay_ms for r in caplog.records if hasattr(r, "delay_ms")]
        assert delays == [50, 100, 200]

    @pytest.mark.asyncio
    async def test_backoff_resets_after_applied_events(self, supervisor, primary, mirror, caplog):
        with caplog.at_level(logging.WARNING, logger="replica.docmirror.sync.supervisor"):
            supervisor.run_in_background()
            await self._drop_stream_after_cycle(supervisor, primary, 1)

            assert await wait_until(
                lambda: supervisor.stats["cycles"] == 2 and supervisor.phase == SyncPhase.STREAMING
            )
            await primary.upsert(8, {"name": "h"})
            assert await wait_until(lambda: mirror.get(8) is not None)
            await self._drop_stream_after_cycle(supervisor, primary, 2)
            assert await wait_until(lambda: supervisor.stats["restarts"] == 2)

        delays = [r.delay_ms for r in caplog.records if hasattr(r, "delay_ms")]
        assert delays == [50, 50]

    @pytest.mark.asyncio
    async def test_small_queue_applies_everything(self, primary, mirror):
        supervisor = SyncSupervisor(primary, mirror, queue_size=1)
        task = asyncio.create_task(supervisor.start())
        try:
            assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

            for key in range(100, 150):
                await primary.upsert(key, {"n": key})

            assert await wait_until(lambda: converged(primary, mirror))
        finally:
            await supervisor.stop()
            await asyncio.wait_for(task, timeout=3.0)

    @pytest.mark.asyncio
    async def test_stop_ends_start(self, supervisor):
        task = supervisor.run_in_background()
        assert await wait_until(lambda: supervisor.phase == SyncPhase.STREAMING)

        await supervisor.stop()
        await asyncio.wait_for(task, timeout=3.0)

        assert supervisor.phase == SyncPhase.STOPPED
        assert supervisor.stream_state == StreamState.DISCONNECTED
        assert not supervisor.is_running

    @pytest.mark.asyncio
    async def test_startup_connection_failure_is_fatal(self, primary, mirror):
        primary.fail_next(StoreConnectionError("cannot reach primary"), operation="connect")
        supervisor = SyncSupervisor(primary, mirror)

        with pytest.raises(StoreConnectionError):
            await supervisor.start()

        assert supervisor.phase == SyncPhase.STOPPED
        assert not supervisor.is_running

    def test_rejects_empty_queue(self, primary, mirror):
        with pytest.raises(ValueError):
            SyncSupervisor(primary, mirror, queue_size=0)


class SnapshotRacePrimary(InMemoryDocumentStore):
    """Primary that receives a write right after its snapshot is read."""

    async def get_all(self):
        docs = await super().get_all()
        if not getattr(self, "_raced", False):
            self._raced = True
            await self.upsert(10, {"name": "written during sync"})
            await self.apply_partial_update(1, {"name": "a2"})
        return docs


class TestSnapshotRace:
    """Writes made during reconciliation reach the mirror through the stream."""

    @pytest.mark.asyncio
    async def test_writes_during_reconcile_are_applied(self):
        primary = SnapshotRacePrimary(name="primary", documents=[{"_id": 1, "name": "a"}])
        mirror = InMemoryDocumentStore(name="mirror")
        supervisor = SyncSupervisor(primary, mirror)
        task = asyncio.create_task(supervisor.start())

        try:
            assert await wait_until(lambda: mirror.get(10) is not None)
            assert await wait_until(lambda: mirror.get(1) == {"_id": 1, "name": "a2"})
            assert supervisor.stats["restarts"] == 0
        finally:
            await supervisor.stop()
            await asyncio.wait_for(task, timeout=3.0)


class TestServer:
    """Tests for the Server orchestrator with injected stores."""

    @pytest.mark.asyncio
    async def test_server_runs_and_stops(self):
        primary = InMemoryDocumentStore(name="primary", documents=[{"_id": 1, "name": "a"}])
        mirror = InMemoryDocumentStore(name="mirror")
        server = Server(ServerConfig(), primary=primary, mirror=mirror)

        task = asyncio.create_task(server.start())
        assert await wait_until(lambda: mirror.get(1) is not None)

        await server.stop()
        await asyncio.wait_for(task, timeout=3.0)

        assert not primary.is_connected
        assert not mirror.is_connected
        assert server.supervisor.phase == SyncPhase.STOPPED

    @pytest.mark.asyncio
    async def test_server_startup_failure(self):
        primary = InMemoryDocumentStore(name="primary")
        mirror = InMemoryDocumentStore(name="mirror")
        mirror.fail_next(StoreConnectionError("mirror down"), operation="connect")
        server = Server(ServerConfig(), primary=primary, mirror=mirror)

        with pytest.raises(StoreConnectionError):
            await server.start()

        assert not primary.is_connected
