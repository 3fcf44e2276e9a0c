"""
Unit tests for the HTTP status endpoint.
"""

import asyncio

import pytest
from aiohttp import test_utils

from replica.docmirror.api.status import create_status_app
from replica.docmirror.sync.supervisor import SyncPhase, SyncSupervisor


def status_client(supervisor):
    return test_utils.TestClient(test_utils.TestServer(create_status_app(supervisor)))


class TestStatusApi:
    """Tests for the status application."""

    @pytest.fixture
    def supervisor(self, primary, mirror):
        return SyncSupervisor(primary, mirror)

    @pytest.mark.asyncio
    async def test_health_degraded_when_idle(self, supervisor):
        async with status_client(supervisor) as client:
            resp = await client.get("/v1/health")
            body = await resp.json()

        assert resp.status == 503
        assert body["status"] == "degraded"
        assert body["phase"] == "idle"

    @pytest.mark.asyncio
    async def test_health_ok_after_cycle_starts(self, supervisor, primary):
        await primary.upsert(1, {"name": "a"})
        cycle = asyncio.create_task(supervisor.run_cycle())
        while supervisor.phase != SyncPhase.STREAMING and not cycle.done():
            await asyncio.sleep(0.01)

        async with status_client(supervisor) as client:
            resp = await client.get("/v1/health")
            body = await resp.json()

        primary.disconnect_watchers()
        assert await asyncio.wait_for(cycle, timeout=3.0) == 0

        assert resp.status == 200
        assert body["status"] == "ok"
        assert body["phase"] == "streaming"

    @pytest.mark.asyncio
    async def test_stats(self, supervisor, primary, mirror):
        await primary.upsert(1, {"name": "a"})
        await supervisor.reconciler.reconcile()

        async with status_client(supervisor) as client:
            resp = await client.get("/v1/stats")
            body = await resp.json()

        assert resp.status == 200
        assert body["phase"] == "idle"
        assert body["cycles"] == 0
        assert body["applied_count"] == 0
        assert body["queue_depth"] == 0

    @pytest.mark.asyncio
    async def test_unknown_route(self, supervisor):
        async with status_client(supervisor) as client:
            resp = await client.get("/v1/documents")

        assert resp.status == 404
