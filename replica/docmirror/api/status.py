"""
HTTP status endpoint for DocMirror.

This module provides an optional, read-only HTTP surface for:
- Liveness/readiness probes
- Inspecting sync progress while debugging

Endpoints:
    GET /v1/health  -> {"status": "ok" | "degraded", "phase": ...}
    GET /v1/stats   -> supervisor statistics

Invariants:
    - No endpoint reads or writes documents
    - Health is "ok" only while reconciling or streaming

How to change safely:
    - Keep responses JSON and additive; probes parse them
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from aiohttp import web

from ..config import StatusConfig
from ..sync.supervisor import SyncPhase, SyncSupervisor

logger = logging.getLogger(__name__)

HEALTHY_PHASES = (SyncPhase.RECONCILING, SyncPhase.STREAMING)


def create_status_app(supervisor: SyncSupervisor) -> web.Application:
    """Create the status application.

    Args:
        supervisor: Supervisor to report on

    Returns:
        aiohttp Application instance
    """
    app = web.Application()

    async def health(request: web.Request) -> web.Response:
        return await handle_health(request, supervisor)

    async def stats(request: web.Request) -> web.Response:
        return await handle_stats(request, supervisor)

    app.router.add_get("/v1/health", health)
    app.router.add_get("/v1/stats", stats)

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response(
                {"error": str(e), "error_code": "INTERNAL"},
                status=500,
            )

    app.middlewares.append(error_middleware)
    return app


async def handle_health(request: web.Request, supervisor: SyncSupervisor) -> web.Response:
    healthy = supervisor.phase in HEALTHY_PHASES
    return web.json_response(
        {
            "status": "ok" if healthy else "degraded",
            "phase": supervisor.phase.value,
            "stream_state": supervisor.stream_state.value,
        },
        status=200 if healthy else 503,
    )


async def handle_stats(request: web.Request, supervisor: SyncSupervisor) -> web.Response:
    return web.json_response(supervisor.stats)


async def run_status_server(
    supervisor: SyncSupervisor,
    config: StatusConfig,
) -> web.AppRunner:
    """Start serving the status app in the running event loop.

    Returns:
        The AppRunner; call ``await runner.cleanup()`` to stop serving.
    """
    runner = web.AppRunner(create_status_app(supervisor))
    await runner.setup()
    site = web.TCPSite(runner, config.host, config.port)
    await site.start()
    logger.info("Status endpoint listening", extra={"host": config.host, "port": config.port})
    return runner
