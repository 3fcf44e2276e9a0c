"""
DocMirror - Main entry point.

This module starts the mirror process with all components:
- Primary and mirror store connections
- Sync supervisor (reconcile, then stream, resync on disconnect)
- Optional status endpoint

Usage:
    python -m replica.docmirror.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Failing to reach either store at startup exits with status 1
    - Every later failure is retried by the supervisor, never fatal
    - Shutdown closes both stores after the supervisor has stopped

How to change safely:
    - Test shutdown sequence thoroughly
    - Keep startup failures distinguishable from configuration errors in logs
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import json_log_formatter
from aiohttp import web

from .api import run_status_server
from .config import ServerConfig
from .store import DocumentStore, StoreConnectionError, create_document_store
from .sync import SyncSupervisor

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Process configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.VerboseJSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


class Server:
    """DocMirror process orchestrator.

    Manages the lifecycle of all components:
    - Store connections
    - Sync supervisor
    - Status endpoint

    Attributes:
        config: Process configuration
        primary: Source-of-truth store
        mirror: Mirror store
        supervisor: Sync supervisor

    Example:
        >>> server = Server()
        >>> await server.start()
        >>> # Server is running
        >>> await server.stop()
    """

    def __init__(
        self,
        config: ServerConfig | None = None,
        primary: DocumentStore | None = None,
        mirror: DocumentStore | None = None,
    ) -> None:
        """Initialize the server.

        Args:
            config: Optional configuration (loaded from env if not provided)
            primary: Optional primary store (built from config if not provided)
            mirror: Optional mirror store (built from config if not provided)
        """
        self.config = config or ServerConfig.from_env()
        store = self.config.store

        self.primary = primary or create_document_store(
            store.primary_uri,
            store.database,
            store.collection,
            server_selection_timeout_ms=store.server_selection_timeout_ms,
        )
        self.mirror = mirror or create_document_store(
            store.mirror_uri,
            store.database,
            store.collection,
            server_selection_timeout_ms=store.server_selection_timeout_ms,
        )
        self.supervisor = SyncSupervisor(
            self.primary,
            self.mirror,
            queue_size=self.config.sync.queue_size,
            restart_delay_ms=self.config.sync.restart_delay_ms,
            max_restart_delay_ms=self.config.sync.max_restart_delay_ms,
            dump_after_write=self.config.sync.dump_after_write,
        )

        self._status_runner: web.AppRunner | None = None
        self._running = False

    async def start(self) -> None:
        """Start all components and run until the supervisor stops.

        Raises:
            StoreConnectionError: If either store is unreachable at startup
        """
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting DocMirror")
        self.config.log_config()
        self._running = True

        try:
            if self.config.status.enabled:
                self._status_runner = await run_status_server(self.supervisor, self.config.status)

            await self.supervisor.start()

        except StoreConnectionError as e:
            logger.error(f"Fatal error: {e}")
            raise

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping DocMirror")
        self._running = False

        await self.supervisor.stop()

        if self._status_runner is not None:
            await self._status_runner.cleanup()
            self._status_runner = None

        await self.primary.close()
        await self.mirror.close()
        logger.info("DocMirror stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        asyncio.ensure_future(self.supervisor.stop())


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    exit_code = 0
    try:
        loop.run_until_complete(server.start())
    except StoreConnectionError:
        exit_code = 1
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
