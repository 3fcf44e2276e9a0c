"""
Sync supervisor for DocMirror.

The SyncSupervisor owns the lifecycle of a primary -> mirror sync:

    Idle -> Reconciling -> Streaming -> (Disconnected -> Reconciling)* -> Stopped

Each cycle opens the primary's change stream, runs a full reconciliation
while a reader task buffers incoming events in a bounded queue, then
applies the buffered and live events in order until the stream ends.
Streams carry no resume position, so every reconnect starts with a new
reconciliation.

Invariants:
    - The change stream is opened before the snapshot is read, so no write
      made during reconciliation is missed
    - Events are applied sequentially in emission order
    - Only a failure to connect at startup escapes start()
    - The event queue is bounded; a slow mirror applies backpressure to the reader

How to change safely:
    - Keep a single consumer; concurrent appliers would break per-key order
    - Test disconnects both as a clean stream end and as a stream error
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

from ..store.base import ChangeEvent, DocumentStore
from .mirror import ChangeEventMirror
from .reconciler import ReconcileResult, SnapshotReconciler

logger = logging.getLogger(__name__)

_END_OF_STREAM = object()


class SyncPhase(str, Enum):
    """Supervisor lifecycle phase."""

    IDLE = "idle"
    RECONCILING = "reconciling"
    STREAMING = "streaming"
    DISCONNECTED = "disconnected"
    STOPPED = "stopped"


class StreamState(str, Enum):
    """Change stream connection state."""

    LIVE = "live"
    DISCONNECTED = "disconnected"


class SyncSupervisor:
    """Runs reconciliation and change streaming, restarting on disconnect.

    Attributes:
        primary: Source-of-truth store
        mirror: Destination store
        reconciler: Snapshot reconciler used at the start of each cycle
        applier: Change event mirror fed from the stream

    Example:
        >>> supervisor = SyncSupervisor(primary, mirror)
        >>> task = asyncio.create_task(supervisor.start())
        >>> ...
        >>> await supervisor.stop()
    """

    def __init__(
        self,
        primary: DocumentStore,
        mirror: DocumentStore,
        queue_size: int = 1000,
        restart_delay_ms: int = 500,
        max_restart_delay_ms: int = 30000,
        dump_after_write: bool = False,
    ) -> None:
        """Initialize the supervisor.

        Args:
            primary: Source-of-truth store
            mirror: Destination store
            queue_size: Maximum events buffered between stream and mirror
            restart_delay_ms: Delay before the first resync attempt
            max_restart_delay_ms: Upper bound for the doubling resync delay
            dump_after_write: Log the mirror collection after each applied event
        """
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self.primary = primary
        self.mirror = mirror
        self.queue_size = queue_size
        self.restart_delay_ms = restart_delay_ms
        self.max_restart_delay_ms = max_restart_delay_ms

        self.reconciler = SnapshotReconciler(primary, mirror)
        self.applier = ChangeEventMirror(mirror, dump_after_write=dump_after_write)

        self._phase = SyncPhase.IDLE
        self._stream_state = StreamState.DISCONNECTED
        self._running = False
        self._stop_event = asyncio.Event()
        self._cycle_task: asyncio.Task | None = None
        self._queue: asyncio.Queue[Any] | None = None
        self._cycles = 0
        self._restarts = 0
        self._streamed_count = 0
        self._phase_reached_streaming = False
        self._last_reconcile: ReconcileResult | None = None
        self._last_error: str | None = None

    @property
    def phase(self) -> SyncPhase:
        return self._phase

    @property
    def stream_state(self) -> StreamState:
        return self._stream_state

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Connect both stores, then sync until stop() is called.

        Raises:
            StoreConnectionError: If either store cannot be reached at startup
        """
        if self._running:
            logger.warning("Supervisor already running")
            return

        self._running = True
        self._stop_event.clear()

        try:
            await self._connect(self.primary, "primary")
            await self._connect(self.mirror, "mirror")
        except Exception:
            self._running = False
            self._phase = SyncPhase.STOPPED
            raise

        delay_ms = self.restart_delay_ms
        logger.info("Starting sync supervisor")

        try:
            while self._running:
                self._cycle_task = asyncio.create_task(self.run_cycle())
                handled = 0
                try:
                    handled = await self._cycle_task
                except asyncio.CancelledError:
                    if self._running:
                        raise
                    break
                except Exception as e:
                    self._last_error = str(e)
                    logger.error(f"Sync cycle failed: {e}", exc_info=True)
                finally:
                    self._cycle_task = None

                if not self._running:
                    break

                if self._phase_reached_streaming and handled > 0:
                    delay_ms = self.restart_delay_ms

                self._restarts += 1
                logger.warning(
                    "Change stream ended, resynchronizing",
                    extra={"delay_ms": delay_ms, "restarts": self._restarts},
                )
                await self._sleep(delay_ms / 1000)
                delay_ms = min(delay_ms * 2, self.max_restart_delay_ms)

        except asyncio.CancelledError:
            logger.info("Supervisor cancelled")

        finally:
            self._running = False
            self._phase = SyncPhase.STOPPED
            self._stream_state = StreamState.DISCONNECTED
            logger.info("Sync supervisor stopped")

    async def stop(self) -> None:
        """Stop syncing. The current event, if any, is abandoned mid-cycle."""
        self._running = False
        self._stop_event.set()
        if self._cycle_task is not None:
            self._cycle_task.cancel()
        logger.info("Stopping sync supervisor")

    async def run_cycle(self) -> int:
        """Run one reconcile-then-stream cycle until the stream ends.

        Returns:
            Number of streamed events handled in this cycle

        Raises:
            StoreError: If the stream cannot be opened or a snapshot read fails
        """
        self._cycles += 1
        self._phase_reached_streaming = False
        self._phase = SyncPhase.RECONCILING

        try:
            stream = await self.primary.watch_changes()
        except Exception:
            self._phase = SyncPhase.DISCONNECTED
            raise

        self._stream_state = StreamState.LIVE
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self.queue_size)
        self._queue = queue
        reader = asyncio.create_task(self._read_stream(stream, queue))
        handled = 0

        try:
            self._last_reconcile = await self.reconciler.reconcile()

            self._phase = SyncPhase.STREAMING
            self._phase_reached_streaming = True
            logger.info("Listening for changes on primary collection")

            while True:
                item = await queue.get()
                if item is _END_OF_STREAM:
                    logger.warning("Change stream closed by primary")
                    break
                if isinstance(item, Exception):
                    self._last_error = str(item)
                    logger.warning(f"Change stream failed: {item}")
                    break

                await self.applier.apply(item)
                handled += 1
                self._streamed_count += 1

        finally:
            self._stream_state = StreamState.DISCONNECTED
            self._phase = SyncPhase.DISCONNECTED
            self._queue = None
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        return handled

    async def _read_stream(
        self,
        stream: AsyncIterator[ChangeEvent],
        queue: asyncio.Queue[Any],
    ) -> None:
        try:
            async for event in stream:
                await queue.put(event)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put(e)
            return
        await queue.put(_END_OF_STREAM)

    async def _connect(self, store: DocumentStore, role: str) -> None:
        if store.is_connected:
            return
        await store.connect()
        logger.info(f"Connected to {role} store")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    @property
    def stats(self) -> dict[str, Any]:
        """Get supervisor statistics."""
        return {
            "running": self._running,
            "phase": self._phase.value,
            "stream_state": self._stream_state.value,
            "cycles": self._cycles,
            "restarts": self._restarts,
            "streamed_count": self._streamed_count,
            "queue_depth": self._queue.qsize() if self._queue is not None else 0,
            "last_reconcile": self._last_reconcile.to_dict() if self._last_reconcile else None,
            "last_error": self._last_error,
            **self.applier.stats,
        }
