"""Periodic room status sweeper.

Rooms change status with the clock, not with requests. The sweeper runs as a
background task on the server's event loop and, on every tick:

1. moves scheduled rooms whose window has begun to ``live``
2. moves scheduled or live rooms whose window has ended to ``closed``
3. broadcasts ``room_status_update`` to each changed room's connections and,
   unless disabled, to the global channel

Store failures are logged and the tick is skipped; the next tick retries. A
failed announcement is logged and does not stop the loop.
Overlapping ticks are skipped with an in-flight flag.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime

from . import db
from .metrics import metrics
from .protocol import room_status_event
from .registry import ConnectionRegistry, get_registry
from .schemas import GLOBAL_ROOM_ID

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL = 60.0


async def announce_status_change(
    room: dict,
    registry: ConnectionRegistry | None = None,
    to_global: bool = True,
) -> int:
    """Broadcast a room's new status to its connections (and the global channel).

    Returns:
        Number of connections notified.
    """
    registry = registry or get_registry()
    event = room_status_event(room)
    delivered = await registry.broadcast(room["id"], event)
    if to_global:
        delivered += await registry.broadcast(GLOBAL_ROOM_ID, event)
    return delivered


def _empty_result() -> dict[str, list[dict]]:
    return {"going_live": [], "going_closed": []}


class Sweeper:
    """Background task that bulk-reconciles room statuses."""

    def __init__(
        self,
        interval: float = DEFAULT_SWEEP_INTERVAL,
        registry: ConnectionRegistry | None = None,
        broadcast_to_global: bool = True,
        enabled: bool = True,
    ) -> None:
        if interval <= 0:
            raise ValueError("Sweep interval must be positive")
        self.interval = interval
        self.broadcast_to_global = broadcast_to_global
        self.enabled = enabled
        self._registry = registry
        self._task: asyncio.Task | None = None
        self._shutdown_event: asyncio.Event | None = None
        self._in_flight = False

    @property
    def registry(self) -> ConnectionRegistry:
        # Resolved per use so a swapped global registry is picked up.
        return self._registry or get_registry()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self, now: datetime | None = None) -> dict[str, list[dict]]:
        """Run one sweep.

        Returns:
            {"going_live": [...], "going_closed": [...]} with the rooms that
            changed. Empty lists on a no-op, a skipped tick or a store failure.
        """
        if self._in_flight:
            logger.debug("Previous sweep still running; skipping tick")
            metrics.increment("sweeps_skipped")
            return _empty_result()

        self._in_flight = True
        start = time.perf_counter()
        try:
            try:
                result = await db.run_sync(db.update_room_statuses, now)
            except Exception as e:
                logger.error(f"Room status sweep failed: {e}")
                metrics.increment("sweep_failures")
                return _empty_result()

            for room in result["going_live"] + result["going_closed"]:
                try:
                    await announce_status_change(
                        room, registry=self.registry, to_global=self.broadcast_to_global
                    )
                except Exception:
                    logger.exception(f"Could not announce status of room {room['id']}")
                    metrics.increment("announce_failures")
        finally:
            self._in_flight = False

        changed = len(result["going_live"]) + len(result["going_closed"])
        duration_ms = (time.perf_counter() - start) * 1000
        metrics.increment("sweeps")
        metrics.increment("rooms_transitioned", changed)
        if changed:
            logger.info(
                f"Sweep: {len(result['going_live'])} room(s) live, "
                f"{len(result['going_closed'])} room(s) closed ({duration_ms:.1f}ms)"
            )
        return result

    async def _run(self) -> None:
        assert self._shutdown_event is not None
        while not self._shutdown_event.is_set():
            await self.tick()
            try:
                # Wait for the interval or the shutdown signal
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        """Schedule the sweep loop on the running event loop."""
        if not self.enabled:
            logger.info("Room status sweeper disabled")
            return
        if self.running:
            return

        self._shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())
        logger.info(f"Room status sweeper started (every {self.interval}s)")

    async def stop(self, timeout: float = 5.0) -> None:
        """Signal the loop to stop and wait for the current tick to finish."""
        if self._task is None:
            return
        if self._shutdown_event is not None:
            self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
            logger.warning("Room status sweeper did not stop in time; cancelled")
        self._task = None
        logger.info("Room status sweeper stopped")
