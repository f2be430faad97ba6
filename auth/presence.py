"""
auth/presence.py -- Advisory online/last-seen tracking.

The session guard runs in FastAPI's threadpool and must not wait on a
presence write, so it calls mark_seen(), which hands the id to the event
loop with call_soon_threadsafe() and returns. A single drain task writes
the updates. The queue is bounded: when it is full the update is dropped,
because presence is advisory and a later request will refresh it anyway.

A second task sweeps every sweep_seconds and marks principals that have not
been seen within idle_minutes as offline. Neither path touches
token_version.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from auth.store import PrincipalStore

logger = logging.getLogger("bastion.presence")


class PresenceTracker:
    def __init__(
        self,
        store: PrincipalStore,
        queue_size: int = 1000,
        idle_minutes: int = 10,
        sweep_seconds: int = 60,
    ) -> None:
        self._store = store
        self._queue_size = queue_size
        self._idle = timedelta(minutes=idle_minutes)
        self._sweep_seconds = sweep_seconds
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[int]] = None
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Create the queue and background tasks. Must be called inside the running loop."""
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._tasks = [
            asyncio.create_task(self._drain(), name="presence-drain"),
            asyncio.create_task(self._sweep_loop(), name="presence-sweep"),
        ]
        logger.info(
            "Presence tracker started (idle=%s, sweep every %ds, queue=%d)",
            self._idle,
            self._sweep_seconds,
            self._queue_size,
        )

    async def stop(self) -> None:
        """Cancel the background tasks. Queued updates that were not written are lost."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        pending = self._queue.qsize() if self._queue is not None else 0
        if pending:
            logger.info("Presence tracker stopped with %d pending updates dropped", pending)
        self._tasks = []
        self._loop = None

    # ------------------------------------------------------------------
    # Producer side (any thread)
    # ------------------------------------------------------------------

    def mark_seen(self, principal_id: int) -> None:
        """Schedule a presence refresh. Never blocks and never raises."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("Presence tracker not running; dropping update for %d", principal_id)
            return
        try:
            current: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            self._enqueue(principal_id)
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, principal_id)
        except RuntimeError:
            # Loop closed between the check above and the call.
            logger.debug("Event loop closed; dropping presence update for %d", principal_id)

    def _enqueue(self, principal_id: int) -> None:
        if self._queue is None:
            return
        try:
            self._queue.put_nowait(principal_id)
        except asyncio.QueueFull:
            logger.debug("Presence queue full; dropping update for %d", principal_id)

    # ------------------------------------------------------------------
    # Consumer side (event loop)
    # ------------------------------------------------------------------

    async def join(self) -> None:
        """Wait until every queued update has been written."""
        if self._queue is not None:
            await self._queue.join()

    async def _drain(self) -> None:
        assert self._queue is not None
        while True:
            principal_id = await self._queue.get()
            try:
                await asyncio.to_thread(self._store.touch_presence, principal_id)
            except Exception:
                logger.exception("Presence update failed for principal %d", principal_id)
            finally:
                self._queue.task_done()

    async def sweep(self) -> int:
        """Mark idle principals offline once. Returns how many were changed."""
        return await asyncio.to_thread(self._store.mark_idle_offline, self._idle)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_seconds)
            try:
                changed = await self.sweep()
            except Exception:
                logger.exception("Presence sweep failed")
                continue
            if changed:
                logger.info("Presence sweep marked %d principal(s) offline", changed)
