#
# src/pesterbridge/discovery.py
#
"""
Coalesces near-simultaneous discovery requests into one invocation.

PowerShell startup and Pester import dominate the cost of discovering a
single file, so files requested within a short quiet window are discovered
together.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from pesterbridge.telemetry import StructLogger

log: StructLogger = structlog.get_logger("discovery")

DEBOUNCE_DELAY = 0.1  # seconds

DiscoverCallback = Callable[[list[str]], Awaitable[None]]


class DiscoveryQueue:
    """
    Ordered, deduplicated queue of file ids waiting for discovery.

    A trailing-edge timer restarts on every enqueue. When it fires, the queue
    is swapped for an empty one and the whole snapshot is handed to the
    discover callback. Only one drain runs at a time; ids that arrive during a
    drain are picked up by the next one.
    """

    def __init__(self, discover: DiscoverCallback, delay: float = DEBOUNCE_DELAY, logger: StructLogger | None = None):
        self._discover = discover
        self.delay = delay
        self._log = (logger or log).bind(component="discovery_queue")
        self._pending: dict[str, None] = {}
        self._waiters: list[asyncio.Future[None]] = []
        self._timer: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task | None = None
        self._draining = False

    @property
    def pending(self) -> list[str]:
        return list(self._pending)

    @property
    def is_draining(self) -> bool:
        return self._draining

    async def enqueue(self, *file_ids: str) -> None:
        """
        Queues files and waits until a drain covering them has finished.

        Raises whatever the discover callback raised for that drain.
        """
        loop = asyncio.get_running_loop()
        for file_id in file_ids:
            self._pending.setdefault(file_id)
        waiter: asyncio.Future[None] = loop.create_future()
        self._waiters.append(waiter)
        self._log.debug("Adding to discovery queue", files=list(file_ids), queued=len(self._pending))
        self._schedule()
        await waiter

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._draining:
            # The running drain reschedules when it finishes
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._draining or not self._waiters:
            return
        self._drain_task = asyncio.create_task(self.drain_and_invoke())

    async def drain_and_invoke(self) -> None:
        """Discovers everything queued so far in one call. No-op while another drain runs."""
        if self._draining:
            return
        batch, self._pending = list(self._pending), {}
        waiters, self._waiters = self._waiters, []
        self._draining = True
        try:
            if batch:
                self._log.info("Starting test discovery", files=len(batch), emoji_key="discover")
                await self._discover(batch)
        except asyncio.CancelledError:
            for waiter in waiters:
                waiter.cancel()
            raise
        except Exception as e:
            self._log.warning("Test discovery failed", files=len(batch), error=str(e))
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(e)
        else:
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_result(None)
        finally:
            self._draining = False
            if self._waiters:
                self._schedule()

    def cancel(self) -> None:
        """Stops the timer and any running drain; every waiter is cancelled."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
        self._drain_task = None
        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            waiter.cancel()
        self._pending.clear()


# 🔼⚙️
