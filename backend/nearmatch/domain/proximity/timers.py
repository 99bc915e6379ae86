"""Cancellable asyncio timers for presence debouncing."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class Debouncer:
    """Trailing-edge debounce: `arm` cancels any pending firing and schedules a new one.

    Once the quiet period elapses the callback runs in its own task, so a later
    `arm` does not interrupt a callback that is already running; only `cancel`
    stops those.
    """

    def __init__(self, delay: float, *, name: str = "debounce") -> None:
        self.delay = max(0.0, float(delay))
        self.name = name
        self._timer: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()

    def arm(self, callback: Callable[..., Awaitable[Any]], *args: Any) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.create_task(self._wait_then_fire(callback, args), name=f"{self.name}:timer")

    async def _wait_then_fire(self, callback: Callable[..., Awaitable[Any]], args: tuple) -> None:
        await asyncio.sleep(self.delay)
        task = asyncio.create_task(callback(*args), name=f"{self.name}:fire")
        self._running.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._running.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("%s callback failed", self.name, exc_info=exc)

    async def cancel(self) -> None:
        """Cancel the pending timer and any callback still running."""
        tasks = [t for t in (self._timer, *self._running) if t is not None and not t.done()]
        self._timer = None
        for task in tasks:
            task.cancel()
        # failures were already logged by _finished
        await asyncio.gather(*tasks, return_exceptions=True)

    async def drain(self) -> None:
        """Wait for callbacks that already fired (tests and orderly shutdown)."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)


__all__ = ["Debouncer"]
