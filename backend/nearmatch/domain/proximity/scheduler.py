"""Periodic and change-driven re-evaluation of nearby matches."""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Callable, Optional, Protocol, Set

from nearmatch.domain.proximity.exceptions import StoreUnavailable
from nearmatch.domain.proximity.finder import NearbyFinder
from nearmatch.domain.proximity.models import NearbyResult
from nearmatch.obs.logging import bind_context, reset_context
from nearmatch.settings import settings

logger = logging.getLogger(__name__)

TRIGGER_ENABLED = "enabled"
TRIGGER_TIMER = "timer"
TRIGGER_CHANGE = "presence_changed"


class ChangeSubscription(Protocol):
    def __aiter__(self) -> AsyncIterator[str]: ...

    async def __anext__(self) -> str: ...

    async def aclose(self) -> None: ...


class ChangeSource(Protocol):
    async def subscribe(self) -> ChangeSubscription: ...


class ReEvaluationScheduler:
    """Drives `NearbyFinder.evaluate` while proximity matching is enabled.

    Fires once on enable, then on every timer tick and on every presence
    change notification. Evaluations may overlap; whichever finishes last
    becomes `latest`. Disabling cancels the loop and every in-flight
    evaluation, so no reconciliation happens afterwards.
    """

    def __init__(
        self,
        user_id: str,
        finder: NearbyFinder,
        changes: ChangeSource,
        *,
        interval_s: Optional[float] = None,
        on_result: Optional[Callable[[NearbyResult], None]] = None,
    ) -> None:
        self.user_id = user_id
        self._finder = finder
        self._changes = changes
        interval = settings.re_evaluation_interval_seconds if interval_s is None else interval_s
        self.interval_s = max(0.05, float(interval))
        self._on_result = on_result
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._generation = 0
        self.latest: Optional[NearbyResult] = None

    @property
    def enabled(self) -> bool:
        return self._loop_task is not None

    async def enable(self) -> None:
        if self._loop_task is not None:
            return
        self._generation += 1
        self._loop_task = asyncio.create_task(self._run(), name=f"nearby-scheduler:{self.user_id}")

    async def disable(self) -> None:
        task = self._loop_task
        if task is None:
            return
        self._loop_task = None
        self._generation += 1
        pending = [task, *self._inflight]
        for item in pending:
            item.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._inflight.clear()

    def _fire(self, trigger: str) -> None:
        task = asyncio.create_task(
            self._evaluate(trigger, self._generation),
            name=f"nearby-eval:{self.user_id}:{trigger}",
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _evaluate(self, trigger: str, generation: int) -> None:
        tokens = bind_context(user_id=self.user_id, trigger=trigger)
        try:
            result = await self._finder.evaluate(self.user_id, trigger=trigger)
            if generation != self._generation:
                return
            self.latest = result
            if self._on_result is not None:
                self._on_result(result)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("nearby evaluation failed user=%s trigger=%s", self.user_id, trigger)
        finally:
            reset_context(tokens)

    async def _subscribe(self) -> Optional[ChangeSubscription]:
        try:
            return await self._changes.subscribe()
        except StoreUnavailable:
            logger.warning("presence change subscription unavailable user=%s; timer only", self.user_id)
            return None

    @staticmethod
    def _await_change(subscription: Optional[ChangeSubscription]) -> Optional[asyncio.Future]:
        if subscription is None:
            return None
        return asyncio.ensure_future(subscription.__anext__())

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        subscription = await self._subscribe()
        change = self._await_change(subscription)
        self._fire(TRIGGER_ENABLED)
        deadline = loop.time() + self.interval_s
        try:
            while True:
                timeout = max(0.0, deadline - loop.time())
                if change is not None:
                    done, _ = await asyncio.wait({change}, timeout=timeout)
                else:
                    await asyncio.sleep(timeout)
                    done = set()

                if change is not None and change in done:
                    try:
                        change.result()
                    except (StopAsyncIteration, StoreUnavailable):
                        logger.warning("presence change stream ended user=%s; timer only", self.user_id)
                        await subscription.aclose()  # type: ignore[union-attr]
                        subscription = None
                        change = None
                    else:
                        self._fire(TRIGGER_CHANGE)
                        change = self._await_change(subscription)

                if loop.time() >= deadline:
                    self._fire(TRIGGER_TIMER)
                    deadline = loop.time() + self.interval_s
                    if subscription is None:
                        subscription = await self._subscribe()
                        change = self._await_change(subscription)
        finally:
            if change is not None:
                change.cancel()
                await asyncio.gather(change, return_exceptions=True)
            if subscription is not None:
                await subscription.aclose()


__all__ = ["ReEvaluationScheduler", "TRIGGER_CHANGE", "TRIGGER_ENABLED", "TRIGGER_TIMER"]
