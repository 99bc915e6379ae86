import asyncio
from typing import List, Optional

import pytest

from nearmatch.domain.proximity.exceptions import StoreUnavailable
from nearmatch.domain.proximity.models import NearbyResult
from nearmatch.domain.proximity.scheduler import (
    TRIGGER_CHANGE,
    TRIGGER_ENABLED,
    TRIGGER_TIMER,
    ReEvaluationScheduler,
)


class QueueSubscription:
    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self.queue.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def aclose(self) -> None:
        self.closed = True


class QueueChanges:
    def __init__(self, *, fail: bool = False) -> None:
        self.subscriptions: List[QueueSubscription] = []
        self.fail = fail

    async def subscribe(self) -> QueueSubscription:
        if self.fail:
            raise StoreUnavailable("presence down", store="presence")
        subscription = QueueSubscription()
        self.subscriptions.append(subscription)
        return subscription


class RecordingFinder:
    def __init__(self) -> None:
        self.triggers: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.finished = 0

    async def evaluate(self, user_id: str, *, trigger: str = "manual") -> NearbyResult:
        self.triggers.append(trigger)
        if self.gate is not None:
            await self.gate.wait()
        self.finished += 1
        return NearbyResult(items=[], complete=True, trigger=trigger)


@pytest.mark.asyncio
async def test_enable_fires_once_immediately():
    finder = RecordingFinder()
    scheduler = ReEvaluationScheduler("u1", finder, QueueChanges(), interval_s=10.0)

    await scheduler.enable()
    await scheduler.enable()
    await asyncio.sleep(0.05)

    assert finder.triggers == [TRIGGER_ENABLED]
    assert scheduler.latest.trigger == TRIGGER_ENABLED
    await scheduler.disable()


@pytest.mark.asyncio
async def test_timer_fires_every_interval():
    finder = RecordingFinder()
    scheduler = ReEvaluationScheduler("u1", finder, QueueChanges(), interval_s=0.05)

    await scheduler.enable()
    await asyncio.sleep(0.18)
    await scheduler.disable()

    assert finder.triggers[0] == TRIGGER_ENABLED
    assert finder.triggers.count(TRIGGER_TIMER) >= 2


@pytest.mark.asyncio
async def test_presence_change_triggers_evaluation():
    finder = RecordingFinder()
    changes = QueueChanges()
    results: List[NearbyResult] = []
    scheduler = ReEvaluationScheduler("u1", finder, changes, interval_s=10.0, on_result=results.append)

    await scheduler.enable()
    await asyncio.sleep(0.02)
    changes.subscriptions[0].queue.put_nowait("u2")
    await asyncio.sleep(0.05)
    await scheduler.disable()

    assert finder.triggers == [TRIGGER_ENABLED, TRIGGER_CHANGE]
    assert [r.trigger for r in results] == [TRIGGER_ENABLED, TRIGGER_CHANGE]
    assert changes.subscriptions[0].closed


@pytest.mark.asyncio
async def test_disable_cancels_inflight_evaluation():
    finder = RecordingFinder()
    finder.gate = asyncio.Event()
    results: List[NearbyResult] = []
    scheduler = ReEvaluationScheduler("u1", finder, QueueChanges(), interval_s=0.05, on_result=results.append)

    await scheduler.enable()
    await asyncio.sleep(0.02)
    await scheduler.disable()
    finder.gate.set()
    await asyncio.sleep(0.15)

    assert finder.triggers == [TRIGGER_ENABLED]
    assert finder.finished == 0
    assert results == []
    assert scheduler.latest is None
    assert not scheduler.enabled


@pytest.mark.asyncio
async def test_unavailable_change_feed_falls_back_to_timer():
    finder = RecordingFinder()
    scheduler = ReEvaluationScheduler("u1", finder, QueueChanges(fail=True), interval_s=0.05)

    await scheduler.enable()
    await asyncio.sleep(0.13)
    await scheduler.disable()

    assert finder.triggers[0] == TRIGGER_ENABLED
    assert TRIGGER_TIMER in finder.triggers


@pytest.mark.asyncio
async def test_broken_change_feed_resubscribes_on_next_tick():
    finder = RecordingFinder()
    changes = QueueChanges()
    scheduler = ReEvaluationScheduler("u1", finder, changes, interval_s=0.05)

    await scheduler.enable()
    await asyncio.sleep(0.01)
    changes.subscriptions[0].queue.put_nowait(StoreUnavailable("stream gone", store="presence"))
    await asyncio.sleep(0.1)
    await scheduler.disable()

    assert changes.subscriptions[0].closed
    assert len(changes.subscriptions) >= 2
    assert TRIGGER_CHANGE not in finder.triggers


@pytest.mark.asyncio
async def test_failed_evaluation_does_not_stop_the_loop():
    class FlakyFinder(RecordingFinder):
        async def evaluate(self, user_id, *, trigger="manual"):
            self.triggers.append(trigger)
            if len(self.triggers) == 1:
                raise RuntimeError("boom")
            return NearbyResult(trigger=trigger)

    finder = FlakyFinder()
    scheduler = ReEvaluationScheduler("u1", finder, QueueChanges(), interval_s=0.05)

    await scheduler.enable()
    await asyncio.sleep(0.08)
    await scheduler.disable()

    assert finder.triggers[:2] == [TRIGGER_ENABLED, TRIGGER_TIMER]
    assert scheduler.latest.trigger == TRIGGER_TIMER
