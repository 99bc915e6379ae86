"""Per-user proximity sessions: one publisher and one scheduler while matching is enabled."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Dict, Optional

from nearmatch.domain.proximity.finder import NearbyFinder
from nearmatch.domain.proximity.match_store import PostgresMatchStore
from nearmatch.domain.proximity.models import LocationSample, NearbyResult
from nearmatch.domain.proximity.presence_store import RedisPresenceStore
from nearmatch.domain.proximity.profiles import PostgresProfileRepository
from nearmatch.domain.proximity.publisher import PresencePublisher
from nearmatch.domain.proximity.reconciler import MatchReconciler
from nearmatch.domain.proximity.scheduler import ReEvaluationScheduler

logger = logging.getLogger(__name__)


@dataclass
class ProximitySession:
    user_id: str
    publisher: PresencePublisher
    scheduler: ReEvaluationScheduler
    source_task: Optional[asyncio.Task] = field(default=None)

    @property
    def latest(self) -> Optional[NearbyResult]:
        return self.scheduler.latest

    async def stop(self) -> None:
        # publisher.close marks it closed before its first await, so no
        # debounce can fire while the scheduler unwinds
        await self.publisher.close()
        await self.scheduler.disable()
        task = self.source_task
        if task:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task


@dataclass
class Collaborators:
    presence: RedisPresenceStore
    profiles: PostgresProfileRepository
    matches: PostgresMatchStore


_sessions: Dict[str, ProximitySession] = {}
_lock = asyncio.Lock()
_collaborators: Optional[Collaborators] = None


def configure(
    *,
    presence: Optional[RedisPresenceStore] = None,
    profiles: Optional[PostgresProfileRepository] = None,
    matches: Optional[PostgresMatchStore] = None,
) -> Collaborators:
    """Choose the stores new sessions are wired to (defaults: Redis + Postgres)."""
    global _collaborators
    _collaborators = Collaborators(
        presence=presence or RedisPresenceStore(),
        profiles=profiles or PostgresProfileRepository(),
        matches=matches or PostgresMatchStore(),
    )
    return _collaborators


def _wiring() -> Collaborators:
    return _collaborators or configure()


def _build_session(user_id: str, on_result: Optional[Callable[[NearbyResult], None]]) -> ProximitySession:
    wiring = _wiring()
    publisher = PresencePublisher(user_id, wiring.presence, profiles=wiring.profiles)
    finder = NearbyFinder(wiring.presence, wiring.profiles, MatchReconciler(wiring.matches))
    scheduler = ReEvaluationScheduler(user_id, finder, wiring.presence, on_result=on_result)
    return ProximitySession(user_id=user_id, publisher=publisher, scheduler=scheduler)


async def start_session(
    user_id: str,
    *,
    source: Optional[AsyncIterator[LocationSample]] = None,
    on_result: Optional[Callable[[NearbyResult], None]] = None,
) -> ProximitySession:
    """Enable proximity matching for a user (idempotent)."""
    async with _lock:
        session = _sessions.get(user_id)
        if session is None:
            session = _build_session(user_id, on_result)
            _sessions[user_id] = session
            await session.scheduler.enable()
            logger.info("proximity session started user=%s", user_id)
        if source is not None and (session.source_task is None or session.source_task.done()):
            session.source_task = asyncio.create_task(
                session.publisher.run(source), name=f"presence-source:{user_id}"
            )
    return session


async def submit_location(user_id: str, sample: LocationSample) -> bool:
    """Route a sample to the user's publisher. Returns False when no session is active."""
    async with _lock:
        session = _sessions.get(user_id)
    if session is None:
        return False
    session.publisher.submit(sample)
    return True


def get_session(user_id: str) -> Optional[ProximitySession]:
    return _sessions.get(user_id)


async def end_session(user_id: str) -> None:
    """Disable proximity matching for a user; pending work is dropped, not drained."""
    async with _lock:
        session = _sessions.pop(user_id, None)
    if not session:
        return
    await session.stop()
    logger.info("proximity session ended user=%s", user_id)


async def shutdown() -> None:
    """Stop all sessions (used on application shutdown/tests)."""
    async with _lock:
        sessions = list(_sessions.values())
        _sessions.clear()
    for session in sessions:
        await session.stop()


__all__ = [
    "ProximitySession",
    "configure",
    "end_session",
    "get_session",
    "shutdown",
    "start_session",
    "submit_location",
]
