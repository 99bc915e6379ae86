"""Debounced, throttled presence publishing for one user session."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Optional, Protocol, Tuple

from nearmatch.domain.proximity import geo
from nearmatch.domain.proximity.exceptions import InvalidCoordinate, StaleState, StoreUnavailable
from nearmatch.domain.proximity.models import LastPublished, LocationSample, PublishedPresence
from nearmatch.domain.proximity.timers import Debouncer
from nearmatch.obs import metrics as obs_metrics
from nearmatch.settings import settings

logger = logging.getLogger(__name__)


class PresenceWriter(Protocol):
    async def upsert(self, presence: PublishedPresence) -> None: ...


class LocationRecorder(Protocol):
    async def record_location(
        self,
        user_id: str,
        *,
        latitude: float,
        longitude: float,
        spatial_key: str,
        accuracy: Optional[float],
    ) -> None: ...


@dataclass(frozen=True)
class ThrottlePolicy:
    min_displacement_m: float
    min_interval_stationary_s: float
    min_interval_moving_s: float
    stationary_speed_threshold: float

    @classmethod
    def from_settings(cls) -> "ThrottlePolicy":
        return cls(
            min_displacement_m=settings.min_displacement_m,
            min_interval_stationary_s=settings.min_interval_stationary_s,
            min_interval_moving_s=settings.min_interval_moving_s,
            stationary_speed_threshold=settings.stationary_speed_threshold,
        )

    def is_stationary(self, sample: LocationSample) -> bool:
        # unknown speed is treated as moving so the tighter interval applies
        return sample.speed is not None and sample.speed < self.stationary_speed_threshold

    def min_interval(self, sample: LocationSample) -> float:
        return self.min_interval_stationary_s if self.is_stationary(sample) else self.min_interval_moving_s


class PresencePublisher:
    """Owns the `last_published` throttling state for a single user.

    Samples go through `submit`, which debounces them; once the quiet period
    passes the latest sample is checked against the throttle policy and
    published if worthwhile. Publishes are serialized, and `last_published`
    only moves after the store acknowledged the write.
    """

    def __init__(
        self,
        user_id: str,
        store: PresenceWriter,
        *,
        policy: Optional[ThrottlePolicy] = None,
        profiles: Optional[LocationRecorder] = None,
        precision: Optional[int] = None,
        debounce_s: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_id = user_id
        self._store = store
        self._profiles = profiles
        self.policy = policy or ThrottlePolicy.from_settings()
        self.precision = precision or settings.spatial_precision
        self._clock = clock
        self._debouncer = Debouncer(
            settings.debounce_seconds if debounce_s is None else debounce_s,
            name=f"presence-debounce:{user_id}",
        )
        self._lock = asyncio.Lock()
        self._last_published: Optional[LastPublished] = None
        self._submitted_seq = 0
        self._published_seq = 0
        self._closed = False

    @property
    def last_published(self) -> Optional[LastPublished]:
        return self._last_published

    @property
    def closed(self) -> bool:
        return self._closed

    def _decide(self, sample: LocationSample, now: float) -> Tuple[bool, str]:
        last = self._last_published
        if last is None:
            return True, "first"
        displacement = geo.distance_m(last.latitude, last.longitude, sample.latitude, sample.longitude)
        if displacement >= self.policy.min_displacement_m:
            return True, "displacement"
        elapsed = now - last.timestamp
        if elapsed >= self.policy.min_interval(sample):
            return True, "stationary_interval" if self.policy.is_stationary(sample) else "moving_interval"
        return False, "throttled"

    def should_publish(self, sample: LocationSample, now: Optional[float] = None) -> bool:
        decision, _reason = self._decide(sample, self._clock() if now is None else now)
        return decision

    async def publish(self, sample: LocationSample, *, seq: Optional[int] = None) -> PublishedPresence:
        """Persist `sample` as the user's presence, then advance throttling state.

        Raises StoreUnavailable when the write fails and StaleState when the
        session ended or a newer sample was already published; in both cases
        `last_published` is left untouched.
        """
        if seq is None:
            self._submitted_seq += 1
            seq = self._submitted_seq
        async with self._lock:
            if self._closed:
                raise StaleState("session_closed")
            if seq < self._published_seq:
                raise StaleState("superseded")
            presence = PublishedPresence(
                user_id=self.user_id,
                latitude=sample.latitude,
                longitude=sample.longitude,
                published_at=self._clock(),
                precision=self.precision,
            )
            await self._store.upsert(presence)
            if self._closed:
                raise StaleState("session_closed")
            self._last_published = LastPublished(presence.latitude, presence.longitude, presence.published_at)
            self._published_seq = seq
        obs_metrics.PRESENCE_PUBLISHES.labels(outcome="published").inc()
        logger.debug("presence published user=%s cell=%s", self.user_id, presence.spatial_key)
        await self._record_profile_location(presence, sample)
        return presence

    async def _record_profile_location(self, presence: PublishedPresence, sample: LocationSample) -> None:
        if self._profiles is None:
            return
        try:
            await self._profiles.record_location(
                self.user_id,
                latitude=presence.latitude,
                longitude=presence.longitude,
                spatial_key=presence.spatial_key,
                accuracy=sample.accuracy,
            )
        except StoreUnavailable:
            logger.warning("profile location update failed user=%s", self.user_id, exc_info=True)

    def submit(self, sample: LocationSample) -> None:
        """Debounce `sample`; invalid coordinates are rejected immediately."""
        if self._closed:
            return
        geo.validate(sample.latitude, sample.longitude)
        self._submitted_seq += 1
        self._debouncer.arm(self._on_quiet, sample, self._submitted_seq)

    async def _on_quiet(self, sample: LocationSample, seq: int) -> None:
        if self._closed:
            return
        publish, reason = self._decide(sample, self._clock())
        obs_metrics.PRESENCE_THROTTLE_DECISIONS.labels(reason=reason).inc()
        if not publish:
            return
        try:
            await self.publish(sample, seq=seq)
        except StoreUnavailable:
            obs_metrics.PRESENCE_PUBLISHES.labels(outcome="store_unavailable").inc()
            logger.warning("presence publish failed user=%s; will retry on next sample", self.user_id, exc_info=True)
        except StaleState as exc:
            obs_metrics.PRESENCE_PUBLISHES.labels(outcome="stale").inc()
            logger.debug("presence publish abandoned user=%s reason=%s", self.user_id, exc.reason)

    async def run(self, source: AsyncIterator[LocationSample]) -> None:
        """Feed samples from a location source until it ends or the publisher closes."""
        async for sample in source:
            if self._closed:
                return
            try:
                self.submit(sample)
            except InvalidCoordinate as exc:
                obs_metrics.PRESENCE_PUBLISHES.labels(outcome="invalid").inc()
                logger.warning("presence sample rejected user=%s reason=%s", self.user_id, exc.reason)

    async def flush(self) -> None:
        """Wait for publishes that already left the debounce window."""
        await self._debouncer.drain()

    async def close(self) -> None:
        """Hard stop: drop the pending debounce and any in-flight publish."""
        self._closed = True
        await self._debouncer.cancel()


__all__ = ["PresencePublisher", "ThrottlePolicy"]
