"""Nearby candidate lookup: geohash prefilter, exact distance and shared interests."""

from __future__ import annotations

import logging
import time
from typing import AbstractSet, Dict, FrozenSet, Iterable, List, Optional, Protocol, Sequence

from nearmatch.domain.proximity import geo
from nearmatch.domain.proximity.exceptions import InvalidCoordinate, StoreUnavailable
from nearmatch.domain.proximity.models import CandidateMatch, NearbyResult, PublishedPresence, UserProfile
from nearmatch.domain.proximity.reconciler import MatchReconciler
from nearmatch.obs import metrics as obs_metrics
from nearmatch.settings import settings

logger = logging.getLogger(__name__)


class PresenceReader(Protocol):
	async def get(self, user_id: str) -> Optional[PublishedPresence]: ...

	async def in_cells(self, cells: Iterable[str], *, exclude_user_id: Optional[str] = None) -> List[PublishedPresence]: ...


class ProfileReader(Protocol):
	async def load_profiles(self, user_ids: Sequence[str]) -> Dict[str, UserProfile]: ...

	async def load_interests(self, user_id: str) -> FrozenSet[str]: ...


class NearbyFinder:
	"""Finds co-located users with overlapping interests and reconciles a match for each.

	Holds no per-call state, so overlapping evaluations are safe.
	"""

	def __init__(
		self,
		presence: PresenceReader,
		profiles: ProfileReader,
		reconciler: MatchReconciler,
		*,
		max_distance_m: Optional[float] = None,
		precision: Optional[int] = None,
	) -> None:
		self._presence = presence
		self._profiles = profiles
		self._reconciler = reconciler
		self.max_distance_m = settings.max_match_distance_m if max_distance_m is None else max_distance_m
		self.precision = precision or settings.spatial_precision
		if self.max_distance_m > geo.cell_height_m(self.precision):
			logger.warning(
				"max match distance %.0fm exceeds cell height at precision %s; matches may be missed",
				self.max_distance_m,
				self.precision,
			)

	async def _candidates(self, user_id: str, latitude: float, longitude: float) -> List[tuple[PublishedPresence, UserProfile]]:
		cells = geo.neighbors(geo.encode(latitude, longitude, self.precision))
		presences = await self._presence.in_cells(cells, exclude_user_id=user_id)
		if not presences:
			return []
		profiles = await self._profiles.load_profiles([p.user_id for p in presences])
		joined = []
		for presence in presences:
			profile = profiles.get(presence.user_id)
			if profile is None or not profile.visible or not profile.onboarded:
				continue
			joined.append((presence, profile))
		return joined

	def _filter(
		self,
		latitude: float,
		longitude: float,
		interests: AbstractSet[str],
		candidates: Iterable[tuple[PublishedPresence, UserProfile]],
	) -> List[CandidateMatch]:
		nearby: List[CandidateMatch] = []
		for presence, profile in candidates:
			try:
				distance = geo.distance_m(latitude, longitude, presence.latitude, presence.longitude)
			except InvalidCoordinate:
				logger.warning("nearby skip uid=%s reason=invalid_coordinate", presence.user_id)
				continue
			if distance > self.max_distance_m:
				continue
			shared = frozenset(interests) & profile.interests
			if not shared:
				continue
			nearby.append(CandidateMatch(user_id=presence.user_id, distance_m=distance, shared_interests=shared))
		# list.sort is stable, so fetch order breaks exact ties
		nearby.sort(key=lambda candidate: candidate.distance_m)
		return nearby

	async def find(
		self,
		user_id: str,
		latitude: float,
		longitude: float,
		interests: AbstractSet[str],
	) -> List[CandidateMatch]:
		"""Return nearby users sharing an interest, closest first, after reconciling each match.

		Raises StoreUnavailable if the candidate fetch fails. Reconciliation
		failures propagate as well; use `evaluate` for the degrade-to-partial
		behaviour.
		"""
		if not interests:
			return []
		geo.validate(latitude, longitude)
		nearby = self._filter(latitude, longitude, interests, await self._candidates(user_id, latitude, longitude))
		for candidate in nearby:
			await self._reconciler.reconcile(user_id, candidate.user_id, candidate.shared_interests)
		return nearby

	async def evaluate(self, user_id: str, *, trigger: str = "manual") -> NearbyResult:
		"""Run one evaluation from the user's published presence.

		Never raises for store failures: the result is flagged incomplete
		instead so the caller can tell an empty area from a failed lookup.
		"""
		started = time.perf_counter()
		try:
			result = await self._evaluate(user_id, trigger)
		finally:
			obs_metrics.NEARBY_LATENCY.observe(time.perf_counter() - started)
		outcome = "complete" if result.complete else "partial"
		obs_metrics.NEARBY_EVALUATIONS.labels(trigger=trigger, outcome=outcome).inc()
		obs_metrics.NEARBY_CANDIDATES.observe(len(result.items))
		return result

	async def _evaluate(self, user_id: str, trigger: str) -> NearbyResult:
		try:
			presence = await self._presence.get(user_id)
			if presence is None:
				return NearbyResult(items=[], complete=True, trigger=trigger)
			interests = await self._profiles.load_interests(user_id)
			if not interests:
				return NearbyResult(items=[], complete=True, trigger=trigger)
			candidates = await self._candidates(user_id, presence.latitude, presence.longitude)
		except StoreUnavailable as exc:
			logger.warning("nearby evaluation degraded user=%s trigger=%s store=%s", user_id, trigger, exc.store)
			return NearbyResult(items=[], complete=False, reason=exc.reason, trigger=trigger)

		nearby = self._filter(presence.latitude, presence.longitude, interests, candidates)
		result = NearbyResult(items=nearby, complete=True, trigger=trigger)
		for candidate in nearby:
			try:
				await self._reconciler.reconcile(user_id, candidate.user_id, candidate.shared_interests)
			except StoreUnavailable as exc:
				result.complete = False
				result.reason = exc.reason
				logger.warning("match reconcile failed user=%s peer=%s", user_id, candidate.user_id)
		logger.info(
			"nearby evaluated user=%s trigger=%s candidates=%s complete=%s",
			user_id,
			trigger,
			len(nearby),
			result.complete,
		)
		return result


__all__ = ["NearbyFinder"]
