"""Idempotent creation and refresh of match records."""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, Optional, Protocol

from nearmatch.domain.proximity.exceptions import StoreUnavailable, UniquenessConflict
from nearmatch.domain.proximity.models import MatchRecord, pair_id
from nearmatch.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


class MatchStore(Protocol):
    async def get(self, pair_id: str) -> Optional[MatchRecord]: ...

    async def insert(self, record: MatchRecord) -> MatchRecord: ...

    async def touch(self, pair_id: str, seen_at: float) -> Optional[MatchRecord]: ...


class MatchReconciler:
    """Creates a `suggested` match on first co-presence and refreshes it afterwards.

    The pair id is the only uniqueness key. A record that already exists only
    has `last_seen_together_at` moved forward: a `connected` match never goes
    back to `suggested`, and the originally recorded shared interests are
    kept even if the current overlap is smaller or larger.
    """

    def __init__(self, store: MatchStore, *, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock

    async def reconcile(
        self,
        user_a: str,
        user_b: str,
        shared_interests: Iterable[str],
        *,
        now: Optional[float] = None,
    ) -> MatchRecord:
        seen_at = self._clock() if now is None else now
        key = pair_id(user_a, user_b)

        existing = await self._store.get(key)
        if existing is not None:
            return await self._refresh(key, seen_at, existing)

        record = MatchRecord.suggest(user_a, user_b, shared_interests, seen_at)
        try:
            created = await self._store.insert(record)
        except UniquenessConflict:
            # the other side inserted first; fall through to the update path
            obs_metrics.MATCH_RECONCILIATIONS.labels(result="race").inc()
            logger.debug("match insert raced pair=%s, refreshing instead", key)
            return await self._refresh(key, seen_at, None)
        obs_metrics.MATCH_RECONCILIATIONS.labels(result="created").inc()
        logger.info("match suggested pair=%s shared=%s", key, sorted(record.shared_interests))
        return created

    async def _refresh(self, key: str, seen_at: float, existing: Optional[MatchRecord]) -> MatchRecord:
        refreshed = await self._store.touch(key, seen_at)
        if refreshed is None:
            if existing is not None:
                return existing
            # insert reported a conflict but the row is gone; treat as transient
            raise StoreUnavailable(f"match {key} vanished after conflict", store="matches")
        obs_metrics.MATCH_RECONCILIATIONS.labels(result="refreshed").inc()
        return refreshed


__all__ = ["MatchReconciler", "MatchStore"]
