"""Helpers that read interests and discoverability flags from Postgres."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Iterator, Optional, Sequence

import asyncpg

from nearmatch.domain.proximity.exceptions import StoreUnavailable
from nearmatch.domain.proximity.models import UserProfile
from nearmatch.infra.postgres import get_pool
from nearmatch.obs import metrics as obs_metrics

_STORE = "profiles"


@contextmanager
def _translate_errors(op: str) -> Iterator[None]:
	try:
		yield
	except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
		obs_metrics.inc_store_error(_STORE, op)
		raise StoreUnavailable(f"{_STORE}.{op}: {exc}", store=_STORE) from exc


def _interests(raw: object) -> FrozenSet[str]:
	if not raw:
		return frozenset()
	return frozenset(str(item) for item in raw if item)  # type: ignore[union-attr]


class PostgresProfileRepository:
	"""Read-mostly view over the `users` table."""

	async def load_profiles(self, user_ids: Sequence[str]) -> Dict[str, UserProfile]:
		if not user_ids:
			return {}
		with _translate_errors("load_profiles"):
			pool = await get_pool()
			rows = await pool.fetch(
				"""
				SELECT id, interests, is_visible, onboarded
				FROM users
				WHERE id = ANY($1::text[])
				""",
				list({uid for uid in user_ids}),
			)
		return {
			str(row["id"]): UserProfile(
				user_id=str(row["id"]),
				interests=_interests(row["interests"]),
				visible=bool(row["is_visible"]),
				onboarded=bool(row["onboarded"]),
			)
			for row in rows
		}

	async def load_interests(self, user_id: str) -> FrozenSet[str]:
		with _translate_errors("load_interests"):
			pool = await get_pool()
			row = await pool.fetchrow("SELECT interests FROM users WHERE id = $1", user_id)
		if row is None:
			return frozenset()
		return _interests(row["interests"])

	async def record_location(
		self,
		user_id: str,
		*,
		latitude: float,
		longitude: float,
		spatial_key: str,
		accuracy: Optional[float],
	) -> None:
		"""Mirror the last published location onto the profile row for history."""
		with _translate_errors("record_location"):
			pool = await get_pool()
			await pool.execute(
				"""
				UPDATE users
				SET lat = $2, lng = $3, geohash = $4, location_accuracy = $5, location_updated_at = $6
				WHERE id = $1
				""",
				user_id,
				latitude,
				longitude,
				spatial_key,
				accuracy,
				datetime.now(timezone.utc),
			)


__all__ = ["PostgresProfileRepository"]
