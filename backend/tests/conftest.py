import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from nearmatch.domain.proximity import live_sessions
from nearmatch.domain.proximity.exceptions import StoreUnavailable, UniquenessConflict
from nearmatch.domain.proximity.models import MatchRecord, UserProfile
from nearmatch.infra import postgres


class InMemoryProfiles:
	"""Stand-in for the Postgres profile repository."""

	def __init__(self) -> None:
		self.profiles: Dict[str, UserProfile] = {}
		self.locations: List[Tuple[str, float, float, str]] = []
		self.load_calls = 0
		self.fail_reads = False
		self.fail_writes = False

	def add(self, user_id: str, interests: Iterable[str], *, visible: bool = True, onboarded: bool = True) -> None:
		self.profiles[user_id] = UserProfile(
			user_id=user_id,
			interests=frozenset(interests),
			visible=visible,
			onboarded=onboarded,
		)

	async def load_profiles(self, user_ids: Sequence[str]) -> Dict[str, UserProfile]:
		self.load_calls += 1
		if self.fail_reads:
			raise StoreUnavailable("profiles down", store="profiles")
		return {uid: self.profiles[uid] for uid in user_ids if uid in self.profiles}

	async def load_interests(self, user_id: str) -> FrozenSet[str]:
		if self.fail_reads:
			raise StoreUnavailable("profiles down", store="profiles")
		profile = self.profiles.get(user_id)
		return profile.interests if profile else frozenset()

	async def record_location(self, user_id, *, latitude, longitude, spatial_key, accuracy) -> None:
		if self.fail_writes:
			raise StoreUnavailable("profiles down", store="profiles")
		self.locations.append((user_id, latitude, longitude, spatial_key))


class InMemoryMatches:
	"""Stand-in for the Postgres match store with the same pair_id uniqueness rule."""

	def __init__(self) -> None:
		self.records: Dict[str, MatchRecord] = {}
		self.inserts = 0
		self.touches = 0
		self.fail = False

	def _check(self) -> None:
		if self.fail:
			raise StoreUnavailable("matches down", store="matches")

	async def get(self, pair_id: str) -> Optional[MatchRecord]:
		self._check()
		record = self.records.get(pair_id)
		return replace(record) if record else None

	async def insert(self, record: MatchRecord) -> MatchRecord:
		self._check()
		if record.pair_id in self.records:
			raise UniquenessConflict(detail=record.pair_id)
		self.inserts += 1
		self.records[record.pair_id] = record
		return record

	async def touch(self, pair_id: str, seen_at: float) -> Optional[MatchRecord]:
		self._check()
		record = self.records.get(pair_id)
		if record is None:
			return None
		self.touches += 1
		record.last_seen_together_at = max(record.last_seen_together_at, seen_at)
		return record


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from nearmatch.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		await live_sessions.shutdown()
		live_sessions._collaborators = None
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture
def profiles() -> InMemoryProfiles:
	return InMemoryProfiles()


@pytest.fixture
def matches() -> InMemoryMatches:
	return InMemoryMatches()

