"""Redis-backed presence rows, geohash cell index and change stream."""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from redis.exceptions import RedisError

from nearmatch.domain.proximity.exceptions import StoreUnavailable
from nearmatch.domain.proximity.models import PublishedPresence
from nearmatch.infra.redis import redis_client
from nearmatch.obs import metrics as obs_metrics
from nearmatch.settings import settings

logger = logging.getLogger(__name__)

_STORE = "presence"


def _presence_key(user_id: str) -> str:
	return f"presence:{user_id}"


def _cell_key(spatial_key: str) -> str:
	return f"presence:cell:{spatial_key}"


@contextmanager
def _translate_errors(op: str) -> Iterator[None]:
	try:
		yield
	except (RedisError, OSError, asyncio.TimeoutError) as exc:
		obs_metrics.inc_store_error(_STORE, op)
		raise StoreUnavailable(f"{_STORE}.{op}: {exc}", store=_STORE) from exc


def _parse_presence(user_id: str, raw: Dict[str, str]) -> Optional[PublishedPresence]:
	try:
		return PublishedPresence(
			user_id=user_id,
			latitude=float(raw["lat"]),
			longitude=float(raw["lng"]),
			published_at=float(raw["published_at"]),
			precision=len(raw["spatial_key"]),
		)
	except (KeyError, ValueError):
		# malformed rows are treated as absent
		logger.debug("presence row unreadable user=%s", user_id, exc_info=True)
		return None


class PresenceSubscription:
	"""Async iterator over presence-change notifications.

	Starts at the stream tail observed when the subscription was opened, so a
	new subscription never replays older changes. Each item is the id of the
	user whose presence changed; consumers should not rely on it.
	"""

	def __init__(
		self,
		stream: str,
		last_id: str,
		*,
		block_ms: int = 1000,
		poll_interval: float = 0.05,
	) -> None:
		self.stream = stream
		self._last_id = last_id
		self._block_ms = block_ms
		self._poll_interval = poll_interval
		self._buffer: List[str] = []
		self._closed = False

	def __aiter__(self) -> "PresenceSubscription":
		return self

	async def __anext__(self) -> str:
		while not self._buffer:
			if self._closed:
				raise StopAsyncIteration
			with _translate_errors("subscribe"):
				messages = await redis_client.xread(
					streams={self.stream: self._last_id}, count=100, block=self._block_ms
				)
			if not messages:
				await asyncio.sleep(self._poll_interval)
				continue
			for _stream_name, entries in messages:
				for entry_id, payload in entries:
					self._last_id = entry_id
					self._buffer.append(str(payload.get("user_id", "")))
		return self._buffer.pop(0)

	async def aclose(self) -> None:
		self._closed = True
		self._buffer.clear()


class RedisPresenceStore:
	"""One hash per user plus a set of user ids per geohash cell."""

	def __init__(self, *, stream: Optional[str] = None, stream_maxlen: Optional[int] = None) -> None:
		self.stream = stream or settings.presence_change_stream
		self.stream_maxlen = stream_maxlen or settings.presence_change_stream_maxlen

	async def upsert(self, presence: PublishedPresence) -> None:
		"""Overwrite the user's row, move them between cells and announce the change."""
		key = _presence_key(presence.user_id)
		with _translate_errors("upsert"):
			previous_cell = await redis_client.hget(key, "spatial_key")
			async with redis_client.pipeline(transaction=True) as pipe:
				pipe.hset(
					key,
					mapping={
						"lat": repr(presence.latitude),
						"lng": repr(presence.longitude),
						"spatial_key": presence.spatial_key,
						"published_at": repr(presence.published_at),
					},
				)
				if previous_cell and previous_cell != presence.spatial_key:
					pipe.srem(_cell_key(previous_cell), presence.user_id)
				pipe.sadd(_cell_key(presence.spatial_key), presence.user_id)
				pipe.xadd(
					self.stream,
					{"user_id": presence.user_id},
					maxlen=self.stream_maxlen,
					approximate=True,
				)
				await pipe.execute()

	async def get(self, user_id: str) -> Optional[PublishedPresence]:
		with _translate_errors("get"):
			raw = await redis_client.hgetall(_presence_key(user_id))
		if not raw:
			return None
		return _parse_presence(user_id, raw)

	async def in_cells(self, cells: Iterable[str], *, exclude_user_id: Optional[str] = None) -> List[PublishedPresence]:
		"""Presences indexed under any of `cells`, in a deterministic order.

		Cells are visited in sorted order and members sorted within a cell.
		Index entries whose row has moved to another cell are skipped; the user
		is found under the cell their row names.
		"""
		results: List[PublishedPresence] = []
		seen: set[str] = set()
		with _translate_errors("in_cells"):
			for cell in sorted(set(cells)):
				members = sorted(str(m) for m in await redis_client.smembers(_cell_key(cell)))
				for member in members:
					if member == exclude_user_id or member in seen:
						continue
					raw = await redis_client.hgetall(_presence_key(member))
					if not raw or raw.get("spatial_key") != cell:
						continue
					presence = _parse_presence(member, raw)
					if presence is None:
						continue
					seen.add(member)
					results.append(presence)
		return results

	async def subscribe(self) -> PresenceSubscription:
		with _translate_errors("subscribe"):
			tail = await redis_client.xrevrange(self.stream, count=1)
		last_id = tail[0][0] if tail else "0-0"
		return PresenceSubscription(self.stream, last_id)


__all__ = ["PresenceSubscription", "RedisPresenceStore"]
