"""Postgres persistence for match records keyed by pair id."""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Mapping, Optional

import asyncpg

from nearmatch.domain.proximity.exceptions import StoreUnavailable, UniquenessConflict
from nearmatch.domain.proximity.models import MatchRecord, MatchStatus
from nearmatch.infra.postgres import get_pool
from nearmatch.obs import metrics as obs_metrics

_STORE = "matches"


@contextmanager
def _translate_errors(op: str) -> Iterator[None]:
	try:
		yield
	except asyncpg.UniqueViolationError as exc:  # type: ignore[attr-defined]
		raise UniquenessConflict(detail=str(exc)) from exc
	except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as exc:
		obs_metrics.inc_store_error(_STORE, op)
		raise StoreUnavailable(f"{_STORE}.{op}: {exc}", store=_STORE) from exc


def _to_datetime(ts: float) -> datetime:
	return datetime.fromtimestamp(ts, tz=timezone.utc)


def _record_from_row(row: Mapping[str, object]) -> MatchRecord:
	seen = row["last_seen_together_at"]
	return MatchRecord(
		pair_id=str(row["pair_id"]),
		user_a=str(row["uid_a"]),
		user_b=str(row["uid_b"]),
		shared_interests=frozenset(row["shared_interests"] or ()),  # type: ignore[arg-type]
		status=MatchStatus(str(row["status"])),
		last_seen_together_at=seen.timestamp() if isinstance(seen, datetime) else float(seen),  # type: ignore[arg-type]
	)


class PostgresMatchStore:
	"""`matches` table with a UNIQUE constraint on pair_id."""

	async def get(self, pair_id: str) -> Optional[MatchRecord]:
		with _translate_errors("get"):
			pool = await get_pool()
			row = await pool.fetchrow(
				"""
				SELECT pair_id, uid_a, uid_b, shared_interests, status, last_seen_together_at
				FROM matches
				WHERE pair_id = $1
				""",
				pair_id,
			)
		return _record_from_row(row) if row else None

	async def insert(self, record: MatchRecord) -> MatchRecord:
		"""Insert a new record. Raises UniquenessConflict if the pair already exists."""
		with _translate_errors("insert"):
			pool = await get_pool()
			row = await pool.fetchrow(
				"""
				INSERT INTO matches (pair_id, uid_a, uid_b, shared_interests, status, last_seen_together_at)
				VALUES ($1, $2, $3, $4, $5, $6)
				RETURNING pair_id, uid_a, uid_b, shared_interests, status, last_seen_together_at
				""",
				record.pair_id,
				record.user_a,
				record.user_b,
				sorted(record.shared_interests),
				record.status.value,
				_to_datetime(record.last_seen_together_at),
			)
		return _record_from_row(row) if row else record

	async def touch(self, pair_id: str, seen_at: float) -> Optional[MatchRecord]:
		"""Refresh last_seen_together_at only; status and interests are left alone."""
		with _translate_errors("touch"):
			pool = await get_pool()
			row = await pool.fetchrow(
				"""
				UPDATE matches
				SET last_seen_together_at = GREATEST(last_seen_together_at, $2)
				WHERE pair_id = $1
				RETURNING pair_id, uid_a, uid_b, shared_interests, status, last_seen_together_at
				""",
				pair_id,
				_to_datetime(seen_at),
			)
		return _record_from_row(row) if row else None


__all__ = ["PostgresMatchStore"]
