"""Domain models used by the proximity engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional

from nearmatch.domain.proximity import geo

_PAIR_SEPARATOR = "_"


class MatchStatus(str, Enum):
	SUGGESTED = "suggested"
	CONNECTED = "connected"


def pair_id(user_a: str, user_b: str) -> str:
	"""Uniqueness key for an unordered pair of users."""
	low, high = ordered_pair(user_a, user_b)
	if _PAIR_SEPARATOR in low or _PAIR_SEPARATOR in high:
		# length prefix keeps ("a_b", "c") and ("a", "b_c") apart
		return f"{len(low)}:{low}{_PAIR_SEPARATOR}{high}"
	return f"{low}{_PAIR_SEPARATOR}{high}"


def ordered_pair(user_a: str, user_b: str) -> tuple[str, str]:
	if user_a == user_b:
		raise ValueError("a user cannot be paired with themselves")
	return (user_a, user_b) if user_a < user_b else (user_b, user_a)


@dataclass(slots=True, frozen=True)
class LocationSample:
	"""Raw reading from the device location source."""

	latitude: float
	longitude: float
	accuracy: Optional[float] = None
	# m/s; None when the device could not estimate it
	speed: Optional[float] = None


@dataclass(slots=True, frozen=True)
class LastPublished:
	latitude: float
	longitude: float
	timestamp: float


@dataclass(slots=True, frozen=True)
class PublishedPresence:
	"""Most recently published location for a user; one row per user."""

	user_id: str
	latitude: float
	longitude: float
	published_at: float
	precision: int
	spatial_key: str = field(init=False)

	def __post_init__(self) -> None:
		object.__setattr__(self, "spatial_key", geo.encode(self.latitude, self.longitude, self.precision))


@dataclass(slots=True, frozen=True)
class UserProfile:
	"""Subset of the profile consumed by nearby matching."""

	user_id: str
	interests: FrozenSet[str] = frozenset()
	visible: bool = True
	onboarded: bool = True


@dataclass(slots=True, frozen=True)
class CandidateMatch:
	user_id: str
	distance_m: float
	shared_interests: FrozenSet[str]


@dataclass(slots=True)
class MatchRecord:
	pair_id: str
	user_a: str
	user_b: str
	shared_interests: FrozenSet[str]
	status: MatchStatus
	last_seen_together_at: float

	@classmethod
	def suggest(cls, user_a: str, user_b: str, shared: Iterable[str], now: float) -> "MatchRecord":
		low, high = ordered_pair(user_a, user_b)
		return cls(
			pair_id=pair_id(low, high),
			user_a=low,
			user_b=high,
			shared_interests=frozenset(shared),
			status=MatchStatus.SUGGESTED,
			last_seen_together_at=now,
		)


@dataclass(slots=True)
class NearbyResult:
	"""Outcome of one nearby evaluation.

	`complete` is False when a store failure truncated the evaluation; callers
	should show the items as partial rather than keep an older list around.
	"""

	items: List[CandidateMatch] = field(default_factory=list)
	complete: bool = True
	reason: Optional[str] = None
	trigger: str = "manual"


__all__ = [
	"CandidateMatch",
	"LastPublished",
	"LocationSample",
	"MatchRecord",
	"MatchStatus",
	"NearbyResult",
	"PublishedPresence",
	"UserProfile",
	"ordered_pair",
	"pair_id",
]
