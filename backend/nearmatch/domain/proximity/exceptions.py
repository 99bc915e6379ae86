"""Domain-level exceptions for presence publishing and nearby matching."""

from __future__ import annotations


class ProximityError(Exception):
    """Base class for proximity feature errors."""

    reason: str = "unknown"

    def __init__(self, reason: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(detail or reason or self.reason)
        if reason:
            self.reason = reason


class InvalidCoordinate(ProximityError, ValueError):
    """Latitude/longitude outside the valid domain. Caller bug; never clamped."""

    reason = "invalid_coordinate"


class StoreUnavailable(ProximityError):
    """Transient I/O failure while reading or writing a store."""

    reason = "store_unavailable"

    def __init__(self, detail: str | None = None, *, store: str = "unknown") -> None:
        super().__init__(detail=detail)
        self.store = store


class UniquenessConflict(ProximityError):
    """A match insert lost the race against a concurrent insert for the same pair."""

    reason = "uniqueness_conflict"


class StaleState(ProximityError):
    """A publish attempt whose precondition no longer holds."""

    reason = "stale_state"
