"""Central registry for Prometheus metrics used by the proximity engine."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

PRESENCE_PUBLISHES = Counter(
	"nearmatch_presence_publishes_total",
	"Presence publish attempts by outcome",
	["outcome"],
)

PRESENCE_THROTTLE_DECISIONS = Counter(
	"nearmatch_presence_throttle_decisions_total",
	"Throttle decisions taken after the debounce window",
	["reason"],
)

NEARBY_EVALUATIONS = Counter(
	"nearmatch_nearby_evaluations_total",
	"Nearby evaluations by trigger and outcome",
	["trigger", "outcome"],
)

NEARBY_CANDIDATES = Histogram(
	"nearmatch_nearby_candidates",
	"Candidates returned per nearby evaluation",
	buckets=(0, 1, 2, 5, 10, 25, 50, 100),
)

NEARBY_LATENCY = Histogram(
	"nearmatch_nearby_evaluation_seconds",
	"Nearby evaluation latency in seconds",
	buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

MATCH_RECONCILIATIONS = Counter(
	"nearmatch_match_reconciliations_total",
	"Match reconciliations by result",
	["result"],
)

STORE_ERRORS = Counter(
	"nearmatch_store_errors_total",
	"Store operations that failed with a transient error",
	["store", "op"],
)


def inc_store_error(store: str, op: str) -> None:
	STORE_ERRORS.labels(store=store, op=op).inc()


__all__ = [
	"PRESENCE_PUBLISHES",
	"PRESENCE_THROTTLE_DECISIONS",
	"NEARBY_EVALUATIONS",
	"NEARBY_CANDIDATES",
	"NEARBY_LATENCY",
	"MATCH_RECONCILIATIONS",
	"STORE_ERRORS",
	"inc_store_error",
]
