import pytest

from nearmatch.domain.proximity import geo
from nearmatch.domain.proximity.exceptions import InvalidCoordinate, StoreUnavailable
from nearmatch.domain.proximity.finder import NearbyFinder
from nearmatch.domain.proximity.models import MatchStatus, PublishedPresence
from nearmatch.domain.proximity.presence_store import RedisPresenceStore
from nearmatch.domain.proximity.reconciler import MatchReconciler

U = (35.9940, -78.8986)
# ~80m north of U
V = (35.99472, -78.8986)
# ~300m north of U
FAR = (35.9967, -78.8986)


async def _publish(store: RedisPresenceStore, user_id: str, point, ts: float = 1_000.0) -> None:
    await store.upsert(PublishedPresence(user_id=user_id, latitude=point[0], longitude=point[1], published_at=ts, precision=6))


def _finder(profiles, matches, **kwargs) -> NearbyFinder:
    kwargs.setdefault("max_distance_m", 100.0)
    return NearbyFinder(RedisPresenceStore(), profiles, MatchReconciler(matches), precision=6, **kwargs)


@pytest.mark.asyncio
async def test_nearby_user_with_shared_interest_is_matched(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("U", {"coffee", "hiking"})
    profiles.add("V", {"coffee", "music"})
    await _publish(store, "V", V)

    found = await _finder(profiles, matches).find("U", *U, {"coffee", "hiking"})

    assert [c.user_id for c in found] == ["V"]
    assert found[0].shared_interests == frozenset({"coffee"})
    assert found[0].distance_m == pytest.approx(80.0, abs=1.0)
    record = matches.records["U_V"]
    assert record.status is MatchStatus.SUGGESTED
    assert record.shared_interests == frozenset({"coffee"})


@pytest.mark.asyncio
async def test_distance_boundary_is_inclusive(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("V", {"coffee"})
    await _publish(store, "V", V)
    exact = geo.distance_m(*U, *V)

    assert [c.user_id for c in await _finder(profiles, matches, max_distance_m=exact).find("U", *U, {"coffee"})] == ["V"]
    assert await _finder(profiles, matches, max_distance_m=exact - 0.01).find("U", *U, {"coffee"}) == []


@pytest.mark.asyncio
async def test_no_shared_interest_means_no_match(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("V", {"music"})
    await _publish(store, "V", V)

    assert await _finder(profiles, matches).find("U", *U, {"coffee"}) == []
    assert matches.records == {}


@pytest.mark.asyncio
async def test_empty_interests_skip_the_query(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("V", {"coffee"})
    await _publish(store, "V", V)

    assert await _finder(profiles, matches).find("U", *U, set()) == []
    assert profiles.load_calls == 0


@pytest.mark.asyncio
async def test_far_hidden_and_self_are_excluded(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("U", {"coffee"})
    profiles.add("far", {"coffee"})
    profiles.add("hidden", {"coffee"}, visible=False)
    profiles.add("new", {"coffee"}, onboarded=False)
    await _publish(store, "U", U)
    await _publish(store, "far", FAR)
    await _publish(store, "hidden", V)
    await _publish(store, "new", V)

    assert await _finder(profiles, matches).find("U", *U, {"coffee"}) == []


@pytest.mark.asyncio
async def test_results_are_sorted_by_distance_and_deterministic(profiles, matches):
    store = RedisPresenceStore()
    for user_id in ("b", "a", "c"):
        profiles.add(user_id, {"coffee"})
    await _publish(store, "b", V)
    await _publish(store, "a", V)
    await _publish(store, "c", (35.9943, -78.8986))
    finder = _finder(profiles, matches)

    first = await finder.find("U", *U, {"coffee"})
    second = await finder.find("U", *U, {"coffee"})

    assert [c.user_id for c in first] == ["c", "a", "b"]
    assert first == second


@pytest.mark.asyncio
async def test_find_rejects_invalid_coordinates(profiles, matches):
    with pytest.raises(InvalidCoordinate):
        await _finder(profiles, matches).find("U", 120.0, 0.0, {"coffee"})


@pytest.mark.asyncio
async def test_evaluate_uses_published_presence(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("U", {"coffee"})
    profiles.add("V", {"coffee"})
    await _publish(store, "U", U)
    await _publish(store, "V", V)

    result = await _finder(profiles, matches).evaluate("U", trigger="timer")

    assert result.complete
    assert result.trigger == "timer"
    assert [c.user_id for c in result.items] == ["V"]


@pytest.mark.asyncio
async def test_evaluate_without_presence_is_empty(profiles, matches):
    profiles.add("U", {"coffee"})
    result = await _finder(profiles, matches).evaluate("U")
    assert result.items == []
    assert result.complete


@pytest.mark.asyncio
async def test_evaluate_read_failure_is_flagged_incomplete(profiles, matches):
    await _publish(RedisPresenceStore(), "U", U)
    profiles.fail_reads = True

    result = await _finder(profiles, matches).evaluate("U")

    assert result.items == []
    assert not result.complete
    assert result.reason == StoreUnavailable.reason


@pytest.mark.asyncio
async def test_evaluate_reconcile_failure_keeps_candidates(profiles, matches):
    store = RedisPresenceStore()
    profiles.add("U", {"coffee"})
    profiles.add("V", {"coffee"})
    await _publish(store, "U", U)
    await _publish(store, "V", V)
    matches.fail = True

    result = await _finder(profiles, matches).evaluate("U")

    assert [c.user_id for c in result.items] == ["V"]
    assert not result.complete
