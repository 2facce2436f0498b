import pytest

from backend.recommender.cache import RecommendationCache, Strategy


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(conn, clock):
    return RecommendationCache(conn, ttl_seconds=3600, clock=clock)


def test_miss_when_empty(cache):
    assert cache.get(1, Strategy.HYBRID) is None
    assert cache.get_ids(1, Strategy.HYBRID) is None


def test_put_then_get_in_rank_order(cache):
    cache.put(1, Strategy.ITEM_BASED, [30, 10, 20], {30: 1.0, 10: 0.5, 20: 0.5})
    entries = cache.get(1, Strategy.ITEM_BASED)
    assert [e.product_id for e in entries] == [30, 10, 20]
    assert [e.rank for e in entries] == [0, 1, 2]
    assert cache.get_ids(1, Strategy.ITEM_BASED, limit=2) == [30, 10]


def test_confidence_is_clamped(cache):
    cache.put(1, Strategy.HYBRID, [1, 2], {1: 4.2, 2: -1.0})
    assert [e.confidence for e in cache.get(1, Strategy.HYBRID)] == [1.0, 0.0]


def test_put_replaces_previous_set(cache):
    cache.put(1, Strategy.HYBRID, [1, 2, 3], {})
    cache.put(1, Strategy.HYBRID, [4], {4: 1.0})
    assert cache.get_ids(1, Strategy.HYBRID) == [4]


def test_expiry(cache, clock):
    cache.put(1, Strategy.USER_BASED, [5, 6], {5: 1.0, 6: 0.0})
    clock.now += 3599
    assert cache.get_ids(1, Strategy.USER_BASED) == [5, 6]
    clock.now += 1
    assert cache.get(1, Strategy.USER_BASED) is None
    assert cache.delete_expired() == 2


def test_invalidate_user_drops_every_strategy(cache):
    for strategy in Strategy:
        cache.put(1, strategy, [1], {1: 1.0})
    cache.put(2, Strategy.HYBRID, [1], {1: 1.0})

    assert cache.invalidate_user(1) == 3
    for strategy in Strategy:
        assert cache.get(1, strategy) is None
    assert cache.get_ids(2, Strategy.HYBRID) == [1]


@pytest.mark.parametrize("ttl", [0, -3600])
def test_non_positive_ttl_never_caches_forever(conn, clock, ttl):
    cache = RecommendationCache(conn, ttl_seconds=ttl, clock=clock)
    cache.put(1, Strategy.HYBRID, [5], {5: 1.0})
    assert cache.get(1, Strategy.HYBRID) is None
    row = conn.execute("SELECT expires_at FROM recommendations_cache WHERE user_id = 1").fetchone()
    assert row["expires_at"] == int(clock.now)
    assert cache.delete_expired() == 1
