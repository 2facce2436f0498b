import pytest

from backend.app.config import Settings
from backend.app.db import connect
from backend.app.runtime_settings import (
    CACHE_TTL_HOURS_KEY,
    MIN_SIMILARITY_KEY,
    TOP_K_KEY,
    RuntimeSettings,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def runtime(conn, db_path, clock):
    return RuntimeSettings(lambda: connect(db_path), Settings(), ttl_seconds=300, clock=clock)


def test_defaults_come_from_settings(runtime):
    params = runtime.cf_params()
    assert params.top_k == 20
    assert params.min_similarity == pytest.approx(0.1)
    assert params.cache_ttl_seconds == 24 * 3600


def test_set_overrides_defaults(runtime):
    runtime.set(TOP_K_KEY, "5")
    runtime.set(MIN_SIMILARITY_KEY, "0.25")
    runtime.set(CACHE_TTL_HOURS_KEY, "2")

    params = runtime.cf_params()
    assert (params.top_k, params.min_similarity, params.cache_ttl_seconds) == (5, 0.25, 7200)
    assert runtime.all()[TOP_K_KEY] == "5"


def test_external_changes_wait_for_refresh_or_ttl(runtime, conn, clock):
    runtime.refresh()
    conn.execute("INSERT INTO system_settings(key, value) VALUES(?, ?)", (TOP_K_KEY, "7"))
    conn.commit()

    assert runtime.cf_params().top_k == 20
    clock.now += 299
    assert runtime.cf_params().top_k == 20
    clock.now += 1
    assert runtime.cf_params().top_k == 7


@pytest.mark.parametrize(
    "key,value",
    [
        (TOP_K_KEY, "lots"),
        (TOP_K_KEY, "0"),
        (TOP_K_KEY, "-1"),
        (MIN_SIMILARITY_KEY, "nan"),
        (MIN_SIMILARITY_KEY, "1.5"),
        (CACHE_TTL_HOURS_KEY, "0"),
        (CACHE_TTL_HOURS_KEY, "-24"),
    ],
)
def test_set_rejects_invalid_values(runtime, key, value):
    with pytest.raises(ValueError):
        runtime.set(key, value)
    assert runtime.get(key) is None


def test_invalid_stored_values_fall_back(runtime, conn):
    conn.executemany(
        "INSERT INTO system_settings(key, value) VALUES(?, ?)",
        [(TOP_K_KEY, "-1"), (MIN_SIMILARITY_KEY, "nan"), (CACHE_TTL_HOURS_KEY, "0")],
    )
    conn.commit()
    runtime.refresh()

    params = runtime.cf_params()
    assert params.top_k == 20
    assert params.min_similarity == pytest.approx(0.1)
    assert params.cache_ttl_seconds == 24 * 3600


def test_unknown_keys_are_stored_as_is(runtime):
    runtime.set("feature.banner", "spring sale")
    assert runtime.get("feature.banner") == "spring sale"
    assert runtime.get("feature.missing") is None
