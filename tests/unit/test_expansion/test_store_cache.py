import threading
import pytest
from expansion.store_cache import (
    CacheNotInitialized,
    CachedStore,
    StoreCacheManager,
    ViewportBounds,
)


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _store(store_id, lat=52.5, lng=13.4, **overrides):
    values = dict(
        id=store_id, name=f"Store {store_id}", latitude=lat, longitude=lng,
        country="DE", status="open",
        created_at="2024-01-01T00:00:00Z", updated_at="2024-01-01T00:00:00Z",
    )
    values.update(overrides)
    return CachedStore(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(tmp_path, clock):
    manager = StoreCacheManager(str(tmp_path / "test_stores.db"), clock=clock)
    manager.initialize()
    yield manager
    manager.wait_for_refresh(5)
    manager.close()


def test_requires_initialize(tmp_path):
    manager = StoreCacheManager(str(tmp_path / "never_opened.db"))
    with pytest.raises(CacheNotInitialized):
        manager.get_all()
    with pytest.raises(CacheNotInitialized):
        manager.set([_store("1")])


def test_set_and_get_all(cache):
    assert cache.get_all() == []
    cache.set([_store("1"), _store("2", annual_turnover=1.5e6)], last_import_date="2024-01-01")

    stores = cache.get_all()
    assert [s.id for s in stores] == ["1", "2"]
    assert stores[1].annual_turnover == 1.5e6

    metadata = cache.get_metadata()
    assert metadata.store_count == 2
    assert metadata.last_import_date == "2024-01-01"

    stats = cache.get_stats()
    assert (stats["hits"], stats["misses"]) == (1, 1)
    assert stats["storeCount"] == 2


def test_set_replaces_everything(cache):
    cache.set([_store("1"), _store("2")])
    cache.set([_store("3")])
    assert [s.id for s in cache.get_all()] == ["3"]


def test_viewport_includes_edges(cache):
    cache.set([
        _store("inside", 52.5, 13.4),
        _store("edge", 53.0, 14.0),
        _store("outside", 53.1, 13.4),
    ])
    bounds = ViewportBounds(north=53.0, south=52.0, east=14.0, west=13.0)

    ids = [s.id for s in cache.get_by_viewport(bounds)]
    assert ids == ["inside", "edge"]
    assert bounds.contains(53.0, 14.0)


def test_update_and_delete(cache):
    cache.set([_store("1")])
    cache.update(_store("1", name="Renamed"))
    cache.update(_store("2"))
    assert {s.id: s.name for s in cache.get_all()} == {"1": "Renamed", "2": "Store 2"}

    cache.delete("1")
    assert [s.id for s in cache.get_all()] == ["2"]


def test_invalidate(cache):
    cache.set([_store("1")])
    cache.invalidate()
    assert cache.get_all() == []
    assert cache.get_metadata() is None
    assert cache.is_stale()


def test_staleness(cache, clock):
    cache.set([_store("1")])
    assert not cache.is_stale()
    clock.now += 24 * 60 * 60 + 1
    assert cache.is_stale()


def test_dict_round_trip_uses_api_names():
    store = _store("7", city_population_band="large")
    data = store.to_dict()
    assert data["cityPopulationBand"] == "large"
    assert CachedStore.from_dict(data) == store


# ═══════════════════════════════════════════════════════════════════════════
# STALE-WHILE-REVALIDATE
# ═══════════════════════════════════════════════════════════════════════════
def test_empty_cache_fetches_synchronously(cache):
    stores = cache.load(lambda: [_store("1")])
    assert [s.id for s in stores] == ["1"]
    assert [s.id for s in cache.get_all()] == ["1"]


def test_fresh_cache_skips_fetch(cache):
    cache.set([_store("1")])
    fetch_calls = []

    def fetch():
        fetch_calls.append(1)
        return []

    assert [s.id for s in cache.load(fetch)] == ["1"]
    assert fetch_calls == []


def test_stale_cache_returns_immediately_and_refreshes_once(cache, clock):
    cache.set([_store("old")])
    clock.now += 2 * 24 * 60 * 60

    release = threading.Event()
    calls = []

    def slow_fetch():
        calls.append(1)
        release.wait(5)
        return [_store("new")]

    first = cache.load(slow_fetch)
    second = cache.load(slow_fetch)

    # Both reads get the stale copy while one refresh runs
    assert [s.id for s in first] == ["old"]
    assert [s.id for s in second] == ["old"]

    release.set()
    assert cache.wait_for_refresh(5)
    assert len(calls) == 1
    assert [s.id for s in cache.get_all()] == ["new"]
    assert not cache.is_stale()


def test_failed_refresh_keeps_cached_copy(cache, clock):
    cache.set([_store("old")])
    clock.now += 2 * 24 * 60 * 60

    def broken_fetch():
        raise ConnectionError("store API down")

    assert [s.id for s in cache.load(broken_fetch)] == ["old"]
    assert cache.wait_for_refresh(5)
    assert [s.id for s in cache.get_all()] == ["old"]
