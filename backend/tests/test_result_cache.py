from __future__ import annotations

from features.types import AreaFeature
from fog.cache import FogResultCache
from fog.calculation import viewport_fog_feature
from fog.types import FogComputationResult
from geo.aoi import ViewportBounds


class FakeClock:
    def __init__(self) -> None:
        self.t = 1000.0

    def __call__(self) -> float:
        return self.t


VP = ViewportBounds(-122.5, 37.7, -122.3, 37.8)


def _result(bounds: ViewportBounds = VP, ms: float = 12.0) -> FogComputationResult:
    return FogComputationResult(
        features=(viewport_fog_feature(bounds),), calculation_time_ms=ms, features_processed=1
    )


def test_hit_returns_equal_copy_not_reference():
    cache = FogResultCache()
    key = cache.fingerprint(VP, 1)
    stored = _result()
    cache.set(key, stored, viewport=VP, dataset_version=1)

    a = cache.get(key)
    b = cache.get(key)
    assert a is not None and b is not None
    assert a.result == stored
    assert a.result == b.result
    assert a.result is not b.result
    assert a.result.features[0] is not stored.features[0]


def test_fingerprint_rounds_viewport_and_includes_version():
    cache = FogResultCache(viewport_tolerance=0.001)
    jitter = ViewportBounds(-122.50002, 37.70001, -122.29999, 37.80003)
    assert cache.fingerprint(VP, 3) == cache.fingerprint(jitter, 3)
    assert cache.fingerprint(VP, 3) != cache.fingerprint(VP, 4)
    assert cache.fingerprint(VP, 3, 8) != cache.fingerprint(VP, 3, None)
    assert cache.fingerprint(None, 3) != cache.fingerprint(VP, 3)


def test_invalidate_never_serves_pre_invalidation_value():
    cache = FogResultCache()
    key = cache.fingerprint(VP, 1)
    cache.set(key, _result(), viewport=VP, dataset_version=1)
    assert cache.invalidate() == 1
    assert cache.get(key) is None


def test_scoped_invalidate_only_evicts_overlapping_viewports():
    cache = FogResultCache()
    other = ViewportBounds(10, 10, 11, 11)
    k1 = cache.fingerprint(VP, 1)
    k2 = cache.fingerprint(other, 1)
    cache.set(k1, _result(VP), viewport=VP)
    cache.set(k2, _result(other), viewport=other)

    changed = AreaFeature(
        id="x",
        geometry_type="Polygon",
        polygons=((((-122.42, 37.77), (-122.41, 37.77), (-122.41, 37.78), (-122.42, 37.77)),),),
    )
    assert cache.invalidate([changed]) == 1
    assert cache.get(k1) is None
    assert cache.get(k2) is not None


def test_invalidate_viewport():
    cache = FogResultCache()
    k = cache.fingerprint(VP, 1)
    cache.set(k, _result(), viewport=VP)
    assert cache.invalidate_viewport(ViewportBounds(50, 50, 51, 51)) == 0
    assert cache.invalidate_viewport(ViewportBounds(-122.4, 37.75, -122.0, 38.0)) == 1


def test_lru_eviction_order():
    cache = FogResultCache(max_entries=2)
    keys = [cache.fingerprint(ViewportBounds(i, 0, i + 1, 1), 1) for i in range(3)]
    cache.set(keys[0], _result())
    cache.set(keys[1], _result())
    assert cache.get(keys[0]) is not None  # keys[0] becomes most recent
    cache.set(keys[2], _result())
    assert cache.get(keys[1]) is None
    assert cache.get(keys[0]) is not None
    assert cache.stats().evictions == 1


def test_ttl_expiry_uses_clock():
    clock = FakeClock()
    cache = FogResultCache(ttl_s=10, clock=clock)
    k = cache.fingerprint(VP, 1)
    cache.set(k, _result())
    clock.t += 9
    assert cache.get(k) is not None
    clock.t += 2
    assert cache.get(k) is None
    assert cache.stats().expirations == 1


def test_stats_track_hits_misses_and_time_saved():
    cache = FogResultCache()
    k = cache.fingerprint(VP, 1)
    assert cache.get(k) is None
    cache.set(k, _result(ms=20.0))
    cache.get(k)
    cache.get(k)
    s = cache.stats()
    assert (s.hits, s.misses) == (2, 1)
    assert s.hit_ratio == 2 / 3
    assert s.estimated_time_saved_ms == 40.0
    assert s.top_keys[0] == (k, 2)


def test_optimize_aggressive_drops_cold_entries():
    clock = FakeClock()
    cache = FogResultCache(ttl_s=100, clock=clock)
    hot = cache.fingerprint(VP, 1)
    cold = cache.fingerprint(VP, 2)
    cache.set(hot, _result())
    cache.set(cold, _result())
    for _ in range(4):
        cache.get(hot)
    assert cache.optimize(aggressive=False) == 0
    assert cache.optimize(aggressive=True) == 1
    assert cache.get(hot) is not None
    assert cache.get(cold) is None
