from __future__ import annotations

import math

import pytest

from features.types import AreaFeature
from fog.errors import ResourceExhaustedError, StoreAccessError
from geo.aoi import ViewportBounds
from geo.index import MemoryRecommendation, SpatialIndex
from geo.ops import buffer_point
from store.in_memory import InMemoryRevealedAreaStore


def _square(fid: str, x0: float, y0: float, size: float = 0.01) -> AreaFeature:
    ring = ((x0, y0), (x0 + size, y0), (x0 + size, y0 + size), (x0, y0 + size), (x0, y0))
    return AreaFeature(id=fid, geometry_type="Polygon", polygons=((ring,),), props={})


def _circle(fid: str, lon: float, lat: float, n: int) -> AreaFeature:
    r = 0.05
    ring = [(lon + r * math.cos(2 * math.pi * i / n), lat + r * math.sin(2 * math.pi * i / n)) for i in range(n)]
    ring.append(ring[0])
    return AreaFeature(id=fid, geometry_type="Polygon", polygons=((tuple(ring),),), props={})


def test_query_returns_intersecting_features_newest_first():
    idx = SpatialIndex()
    idx.add_features([_square("a", 0, 0), _square("b", 0.5, 0.5), _square("far", 10, 10)])
    idx.add_features([_square("c", 0.2, 0.2)])

    ids = [f.id for f in idx.query(ViewportBounds(-0.1, -0.1, 1, 1))]
    assert ids == ["c", "b", "a"]


def test_add_features_is_incremental_and_bumps_version():
    idx = SpatialIndex(compact_threshold=2)
    v0 = idx.version
    assert idx.add_features([_square("a", 0, 0)]) == 1
    assert idx.version == v0 + 1
    # Re-adding the same id is a no-op.
    assert idx.add_features([_square("a", 0, 0)]) == 0
    assert idx.version == v0 + 1
    idx.add_features([_square("b", 0.1, 0), _square("c", 0.2, 0)])  # triggers compaction
    assert idx.feature_count == 3
    ids = [f.id for f in idx.query(ViewportBounds(-1, -1, 1, 1))]
    assert ids == ["c", "b", "a"]


def test_query_is_capped_and_reports_truncation():
    idx = SpatialIndex()
    idx.add_features([_square(f"s{i}", i * 0.001, 0, 0.0005) for i in range(20)])
    res = idx.query_viewport(ViewportBounds(-1, -1, 1, 1), max_results=5)
    assert len(res.features) == 5
    assert res.total_found == 20
    assert res.truncated
    assert [f.id for f in res.features] == ["s19", "s18", "s17", "s16", "s15"]


def test_invalid_bounds_degrade_to_empty_result():
    idx = SpatialIndex()
    idx.add_features([_square("a", 0, 0)])
    res = idx.query_viewport((1, 1, 0, 0))
    assert res.features == ()
    assert res.errors
    assert not res.used_index


def test_query_failure_is_reported_not_raised(monkeypatch):
    idx = SpatialIndex()
    idx.add_features([_square("a", 0, 0)])

    def boom(*_a, **_k):
        raise RuntimeError("corrupt")

    monkeypatch.setattr(idx, "_lod_feature", boom)
    res = idx.query_viewport(ViewportBounds(-1, -1, 1, 1))
    assert res.features == ()
    assert any("corrupt" in e for e in res.errors)


def test_invalid_features_are_skipped():
    idx = SpatialIndex()
    added = idx.add_features([{"type": "Point", "coordinates": [0, 0]}, _square("ok", 0, 0)])
    assert added == 1
    assert idx.feature_count == 1


def test_refresh_from_store_rebuilds_and_skips_bad_records():
    store = InMemoryRevealedAreaStore(records=[_square("a", 0, 0), {"type": "Feature", "geometry": None}])
    idx = SpatialIndex()
    idx.add_features([_square("stale", 5, 5)])
    assert idx.refresh_from_store(store) == 1
    assert [f.id for f in idx.all_features()] == ["a"]


def test_refresh_from_store_failure_keeps_index():
    class Broken:
        def list(self):
            raise OSError("disk gone")

    idx = SpatialIndex()
    idx.add_features([_square("a", 0, 0)])
    with pytest.raises(StoreAccessError):
        idx.refresh_from_store(Broken())
    assert idx.feature_count == 1


def test_lod_simplifies_only_at_low_zoom():
    idx = SpatialIndex()
    idx.add_features([_circle("c", 14.4, 50.0, 400)])
    vp = ViewportBounds(14.0, 49.5, 15.0, 50.5)
    full = idx.query(vp, zoom=15)[0]
    coarse = idx.query(vp, zoom=8)[0]
    assert full.vertex_count == 401
    assert coarse.vertex_count < full.vertex_count
    assert coarse.id == "c"


def test_query_radius_uses_true_geometry():
    idx = SpatialIndex()
    near = buffer_point((14.42, 50.08), 50).feature
    far = buffer_point((14.50, 50.08), 50).feature
    idx.add_features([near, far])
    hits = idx.query_radius(14.4205, 50.08, 100)
    assert [f.id for f in hits] == [near.id]


def test_memory_stats_and_recommendation():
    idx = SpatialIndex(memory_threshold_bytes=10_000)
    assert idx.memory_stats().recommendation is MemoryRecommendation.OPTIMAL
    idx.add_features([_square(f"s{i}", i, 0) for i in range(6)])  # 6 * (1024 + 5*64)
    stats = idx.memory_stats()
    assert stats.feature_count == 6
    assert stats.estimated_bytes == 6 * (1024 + 5 * 64)
    assert stats.recommendation is MemoryRecommendation.CONSIDER_CLEANUP
    idx.add_features([_square(f"t{i}", i, 5) for i in range(4)])
    assert idx.memory_stats().recommendation is MemoryRecommendation.CLEANUP_REQUIRED


def test_optimize_memory_normal_removes_only_redundant_entries():
    idx = SpatialIndex()
    idx.add_features(
        [
            _square("big", 0, 0, 1),
            _square("inside", 0.2, 0.2, 0.1),
            _square("dup", 0, 0, 1),
            _square("other", 5, 5, 1),
        ]
    )
    report = idx.optimize_memory(aggressive=False)
    assert report.removed == 2
    assert sorted(f.id for f in idx.all_features()) == ["big", "other"]
    assert report.bytes_after < report.bytes_before


def test_optimize_memory_aggressive_keeps_at_most_half_by_priority():
    idx = SpatialIndex()
    idx.add_features([_square(f"s{i}", i, 0, 0.1 * (i + 1)) for i in range(6)])
    report = idx.optimize_memory(aggressive=True)
    assert report.aggressive
    assert idx.feature_count == 3
    # Largest areas survive.
    assert sorted(f.id for f in idx.all_features()) == ["s3", "s4", "s5"]


def test_check_memory_raises_only_over_budget():
    idx = SpatialIndex(memory_threshold_bytes=100_000)
    idx.add_features([_square("a", 0, 0)])
    assert idx.check_memory().recommendation is MemoryRecommendation.OPTIMAL

    idx.memory_threshold_bytes = 1024
    with pytest.raises(ResourceExhaustedError) as exc:
        idx.check_memory()
    assert exc.value.code == "INDEX_MEMORY_EXHAUSTED"
    assert exc.value.retryable
    assert "1024 bytes" in exc.value.message
