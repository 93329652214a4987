from __future__ import annotations

import math

from features.types import AreaFeature
from lod.policy import LodPolicy
from lod.simplify import count_vertices, simplify_until_budget


def _wobbly_circle(fid: str, n: int = 600) -> AreaFeature:
    ring = []
    for i in range(n):
        a = 2 * math.pi * i / n
        r = 0.02 * (1 + 0.01 * math.sin(a * 40))
        ring.append((14.4 + r * math.cos(a), 50.07 + r * math.sin(a)))
    ring.append(ring[0])
    return AreaFeature(id=fid, geometry_type="Polygon", polygons=((tuple(ring),),), props={"k": 1})


def test_zoom_buckets():
    policy = LodPolicy()
    assert policy.bucket(None) is None
    assert policy.bucket(12.0) is None
    assert policy.bucket(16.5) is None
    assert policy.bucket(8.7) == 8
    assert policy.bucket(float("nan")) is None
    assert LodPolicy(full_detail_zoom=16.0).bucket(14.2) == 14


def test_policy_leaves_small_features_alone():
    small = _wobbly_circle("s", n=40)
    assert LodPolicy().apply(small, 5) is small


def test_policy_simplifies_large_features_at_low_zoom_and_keeps_props():
    f = _wobbly_circle("c")
    out = LodPolicy().apply(f, 7)
    assert out.vertex_count < f.vertex_count
    assert out.props == {"k": 1}
    assert out.polygons[0][0][0] == out.polygons[0][0][-1]


def test_polygon_simplification_respects_vertex_budget():
    feats = [_wobbly_circle(f"c{i}") for i in range(3)]
    out = simplify_until_budget(feats, 8.0, max_vertices=300)
    assert count_vertices(out) <= 300
    assert len(out) == len(feats)
