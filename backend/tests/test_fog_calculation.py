from __future__ import annotations

import dataclasses
import math

import pytest

from features.types import AreaFeature
from fog.calculation import FogCalculator
from fog.errors import FogCalculationError
from geo.aoi import ViewportBounds
from geo.ops import difference_features

VP = ViewportBounds(14.3, 50.0, 14.5, 50.15)


def _dense_circle(fid: str, n: int = 800) -> AreaFeature:
    ring = [(14.4 + 0.01 * math.cos(2 * math.pi * i / n), 50.07 + 0.01 * math.sin(2 * math.pi * i / n)) for i in range(n)]
    ring.append(ring[0])
    return AreaFeature(id=fid, geometry_type="Polygon", polygons=((tuple(ring),),), props={})


def _hole_vertices(res) -> int:
    return sum(len(ring) for poly in res.features[0].polygons for ring in poly[1:])


def test_difference_without_geometry_raises_calculation_error(monkeypatch):
    def no_geometry(minuend, subtrahend, **kwargs):
        res = difference_features(minuend, subtrahend, **kwargs)
        return dataclasses.replace(res, feature=None)

    monkeypatch.setattr("fog.calculation.difference_features", no_geometry)

    with pytest.raises(FogCalculationError) as exc:
        FogCalculator().calculate([_dense_circle("a", n=64)], VP)
    assert exc.value.stage == "difference"
    assert exc.value.code == "GEOMETRY_DIFFERENCE_FAILED"


def test_fast_mode_thins_input_to_vertex_budget():
    area = _dense_circle("a")
    accurate = FogCalculator().calculate([area], VP, zoom=14)
    fast = FogCalculator(performance_mode="fast", fast_vertex_budget=200).calculate([area], VP, zoom=14)

    assert accurate.features_processed == fast.features_processed == 1
    assert accurate.features[0].hole_count == fast.features[0].hole_count == 1
    assert _hole_vertices(fast) <= 200
    assert _hole_vertices(fast) < _hole_vertices(accurate)


def test_fast_mode_leaves_low_complexity_input_alone():
    area = _dense_circle("a", n=64)
    accurate = FogCalculator().calculate([area], VP)
    fast = FogCalculator(performance_mode="fast", fast_vertex_budget=10).calculate([area], VP)
    assert fast.features == accurate.features
