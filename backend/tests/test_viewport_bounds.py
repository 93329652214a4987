from __future__ import annotations

import math

import pytest

from geo.aoi import WORLD_BOUNDS, ViewportBounds


def test_parse_accepts_tuple_and_dict_forms():
    a = ViewportBounds.parse((-122.5, 37.7, -122.3, 37.8))
    b = ViewportBounds.parse({"minLng": -122.5, "minLat": 37.7, "maxLng": -122.3, "maxLat": 37.8})
    assert a is not None
    assert a == b


def test_parse_rejects_invalid_bounds_without_raising():
    assert ViewportBounds.parse((-122.3, 37.7, -122.5, 37.8)) is None  # min >= max
    assert ViewportBounds.parse((0, 0, 0, 1)) is None
    assert ViewportBounds.parse((math.nan, 0, 1, 1)) is None
    assert ViewportBounds.parse((-200, 0, 1, 1)) is None
    assert ViewportBounds.parse((0, -91, 1, 1)) is None
    assert ViewportBounds.parse("not bounds") is None
    assert ViewportBounds.parse({"minLng": 0}) is None
    assert ViewportBounds.parse((0, 0, 1)) is None


def test_errors_describe_each_problem():
    b = ViewportBounds(min_lng=10, min_lat=5, max_lng=1, max_lat=1)
    errs = b.errors()
    assert any("min_lng" in e for e in errs)
    assert any("min_lat" in e for e in errs)


def test_rounded_key_absorbs_jitter():
    a = ViewportBounds(-122.50001, 37.70002, -122.29998, 37.79999)
    b = ViewportBounds(-122.49999, 37.69998, -122.30001, 37.80001)
    assert a.rounded_key(0.001) == b.rounded_key(0.001)
    c = ViewportBounds(-122.52, 37.7, -122.3, 37.8)
    assert a.rounded_key(0.001) != c.rounded_key(0.001)


def test_expanded_is_clamped_to_world():
    b = ViewportBounds(-179.9995, 89.9995, 179.9995, 89.9999).expanded(0.01)
    assert b.min_lng == -180.0
    assert b.max_lat == 90.0
    assert WORLD_BOUNDS.contains(b)


def test_intersects_envelopes():
    vp = ViewportBounds(0, 0, 1, 1)
    assert vp.intersects((0.5, 0.5, 2, 2))
    assert vp.intersects((1, 1, 2, 2))  # touching counts
    assert not vp.intersects((1.1, 0, 2, 1))


def test_from_center_clamps_and_round_trips_through_parse():
    b = ViewportBounds.from_center(179.9, 0.0, 1.0)
    assert b.max_lng == 180.0
    assert b.min_lng == pytest.approx(179.4)
    assert ViewportBounds.parse(b.to_dict()) == b
