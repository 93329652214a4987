from __future__ import annotations

from typing import Any

from shapely.geometry import GeometryCollection, MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

from features.types import AreaFeature, PolygonRings, area_from_polygons


def to_shapely(feature: AreaFeature) -> Polygon | MultiPolygon:
    """
    Build a shapely geometry for a feature; invalid input is repaired with buffer(0).
    """
    polys: list[Polygon] = []
    for poly in feature.polygons:
        if not poly or len(poly[0]) < 4:
            continue
        polys.append(Polygon(poly[0], [r for r in poly[1:] if len(r) >= 4]))
    geom: Polygon | MultiPolygon
    if not polys:
        geom = Polygon()
    elif len(polys) == 1:
        geom = polys[0]
    else:
        geom = MultiPolygon(polys)
    if not geom.is_empty and not geom.is_valid:
        geom = repair(geom)
    return geom


def repair(geom: BaseGeometry) -> Polygon | MultiPolygon:
    fixed = geom.buffer(0)
    return _polygonal(fixed)


def polygon_parts(geom: BaseGeometry | None) -> list[Polygon]:
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Polygon):
        return [geom]
    if isinstance(geom, (MultiPolygon, GeometryCollection)):
        out: list[Polygon] = []
        for g in geom.geoms:
            out.extend(polygon_parts(g))
        return out
    # Lines/points produced by degenerate overlays carry no area.
    return []


def _polygonal(geom: BaseGeometry) -> Polygon | MultiPolygon:
    parts = polygon_parts(geom)
    if not parts:
        return Polygon()
    if len(parts) == 1:
        return parts[0]
    return MultiPolygon(parts)


def from_shapely(
    geom: BaseGeometry, *, fid: str, props: dict[str, Any] | None = None
) -> AreaFeature | None:
    """
    Convert shapely output back to an `AreaFeature`.

    Exteriors are counter-clockwise and holes clockwise (RFC 7946). Returns None for
    empty or non-areal output.
    """
    parts = [orient(p, sign=1.0) for p in polygon_parts(geom) if not p.is_empty]
    if not parts:
        return None
    polys: list[PolygonRings] = []
    for p in parts:
        outer = tuple((float(x), float(y)) for x, y, *_ in p.exterior.coords)
        holes = tuple(
            tuple((float(x), float(y)) for x, y, *_ in r.coords) for r in p.interiors
        )
        polys.append((outer, *holes))
    return area_from_polygons(fid, polys, props)
