from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, TypeAlias


Coord: TypeAlias = tuple[float, float]  # (lon, lat)
Ring: TypeAlias = tuple[Coord, ...]
PolygonRings: TypeAlias = tuple[Ring, ...]  # (outer_ring, *holes)

AreaGeometryType = Literal["Polygon", "MultiPolygon"]


@dataclass(frozen=True)
class PointFeature:
    id: str
    lon: float
    lat: float
    props: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AreaFeature:
    """
    A polygon or multipolygon with an opaque property bag.

    Notes:
    - Coordinates are EPSG:4326 (lon, lat) degrees.
    - `polygons` always holds one entry for "Polygon" and one or more for "MultiPolygon";
      each entry is (outer_ring, *holes).
    - Instances are values: geometry operations return new features instead of mutating.
    """

    id: str
    geometry_type: AreaGeometryType
    polygons: tuple[PolygonRings, ...]
    props: dict[str, Any] = field(default_factory=dict)

    @property
    def rings(self) -> list[Ring]:
        return [r for poly in self.polygons for r in poly]

    @property
    def vertex_count(self) -> int:
        return sum(len(r) for r in self.rings)

    @property
    def ring_count(self) -> int:
        return sum(len(poly) for poly in self.polygons)

    @property
    def hole_count(self) -> int:
        return sum(max(0, len(poly) - 1) for poly in self.polygons)

    def bounds(self) -> tuple[float, float, float, float]:
        lons = [c[0] for poly in self.polygons for c in (poly[0] if poly else ())]
        lats = [c[1] for poly in self.polygons for c in (poly[0] if poly else ())]
        if not lons:
            return (0.0, 0.0, 0.0, 0.0)
        return (min(lons), min(lats), max(lons), max(lats))

    def with_props(self, **props: Any) -> "AreaFeature":
        return AreaFeature(
            id=self.id,
            geometry_type=self.geometry_type,
            polygons=self.polygons,
            props={**self.props, **props},
        )

    def geometry_dict(self) -> dict[str, Any]:
        if self.geometry_type == "Polygon":
            coords: Any = [[list(c) for c in ring] for ring in self.polygons[0]]
        else:
            coords = [[[list(c) for c in ring] for ring in poly] for poly in self.polygons]
        return {"type": self.geometry_type, "coordinates": coords}

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "id": self.id,
            "properties": dict(self.props),
            "geometry": self.geometry_dict(),
        }


def area_from_polygons(
    fid: str, polygons: list[PolygonRings] | tuple[PolygonRings, ...], props: dict[str, Any] | None = None
) -> AreaFeature:
    polys = tuple(polygons)
    return AreaFeature(
        id=fid,
        geometry_type="Polygon" if len(polys) == 1 else "MultiPolygon",
        polygons=polys,
        props=dict(props or {}),
    )


def feature_collection(features: list[AreaFeature] | tuple[AreaFeature, ...]) -> dict[str, Any]:
    return {"type": "FeatureCollection", "features": [f.to_geojson() for f in features]}
