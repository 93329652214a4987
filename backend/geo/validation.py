from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Any

from features.geojson import parse_feature
from features.types import AreaFeature, PolygonRings, Ring, area_from_polygons

logger = logging.getLogger(__name__)

COORD_DECIMALS = 6
DUPLICATE_EPSILON = 1e-6
MIN_RING_POINTS = 4
LARGE_RING_VERTICES = 1000
MEDIUM_COMPLEXITY_VERTICES = 500
HIGH_COMPLEXITY_VERTICES = 1000


class ComplexityLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class GeometryComplexity:
    vertex_count: int = 0
    ring_count: int = 0
    level: ComplexityLevel = ComplexityLevel.LOW

    @staticmethod
    def of(vertex_count: int, ring_count: int) -> "GeometryComplexity":
        if vertex_count > HIGH_COMPLEXITY_VERTICES:
            level = ComplexityLevel.HIGH
        elif vertex_count > MEDIUM_COMPLEXITY_VERTICES:
            level = ComplexityLevel.MEDIUM
        else:
            level = ComplexityLevel.LOW
        return GeometryComplexity(vertex_count=vertex_count, ring_count=ring_count, level=level)

    def combine(self, other: "GeometryComplexity") -> "GeometryComplexity":
        return GeometryComplexity.of(
            self.vertex_count + other.vertex_count, self.ring_count + other.ring_count
        )


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    complexity: GeometryComplexity = field(default_factory=GeometryComplexity)


def feature_complexity(features: AreaFeature | list[AreaFeature] | tuple[AreaFeature, ...]) -> GeometryComplexity:
    feats = [features] if isinstance(features, AreaFeature) else list(features)
    return GeometryComplexity.of(
        sum(f.vertex_count for f in feats), sum(f.ring_count for f in feats)
    )


def validate_geometry(obj: Any) -> ValidationResult:
    """
    Structured diagnostics for a feature, bare geometry or `AreaFeature`.

    Notes:
    - Unclosed rings are a warning (sanitize closes them), not an error.
    - Rings with fewer than 4 points (after closure), non-finite or out-of-range
      coordinates and non-polygonal types are errors.
    """
    errors: list[str] = []
    warnings: list[str] = []

    gtype = _geometry_type(obj)
    if gtype is None:
        return ValidationResult(is_valid=False, errors=["geometry is missing or not an object"])
    if gtype not in ("Polygon", "MultiPolygon"):
        return ValidationResult(
            is_valid=False, errors=[f"unsupported geometry type: {gtype}"]
        )

    feature = parse_feature(obj)
    if feature is None:
        return ValidationResult(
            is_valid=False, errors=[f"{gtype} has malformed or empty coordinates"]
        )

    for pi, poly in enumerate(feature.polygons):
        if not poly:
            errors.append(f"polygon {pi} has no rings")
            continue
        for ri, ring in enumerate(poly):
            label = f"polygon {pi} ring {ri}"
            if not all(math.isfinite(c) for pt in ring for c in pt):
                errors.append(f"{label} contains non-finite coordinates")
                continue
            if any(not _in_range(lon, lat) for lon, lat in ring):
                errors.append(f"{label} has coordinates out of range")
            closed = len(ring) > 0 and ring[0] == ring[-1]
            if not closed:
                warnings.append(f"{label} is not closed")
            n = len(ring) if closed else len(ring) + 1
            if n < MIN_RING_POINTS:
                errors.append(f"{label} has {n} points (minimum {MIN_RING_POINTS})")
            if len(ring) > LARGE_RING_VERTICES:
                warnings.append(f"{label} has {len(ring)} vertices (may be slow)")

    complexity = feature_complexity(feature)
    return ValidationResult(
        is_valid=not errors, errors=errors, warnings=warnings, complexity=complexity
    )


def sanitize_feature(obj: Any, *, default_id: str = "area") -> AreaFeature | None:
    """
    Normalize a feature (or bare polygonal geometry) or return None.

    Never raises. Coordinates are rounded to 6 decimals, consecutive duplicates are
    dropped and rings are closed; invalid holes are dropped, an invalid exterior
    drops the polygon, and a feature with no polygon left is rejected.
    """
    try:
        feature = parse_feature(obj, default_id=default_id)
        if feature is None:
            return None

        polys: list[PolygonRings] = []
        for poly in feature.polygons:
            if not poly:
                continue
            outer = _sanitize_ring(poly[0])
            if outer is None:
                continue
            holes = [h for h in (_sanitize_ring(r) for r in poly[1:]) if h is not None]
            polys.append((outer, *holes))
        if not polys:
            return None

        out = area_from_polygons(feature.id, polys, feature.props)
        for ring in out.rings:
            if len(ring) > LARGE_RING_VERTICES:
                logger.warning(
                    "Feature %s has a ring with %d vertices", out.id, len(ring)
                )
        return out
    except Exception:  # never raise from sanitize
        logger.debug("sanitize_feature rejected input", exc_info=True)
        return None


def _sanitize_ring(ring: Ring) -> Ring | None:
    pts: list[tuple[float, float]] = []
    for lon, lat in ring:
        if not (math.isfinite(lon) and math.isfinite(lat)):
            return None
        if not _in_range(lon, lat):
            return None
        p = (round(lon, COORD_DECIMALS), round(lat, COORD_DECIMALS))
        if pts and abs(pts[-1][0] - p[0]) < DUPLICATE_EPSILON and abs(pts[-1][1] - p[1]) < DUPLICATE_EPSILON:
            continue
        pts.append(p)
    if len(pts) > 1 and pts[0] != pts[-1]:
        pts.append(pts[0])
    if len(pts) < MIN_RING_POINTS:
        return None
    return tuple(pts)


def _in_range(lon: float, lat: float) -> bool:
    return -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0


def _geometry_type(obj: Any) -> str | None:
    if isinstance(obj, AreaFeature):
        return obj.geometry_type
    if not isinstance(obj, dict):
        return None
    if obj.get("type") == "Feature":
        geom = obj.get("geometry")
        if not isinstance(geom, dict):
            return None
        return str(geom.get("type"))
    t = obj.get("type")
    return str(t) if t is not None else None


def log_geometry_debug(label: str, obj: Any) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    feature = parse_feature(obj)
    if feature is None:
        logger.debug("%s: <unparseable geometry>", label)
        return
    logger.debug(
        "%s: id=%s type=%s polygons=%d rings=%d vertices=%d bounds=%s",
        label,
        feature.id,
        feature.geometry_type,
        len(feature.polygons),
        feature.ring_count,
        feature.vertex_count,
        feature.bounds(),
    )
