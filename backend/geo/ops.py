from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

import shapely
from shapely import difference as shapely_difference
from shapely.geometry import Point
from shapely.geometry import box as shapely_box
from shapely.ops import unary_union

from features.types import AreaFeature, PointFeature
from geo.projections import aeqd_transformers
from geo.shapes import from_shapely, polygon_parts, repair, to_shapely
from geo.validation import (
    ComplexityLevel,
    GeometryComplexity,
    feature_complexity,
    sanitize_feature,
    validate_geometry,
)
from lod.simplify import simplify_features

logger = logging.getLogger(__name__)

UNIT_TO_METERS: dict[str, float] = {
    "meters": 1.0,
    "kilometers": 1000.0,
    "miles": 1609.344,
}

# Tolerance used to thin HIGH-complexity inputs before an expensive union.
PRE_UNION_TOLERANCE_M = 5.0
BUFFER_QUAD_SEGS = 16

_WORLD_BOX = shapely_box(-180.0, -90.0, 180.0, 90.0)


class OperationKind(str, enum.Enum):
    UNION = "union"
    DIFFERENCE = "difference"
    BUFFER = "buffer"


class Outcome(str, enum.Enum):
    COMPUTED = "computed"
    EMPTY = "empty"
    FAILED = "failed"


@dataclass(frozen=True)
class OperationMetrics:
    operation: OperationKind
    execution_time_ms: float
    input_complexity: GeometryComplexity
    output_complexity: GeometryComplexity
    had_errors: bool
    fallback_used: bool


@dataclass(frozen=True)
class GeometryResult:
    """
    Uniform envelope returned by every geometry operation.

    Notes:
    - COMPUTED carries a feature; EMPTY is a valid "nothing left" answer (e.g. a
      viewport fully covered by revealed area); FAILED carries at least one error.
    - Operations never raise; callers branch on `outcome`.
    """

    outcome: Outcome
    feature: AreaFeature | None
    metrics: OperationMetrics
    errors: tuple[str, ...] = field(default_factory=tuple)
    warnings: tuple[str, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.outcome is not Outcome.FAILED

    @property
    def is_empty(self) -> bool:
        return self.outcome is Outcome.EMPTY


class _Op:
    """Collects timing and diagnostics for one operation."""

    def __init__(self, kind: OperationKind) -> None:
        self.kind = kind
        self.t0 = time.perf_counter()
        self.errors: list[str] = []
        self.warnings: list[str] = []
        self.fallback_used = False
        self.input_complexity = GeometryComplexity()

    def finish(self, outcome: Outcome, feature: AreaFeature | None = None) -> GeometryResult:
        elapsed_ms = (time.perf_counter() - self.t0) * 1000.0
        out_cx = feature_complexity(feature) if feature is not None else GeometryComplexity()
        if outcome is Outcome.FAILED and not self.errors:
            self.errors.append(f"{self.kind.value} failed")
        result = GeometryResult(
            outcome=outcome,
            feature=feature if outcome is Outcome.COMPUTED else None,
            metrics=OperationMetrics(
                operation=self.kind,
                execution_time_ms=elapsed_ms,
                input_complexity=self.input_complexity,
                output_complexity=out_cx,
                had_errors=bool(self.errors),
                fallback_used=self.fallback_used,
            ),
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
        )
        logger.debug(
            "%s -> %s in %.2fms (in=%d vertices, out=%d vertices)",
            self.kind.value,
            outcome.value,
            elapsed_ms,
            self.input_complexity.vertex_count,
            out_cx.vertex_count,
        )
        return result


def _accept(obj: Any, index: int, op: _Op) -> AreaFeature | None:
    vr = validate_geometry(obj)
    if not vr.is_valid:
        op.warnings.append(f"skipped invalid feature #{index}: {'; '.join(vr.errors)}")
        return None
    if isinstance(obj, AreaFeature) and all(r[0] == r[-1] for r in obj.rings):
        return obj
    feature = sanitize_feature(obj, default_id=f"area-{index}")
    if feature is None:
        op.warnings.append(f"skipped feature #{index}: could not be sanitized")
    return feature


def union_features(
    features: Sequence[Any],
    *,
    simplify_complex: bool = True,
    fid: str = "revealed-union",
) -> GeometryResult:
    """
    Union 0..N polygonal features into one Polygon/MultiPolygon feature.

    - Empty input is FAILED (reported, not raised).
    - Invalid members are skipped with a warning; the rest still union.
    - A single valid member is returned unchanged.
    - If the whole-collection union throws, fall back to a pairwise fold.
    """
    op = _Op(OperationKind.UNION)
    try:
        if not features:
            op.errors.append("union requires at least one feature")
            return op.finish(Outcome.FAILED)

        valid = [f for f in (_accept(obj, i, op) for i, obj in enumerate(features)) if f is not None]
        op.input_complexity = feature_complexity(valid)
        if not valid:
            op.errors.append("no valid features to union")
            return op.finish(Outcome.FAILED)
        if len(valid) == 1:
            return op.finish(Outcome.COMPUTED, valid[0])

        if simplify_complex and op.input_complexity.level is ComplexityLevel.HIGH:
            valid = simplify_features(
                valid, tolerance_m=PRE_UNION_TOLERANCE_M, min_vertices=100
            )
            logger.debug(
                "Pre-simplified union input: %d -> %d vertices",
                op.input_complexity.vertex_count,
                sum(f.vertex_count for f in valid),
            )

        geoms = [g for g in (to_shapely(f) for f in valid) if not g.is_empty]
        try:
            merged = unary_union(geoms)
        except Exception as e:
            op.fallback_used = True
            op.warnings.append(f"collection union failed ({e}); folded pairwise")
            merged = _fold_union(geoms, op)

        if not merged.is_valid:
            merged = repair(merged)
        out = from_shapely(
            merged, fid=fid, props={"kind": "revealed_union", "source_count": len(valid)}
        )
        if out is None:
            op.errors.append("union produced no polygonal output")
            return op.finish(Outcome.FAILED)
        return op.finish(Outcome.COMPUTED, out)
    except Exception as e:
        logger.warning("union failed", exc_info=True)
        op.errors.append(f"union failed: {e}")
        return op.finish(Outcome.FAILED)


def _fold_union(geoms: list[Any], op: _Op) -> Any:
    acc = geoms[0]
    for i, g in enumerate(geoms[1:], start=1):
        try:
            acc = acc.union(g)
        except Exception:
            try:
                acc = repair(acc).union(repair(g))
            except Exception as e:
                op.warnings.append(f"dropped member #{i} from union: {e}")
    return acc


def difference_features(
    minuend: Any, subtrahend: Any | None, *, fid: str = "fog"
) -> GeometryResult:
    """
    minuend minus subtrahend.

    Full coverage is EMPTY with a warning, never FAILED: a viewport that is entirely
    revealed has no fog, and that is a correct answer.
    """
    op = _Op(OperationKind.DIFFERENCE)
    try:
        m = _accept(minuend, 0, op)
        if m is None:
            op.errors.append("minuend is not a valid polygonal feature")
            return op.finish(Outcome.FAILED)
        if subtrahend is None:
            op.input_complexity = feature_complexity(m)
            return op.finish(Outcome.COMPUTED, m)
        s = _accept(subtrahend, 1, op)
        if s is None:
            op.errors.append("subtrahend is not a valid polygonal feature")
            return op.finish(Outcome.FAILED)
        op.input_complexity = feature_complexity([m, s])

        a = to_shapely(m)
        b = to_shapely(s)
        try:
            diff = shapely_difference(a, b)
        except Exception as e:
            op.fallback_used = True
            op.warnings.append(f"difference failed ({e}); retried on repaired input")
            try:
                diff = shapely_difference(repair(a), repair(b))
            except Exception as e2:
                op.errors.append(f"difference failed after repair: {e2}")
                return op.finish(Outcome.FAILED)

        if not polygon_parts(diff):
            op.warnings.append("subtrahend completely covers minuend; result is empty")
            return op.finish(Outcome.EMPTY)

        out = from_shapely(diff, fid=fid, props=m.props)
        if out is None:
            op.warnings.append("difference produced no polygonal output; result is empty")
            return op.finish(Outcome.EMPTY)
        return op.finish(Outcome.COMPUTED, out)
    except Exception as e:
        logger.warning("difference failed", exc_info=True)
        op.errors.append(f"difference failed: {e}")
        return op.finish(Outcome.FAILED)


def buffer_point(
    point: Any,
    distance: float,
    units: str = "meters",
    *,
    fid: str | None = None,
    props: dict[str, Any] | None = None,
) -> GeometryResult:
    """
    Expand a point into a circular polygon of `distance` `units`.

    `point` may be a `PointFeature`, a (lon, lat) pair or a {"latitude", "longitude"}
    mapping. Circles are built in a point-centred azimuthal equidistant projection and
    clipped to world bounds.
    """
    op = _Op(OperationKind.BUFFER)
    try:
        lonlat = _point_lonlat(point)
        if lonlat is None:
            op.errors.append(f"malformed point: {point!r}")
            return op.finish(Outcome.FAILED)
        lon, lat = lonlat
        if not (math.isfinite(lon) and math.isfinite(lat)) or not (
            -180.0 <= lon <= 180.0 and -90.0 <= lat <= 90.0
        ):
            op.errors.append(f"point out of range: ({lon}, {lat})")
            return op.finish(Outcome.FAILED)
        try:
            d = float(distance)
        except (TypeError, ValueError):
            d = float("nan")
        if not math.isfinite(d) or d <= 0:
            op.errors.append(f"buffer distance must be finite and > 0, got {distance!r}")
            return op.finish(Outcome.FAILED)
        factor = UNIT_TO_METERS.get(str(units).lower())
        if factor is None:
            op.errors.append(f"unsupported units: {units!r}")
            return op.finish(Outcome.FAILED)

        radius_m = d * factor
        _fwd, inv = aeqd_transformers(round(lon, 6), round(lat, 6))
        circle = Point(0.0, 0.0).buffer(radius_m, quad_segs=BUFFER_QUAD_SEGS)
        geom = shapely.transform(circle, inv.transform, interleaved=False)
        if not geom.is_valid:
            geom = repair(geom)
        if not _WORLD_BOX.contains(geom):
            geom = geom.intersection(_WORLD_BOX)
            op.warnings.append("buffer clipped to world bounds")

        out = from_shapely(
            geom,
            fid=fid or f"reveal-{lat:.6f}-{lon:.6f}",
            props={"kind": "revealed", "center": [lon, lat], "radius_m": radius_m, **(props or {})},
        )
        if out is None:
            op.errors.append("buffer produced no polygonal output")
            return op.finish(Outcome.FAILED)
        return op.finish(Outcome.COMPUTED, out)
    except Exception as e:
        logger.warning("buffer failed", exc_info=True)
        op.errors.append(f"buffer failed: {e}")
        return op.finish(Outcome.FAILED)


def _point_lonlat(point: Any) -> tuple[float, float] | None:
    try:
        if isinstance(point, PointFeature):
            return float(point.lon), float(point.lat)
        if isinstance(point, dict):
            if "latitude" in point and "longitude" in point:
                return float(point["longitude"]), float(point["latitude"])
            if "lat" in point and "lon" in point:
                return float(point["lon"]), float(point["lat"])
            return None
        if isinstance(point, (list, tuple)) and len(point) == 2:
            return float(point[0]), float(point[1])
    except (TypeError, ValueError):
        return None
    return None
