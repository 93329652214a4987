from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from features.types import AreaFeature
from fog.errors import CircuitOpenError, FogCalculationError, GeometryOperationError
from fog.types import FallbackTier, FogComputationResult
from geo.aoi import WORLD_BOUNDS, ViewportBounds
from geo.ops import GeometryResult, Outcome, difference_features, union_features
from geo.validation import ComplexityLevel, feature_complexity, sanitize_feature, validate_geometry
from lod.simplify import count_vertices, simplify_until_budget
from resilience.circuit_breaker import (
    GEOMETRY_OPERATION_BREAKER,
    CircuitBreaker,
)

logger = logging.getLogger(__name__)

# Zoom assumed for fast-mode tolerances when the consumer sent none.
FAST_DEFAULT_ZOOM = 14.0


def viewport_fog_feature(bounds: ViewportBounds, *, fid: str = "fog-viewport") -> AreaFeature:
    """
    The viewport rectangle as a fog polygon (counter-clockwise exterior).
    """
    w, s, e, n = bounds.as_tuple()
    ring = ((w, s), (e, s), (e, n), (w, n), (w, s))
    return AreaFeature(
        id=fid,
        geometry_type="Polygon",
        polygons=((ring,),),
        props={"kind": "fog", "bounds": list(bounds.as_tuple())},
    )


def world_fog_feature() -> AreaFeature:
    return viewport_fog_feature(WORLD_BOUNDS, fid="fog-world")


@dataclass
class FogCalculator:
    """
    Precise fog: minuend (viewport or world rectangle) minus the union of revealed areas.

    Every geometry operation runs through `geometry_breaker`; a FAILED outcome counts
    as a breaker failure. Any failure surfaces as `FogCalculationError` so the caller
    can move to its next fallback tier.

    `performance_mode`:
    - "accurate": union input is only pre-simplified when it is HIGH complexity.
    - "fast": anything above LOW complexity is thinned to `fast_vertex_budget`
      vertices with zoom-derived tolerances before the union.
    """

    geometry_breaker: CircuitBreaker = field(
        default_factory=lambda: CircuitBreaker(options=GEOMETRY_OPERATION_BREAKER)
    )
    simplify_complex: bool = True
    performance_mode: str = "accurate"
    fast_vertex_budget: int = 1000

    def calculate(
        self,
        areas: Sequence[Any],
        bounds: ViewportBounds | None,
        *,
        tier: FallbackTier = FallbackTier.SPATIAL_INDEX,
        used_spatial_index: bool = False,
        zoom: float | None = None,
    ) -> FogComputationResult:
        t0 = time.perf_counter()
        minuend = viewport_fog_feature(bounds) if bounds is not None else world_fog_feature()
        warnings: list[str] = []

        valid: list[Any] = []
        for i, a in enumerate(areas):
            vr = validate_geometry(a)
            if vr.is_valid:
                valid.append(a)
            else:
                warnings.append(f"skipped invalid revealed area #{i}: {'; '.join(vr.errors)}")

        if not valid:
            return FogComputationResult(
                features=(minuend,),
                calculation_time_ms=_ms_since(t0),
                used_fallback=False,
                used_spatial_index=used_spatial_index,
                warnings=tuple(warnings),
                tier=tier,
                features_processed=0,
            )

        simplify_complex = self.simplify_complex
        if self.performance_mode == "fast":
            valid = self._thin(valid, zoom)
            simplify_complex = False

        union = self._guarded(
            lambda: union_features(valid, simplify_complex=simplify_complex)
        )
        warnings.extend(union.warnings)
        diff = self._guarded(lambda: difference_features(minuend, union.feature))
        warnings.extend(diff.warnings)

        features: tuple[AreaFeature, ...]
        if diff.outcome is Outcome.EMPTY:
            features = ()
        else:
            if diff.feature is None:
                raise FogCalculationError(
                    "difference reported a result without geometry",
                    stage="difference",
                    code="GEOMETRY_DIFFERENCE_FAILED",
                )
            features = (diff.feature.with_props(kind="fog"),)

        logger.debug(
            "Fog calculated from %d areas (%s): %d holes, %.2fms",
            len(valid),
            tier.value,
            sum(f.hole_count for f in features),
            _ms_since(t0),
        )
        return FogComputationResult(
            features=features,
            calculation_time_ms=_ms_since(t0),
            used_fallback=False,
            used_spatial_index=used_spatial_index,
            warnings=tuple(warnings),
            tier=tier,
            features_processed=len(valid),
        )

    def _thin(self, areas: list[Any], zoom: float | None) -> list[Any]:
        feats = [
            f
            for f in (sanitize_feature(a, default_id=f"area-{i}") for i, a in enumerate(areas))
            if f is not None
        ]
        if feature_complexity(feats).level is ComplexityLevel.LOW:
            return areas
        before = count_vertices(feats)
        thinned = simplify_until_budget(
            feats,
            FAST_DEFAULT_ZOOM if zoom is None else zoom,
            max_vertices=self.fast_vertex_budget,
        )
        logger.debug("Fast mode thinned union input: %d -> %d vertices", before, count_vertices(thinned))
        return thinned

    def _guarded(self, fn) -> GeometryResult:
        def run() -> GeometryResult:
            res = fn()
            if res.outcome is Outcome.FAILED:
                raise GeometryOperationError(
                    "; ".join(res.errors) or "geometry operation failed",
                    stage=res.metrics.operation.value,
                    code=f"GEOMETRY_{res.metrics.operation.value.upper()}_FAILED",
                )
            return res

        try:
            return self.geometry_breaker.call(run)
        except (GeometryOperationError, CircuitOpenError) as e:
            raise FogCalculationError(e.message, stage=e.stage, code=e.code) from e


def _ms_since(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0
