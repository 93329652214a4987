from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from typing import Any

from features.types import AreaFeature, feature_collection
from geo.aoi import ViewportBounds

MODERATE_CALCULATION_MS = 50.0
SLOW_CALCULATION_MS = 100.0


class FallbackTier(str, enum.Enum):
    """
    Which step of the degradation chain produced a result (best first).
    """

    SPATIAL_INDEX = "spatial_index"
    STORE = "store"
    VIEWPORT_RECTANGLE = "viewport_rectangle"
    WORLD = "world"
    EMPTY = "empty"


class PerformanceLevel(str, enum.Enum):
    FAST = "fast"
    MODERATE = "moderate"
    SLOW = "slow"

    @staticmethod
    def classify(calculation_time_ms: float) -> "PerformanceLevel":
        if calculation_time_ms > SLOW_CALCULATION_MS:
            return PerformanceLevel.SLOW
        if calculation_time_ms > MODERATE_CALCULATION_MS:
            return PerformanceLevel.MODERATE
        return PerformanceLevel.FAST


@dataclass(frozen=True)
class FogComputationResult:
    """
    The engine's only output type; always a valid value, never None.

    `used_fallback` is True only for degraded tiers (rectangle/world/empty), so
    consumers can tell accurate fog from a placeholder.
    """

    features: tuple[AreaFeature, ...] = ()
    calculation_time_ms: float = 0.0
    used_fallback: bool = False
    used_spatial_index: bool = False
    warnings: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()
    tier: FallbackTier = FallbackTier.SPATIAL_INDEX
    features_processed: int = 0

    @property
    def performance_level(self) -> PerformanceLevel:
        return PerformanceLevel.classify(self.calculation_time_ms)

    def with_diagnostics(
        self, *, warnings: list[str] | tuple[str, ...] = (), errors: list[str] | tuple[str, ...] = ()
    ) -> "FogComputationResult":
        return replace(
            self,
            warnings=(*warnings, *self.warnings),
            errors=(*errors, *self.errors),
        )

    def to_feature_collection(self) -> dict[str, Any]:
        return feature_collection(self.features)

    def to_dict(self) -> dict[str, Any]:
        return {
            "featureCollection": self.to_feature_collection(),
            "calculationTimeMs": self.calculation_time_ms,
            "usedFallback": self.used_fallback,
            "usedSpatialIndex": self.used_spatial_index,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "tier": self.tier.value,
            "featuresProcessed": self.features_processed,
            "performanceLevel": self.performance_level.value,
        }


@dataclass
class FogState:
    """
    Mutable view state owned by one orchestrator instance.
    """

    viewport: ViewportBounds | None = None
    zoom: float | None = None
    last_location: tuple[float, float] | None = None  # (lon, lat)
    is_calculating: bool = False
    last_result: FogComputationResult | None = None
    generation: int = 0
    applied_generation: int = 0
    calculations: int = 0
    cache_hits: int = 0
