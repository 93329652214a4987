from __future__ import annotations

import math
from dataclasses import dataclass

from features.types import AreaFeature
from lod.simplify import poly_tol_m, simplify_feature


@dataclass(frozen=True)
class LodPolicy:
    """
    Zoom-aware level of detail for revealed areas.

    Important: LOD never drops a feature. Dropping small areas would leave fog over
    ground the user has actually visited, so the only lever is vertex reduction.
    """

    full_detail_zoom: float = 12.0
    min_vertices: int = 100

    def bucket(self, zoom: float | None) -> int | None:
        """
        Integer zoom bucket used for memoization; None means full detail.
        """
        if zoom is None or not math.isfinite(zoom) or zoom >= self.full_detail_zoom:
            return None
        return max(0, int(math.floor(zoom)))

    def tolerance_m(self, zoom: float | None) -> float:
        b = self.bucket(zoom)
        return 0.0 if b is None else poly_tol_m(float(b))

    def apply(self, feature: AreaFeature, zoom: float | None) -> AreaFeature:
        tol = self.tolerance_m(zoom)
        if tol <= 0 or feature.vertex_count <= self.min_vertices:
            return feature
        simp = simplify_feature(feature, tolerance_m=tol)
        if simp is None or simp.vertex_count < 4:
            return feature
        return simp

