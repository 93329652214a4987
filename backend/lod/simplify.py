from __future__ import annotations

import logging
from typing import Iterable

import shapely

from features.types import AreaFeature
from geo.projections import transformer_3857_to_4326, transformer_4326_to_3857
from geo.shapes import from_shapely, to_shapely

logger = logging.getLogger(__name__)


def count_vertices(features: Iterable[AreaFeature]) -> int:
    return sum(f.vertex_count for f in features)


def poly_tol_m(zoom: float) -> float:
    if zoom <= 6:
        return 400.0
    if zoom <= 8:
        return 250.0
    if zoom <= 10:
        return 120.0
    if zoom <= 12:
        return 40.0
    return 15.0


def simplify_feature(feature: AreaFeature, *, tolerance_m: float) -> AreaFeature | None:
    """
    Topology-preserving simplification in EPSG:3857 (approx meters).

    Returns None when the feature collapses; callers decide whether to keep the original.
    """
    geom = to_shapely(feature)
    if geom.is_empty:
        return None

    t_fwd = transformer_4326_to_3857()
    t_inv = transformer_3857_to_4326()
    geom_m = shapely.transform(geom, t_fwd.transform, interleaved=False)
    simp = geom_m.simplify(tolerance_m, preserve_topology=True)
    if simp.is_empty:
        return None
    if not simp.is_valid:
        simp = simp.buffer(0)
        if simp.is_empty:
            return None
    geom_ll = shapely.transform(simp, t_inv.transform, interleaved=False)
    return from_shapely(geom_ll, fid=feature.id, props=feature.props)


def simplify_features(
    features: list[AreaFeature], *, tolerance_m: float, min_vertices: int = 0
) -> list[AreaFeature]:
    out: list[AreaFeature] = []
    for f in features:
        if f.vertex_count <= min_vertices:
            out.append(f)
            continue
        simp = simplify_feature(f, tolerance_m=tolerance_m)
        # A collapsed simplification must not drop a revealed area.
        out.append(simp if simp is not None else f)
    return out


def simplify_until_budget(
    features: list[AreaFeature],
    zoom: float,
    *,
    max_vertices: int,
) -> list[AreaFeature]:
    # Start with a zoom-derived tolerance, then increase until we're under budget.
    base_tol = poly_tol_m(zoom)
    tolerances = [base_tol, base_tol * 2, base_tol * 4, base_tol * 8]

    out = features
    for tol in tolerances:
        if count_vertices(out) <= max_vertices:
            break
        out = simplify_features(features, tolerance_m=tol)
    if count_vertices(out) > max_vertices:
        logger.debug(
            "Vertex budget %d still exceeded after simplification (%d vertices)",
            max_vertices,
            count_vertices(out),
        )
    return out
