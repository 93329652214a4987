from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from features.types import AreaFeature, PolygonRings, area_from_polygons, feature_collection

logger = logging.getLogger(__name__)


def parse_feature(obj: Any, *, default_id: str = "area") -> AreaFeature | None:
    """
    Parse a GeoJSON Feature (or bare Polygon/MultiPolygon geometry) into an `AreaFeature`.

    Structural parsing only: ring closure, ranges and vertex minimums are checked by
    `geo.validation`. Returns None for anything that is not polygonal.
    """
    if isinstance(obj, AreaFeature):
        return obj
    if not isinstance(obj, dict):
        return None

    if obj.get("type") == "Feature":
        geom = obj.get("geometry") or {}
        props = obj.get("properties") or {}
        fid = obj.get("id")
    else:
        geom = obj
        props = {}
        fid = None

    if not isinstance(geom, dict) or not isinstance(props, dict):
        return None
    fid = str(fid if fid is not None else props.get("id") or default_id)

    gtype = geom.get("type")
    coords = geom.get("coordinates")
    if not coords or not isinstance(coords, (list, tuple)):
        return None

    try:
        if gtype == "Polygon":
            polys = [_to_polygon(coords)]
        elif gtype == "MultiPolygon":
            polys = [_to_polygon(p) for p in coords]
        else:
            return None
    except (TypeError, ValueError):
        return None

    polys = [p for p in polys if p]
    if not polys:
        return None
    return area_from_polygons(fid, polys, props)


def _to_polygon(rings: Any) -> PolygonRings:
    return tuple(_to_ring(r) for r in rings or [])


def _to_ring(ring: Any) -> tuple[tuple[float, float], ...]:
    out: list[tuple[float, float]] = []
    for p in ring or []:
        if not p or len(p) < 2:
            continue
        lon, lat = float(p[0]), float(p[1])
        out.append((lon, lat))
    return tuple(out)


def load_feature_collection(path: Path) -> list[AreaFeature]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    features = data.get("features") or [] if isinstance(data, dict) else []

    out: list[AreaFeature] = []
    skipped = 0
    for i, feature in enumerate(features):
        parsed = parse_feature(feature, default_id=f"area-{i}")
        if parsed is None:
            skipped += 1
            continue
        out.append(parsed)
    if skipped:
        logger.warning("Skipped %d non-polygonal features in %s", skipped, path)
    return out


def dump_feature_collection(features: list[AreaFeature], path: Path) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(feature_collection(features), ensure_ascii=False), encoding="utf-8")
