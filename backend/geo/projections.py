from __future__ import annotations

from functools import lru_cache

from pyproj import CRS, Transformer


@lru_cache(maxsize=1)
def transformer_4326_to_3857() -> Transformer:
    return Transformer.from_crs("EPSG:4326", "EPSG:3857", always_xy=True)


@lru_cache(maxsize=1)
def transformer_3857_to_4326() -> Transformer:
    return Transformer.from_crs("EPSG:3857", "EPSG:4326", always_xy=True)


@lru_cache(maxsize=256)
def aeqd_transformers(lon: float, lat: float) -> tuple[Transformer, Transformer]:
    """
    (forward, inverse) transformers for an azimuthal equidistant projection centred on
    (lon, lat). Distances from the centre are true meters, which keeps buffered circles
    round at any latitude (EPSG:3857 would inflate them away from the equator).

    Callers should round the centre (6 decimals is ~0.1m) so repeated reveals at the
    same spot hit the cache.
    """
    aeqd = CRS.from_proj4(
        f"+proj=aeqd +lat_0={lat} +lon_0={lon} +x_0=0 +y_0=0 +datum=WGS84 +units=m +no_defs"
    )
    fwd = Transformer.from_crs("EPSG:4326", aeqd, always_xy=True)
    inv = Transformer.from_crs(aeqd, "EPSG:4326", always_xy=True)
    return fwd, inv
