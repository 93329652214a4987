from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class ViewportBounds:
    """
    WGS84 viewport in lon/lat degrees.

    Convention used throughout this repo:
    - minLng, minLat, maxLng, maxLat
    - valid bounds are finite, in range and strictly ordered (min < max)

    Construct through `parse()` when the input comes from a caller; it returns None
    instead of raising so the caller can keep its prior state.
    """

    min_lng: float
    min_lat: float
    max_lng: float
    max_lat: float

    @staticmethod
    def parse(value: Any) -> "ViewportBounds | None":
        if isinstance(value, ViewportBounds):
            return value if value.is_valid() else None
        try:
            if isinstance(value, dict):
                vals = (
                    _pick(value, "min_lng", "minLng", "minLon", "west"),
                    _pick(value, "min_lat", "minLat", "south"),
                    _pick(value, "max_lng", "maxLng", "maxLon", "east"),
                    _pick(value, "max_lat", "maxLat", "north"),
                )
            elif isinstance(value, (list, tuple)) and len(value) == 4:
                vals = tuple(value)
            else:
                return None
            b = ViewportBounds(*(float(v) for v in vals))  # type: ignore[arg-type]
        except (KeyError, TypeError, ValueError):
            return None
        return b if b.is_valid() else None

    def errors(self) -> list[str]:
        out: list[str] = []
        vals = self.as_tuple()
        if not all(math.isfinite(v) for v in vals):
            return ["bounds contain non-finite values"]
        if not (-180.0 <= self.min_lng <= 180.0 and -180.0 <= self.max_lng <= 180.0):
            out.append("longitude out of range [-180, 180]")
        if not (-90.0 <= self.min_lat <= 90.0 and -90.0 <= self.max_lat <= 90.0):
            out.append("latitude out of range [-90, 90]")
        if not self.min_lng < self.max_lng:
            out.append("min_lng must be < max_lng")
        if not self.min_lat < self.max_lat:
            out.append("min_lat must be < max_lat")
        return out

    def is_valid(self) -> bool:
        return not self.errors()

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_lng, self.min_lat, self.max_lng, self.max_lat)

    def rounded_key(self, tolerance: float = 0.001) -> tuple[float, float, float, float]:
        """
        A stable, hashable key for caching viewport-derived computations.

        Each bound snaps to the nearest multiple of `tolerance` (0.001 deg is ~110m in
        latitude), so sub-pixel jitter while panning maps to the same key.
        """
        tol = float(tolerance)
        if tol <= 0:
            return self.as_tuple()
        decimals = max(0, int(math.ceil(-math.log10(tol))) + 1)
        return tuple(round(round(v / tol) * tol, decimals) for v in self.as_tuple())  # type: ignore[return-value]

    def intersects(self, other: "ViewportBounds | tuple[float, float, float, float]") -> bool:
        o = other.as_tuple() if isinstance(other, ViewportBounds) else other
        return not (
            o[2] < self.min_lng
            or o[0] > self.max_lng
            or o[3] < self.min_lat
            or o[1] > self.max_lat
        )

    def contains(self, other: "ViewportBounds") -> bool:
        return (
            self.min_lng <= other.min_lng
            and self.min_lat <= other.min_lat
            and self.max_lng >= other.max_lng
            and self.max_lat >= other.max_lat
        )

    def expanded(self, margin: float) -> "ViewportBounds":
        m = max(0.0, float(margin))
        return ViewportBounds(
            min_lng=max(-180.0, self.min_lng - m),
            min_lat=max(-90.0, self.min_lat - m),
            max_lng=min(180.0, self.max_lng + m),
            max_lat=min(90.0, self.max_lat + m),
        )

    @staticmethod
    def from_center(lon: float, lat: float, span: float) -> "ViewportBounds":
        half = abs(float(span)) / 2.0
        return ViewportBounds(
            min_lng=max(-180.0, lon - half),
            min_lat=max(-90.0, lat - half),
            max_lng=min(180.0, lon + half),
            max_lat=min(90.0, lat + half),
        )

    def to_dict(self) -> dict[str, float]:
        return {
            "minLng": self.min_lng,
            "minLat": self.min_lat,
            "maxLng": self.max_lng,
            "maxLat": self.max_lat,
        }


WORLD_BOUNDS = ViewportBounds(min_lng=-180.0, min_lat=-90.0, max_lng=180.0, max_lat=90.0)


def _pick(d: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d:
            return d[k]
    raise KeyError(keys[0])
