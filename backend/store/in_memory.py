from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any

from features.types import AreaFeature
from store.types import ensure_storable


@dataclass
class InMemoryRevealedAreaStore:
    """
    Process-local store. Records may be `AreaFeature`s or raw GeoJSON dicts (seeded
    data), which is what the engine has to tolerate from a real store too.
    """

    records: list[Any] = field(default_factory=list)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def list(self) -> list[Any]:
        with self._lock:
            return list(self.records)

    def append(self, feature: AreaFeature) -> str:
        ensure_storable(feature)
        fid = feature.id or f"area-{uuid.uuid4().hex[:12]}"
        if fid != feature.id:
            feature = AreaFeature(
                id=fid,
                geometry_type=feature.geometry_type,
                polygons=feature.polygons,
                props=feature.props,
            )
        with self._lock:
            self.records.append(feature)
        return fid
