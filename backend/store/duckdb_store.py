from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from features.types import AreaFeature
from fog.errors import StoreAccessError
from geo.aoi import ViewportBounds
from store.sql import (
    COUNT_REVEALED_AREAS_SQL,
    CREATE_REVEALED_AREAS_TABLE_SQL,
    INSERT_REVEALED_AREA_SQL,
    LIST_IN_BOUNDS_SQL,
    LIST_REVEALED_AREAS_SQL,
)
from store.types import ensure_storable

logger = logging.getLogger(__name__)


@dataclass
class DuckDBRevealedAreaStore:
    """
    Revealed areas persisted as GeoJSON text plus bbox columns.

    Rows come back as GeoJSON Feature dicts; a row whose JSON cannot be decoded is
    returned as-is (a string) so the engine's sanitizer reports it instead of the
    store silently hiding it.
    """

    path: Path | None
    conn: duckdb.DuckDBPyConnection
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def ensure_schema(self) -> None:
        with self._lock:
            self.conn.execute(CREATE_REVEALED_AREAS_TABLE_SQL)

    def list(self) -> list[Any]:
        rows = self._fetch(LIST_REVEALED_AREAS_SQL)
        return [_decode(fid, raw) for fid, raw in rows]

    def list_in_bounds(self, bounds: ViewportBounds, *, limit: int = 1000) -> list[Any]:
        w, s, e, n = bounds.as_tuple()
        rows = self._fetch(LIST_IN_BOUNDS_SQL, [w, e, s, n, int(max(1, limit))])
        return [_decode(fid, raw) for fid, raw in rows]

    def append(self, feature: AreaFeature) -> str:
        ensure_storable(feature)
        fid = feature.id or f"area-{uuid.uuid4().hex[:12]}"
        min_lon, min_lat, max_lon, max_lat = feature.bounds()
        doc = {**feature.to_geojson(), "id": fid}
        try:
            with self._lock:
                self.conn.execute(
                    INSERT_REVEALED_AREA_SQL,
                    [
                        fid,
                        int(time.time() * 1000),
                        min_lon,
                        min_lat,
                        max_lon,
                        max_lat,
                        json.dumps(doc, ensure_ascii=False),
                    ],
                )
        except duckdb.Error as e:
            raise StoreAccessError(f"failed to append revealed area {fid}: {e}", stage="append") from e
        return fid

    def count(self) -> int:
        return int(self._fetch(COUNT_REVEALED_AREAS_SQL)[0][0])

    def close(self) -> None:
        with self._lock:
            try:
                self.conn.close()
            except duckdb.Error:
                logger.debug("Ignoring error while closing store", exc_info=True)

    def _fetch(self, sql: str, params: list[Any] | None = None) -> list[tuple]:
        try:
            with self._lock:
                if params:
                    return self.conn.execute(sql, params).fetchall()
                return self.conn.execute(sql).fetchall()
        except duckdb.Error as e:
            raise StoreAccessError(f"revealed-area query failed: {e}", stage="list") from e


def open_store(path: str | Path | None = None) -> DuckDBRevealedAreaStore:
    """
    Open (or create) a store. `None` or ":memory:" gives an in-process database.
    """
    if path is None or str(path) == ":memory:":
        conn = duckdb.connect(":memory:")
        p: Path | None = None
    else:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        conn = duckdb.connect(str(p))
    store = DuckDBRevealedAreaStore(path=p, conn=conn)
    store.ensure_schema()
    return store


def _decode(fid: str, raw: Any) -> Any:
    try:
        doc = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Revealed area %s has undecodable geojson", fid)
        return raw
    if isinstance(doc, dict) and doc.get("type") == "Feature" and doc.get("id") is None:
        doc["id"] = fid
    return doc
