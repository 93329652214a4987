from __future__ import annotations

import enum
import logging
import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Iterable

from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry import box as shapely_box
from shapely.strtree import STRtree

from features.types import AreaFeature
from fog.errors import ResourceExhaustedError, StoreAccessError
from geo.aoi import ViewportBounds
from geo.ops import Outcome, buffer_point
from geo.shapes import to_shapely
from geo.validation import sanitize_feature
from lod.policy import LodPolicy
from lod.simplify import simplify_features

logger = logging.getLogger(__name__)

BYTES_PER_FEATURE = 1024
BYTES_PER_VERTEX = 64
DEFAULT_MEMORY_THRESHOLD_BYTES = 50 * 1024 * 1024
CONSIDER_CLEANUP_RATIO = 0.7
NORMAL_KEEP_RATIO = 0.7
AGGRESSIVE_KEEP_RATIO = 0.5
AGGRESSIVE_TOLERANCE_M = 10.0


class MemoryRecommendation(str, enum.Enum):
    OPTIMAL = "optimal"
    CONSIDER_CLEANUP = "consider_cleanup"
    CLEANUP_REQUIRED = "cleanup_required"


@dataclass(frozen=True)
class IndexedArea:
    feature: AreaFeature
    geom: Polygon | MultiPolygon
    bounds: tuple[float, float, float, float]
    seq: int

    @property
    def area(self) -> float:
        return float(self.geom.area)


@dataclass(frozen=True)
class MemoryStats:
    feature_count: int
    vertex_count: int
    estimated_bytes: int
    threshold_bytes: int
    usage_ratio: float
    recommendation: MemoryRecommendation


@dataclass(frozen=True)
class OptimizationReport:
    aggressive: bool
    removed: int
    simplified: int
    bytes_before: int
    bytes_after: int


@dataclass(frozen=True)
class SpatialQueryResult:
    features: tuple[AreaFeature, ...]
    total_found: int
    truncated: bool
    query_time_ms: float
    used_index: bool
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Snapshot:
    """
    Immutable index state. Writers publish a new snapshot; readers hold whichever one
    they grabbed, so a reader never observes a half-applied mutation.
    """

    entries: tuple[IndexedArea, ...] = ()  # covered by `tree`
    tree: STRtree | None = None
    delta: tuple[IndexedArea, ...] = ()  # linear-scanned until the next compaction
    ids: frozenset[str] = frozenset()
    version: int = 0

    def all_entries(self) -> list[IndexedArea]:
        return [*self.entries, *self.delta]


@dataclass
class SpatialIndex:
    """
    Bounding-box index over revealed-area features.

    Notes:
    - Input data is EPSG:4326 (lon/lat degrees); envelopes are compared in degrees.
    - `add_features` appends to a small delta list (no rebuild); the STRtree is
      rebuilt only when the delta exceeds `compact_threshold`.
    - Query results are newest-first and deterministic for a given `version`.
    """

    memory_threshold_bytes: int = DEFAULT_MEMORY_THRESHOLD_BYTES
    compact_threshold: int = 256
    max_results: int = 1000
    lod: LodPolicy = field(default_factory=LodPolicy)
    lod_cache_size: int = 2048

    _snap: _Snapshot = field(default_factory=_Snapshot, repr=False)
    _seq: int = field(default=0, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _lod_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _lod_cache: "OrderedDict[tuple[int, int], AreaFeature]" = field(
        default_factory=OrderedDict, repr=False
    )

    @property
    def version(self) -> int:
        return self._snap.version

    @property
    def feature_count(self) -> int:
        s = self._snap
        return len(s.entries) + len(s.delta)

    def is_empty(self) -> bool:
        return self.feature_count == 0

    def add_features(self, features: Iterable[Any]) -> int:
        """
        Insert revealed areas incrementally. Returns how many were added.

        Invalid records are skipped (logged); ids already present are ignored so
        re-adding after a store round trip is harmless.
        """
        with self._lock:
            snap = self._snap
            ids = set(snap.ids)
            new: list[IndexedArea] = []
            for raw in features:
                entry = self._make_entry(raw)
                if entry is None or entry.feature.id in ids:
                    continue
                ids.add(entry.feature.id)
                new.append(entry)
            if not new:
                return 0

            delta = (*snap.delta, *new)
            if len(delta) > self.compact_threshold:
                self._snap = _build_snapshot([*snap.entries, *delta], snap.version + 1)
                logger.debug("Compacted spatial index: %d entries", len(self._snap.entries))
            else:
                self._snap = _Snapshot(
                    entries=snap.entries,
                    tree=snap.tree,
                    delta=delta,
                    ids=frozenset(ids),
                    version=snap.version + 1,
                )
            return len(new)

    def load(self, features: Iterable[Any]) -> int:
        """
        Replace the whole index content (used by `refresh_from_store`).
        """
        with self._lock:
            entries: list[IndexedArea] = []
            seen: set[str] = set()
            for raw in features:
                entry = self._make_entry(raw)
                if entry is None or entry.feature.id in seen:
                    continue
                seen.add(entry.feature.id)
                entries.append(entry)
            self._snap = _build_snapshot(entries, self._snap.version + 1)
            self._clear_lod_cache()
            logger.debug("Loaded spatial index: %d entries", len(entries))
            return len(entries)

    def refresh_from_store(self, store: Any) -> int:
        """
        Rebuild from the authoritative store. Store failures raise `StoreAccessError`
        and leave the current index untouched.
        """
        try:
            records = list(store.list())
        except Exception as e:
            raise StoreAccessError(f"failed to list revealed areas: {e}", stage="refresh") from e
        skipped = 0
        feats: list[AreaFeature] = []
        for i, rec in enumerate(records):
            f = sanitize_feature(rec, default_id=f"stored-{i}")
            if f is None:
                skipped += 1
                continue
            feats.append(f)
        if skipped:
            logger.warning("Skipped %d invalid revealed-area records from store", skipped)
        return self.load(feats)

    def clear(self) -> None:
        with self._lock:
            self._snap = _Snapshot(version=self._snap.version + 1)
            self._clear_lod_cache()

    def query_viewport(
        self,
        bounds: Any,
        *,
        max_results: int | None = None,
        zoom: float | None = None,
        buffer_deg: float = 0.0,
    ) -> SpatialQueryResult:
        """
        Features whose envelope intersects `bounds` (expanded by `buffer_deg`), newest
        first, capped at `max_results` and simplified for `zoom`.

        Never raises: a failure is reported as an empty result with `errors`.
        """
        t0 = time.perf_counter()
        try:
            b = ViewportBounds.parse(bounds)
            if b is None:
                return SpatialQueryResult(
                    features=(),
                    total_found=0,
                    truncated=False,
                    query_time_ms=_ms_since(t0),
                    used_index=False,
                    errors=(f"invalid viewport bounds: {bounds!r}",),
                )
            qb = b.expanded(buffer_deg) if buffer_deg > 0 else b
            snap = self._snap

            hits: list[IndexedArea] = []
            if snap.tree is not None and snap.entries:
                idxs = _to_int_list(snap.tree.query(shapely_box(*qb.as_tuple())))
                hits.extend(snap.entries[i] for i in idxs)
            hits.extend(e for e in snap.delta if qb.intersects(e.bounds))
            hits.sort(key=lambda e: -e.seq)

            cap = max(1, int(max_results or self.max_results))
            total = len(hits)
            if total > cap:
                logger.debug("Viewport query truncated: %d -> %d", total, cap)
            feats = tuple(self._lod_feature(e, zoom) for e in hits[:cap])
            return SpatialQueryResult(
                features=feats,
                total_found=total,
                truncated=total > cap,
                query_time_ms=_ms_since(t0),
                used_index=True,
            )
        except Exception as e:
            logger.warning("Spatial index query failed; treating index as empty", exc_info=True)
            return SpatialQueryResult(
                features=(),
                total_found=0,
                truncated=False,
                query_time_ms=_ms_since(t0),
                used_index=False,
                errors=(f"spatial index query failed: {e}",),
            )

    def query(
        self, bounds: Any, max_results: int | None = None, *, zoom: float | None = None
    ) -> list[AreaFeature]:
        return list(self.query_viewport(bounds, max_results=max_results, zoom=zoom).features)

    def query_radius(self, lon: float, lat: float, radius_m: float) -> list[AreaFeature]:
        """
        Revealed areas within `radius_m` meters of (lon, lat), newest first.
        """
        circle = buffer_point((lon, lat), radius_m)
        if circle.outcome is not Outcome.COMPUTED or circle.feature is None:
            return []
        geom = to_shapely(circle.feature)
        b = ViewportBounds.parse(geom.bounds)
        if b is None:
            return []
        snap = self._snap
        cands: list[IndexedArea] = []
        if snap.tree is not None and snap.entries:
            cands.extend(snap.entries[i] for i in _to_int_list(snap.tree.query(geom)))
        cands.extend(e for e in snap.delta if b.intersects(e.bounds))
        hits = [e for e in cands if e.geom.intersects(geom)]
        hits.sort(key=lambda e: -e.seq)
        return [e.feature for e in hits]

    def all_features(self) -> list[AreaFeature]:
        entries = self._snap.all_entries()
        entries.sort(key=lambda e: -e.seq)
        return [e.feature for e in entries]

    def memory_stats(self) -> MemoryStats:
        snap = self._snap
        entries = snap.all_entries()
        vertices = sum(e.feature.vertex_count for e in entries)
        est = _estimate_bytes(len(entries), vertices)
        threshold = max(1, int(self.memory_threshold_bytes))
        ratio = est / threshold
        if ratio > 1.0:
            rec = MemoryRecommendation.CLEANUP_REQUIRED
        elif ratio > CONSIDER_CLEANUP_RATIO:
            rec = MemoryRecommendation.CONSIDER_CLEANUP
        else:
            rec = MemoryRecommendation.OPTIMAL
        return MemoryStats(
            feature_count=len(entries),
            vertex_count=vertices,
            estimated_bytes=est,
            threshold_bytes=threshold,
            usage_ratio=ratio,
            recommendation=rec,
        )

    def check_memory(self) -> MemoryStats:
        """
        Raises `ResourceExhaustedError` when the estimate is over the threshold.
        """
        stats = self.memory_stats()
        if stats.recommendation is MemoryRecommendation.CLEANUP_REQUIRED:
            raise ResourceExhaustedError(
                f"spatial index over memory budget ({stats.estimated_bytes} of "
                f"{stats.threshold_bytes} bytes, {stats.feature_count} areas)"
            )
        return stats

    def optimize_memory(self, aggressive: bool = False) -> OptimizationReport:
        """
        Shed low-value entries.

        Normal mode removes clearly redundant entries (duplicates and areas covered by
        another single area), then trims by priority only if still over threshold.
        Aggressive mode also coarse-simplifies and always keeps at most half.
        """
        with self._lock:
            snap = self._snap
            entries = snap.all_entries()
            before = _estimate_bytes(len(entries), sum(e.feature.vertex_count for e in entries))

            kept = _drop_covered(entries)
            simplified = 0
            if aggressive and kept:
                feats = [e.feature for e in kept]
                simp = simplify_features(feats, tolerance_m=AGGRESSIVE_TOLERANCE_M, min_vertices=32)
                rebuilt: list[IndexedArea] = []
                for e, f in zip(kept, simp):
                    if f is e.feature:
                        rebuilt.append(e)
                        continue
                    simplified += 1
                    rebuilt.append(
                        IndexedArea(feature=f, geom=to_shapely(f), bounds=f.bounds(), seq=e.seq)
                    )
                kept = rebuilt

            after = _estimate_bytes(len(kept), sum(e.feature.vertex_count for e in kept))
            if aggressive or after > self.memory_threshold_bytes:
                ratio = AGGRESSIVE_KEEP_RATIO if aggressive else NORMAL_KEEP_RATIO
                keep_n = int(math.ceil(len(kept) * ratio))
                # Priority: larger areas first, then most recent.
                kept = sorted(kept, key=lambda e: (e.area, e.seq), reverse=True)[:keep_n]
                after = _estimate_bytes(len(kept), sum(e.feature.vertex_count for e in kept))

            removed = len(entries) - len(kept)
            kept.sort(key=lambda e: e.seq)
            self._snap = _build_snapshot(kept, snap.version + 1)
            self._clear_lod_cache()

        report = OptimizationReport(
            aggressive=aggressive,
            removed=removed,
            simplified=simplified,
            bytes_before=before,
            bytes_after=after,
        )
        logger.info(
            "Spatial index optimized (aggressive=%s): removed=%d simplified=%d bytes %d -> %d",
            aggressive,
            removed,
            simplified,
            before,
            after,
        )
        return report

    def _make_entry(self, raw: Any) -> IndexedArea | None:
        feature = raw if isinstance(raw, AreaFeature) else sanitize_feature(raw)
        if feature is None:
            logger.warning("Ignoring invalid revealed area: %r", _short(raw))
            return None
        geom = to_shapely(feature)
        if geom.is_empty:
            logger.warning("Ignoring empty revealed area %s", feature.id)
            return None
        self._seq += 1
        return IndexedArea(feature=feature, geom=geom, bounds=tuple(geom.bounds), seq=self._seq)  # type: ignore[arg-type]

    def _lod_feature(self, entry: IndexedArea, zoom: float | None) -> AreaFeature:
        bucket = self.lod.bucket(zoom)
        if bucket is None:
            return entry.feature
        key = (entry.seq, bucket)
        with self._lod_lock:
            cached = self._lod_cache.get(key)
            if cached is not None:
                self._lod_cache.move_to_end(key)
                return cached
        out = self.lod.apply(entry.feature, zoom)
        with self._lod_lock:
            self._lod_cache[key] = out
            while len(self._lod_cache) > self.lod_cache_size:
                self._lod_cache.popitem(last=False)
        return out

    def _clear_lod_cache(self) -> None:
        with self._lod_lock:
            self._lod_cache.clear()


def _build_snapshot(entries: list[IndexedArea], version: int) -> _Snapshot:
    ents = tuple(entries)
    tree = STRtree([e.geom for e in ents]) if ents else None
    return _Snapshot(
        entries=ents,
        tree=tree,
        delta=(),
        ids=frozenset(e.feature.id for e in ents),
        version=version,
    )


def _drop_covered(entries: list[IndexedArea]) -> list[IndexedArea]:
    if len(entries) < 2:
        return list(entries)
    tree = STRtree([e.geom for e in entries])
    removed: set[int] = set()
    # Newest first: of two identical areas the older one survives.
    order = sorted(range(len(entries)), key=lambda i: -entries[i].seq)
    for i in order:
        for j in _to_int_list(tree.query(entries[i].geom, predicate="covered_by")):
            if j != i and j not in removed:
                removed.add(i)
                break
    return [e for i, e in enumerate(entries) if i not in removed]


def _estimate_bytes(feature_count: int, vertex_count: int) -> int:
    return feature_count * BYTES_PER_FEATURE + vertex_count * BYTES_PER_VERTEX


def _ms_since(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0


def _short(raw: Any) -> str:
    s = repr(raw)
    return s if len(s) <= 120 else s[:117] + "..."


def _to_int_list(idxs: Any) -> list[int]:
    if idxs is None:
        return []
    try:
        return [int(i) for i in idxs]
    except Exception:
        try:
            return [int(i) for i in list(idxs)]
        except Exception:
            return []
