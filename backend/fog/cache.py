from __future__ import annotations

import copy
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from features.types import AreaFeature
from fog.types import FogComputationResult
from geo.aoi import ViewportBounds

logger = logging.getLogger(__name__)

CacheKey = tuple[Any, ...]


@dataclass
class CacheEntry:
    key: CacheKey
    result: FogComputationResult
    viewport: ViewportBounds | None
    dataset_version: int
    created_at: float
    last_accessed_at: float
    access_count: int = 0
    calculation_time_ms: float = 0.0
    size_bytes: int = 0


@dataclass(frozen=True)
class CacheStats:
    entries: int
    max_entries: int
    hits: int
    misses: int
    hit_ratio: float
    evictions: int
    expirations: int
    estimated_time_saved_ms: float
    top_keys: tuple[tuple[CacheKey, int], ...]


@dataclass
class FogResultCache:
    """
    LRU + TTL memoization of fog results keyed by a viewport/dataset fingerprint.

    Notes:
    - `get` returns a copy of the stored entry; callers never hold a reference that
      eviction could invalidate.
    - The cache is never a source of truth: a hit equals what was stored for that key.
    """

    max_entries: int = 100
    ttl_s: float = 300.0
    viewport_tolerance: float = 0.001
    clock: Callable[[], float] = time.monotonic

    _entries: "OrderedDict[CacheKey, CacheEntry]" = field(default_factory=OrderedDict, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)
    _hits: int = field(default=0, repr=False)
    _misses: int = field(default=0, repr=False)
    _evictions: int = field(default=0, repr=False)
    _expirations: int = field(default=0, repr=False)
    _time_saved_ms: float = field(default=0.0, repr=False)

    def fingerprint(
        self,
        bounds: ViewportBounds | None,
        dataset_version: int,
        zoom_bucket: int | None = None,
    ) -> CacheKey:
        vp = bounds.rounded_key(self.viewport_tolerance) if bounds is not None else ("world",)
        return ("fog", vp, int(dataset_version), zoom_bucket)

    def get(self, key: CacheKey) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug("Cache miss %s", key)
                return None
            now = self.clock()
            if self._expired(entry, now):
                self._entries.pop(key, None)
                self._expirations += 1
                self._misses += 1
                logger.debug("Cache entry expired %s", key)
                return None
            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            self._hits += 1
            self._time_saved_ms += entry.calculation_time_ms
            logger.debug("Cache hit %s (access #%d)", key, entry.access_count)
            return copy.deepcopy(entry)

    def set(
        self,
        key: CacheKey,
        result: FogComputationResult,
        *,
        viewport: ViewportBounds | None = None,
        dataset_version: int = 0,
    ) -> None:
        now = self.clock()
        entry = CacheEntry(
            key=key,
            result=copy.deepcopy(result),
            viewport=viewport,
            dataset_version=int(dataset_version),
            created_at=now,
            last_accessed_at=now,
            calculation_time_ms=float(result.calculation_time_ms),
            size_bytes=_estimate_size(result),
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > max(1, self.max_entries):
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache evicted %s", evicted)

    def invalidate(self, changed_areas: Iterable[AreaFeature] | None = None) -> int:
        """
        Drop entries affected by a dataset change. Returns the number removed.

        With no argument everything is cleared. Given the changed areas, entries whose
        viewport envelope overlaps any changed area are removed (world entries always).
        """
        with self._lock:
            if changed_areas is None:
                n = len(self._entries)
                self._entries.clear()
                if n:
                    logger.debug("Cache invalidated: %d entries", n)
                return n
            envelopes = [a.bounds() for a in changed_areas]
            doomed = [
                k
                for k, e in self._entries.items()
                if e.viewport is None or any(e.viewport.intersects(env) for env in envelopes)
            ]
            for k in doomed:
                self._entries.pop(k, None)
            return len(doomed)

    def invalidate_viewport(self, bounds: ViewportBounds) -> int:
        with self._lock:
            doomed = [
                k
                for k, e in self._entries.items()
                if e.viewport is None or e.viewport.intersects(bounds)
            ]
            for k in doomed:
                self._entries.pop(k, None)
            return len(doomed)

    def optimize(self, aggressive: bool = False) -> int:
        """
        Drop expired entries; aggressive mode also drops rarely used ones
        (accessed less than half the average).
        """
        with self._lock:
            now = self.clock()
            doomed = [k for k, e in self._entries.items() if self._expired(e, now)]
            for k in doomed:
                self._entries.pop(k, None)
            self._expirations += len(doomed)
            removed = len(doomed)

            if aggressive and self._entries:
                avg = sum(e.access_count for e in self._entries.values()) / len(self._entries)
                cold = [k for k, e in self._entries.items() if e.access_count < avg * 0.5]
                for k in cold:
                    self._entries.pop(k, None)
                self._evictions += len(cold)
                removed += len(cold)
            return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def stats(self, *, top_n: int = 5) -> CacheStats:
        with self._lock:
            total = self._hits + self._misses
            top = sorted(self._entries.values(), key=lambda e: e.access_count, reverse=True)[:top_n]
            return CacheStats(
                entries=len(self._entries),
                max_entries=self.max_entries,
                hits=self._hits,
                misses=self._misses,
                hit_ratio=(self._hits / total) if total else 0.0,
                evictions=self._evictions,
                expirations=self._expirations,
                estimated_time_saved_ms=self._time_saved_ms,
                top_keys=tuple((e.key, e.access_count) for e in top),
            )

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return self.ttl_s > 0 and (now - entry.created_at) > self.ttl_s


def _estimate_size(result: FogComputationResult) -> int:
    vertices = sum(f.vertex_count for f in result.features)
    return 256 + vertices * 16
