from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Iterable, TypeVar

from features.geojson import parse_feature
from features.types import AreaFeature
from fog.cache import CacheStats, FogResultCache
from fog.calculation import FogCalculator, viewport_fog_feature, world_fog_feature
from fog.config import FogSettings, load_settings
from fog.errors import (
    FogCalculationError,
    FogEngineError,
    InputValidationError,
    ResourceExhaustedError,
    StoreAccessError,
)
from fog.logging_config import configure_logging
from fog.types import FallbackTier, FogComputationResult, FogState
from geo.aoi import ViewportBounds
from geo.index import MemoryStats, OptimizationReport, SpatialIndex
from geo.ops import Outcome, buffer_point
from geo.validation import sanitize_feature
from lod.policy import LodPolicy
from resilience.circuit_breaker import CircuitBreaker, CircuitMetrics
from store.duckdb_store import open_store
from store.types import RevealedAreaStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FogOrchestrator:
    """
    Computes the current fog for one map consumer.

    Entry points:
    - `update_for_location`: reveal the area around a GPS fix, then recalculate (never
      debounced).
    - `update_for_viewport`: debounced; a newer call within `debounce_ms` cancels the
      pending one, and only the last viewport of a burst is computed.

    Notes:
    - One calculation runs at a time; each is stamped with a generation number when
      issued, and a completion older than the last applied one (or arriving after
      `close()`) is discarded.
    - Nothing raises past this class for validation, geometry, memory or store
      problems: every path ends in a `FogComputationResult`, degraded if necessary.
    - Invalid input returns None (a rejection signal) and leaves state untouched.
    """

    def __init__(
        self,
        store: RevealedAreaStore,
        settings: FogSettings | None = None,
        *,
        index: SpatialIndex | None = None,
        cache: FogResultCache | None = None,
        calculator: FogCalculator | None = None,
        fog_breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        s = settings if settings is not None else FogSettings()
        self.store = store
        self.settings = s
        self.index = (
            index
            if index is not None
            else SpatialIndex(
                memory_threshold_bytes=s.index_memory_threshold_bytes,
                compact_threshold=s.index_compact_threshold,
                max_results=s.max_spatial_results,
                lod=LodPolicy(full_detail_zoom=s.lod_full_detail_zoom, min_vertices=s.lod_min_vertices),
            )
        )
        self.cache = (
            cache
            if cache is not None
            else FogResultCache(
                max_entries=s.cache_max_entries,
                ttl_s=s.cache_ttl_s,
                viewport_tolerance=s.cache_viewport_tolerance,
                clock=clock,
            )
        )
        self.calculator = (
            calculator
            if calculator is not None
            else FogCalculator(
                geometry_breaker=CircuitBreaker(
                    options=s.geometry_breaker.to_options("geometry_operation"), clock=clock
                ),
                simplify_complex=s.simplify_complex_input,
                performance_mode=s.performance_mode,
                fast_vertex_budget=s.fast_vertex_budget,
            )
        )
        self.fog_breaker = (
            fog_breaker
            if fog_breaker is not None
            else CircuitBreaker(options=s.fog_breaker.to_options("fog_calculation"), clock=clock)
        )

        self.state = FogState()
        self._closed = False
        self._initialized = False
        self._index_loaded = False
        self._owns_store = False
        # Bumped whenever the revealed-area set may have changed; part of every cache key.
        self._dataset_version = 0
        self._generation = 0
        self._discard_below = 0
        self._pending: asyncio.Task | None = None
        self._calc_lock: asyncio.Lock | None = None

    @classmethod
    def from_settings(
        cls, settings: FogSettings | None = None, *, config_path: str | Path | None = None
    ) -> "FogOrchestrator":
        """
        Build an engine from configuration: load settings (file + env) unless given,
        apply the logging preset, and open the DuckDB store at `store_path` (in-memory
        when unset). The store is closed by `close()`.
        """
        s = settings if settings is not None else load_settings(config_path)
        configure_logging(s.log_preset)
        orch = cls(open_store(s.store_path), s)
        orch._owns_store = True
        return orch

    async def __aenter__(self) -> "FogOrchestrator":
        await self.initialize()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.close()

    @property
    def last_result(self) -> FogComputationResult | None:
        return self.state.last_result

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def dataset_version(self) -> int:
        return self._dataset_version

    async def initialize(self) -> int:
        """
        Load the spatial index from the store. A store failure is logged and leaves
        the index empty; calculations then go straight to the store tier.
        """
        if self._initialized:
            return self.index.feature_count
        self._initialized = True
        if not self.settings.use_spatial_index:
            return 0
        self._index_loaded = True
        try:
            n = await self._run(self.index.refresh_from_store, self.store)
        except StoreAccessError as e:
            logger.warning("Initial index load failed: %s", e.message)
            return 0
        self._dataset_changed()
        logger.info("Fog engine initialized with %d revealed areas", n)
        return n

    async def update_for_location(
        self, latitude: float, longitude: float, zoom: float | None = None
    ) -> FogComputationResult | None:
        if self._closed:
            return None
        if not _valid_lat_lon(latitude, longitude):
            logger.warning("Rejected location update (%r, %r)", latitude, longitude)
            return None

        _area, warnings = await self._reveal(float(latitude), float(longitude), None)
        self.state.last_location = (float(longitude), float(latitude))
        if zoom is not None:
            self.state.zoom = zoom

        gen = self._next_generation()
        return await self._compute(gen, self.state.viewport, self.state.zoom, warnings)

    async def update_for_viewport(
        self, bounds: Any, zoom: float | None = None
    ) -> FogComputationResult | None:
        """
        Debounced recalculation. Returns None if this request was superseded by a
        newer one, rejected, or discarded on teardown.
        """
        if self._closed:
            return None
        b = ViewportBounds.parse(bounds)
        if b is None:
            logger.warning("Rejected invalid viewport bounds: %r", bounds)
            return None

        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        task = asyncio.ensure_future(self._debounced(b, zoom))
        self._pending = task
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            if self._pending is task:
                task.cancel()
            raise
        if task.cancelled():
            return None
        return task.result()

    async def refresh(self) -> FogComputationResult | None:
        """
        Rebuild the index from the store (external mutation the index did not see)
        and recalculate immediately.
        """
        if self._closed:
            return None
        warnings: list[str] = []
        if self.settings.use_spatial_index:
            self._index_loaded = True
            try:
                await self._run(self.index.refresh_from_store, self.store)
            except StoreAccessError as e:
                warnings.append(f"index refresh failed: {e.message}")
        self._dataset_changed()
        gen = self._next_generation()
        return await self._compute(gen, self.state.viewport, self.state.zoom, warnings)

    async def reveal_location(
        self, latitude: float, longitude: float, radius_m: float | None = None
    ) -> AreaFeature | None:
        """
        Buffer a visited point, persist it and make it queryable. No recalculation.
        """
        if not _valid_lat_lon(latitude, longitude):
            return None
        area, warnings = await self._reveal(float(latitude), float(longitude), radius_m)
        for w in warnings:
            logger.warning("%s", w)
        return area

    async def add_revealed_areas(self, features: Iterable[Any]) -> list[str]:
        """
        Persist externally produced areas, index them and invalidate cached fog.
        Returns the ids of the areas that were accepted.
        """
        accepted: list[AreaFeature] = []
        for i, raw in enumerate(features):
            f = sanitize_feature(raw, default_id=f"area-{uuid.uuid4().hex[:12]}")
            if f is None:
                logger.warning("Ignoring invalid revealed area #%d", i)
                continue
            accepted.append(f)
        stored, warnings = await self._persist_and_index(accepted)
        for w in warnings:
            logger.warning("%s", w)
        return [f.id for f in stored]

    def clear_fog(self) -> None:
        """
        Drop the current fog and any pending/in-flight result; the next update
        recalculates from scratch.
        """
        self._cancel_pending()
        self._next_generation()
        self.cache.clear()
        self.state.last_result = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._cancel_pending()
        self._next_generation()
        if self._owns_store:
            self.store.close()
        logger.debug("Fog orchestrator closed")

    def cache_stats(self) -> CacheStats:
        return self.cache.stats()

    def memory_stats(self) -> MemoryStats:
        return self.index.memory_stats()

    def breaker_metrics(self) -> dict[str, CircuitMetrics]:
        return {
            "fog_calculation": self.fog_breaker.metrics(),
            "geometry_operation": self.calculator.geometry_breaker.metrics(),
        }

    def optimize(self, aggressive: bool = False) -> OptimizationReport:
        report = self.index.optimize_memory(aggressive)
        self.cache.optimize(aggressive)
        if report.removed or report.simplified:
            self._dataset_changed()
        return report

    async def _debounced(self, bounds: ViewportBounds, zoom: float | None) -> FogComputationResult | None:
        await asyncio.sleep(self.settings.debounce_ms / 1000.0)
        # Past the debounce window: a newer request no longer cancels this one.
        if self._pending is asyncio.current_task():
            self._pending = None
        if self._closed:
            return None
        self.state.viewport = bounds
        if zoom is not None:
            self.state.zoom = zoom
        gen = self._next_generation()
        return await self._compute(gen, bounds, self.state.zoom)

    async def _compute(
        self,
        gen: int,
        bounds: ViewportBounds | None,
        zoom: float | None,
        extra_warnings: list[str] | None = None,
    ) -> FogComputationResult | None:
        if self._calc_lock is None:
            self._calc_lock = asyncio.Lock()
        async with self._calc_lock:
            if self._closed or gen < self._generation_floor():
                return None
            self.state.is_calculating = True
            try:
                result = await self._calculate(bounds, zoom)
            finally:
                self.state.is_calculating = False

            if extra_warnings:
                result = result.with_diagnostics(warnings=extra_warnings)
            if self._closed:
                logger.debug("Discarding fog result after close (generation %d)", gen)
                return None
            if gen < self._generation_floor():
                logger.debug("Discarding stale fog result (generation %d)", gen)
                return None
            self.state.last_result = result
            self.state.applied_generation = gen
            self.state.calculations += 1
            return result

    async def _calculate(
        self, bounds: ViewportBounds | None, zoom: float | None
    ) -> FogComputationResult:
        t0 = time.perf_counter()
        use_cache = self.settings.use_cache
        version = self._dataset_version
        key = self.cache.fingerprint(bounds, version, self.index.lod.bucket(zoom))

        if use_cache:
            entry = self.cache.get(key)
            if entry is not None:
                self.state.cache_hits += 1
                return entry.result

        warnings: list[str] = []
        errors: list[str] = []
        try:
            result = await self.fog_breaker.execute(lambda: self._precise(bounds, zoom, warnings))
        except FogEngineError as e:
            errors.append(e.describe())
        except Exception as e:
            logger.exception("Unexpected fog calculation failure")
            errors.append(f"unexpected failure: {e}")
        else:
            if self._dataset_version != version:
                # Areas changed mid-calculation; the result may predate them.
                logger.debug("Not caching fog computed against dataset version %d", version)
            elif use_cache and not result.errors and not result.used_fallback:
                self.cache.set(key, result, viewport=bounds, dataset_version=version)
            return result

        return self._degraded(bounds, warnings, errors, t0)

    async def _precise(
        self, bounds: ViewportBounds | None, zoom: float | None, warnings: list[str]
    ) -> FogComputationResult:
        """
        Tier 1 (spatial index), then tier 2 (store). Raises if both fail.
        """
        s = self.settings
        if s.use_spatial_index and not self._index_loaded and self.index.is_empty():
            # First use without `initialize()`: load once; `refresh()` reloads later.
            self._index_loaded = True
            try:
                n = await self._run(self.index.refresh_from_store, self.store)
                logger.info("Spatial index loaded on first use with %d revealed areas", n)
            except StoreAccessError as e:
                warnings.append(f"index load failed ({e.message}); using store")

        if s.use_spatial_index and not self.index.is_empty():
            if bounds is None:
                areas: list[Any] = self.index.all_features()
                index_errors: tuple[str, ...] = ()
            else:
                q = await self._run(
                    self.index.query_viewport,
                    bounds,
                    max_results=s.max_spatial_results,
                    zoom=zoom,
                    buffer_deg=s.query_buffer_deg,
                )
                areas = list(q.features)
                index_errors = q.errors
                if q.truncated:
                    warnings.append(
                        f"spatial query truncated to {len(q.features)} of {q.total_found} areas"
                    )
            if index_errors:
                warnings.append(f"spatial index unavailable ({'; '.join(index_errors)}); using store")
            else:
                try:
                    result = await self._run(
                        self.calculator.calculate,
                        areas,
                        bounds,
                        tier=FallbackTier.SPATIAL_INDEX,
                        used_spatial_index=True,
                        zoom=zoom,
                    )
                    return result.with_diagnostics(warnings=warnings)
                except FogCalculationError as e:
                    warnings.append(f"indexed fog failed ({e.message}); using store")

        records = await self._run(self._store_records, bounds)
        result = await self._run(
            self.calculator.calculate, records, bounds, tier=FallbackTier.STORE, zoom=zoom
        )
        return result.with_diagnostics(warnings=warnings)

    def _store_records(self, bounds: ViewportBounds | None) -> list[Any]:
        try:
            records = list(self.store.list())
        except StoreAccessError:
            raise
        except Exception as e:
            raise StoreAccessError(f"failed to list revealed areas: {e}") from e
        if bounds is None:
            return records
        out: list[Any] = []
        for rec in records:
            f = parse_feature(rec)
            # Unparseable records stay in so the calculator reports them.
            if f is None or bounds.intersects(f.bounds()):
                out.append(rec)
        return out

    def _degraded(
        self,
        bounds: ViewportBounds | None,
        warnings: list[str],
        errors: list[str],
        t0: float,
    ) -> FogComputationResult:
        features: tuple[AreaFeature, ...]
        strategy = self.settings.fallback_strategy
        try:
            if strategy == "none":
                features = ()
                tier = FallbackTier.EMPTY
                warnings.append("precise fog unavailable and fallback disabled; returning empty fog")
            elif bounds is not None and strategy == "viewport":
                features = (viewport_fog_feature(bounds),)
                tier = FallbackTier.VIEWPORT_RECTANGLE
                warnings.append("precise fog unavailable; showing fully fogged viewport")
            else:
                features = (world_fog_feature(),)
                tier = FallbackTier.WORLD
                warnings.append("precise fog unavailable; showing world fog")
        except Exception as e:
            errors.append(f"fallback fog failed: {e}")
            features = ()
            tier = FallbackTier.EMPTY
            warnings.append("all fallbacks failed; returning empty fog")

        logger.warning("Fog fallback tier %s: %s", tier.value, "; ".join(errors) or "no detail")
        return FogComputationResult(
            features=features,
            calculation_time_ms=(time.perf_counter() - t0) * 1000.0,
            used_fallback=True,
            used_spatial_index=False,
            warnings=tuple(warnings),
            errors=tuple(errors),
            tier=tier,
        )

    async def _reveal(
        self, latitude: float, longitude: float, radius_m: float | None
    ) -> tuple[AreaFeature | None, list[str]]:
        radius = self.settings.reveal_radius_m if radius_m is None else radius_m
        res = await self._run(
            buffer_point,
            (longitude, latitude),
            radius,
            self.settings.reveal_units,
            fid=f"area-{uuid.uuid4().hex[:12]}",
        )
        if res.outcome is not Outcome.COMPUTED or res.feature is None:
            return None, [f"could not reveal location: {'; '.join(res.errors)}"]
        stored, warnings = await self._persist_and_index([res.feature])
        return (stored[0] if stored else res.feature), [*res.warnings, *warnings]

    async def _persist_and_index(
        self, features: list[AreaFeature]
    ) -> tuple[list[AreaFeature], list[str]]:
        """
        Store first (source of truth), then index, then invalidate cached fog.

        An area the store cannot write is still indexed so this session shows it; an
        area the store rejects as invalid is dropped.
        """
        warnings: list[str] = []
        stored: list[AreaFeature] = []
        for f in features:
            try:
                fid = await self._run(self.store.append, f)
            except InputValidationError as e:
                warnings.append(f"revealed area {f.id} rejected: {e.message}")
                continue
            except Exception as e:
                warnings.append(f"revealed area {f.id} not persisted: {e}")
                fid = f.id
            if fid != f.id:
                f = AreaFeature(id=fid, geometry_type=f.geometry_type, polygons=f.polygons, props=f.props)
            stored.append(f)
        if not stored:
            return stored, warnings

        if self.settings.use_spatial_index:
            self.index.add_features(stored)
            if self.settings.auto_optimize_memory:
                warnings.extend(self._relieve_memory_pressure())
        self._dataset_changed()
        return stored, warnings

    def _relieve_memory_pressure(self) -> list[str]:
        """
        Normal optimization first; aggressive only if the index is still over budget.
        """
        out: list[str] = []
        for aggressive in (False, True):
            try:
                self.index.check_memory()
                return out
            except ResourceExhaustedError as e:
                report = self.index.optimize_memory(aggressive)
                out.append(
                    f"{e.message}; {'aggressive' if aggressive else 'normal'} cleanup "
                    f"removed {report.removed} entries"
                )
        try:
            self.index.check_memory()
        except ResourceExhaustedError as e:
            logger.warning("Spatial index still over budget after cleanup: %s", e.message)
            out.append(e.describe())
        return out

    def _dataset_changed(self) -> None:
        self._dataset_version += 1
        self.cache.invalidate()

    async def _run(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        if self.settings.offload_geometry:
            return await asyncio.to_thread(fn, *args, **kwargs)
        return fn(*args, **kwargs)

    def _next_generation(self) -> int:
        self._generation += 1
        self.state.generation = self._generation
        return self._generation

    def _generation_floor(self) -> int:
        # Results from generations at or below the last applied one, or issued before
        # the last clear/close, are stale.
        return max(self.state.applied_generation + 1, self._discard_below)

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None
        self._discard_below = self._generation + 1


def _valid_lat_lon(latitude: Any, longitude: Any) -> bool:
    try:
        lat = float(latitude)
        lon = float(longitude)
    except (TypeError, ValueError):
        return False
    return math.isfinite(lat) and math.isfinite(lon) and -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0
