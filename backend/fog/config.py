"""Engine settings.

Defaults live on ``FogSettings``; an optional YAML file (``FOG_CONFIG_PATH``)
and ``FOG_*`` environment variables override them, in that order. Validation
is fail-fast: ``load_settings`` raises ``ConfigValidationError`` for any
out-of-range value so a bad deployment is caught at startup, not mid-pan.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fog.errors import ConfigValidationError
from resilience.circuit_breaker import (
    FOG_CALCULATION_BREAKER,
    GEOMETRY_OPERATION_BREAKER,
    CircuitBreakerOptions,
)


class BreakerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    failure_threshold: int = Field(ge=1, le=100)
    recovery_timeout_s: float = Field(gt=0, le=3600)
    failure_window_s: float = Field(gt=0, le=3600)

    def to_options(self, name: str) -> CircuitBreakerOptions:
        return CircuitBreakerOptions(
            name=name,
            failure_threshold=self.failure_threshold,
            recovery_timeout_s=self.recovery_timeout_s,
            failure_window_s=self.failure_window_s,
        )

    @staticmethod
    def from_options(o: CircuitBreakerOptions) -> "BreakerSettings":
        return BreakerSettings(
            failure_threshold=o.failure_threshold,
            recovery_timeout_s=o.recovery_timeout_s,
            failure_window_s=o.failure_window_s,
        )


class FogSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # Orchestration
    debounce_ms: int = Field(default=300, ge=0, le=10_000)
    reveal_radius_m: float = Field(default=100.0, gt=0, le=100_000)
    reveal_units: Literal["meters", "kilometers", "miles"] = "meters"
    offload_geometry: bool = True
    use_spatial_index: bool = True
    use_cache: bool = True
    simplify_complex_input: bool = True
    auto_optimize_memory: bool = True
    # "fast" thins union input to `fast_vertex_budget`; "accurate" only pre-simplifies
    # HIGH-complexity input.
    performance_mode: Literal["accurate", "fast"] = "accurate"
    fast_vertex_budget: int = Field(default=1000, ge=64)
    # Degraded output when precise fog fails: viewport rectangle (world if no
    # viewport), always world, or no fog at all.
    fallback_strategy: Literal["viewport", "world", "none"] = "viewport"

    # Spatial index
    max_spatial_results: int = Field(default=1000, ge=1, le=100_000)
    query_buffer_deg: float = Field(default=0.001, ge=0, le=1.0)
    index_memory_threshold_bytes: int = Field(default=50 * 1024 * 1024, ge=1024)
    index_compact_threshold: int = Field(default=256, ge=1)
    lod_full_detail_zoom: float = Field(default=12.0, ge=0, le=24)
    lod_min_vertices: int = Field(default=100, ge=4)

    # Result cache
    cache_max_entries: int = Field(default=100, ge=1, le=100_000)
    cache_ttl_s: float = Field(default=300.0, ge=0)
    cache_viewport_tolerance: float = Field(default=0.001, gt=0, le=1.0)

    # Circuit breakers
    fog_breaker: BreakerSettings = Field(
        default_factory=lambda: BreakerSettings.from_options(FOG_CALCULATION_BREAKER)
    )
    geometry_breaker: BreakerSettings = Field(
        default_factory=lambda: BreakerSettings.from_options(GEOMETRY_OPERATION_BREAKER)
    )

    # Collaborators
    store_path: str | None = None
    log_preset: Literal["development", "production", "testing", "debug", "silent"] = "production"


_ENV_OVERRIDES: dict[str, str] = {
    "FOG_DEBOUNCE_MS": "debounce_ms",
    "FOG_REVEAL_RADIUS_M": "reveal_radius_m",
    "FOG_MAX_SPATIAL_RESULTS": "max_spatial_results",
    "FOG_CACHE_MAX_ENTRIES": "cache_max_entries",
    "FOG_CACHE_TTL_S": "cache_ttl_s",
    "FOG_STORE_PATH": "store_path",
    "FOG_LOG_PRESET": "log_preset",
    "FOG_USE_SPATIAL_INDEX": "use_spatial_index",
    "FOG_USE_CACHE": "use_cache",
    "FOG_PERFORMANCE_MODE": "performance_mode",
    "FOG_FALLBACK_STRATEGY": "fallback_strategy",
}


def load_settings(
    path: str | Path | None = None, *, env: Mapping[str, str] | None = None
) -> FogSettings:
    """
    Build validated settings from (defaults <- YAML file <- environment).

    Raises:
        ConfigValidationError: unreadable/non-mapping YAML or any invalid value.
    """
    environ = os.environ if env is None else env
    data: dict[str, Any] = {}

    cfg_path = path or environ.get("FOG_CONFIG_PATH")
    if cfg_path:
        data.update(_read_yaml(Path(cfg_path)))

    for var, key in _ENV_OVERRIDES.items():
        raw = environ.get(var)
        if raw is None or raw.strip() == "":
            continue
        data[key] = _parse_env_value(key, raw.strip())

    try:
        return FogSettings.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(p) for p in first.get("loc", ())) or "settings"
        raise ConfigValidationError(key, first.get("input"), first.get("msg", str(e))) from e


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigValidationError("FOG_CONFIG_PATH", str(path), f"unreadable config: {e}") from e
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigValidationError("FOG_CONFIG_PATH", str(path), "config root must be a mapping")
    # Allow the settings to be nested under a top-level `fog:` key.
    inner = raw.get("fog", raw)
    if not isinstance(inner, dict):
        raise ConfigValidationError("fog", inner, "must be a mapping")
    return dict(inner)


def _parse_env_value(key: str, raw: str) -> Any:
    if key in ("use_spatial_index", "use_cache"):
        v = raw.lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
        raise ConfigValidationError(key, raw, "expected a boolean")
    # Numeric strings are coerced by pydantic.
    return raw
