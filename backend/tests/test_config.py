from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from fog.config import FogSettings, load_settings
from fog.errors import ConfigValidationError, StoreAccessError
from fog.logging_config import LOGGER_FAMILIES, RateLimitFilter, configure_logging
from fog.orchestrator import FogOrchestrator


@pytest.fixture(autouse=True)
def _restore_engine_loggers():
    yield
    for family in LOGGER_FAMILIES:
        lg = logging.getLogger(family)
        for h in list(lg.handlers):
            if h.get_name() == "fog-engine":
                lg.removeHandler(h)
        lg.setLevel(logging.NOTSET)
        lg.propagate = True


def test_defaults():
    s = load_settings(env={})
    assert s.debounce_ms == 300
    assert s.reveal_radius_m == 100.0
    assert s.max_spatial_results == 1000
    assert s.cache_max_entries == 100
    assert s.cache_ttl_s == 300.0
    assert s.fog_breaker.failure_threshold == 3
    assert s.geometry_breaker.recovery_timeout_s == 5.0
    assert s.fog_breaker.to_options("fog_calculation").failure_window_s == 30.0


def test_yaml_then_env_overrides(tmp_path):
    cfg = tmp_path / "fog.yaml"
    cfg.write_text(
        "fog:\n  debounce_ms: 150\n  cache_max_entries: 10\n  geometry_breaker:\n"
        "    failure_threshold: 2\n    recovery_timeout_s: 1\n    failure_window_s: 4\n",
        encoding="utf-8",
    )
    s = load_settings(env={"FOG_CONFIG_PATH": str(cfg), "FOG_DEBOUNCE_MS": "50", "FOG_USE_CACHE": "off"})
    assert s.debounce_ms == 50
    assert s.cache_max_entries == 10
    assert s.use_cache is False
    assert s.geometry_breaker.failure_threshold == 2


def test_mode_and_fallback_overrides():
    s = load_settings(env={"FOG_PERFORMANCE_MODE": "fast", "FOG_FALLBACK_STRATEGY": "none"})
    assert s.performance_mode == "fast"
    assert s.fallback_strategy == "none"
    assert load_settings(env={}).fallback_strategy == "viewport"

    with pytest.raises(ConfigValidationError) as ei:
        load_settings(env={"FOG_FALLBACK_STRATEGY": "somewhere"})
    assert ei.value.key == "fallback_strategy"


def test_invalid_values_fail_fast(monkeypatch):
    monkeypatch.setenv("FOG_REVEAL_RADIUS_M", "-1")
    with pytest.raises(ConfigValidationError) as ei:
        load_settings()
    assert ei.value.key == "reveal_radius_m"
    assert ei.value.to_error_dict()["code"] == "CONFIG_VALIDATION_FAILED"


def test_non_mapping_yaml_is_rejected(tmp_path):
    cfg = tmp_path / "fog.yaml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigValidationError):
        load_settings(cfg, env={})


def test_unknown_keys_are_rejected():
    with pytest.raises(ConfigValidationError):
        load_settings(env={"FOG_USE_SPATIAL_INDEX": "maybe"})
    with pytest.raises(ValidationError):
        FogSettings(not_a_setting=1)


def test_configure_logging_presets_are_idempotent():
    configure_logging("debug")
    configure_logging("debug")
    handlers = [h for h in logging.getLogger("fog").handlers if h.get_name() == "fog-engine"]
    assert len(handlers) == 1
    assert logging.getLogger("geo").level == logging.DEBUG

    configure_logging("silent")
    assert not [h for h in logging.getLogger("fog").handlers if h.get_name() == "fog-engine"]
    with pytest.raises(ConfigValidationError):
        configure_logging("chatty")
    configure_logging("testing")


def test_rate_limit_filter_drops_repeats_within_interval():
    now = [0.0]
    f = RateLimitFilter(1.0, clock=lambda: now[0])
    rec = logging.LogRecord("fog", logging.INFO, __file__, 1, "same %s", ("x",), None)
    assert f.filter(rec) is True
    assert f.filter(rec) is False
    now[0] = 1.5
    assert f.filter(rec) is True


def test_from_settings_opens_configured_store(tmp_path):
    path = tmp_path / "fog" / "areas.duckdb"
    orch = FogOrchestrator.from_settings(
        FogSettings(store_path=str(path), log_preset="silent", performance_mode="fast")
    )
    assert orch.store.path == path
    assert orch.calculator.performance_mode == "fast"
    assert logging.getLogger("fog").level > logging.CRITICAL

    assert orch.store.count() == 0
    orch.close()
    assert path.exists()
    with pytest.raises(StoreAccessError):
        orch.store.count()
