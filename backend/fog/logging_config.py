from __future__ import annotations

import logging
import sys
import time
from dataclasses import dataclass

from fog.errors import ConfigValidationError

LOGGER_FAMILIES = ("fog", "geo", "lod", "resilience", "store", "features")
_HANDLER_NAME = "fog-engine"


@dataclass(frozen=True)
class LoggingPreset:
    level: int
    rate_limit_s: float = 0.0
    fmt: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


PRESETS: dict[str, LoggingPreset] = {
    "development": LoggingPreset(level=logging.INFO, rate_limit_s=1.0),
    "production": LoggingPreset(level=logging.WARNING, rate_limit_s=5.0),
    "testing": LoggingPreset(level=logging.ERROR),
    "debug": LoggingPreset(
        level=logging.DEBUG,
        fmt="%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s",
    ),
    "silent": LoggingPreset(level=logging.CRITICAL + 10),
}


class RateLimitFilter(logging.Filter):
    """
    Drop a record if the same (logger, message template) was emitted within
    `interval_s`. Panning fires many identical debug lines per second.
    """

    def __init__(self, interval_s: float, *, clock=time.monotonic) -> None:
        super().__init__()
        self.interval_s = float(interval_s)
        self._clock = clock
        self._last: dict[tuple[str, str], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        if self.interval_s <= 0:
            return True
        key = (record.name, str(record.msg))
        now = self._clock()
        last = self._last.get(key)
        if last is not None and (now - last) < self.interval_s:
            return False
        self._last[key] = now
        if len(self._last) > 1024:
            self._last.clear()
        return True


def configure_logging(preset: str = "production") -> LoggingPreset:
    """
    Install one stream handler per engine logger family. Idempotent: calling again
    replaces the previous handler instead of stacking another.
    """
    p = PRESETS.get(preset)
    if p is None:
        raise ConfigValidationError("log_preset", preset, f"expected one of {sorted(PRESETS)}")

    for family in LOGGER_FAMILIES:
        lg = logging.getLogger(family)
        for h in list(lg.handlers):
            if h.get_name() == _HANDLER_NAME:
                lg.removeHandler(h)
        lg.setLevel(p.level)
        if p.level > logging.CRITICAL:
            continue
        handler = logging.StreamHandler(sys.stderr)
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(p.fmt))
        if p.rate_limit_s > 0:
            handler.addFilter(RateLimitFilter(p.rate_limit_s))
        lg.addHandler(handler)
        lg.propagate = False
    return p
