from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, TypeVar

from fog.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerOptions:
    name: str
    failure_threshold: int = 5
    recovery_timeout_s: float = 60.0
    failure_window_s: float = 60.0


# Whole fog calculations: longer recovery.
FOG_CALCULATION_BREAKER = CircuitBreakerOptions(
    name="fog_calculation", failure_threshold=3, recovery_timeout_s=10.0, failure_window_s=30.0
)
# Individual geometry operations: shorter recovery.
GEOMETRY_OPERATION_BREAKER = CircuitBreakerOptions(
    name="geometry_operation", failure_threshold=5, recovery_timeout_s=5.0, failure_window_s=15.0
)


@dataclass(frozen=True)
class CircuitMetrics:
    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    total_calls: int
    rejected_calls: int
    last_failure_time: float | None
    last_success_time: float | None
    failures_in_window: int


@dataclass
class CircuitBreaker:
    """
    Fail-fast wrapper around a fallible operation.

    CLOSED -> OPEN after `failure_threshold` failures inside `failure_window_s`;
    OPEN -> HALF_OPEN once `recovery_timeout_s` has elapsed since the last failure;
    HALF_OPEN admits one probe: success closes (and clears history), failure reopens.

    Operation errors are always re-raised unchanged; a rejected call raises
    `CircuitOpenError` without running the operation.
    """

    options: CircuitBreakerOptions
    clock: Callable[[], float] = time.monotonic

    _state: CircuitState = field(default=CircuitState.CLOSED, repr=False)
    _failure_times: list[float] = field(default_factory=list, repr=False)
    _failure_count: int = field(default=0, repr=False)
    _success_count: int = field(default=0, repr=False)
    _total_calls: int = field(default=0, repr=False)
    _rejected_calls: int = field(default=0, repr=False)
    _last_failure_time: float | None = field(default=None, repr=False)
    _last_success_time: float | None = field(default=None, repr=False)
    _probe_in_flight: bool = field(default=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @property
    def name(self) -> str:
        return self.options.name

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def can_execute(self) -> bool:
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.HALF_OPEN:
                return not self._probe_in_flight
            if self._recovery_elapsed():
                self._transition(CircuitState.HALF_OPEN)
                return True
            return False

    def call(self, fn: Callable[[], T]) -> T:
        self._admit()
        try:
            out = fn()
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return out

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        self._admit()
        try:
            out = await fn()
        except BaseException as e:
            # Cancellation is not a backend failure, but it must release a half-open probe.
            if isinstance(e, Exception):
                self.record_failure()
            else:
                self._release_probe()
            raise
        self.record_success()
        return out

    def record_success(self) -> None:
        with self._lock:
            self._success_count += 1
            self._last_success_time = self.clock()
            self._probe_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._failure_times.clear()
                self._failure_count = 0
                self._transition(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            now = self.clock()
            self._last_failure_time = now
            self._failure_count += 1
            self._failure_times.append(now)
            self._prune(now)
            self._probe_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN)
            elif (
                self._state is CircuitState.CLOSED
                and len(self._failure_times) >= self.options.failure_threshold
            ):
                self._transition(CircuitState.OPEN)

    def reset(self) -> None:
        with self._lock:
            self._failure_times.clear()
            self._failure_count = 0
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)

    def force_open(self) -> None:
        with self._lock:
            self._last_failure_time = self.clock()
            self._probe_in_flight = False
            self._transition(CircuitState.OPEN)

    def metrics(self) -> CircuitMetrics:
        with self._lock:
            self._prune(self.clock())
            return CircuitMetrics(
                name=self.name,
                state=self._state,
                failure_count=self._failure_count,
                success_count=self._success_count,
                total_calls=self._total_calls,
                rejected_calls=self._rejected_calls,
                last_failure_time=self._last_failure_time,
                last_success_time=self._last_success_time,
                failures_in_window=len(self._failure_times),
            )

    def _admit(self) -> None:
        with self._lock:
            if not self.can_execute():
                self._rejected_calls += 1
                raise CircuitOpenError(self.name)
            if self._state is CircuitState.HALF_OPEN:
                self._probe_in_flight = True
            self._total_calls += 1

    def _release_probe(self) -> None:
        with self._lock:
            self._probe_in_flight = False

    def _recovery_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return (self.clock() - self._last_failure_time) >= self.options.recovery_timeout_s

    def _prune(self, now: float) -> None:
        cutoff = now - self.options.failure_window_s
        self._failure_times = [t for t in self._failure_times if t > cutoff]

    def _transition(self, new_state: CircuitState) -> None:
        old = self._state
        if old is new_state:
            return
        self._state = new_state
        if new_state is CircuitState.OPEN:
            logger.warning(
                "Circuit '%s' %s -> open (%d failures in window)",
                self.name,
                old.value,
                len(self._failure_times),
            )
        else:
            logger.info("Circuit '%s' %s -> %s", self.name, old.value, new_state.value)
