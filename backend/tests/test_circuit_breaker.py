from __future__ import annotations

import asyncio

import pytest

from fog.errors import CircuitOpenError
from resilience.circuit_breaker import (
    FOG_CALCULATION_BREAKER,
    GEOMETRY_OPERATION_BREAKER,
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitState,
)


class FakeClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def _boom():
    raise ValueError("backend exploded")


def _breaker(clock: FakeClock, threshold: int = 3) -> CircuitBreaker:
    return CircuitBreaker(
        options=CircuitBreakerOptions(
            name="test", failure_threshold=threshold, recovery_timeout_s=10.0, failure_window_s=30.0
        ),
        clock=clock,
    )


def _fail(cb: CircuitBreaker, n: int) -> None:
    for _ in range(n):
        with pytest.raises(ValueError):
            cb.call(_boom)


def test_presets():
    assert (FOG_CALCULATION_BREAKER.failure_threshold, FOG_CALCULATION_BREAKER.recovery_timeout_s) == (3, 10.0)
    assert (GEOMETRY_OPERATION_BREAKER.failure_threshold, GEOMETRY_OPERATION_BREAKER.recovery_timeout_s) == (5, 5.0)


def test_opens_after_threshold_and_rejects_until_recovery():
    clock = FakeClock()
    cb = _breaker(clock)
    _fail(cb, 3)
    assert cb.state is CircuitState.OPEN
    assert cb.can_execute() is False

    calls = []
    with pytest.raises(CircuitOpenError):
        cb.call(lambda: calls.append(1))
    assert calls == []

    clock.t += 9.9
    assert cb.can_execute() is False
    clock.t += 0.2
    assert cb.can_execute() is True
    assert cb.state is CircuitState.HALF_OPEN


def test_failures_outside_window_do_not_count():
    clock = FakeClock()
    cb = _breaker(clock)
    _fail(cb, 2)
    clock.t += 31
    _fail(cb, 1)
    assert cb.state is CircuitState.CLOSED
    assert cb.metrics().failures_in_window == 1


def test_half_open_success_closes_and_resets_failure_count():
    clock = FakeClock()
    cb = _breaker(clock)
    _fail(cb, 3)
    clock.t += 10
    assert cb.call(lambda: "ok") == "ok"
    assert cb.state is CircuitState.CLOSED
    m = cb.metrics()
    assert m.failure_count == 0
    assert m.failures_in_window == 0


def test_half_open_failure_reopens_and_restarts_recovery_timer():
    clock = FakeClock()
    cb = _breaker(clock)
    _fail(cb, 3)
    clock.t += 10
    _fail(cb, 1)
    assert cb.state is CircuitState.OPEN
    clock.t += 5
    assert cb.can_execute() is False
    clock.t += 5
    assert cb.can_execute() is True


def test_half_open_admits_a_single_probe():
    clock = FakeClock()
    cb = _breaker(clock)
    _fail(cb, 3)
    clock.t += 10

    async def main():
        gate = asyncio.Event()

        async def slow():
            await gate.wait()
            return "probe"

        probe = asyncio.ensure_future(cb.execute(slow))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await cb.execute(slow)
        gate.set()
        return await probe

    assert asyncio.run(main()) == "probe"
    assert cb.state is CircuitState.CLOSED


def test_execute_reraises_original_error():
    cb = _breaker(FakeClock())

    async def bad():
        raise KeyError("original")

    with pytest.raises(KeyError):
        asyncio.run(cb.execute(bad))
    assert cb.metrics().failure_count == 1


def test_reset_and_force_open():
    clock = FakeClock()
    cb = _breaker(clock)
    cb.force_open()
    assert cb.can_execute() is False
    cb.reset()
    assert cb.state is CircuitState.CLOSED
    assert cb.call(lambda: 1) == 1
    m = cb.metrics()
    assert m.total_calls == 1
    assert m.rejected_calls == 0
