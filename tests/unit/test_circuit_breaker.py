from __future__ import annotations

import asyncio

import pytest

from applyflow.core.circuit_breaker import CircuitBreaker, CircuitState
from applyflow.errors import CircuitOpenError, PermanentItemError
from fakes import FakeMonotonic


def _breaker(clock: FakeMonotonic, **kwargs) -> CircuitBreaker:
    options = {"failure_threshold": 3, "success_threshold": 2, "timeout": 60.0, "reset_timeout": 120.0}
    options.update(kwargs)
    return CircuitBreaker("core", clock=clock, **options)


async def _fail() -> None:
    raise RuntimeError("boom")


async def _ok() -> str:
    return "ok"


def _run_failures(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        with pytest.raises(RuntimeError):
            asyncio.run(breaker.call(_fail))


def test_opens_after_threshold_and_fails_fast() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    _run_failures(breaker, 3)
    assert breaker.state == CircuitState.OPEN

    invoked = {"value": False}

    async def operation() -> str:
        invoked["value"] = True
        return "ok"

    with pytest.raises(CircuitOpenError) as excinfo:
        asyncio.run(breaker.call(operation))

    assert invoked["value"] is False
    assert excinfo.value.name == "core"
    assert excinfo.value.next_attempt is not None


def test_half_open_after_timeout_then_closes_on_successes() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    _run_failures(breaker, 3)

    clock.advance(60.0)
    assert asyncio.run(breaker.call(_ok)) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN

    assert asyncio.run(breaker.call(_ok)) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats()["failure_count"] == 0


def test_failure_in_half_open_reopens_immediately() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    _run_failures(breaker, 3)

    clock.advance(61.0)
    _run_failures(breaker, 1)
    assert breaker.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError):
        asyncio.run(breaker.call(_ok))

    clock.advance(59.0)
    with pytest.raises(CircuitOpenError):
        asyncio.run(breaker.call(_ok))


def test_ignored_exceptions_do_not_count() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock, ignored_exceptions=(PermanentItemError,))

    async def rejected() -> None:
        raise PermanentItemError("bad item")

    for _ in range(5):
        with pytest.raises(PermanentItemError):
            asyncio.run(breaker.call(rejected))

    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats()["failure_count"] == 0


def test_success_clears_failures_only_after_reset_timeout() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    _run_failures(breaker, 2)

    asyncio.run(breaker.call(_ok))
    assert breaker.stats()["failure_count"] == 2

    clock.advance(121.0)
    asyncio.run(breaker.call(_ok))
    assert breaker.stats()["failure_count"] == 0


def test_reset_and_stats() -> None:
    clock = FakeMonotonic()
    breaker = _breaker(clock)
    _run_failures(breaker, 3)

    stats = breaker.stats()
    assert stats["state"] == "OPEN"
    assert stats["is_available"] is False
    assert stats["retry_in_sec"] == pytest.approx(60.0)

    breaker.reset()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats()["is_available"] is True
    assert asyncio.run(breaker.call(_ok)) == "ok"
