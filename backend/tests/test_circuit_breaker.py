"""
Unit tests for the circuit breaker guarding backend calls.
"""
import asyncio

import pytest

from dispatch_ai.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Rejected(Exception):
    pass


async def _succeed(cb):
    async with cb.guard():
        return "ok"


async def _fail(cb, exc=None):
    with pytest.raises(type(exc) if exc else RuntimeError):
        async with cb.guard():
            raise exc or RuntimeError("backend down")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cb(clock):
    return CircuitBreaker(
        "test_backend",
        failure_threshold=0.5,
        time_window_seconds=60,
        open_duration_seconds=30,
        min_requests_for_threshold=4,
        excluded_exceptions=(Rejected,),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_closed_state_passes_calls(cb):
    """Successful calls keep the circuit closed."""
    assert await _succeed(cb) == "ok"
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_needs_minimum_requests_before_opening(cb):
    for _ in range(3):
        await _fail(cb)

    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_opens_when_error_rate_exceeds_threshold(cb):
    await _succeed(cb)
    await _succeed(cb)
    await _fail(cb)
    await _fail(cb)

    assert cb.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        cb.before_call()


@pytest.mark.asyncio
async def test_old_failures_leave_the_window(cb, clock):
    for _ in range(3):
        await _fail(cb)
    clock.advance(61)
    await _fail(cb)

    assert cb.state == CircuitState.CLOSED
    assert cb.get_metrics()["recent_failures"] == 1


@pytest.mark.asyncio
async def test_half_open_trial_success_closes(cb, clock):
    for _ in range(4):
        await _fail(cb)
    assert cb.state == CircuitState.OPEN

    clock.advance(30)
    assert cb.state == CircuitState.HALF_OPEN

    await _succeed(cb)
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens(cb, clock):
    for _ in range(4):
        await _fail(cb)
    clock.advance(30)

    await _fail(cb)

    assert cb.state == CircuitState.OPEN


def test_half_open_admits_one_trial_at_a_time(cb, clock):
    for _ in range(4):
        cb.before_call()
        cb.record_failure()
    clock.advance(30)

    cb.before_call()
    with pytest.raises(CircuitBreakerOpenError):
        cb.before_call()


@pytest.mark.asyncio
async def test_excluded_exceptions_do_not_count(cb):
    for _ in range(5):
        await _fail(cb, Rejected("bad request"))

    assert cb.state == CircuitState.CLOSED
    assert cb.get_metrics()["recent_requests"] == 0


@pytest.mark.asyncio
async def test_cancellation_releases_half_open_trial(cb, clock):
    for _ in range(4):
        await _fail(cb)
    clock.advance(30)

    with pytest.raises(asyncio.CancelledError):
        async with cb.guard():
            raise asyncio.CancelledError()

    assert cb.state == CircuitState.HALF_OPEN
    await _succeed(cb)
    assert cb.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_circuit_breaker_metrics(cb):
    await _succeed(cb)
    await _fail(cb)

    metrics = cb.get_metrics()

    assert metrics["name"] == "test_backend"
    assert metrics["state"] == "closed"
    assert metrics["recent_requests"] == 2
    assert metrics["recent_failures"] == 1
    assert metrics["error_rate"] == pytest.approx(0.5)
    assert metrics["opened_at"] is None


@pytest.mark.asyncio
async def test_per_call_exclusions_do_not_count(clock):
    breaker = CircuitBreaker("per_call", min_requests_for_threshold=2, clock=clock)

    for _ in range(3):
        with pytest.raises(Rejected):
            async with breaker.guard(excluded=(Rejected,)):
                raise Rejected("bad request")

    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_metrics()["recent_requests"] == 0
