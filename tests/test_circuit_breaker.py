"""Circuit breaker state machine"""

import asyncio

import pytest

from crm_bridge.services.circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("test", failure_threshold=3, recovery_timeout=10, half_open_max_calls=1, clock=clock)


def test_opens_after_consecutive_failures(breaker):
    breaker.record_failure()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN
    assert breaker.cooldown_remaining() == 10


def test_success_resets_consecutive_failures(breaker):
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()
    breaker.record_failure()
    assert breaker.state == CircuitState.CLOSED


def test_half_open_after_timeout_then_closes(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 10
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


def test_half_open_failure_reopens(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 11
    assert breaker.state == CircuitState.HALF_OPEN
    breaker.record_failure()
    assert breaker.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_call_rejects_when_open(breaker):
    for _ in range(3):
        breaker.record_failure()

    async def never():
        raise AssertionError("must not run")

    with pytest.raises(CircuitBreakerError):
        await breaker.call(never)
    assert breaker.stats.rejected_calls == 1


@pytest.mark.asyncio
async def test_call_counts_exceptions(breaker):
    async def boom():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await breaker.call(boom)
    assert breaker.stats.consecutive_failures == 1


@pytest.mark.asyncio
async def test_call_passes_arguments_through(breaker):
    async def add(a, b):
        return a + b

    assert await breaker.call(add, 2, 3) == 5


def test_reset_and_to_dict(breaker):
    for _ in range(3):
        breaker.record_failure()
    breaker.reset()
    data = breaker.to_dict()
    assert data["state"] == "closed"
    assert data["stats"]["failed_calls"] == 0


@pytest.mark.asyncio
async def test_half_open_admits_limited_trial_calls(breaker, clock):
    for _ in range(3):
        breaker.record_failure()
    clock.now = 10

    async def ok():
        return "ok"

    assert await breaker.call(ok) == "ok"
    # trial call not reported yet, so the single slot is still taken
    with pytest.raises(CircuitBreakerError):
        await breaker.call(ok)

    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED
    assert breaker.stats.times_opened == 1


def trip(breaker):
    for _ in range(breaker.failure_threshold):
        breaker.record_failure()


async def ok():
    return "ok"


async def start_hanging_call(breaker):
    entered = asyncio.Event()

    async def hang():
        entered.set()
        await asyncio.Event().wait()

    task = asyncio.create_task(breaker.call(hang))
    await entered.wait()
    return task


def test_cooldown_remaining_counts_down(breaker, clock):
    assert breaker.cooldown_remaining() == 0
    trip(breaker)
    clock.now = 4
    assert breaker.cooldown_remaining() == 6
    clock.now = 10
    assert breaker.cooldown_remaining() == 0


@pytest.mark.asyncio
async def test_open_rejection_carries_retry_after(breaker, clock):
    trip(breaker)
    clock.now = 3
    with pytest.raises(CircuitBreakerError) as excinfo:
        await breaker.call(ok)
    assert excinfo.value.retry_after == 7
    assert excinfo.value.state == CircuitState.OPEN


@pytest.mark.asyncio
async def test_cancelled_half_open_call_gives_its_slot_back(breaker, clock):
    trip(breaker)
    clock.now = 10

    task = await start_hanging_call(breaker)
    # the single slot is taken while the call hangs
    with pytest.raises(CircuitBreakerError):
        await breaker.call(ok)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.HALF_OPEN
    assert breaker.stats.failed_calls == 3
    assert await breaker.call(ok) == "ok"


@pytest.mark.asyncio
async def test_stale_cancellation_does_not_free_a_newer_slot(breaker, clock):
    trip(breaker)
    clock.now = 10
    task = await start_hanging_call(breaker)

    # the circuit reopens and half-opens again while the old call hangs
    breaker.record_failure()
    clock.now = 20
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call(ok) == "ok"

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    with pytest.raises(CircuitBreakerError):
        await breaker.call(ok)
