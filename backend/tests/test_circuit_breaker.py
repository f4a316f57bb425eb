import asyncio

import pytest

from servicepay.core.errors import CircuitOpenError, GatewayError, GatewayUnavailableError
from servicepay.services.circuit_breaker import CircuitBreaker, CircuitState


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class Upstream:
    """Counts calls; fails with the queued exception, if any."""

    def __init__(self):
        self.calls = 0
        self.error = GatewayUnavailableError("down")

    async def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return "ok"


def call(breaker, upstream):
    return asyncio.run(breaker.call(upstream))


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("test", failure_threshold=5, recovery_timeout=30, clock=clock)


def test_opens_after_threshold_and_fails_fast(breaker):
    upstream = Upstream()
    for _ in range(5):
        with pytest.raises(GatewayUnavailableError):
            call(breaker, upstream)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError) as exc:
        call(breaker, upstream)
    assert upstream.calls == 5
    assert exc.value.details["retry_after_seconds"] == 30
    assert breaker.stats["blocked_calls"] == 1


def test_successful_trial_after_cooldown_closes(breaker, clock):
    upstream = Upstream()
    for _ in range(5):
        with pytest.raises(GatewayUnavailableError):
            call(breaker, upstream)

    clock.now = 30
    upstream.error = None

    assert call(breaker, upstream) == "ok"
    assert breaker.state == CircuitState.CLOSED
    assert breaker.failure_count == 0


def test_failed_trial_reopens(breaker, clock):
    upstream = Upstream()
    for _ in range(5):
        with pytest.raises(GatewayUnavailableError):
            call(breaker, upstream)

    clock.now = 31
    with pytest.raises(GatewayUnavailableError):
        call(breaker, upstream)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        call(breaker, upstream)
    assert upstream.calls == 6


def test_half_open_admits_exactly_one_trial(breaker, clock):
    for _ in range(5):
        breaker.before_call()
        breaker.record_failure()
    clock.now = 30

    breaker.before_call()
    assert breaker.state == CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


def test_gateway_refusals_do_not_count_as_failures(breaker):
    upstream = Upstream()
    for _ in range(4):
        with pytest.raises(GatewayUnavailableError):
            call(breaker, upstream)

    upstream.error = GatewayError("Invalid amount")
    with pytest.raises(GatewayError):
        call(breaker, upstream)

    upstream.error = GatewayUnavailableError("down")
    for _ in range(4):
        with pytest.raises(GatewayUnavailableError):
            call(breaker, upstream)
    assert breaker.state == CircuitState.CLOSED


def test_reset_and_status(breaker):
    for _ in range(5):
        breaker.before_call()
        breaker.record_failure()

    assert breaker.get_status()["state"] == "open"
    breaker.reset()
    assert breaker.get_status()["state"] == "closed"
    assert breaker.get_status()["failure_count"] == 0


def test_cancelled_trial_releases_the_half_open_slot(breaker, clock):
    upstream = Upstream()
    for _ in range(5):
        with pytest.raises(GatewayUnavailableError):
            call(breaker, upstream)
    clock.now = 31

    async def cancel_trial():
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(3600)

        task = asyncio.create_task(breaker.call(hang))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(cancel_trial())

    assert breaker.state == CircuitState.OPEN
    clock.now = 62
    upstream.error = None
    assert call(breaker, upstream) == "ok"
    assert breaker.state == CircuitState.CLOSED
