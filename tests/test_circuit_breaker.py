import asyncio

import pytest

from docflow.config import CircuitBreakerConfig
from docflow.errors import CircuitOpenError, NetworkError, OperationTimeoutError, ValidationError
from docflow.services.circuit_breaker import CircuitBreaker, CircuitState


class _Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


async def _ok(value="ok"):
    return value


async def _fail():
    raise NetworkError("connection reset")


def _breaker(clock, **overrides):
    values = {
        "timeout_seconds": 5,
        "error_threshold_percentage": 50,
        "reset_timeout_seconds": 30,
        "rolling_window_seconds": 10,
        "minimum_requests": 2,
    }
    values.update(overrides)
    return CircuitBreaker("downstream", config=CircuitBreakerConfig(**values), clock=clock)


@pytest.mark.asyncio
async def test_opens_when_error_rate_reaches_threshold():
    clock = _Clock()
    breaker = _breaker(clock)
    assert await breaker.call(_ok) == "ok"
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN

    calls = []

    async def _tracked():
        calls.append(1)

    with pytest.raises(CircuitOpenError) as excinfo:
        await breaker.call(_tracked)
    assert calls == []
    assert excinfo.value.retryable is True


@pytest.mark.asyncio
async def test_failures_below_minimum_volume_keep_circuit_closed():
    breaker = _breaker(_Clock(), minimum_requests=5)
    for _ in range(3):
        with pytest.raises(NetworkError):
            await breaker.call(_fail)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.error_rate() == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_half_open_trial_success_closes_circuit():
    clock = _Clock()
    breaker = _breaker(clock, minimum_requests=1)
    transitions = []
    breaker.on_state_change(lambda name, old, new: transitions.append((old, new)))

    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    clock.now += 31
    assert await breaker.call(_ok, "trial") == "trial"

    assert breaker.state is CircuitState.CLOSED
    assert transitions == [
        (CircuitState.CLOSED, CircuitState.OPEN),
        (CircuitState.OPEN, CircuitState.HALF_OPEN),
        (CircuitState.HALF_OPEN, CircuitState.CLOSED),
    ]
    assert breaker.snapshot()["requests"] == 0


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens_circuit():
    clock = _Clock()
    breaker = _breaker(clock, minimum_requests=1)
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    clock.now += 31
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)


@pytest.mark.asyncio
async def test_half_open_admits_a_single_trial():
    clock = _Clock()
    breaker = _breaker(clock, minimum_requests=1)
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    clock.now += 31

    gate = asyncio.Event()

    async def _slow():
        await gate.wait()
        return "done"

    trial = asyncio.create_task(breaker.call(_slow))
    await asyncio.sleep(0)
    assert breaker.state is CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call(_ok)
    gate.set()
    assert await trial == "done"
    assert breaker.state is CircuitState.CLOSED


@pytest.mark.asyncio
async def test_validation_errors_do_not_trip_the_breaker():
    breaker = _breaker(_Clock(), minimum_requests=1)

    async def _invalid():
        raise ValidationError("bad input", field="name", constraint="min_length")

    for _ in range(3):
        with pytest.raises(ValidationError):
            await breaker.call(_invalid)
    assert breaker.state is CircuitState.CLOSED
    assert breaker.snapshot()["failures"] == 0


@pytest.mark.asyncio
async def test_slow_call_times_out_and_counts_as_failure():
    breaker = _breaker(_Clock(), minimum_requests=1)

    async def _hang():
        await asyncio.sleep(5)

    with pytest.raises(OperationTimeoutError) as excinfo:
        await breaker.call(_hang, timeout=0.01)
    assert excinfo.value.context["breaker"] == "downstream"
    assert breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_outcomes_outside_window_are_forgotten():
    clock = _Clock()
    breaker = _breaker(clock, minimum_requests=2)
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    clock.now += 11
    await breaker.call(_ok)
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    # one success and one failure inside the window is exactly the threshold
    assert breaker.state is CircuitState.OPEN
    assert breaker.snapshot()["requests"] == 2


@pytest.mark.asyncio
async def test_failing_observer_does_not_break_transitions():
    breaker = _breaker(_Clock(), minimum_requests=1)

    def _broken(*_args):
        raise RuntimeError("observer bug")

    breaker.on_state_change(_broken)
    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    assert breaker.state is CircuitState.OPEN


@pytest.mark.asyncio
async def test_retry_after_counts_down_reset_window():
    clock = _Clock()
    breaker = _breaker(clock, minimum_requests=1)
    assert breaker.retry_after() == 0.0

    with pytest.raises(NetworkError):
        await breaker.call(_fail)
    assert breaker.retry_after() == pytest.approx(30.0)
    clock.now += 12
    assert breaker.retry_after() == pytest.approx(18.0)
    clock.now += 40
    assert breaker.retry_after() == 0.0


@pytest.mark.asyncio
async def test_unbounded_call_skips_deadline_but_counts_failures():
    breaker = _breaker(_Clock(), timeout_seconds=0.01, minimum_requests=1)

    async def _slow():
        await asyncio.sleep(0.05)
        return "late"

    assert await breaker.call(_slow, bounded=False) == "late"
    with pytest.raises(NetworkError):
        await breaker.call(_fail, bounded=False)
    assert breaker.state is CircuitState.OPEN
