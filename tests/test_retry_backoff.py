import pytest
from google.api_core import exceptions as gexc

from docflow.config import RetryConfig
from docflow.errors import NetworkError, ValidationError
from docflow.services.retry import RetryPolicy


class _Flaky:
    def __init__(self, failures: int, exc_factory=lambda: gexc.ServiceUnavailable("busy")):
        self.failures = failures
        self.calls = 0
        self._exc_factory = exc_factory

    async def __call__(self, value: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self._exc_factory()
        return value


@pytest.mark.asyncio
async def test_retry_backs_off_exponentially_and_succeeds(no_sleep):
    policy = RetryPolicy(
        RetryConfig(max_attempts=4, base_delay_seconds=0.5, backoff_multiplier=2, max_delay_seconds=5),
        sleep=no_sleep,
    )
    operation = _Flaky(failures=2)
    retries = []

    result = await policy.call(operation, "done", on_retry=lambda attempt, exc: retries.append(attempt))

    assert result == "done"
    assert operation.calls == 3
    assert no_sleep.delays == [pytest.approx(0.5), pytest.approx(1.0)]
    assert retries == [2, 3]


@pytest.mark.asyncio
async def test_retry_delay_is_capped(no_sleep):
    policy = RetryPolicy(
        RetryConfig(max_attempts=5, base_delay_seconds=1, backoff_multiplier=3, max_delay_seconds=4),
        sleep=no_sleep,
    )
    operation = _Flaky(failures=4)
    await policy.call(operation, "ok")
    assert no_sleep.delays[-1] == pytest.approx(4.0)
    assert policy.delay_for(1) == pytest.approx(1.0)
    assert policy.delay_for(2) == pytest.approx(3.0)
    assert policy.delay_for(6) == pytest.approx(4.0)


@pytest.mark.asyncio
async def test_exhausted_retries_reraise_last_error_with_attempts(no_sleep):
    policy = RetryPolicy(RetryConfig(max_attempts=3, base_delay_seconds=0.1), sleep=no_sleep)
    operation = _Flaky(failures=10, exc_factory=lambda: NetworkError("still down"))

    with pytest.raises(NetworkError) as excinfo:
        await policy.call(operation, "never")

    assert operation.calls == 3
    assert excinfo.value.attempts == 3
    assert len(no_sleep.delays) == 2


@pytest.mark.asyncio
async def test_non_retryable_error_is_raised_immediately(no_sleep):
    policy = RetryPolicy(RetryConfig(max_attempts=5), sleep=no_sleep)
    operation = _Flaky(
        failures=10,
        exc_factory=lambda: ValidationError("bad", field="text", constraint="non_empty"),
    )

    with pytest.raises(ValidationError) as excinfo:
        await policy.call(operation, "x")

    assert operation.calls == 1
    assert excinfo.value.attempts == 1
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_wait_floor_lifts_short_backoff(no_sleep):
    policy = RetryPolicy(
        RetryConfig(max_attempts=3, base_delay_seconds=0.5),
        sleep=no_sleep,
        wait_floor=lambda: 4.0,
    )
    assert await policy.call(_Flaky(failures=1), "ok") == "ok"
    assert no_sleep.delays == [pytest.approx(4.0)]
