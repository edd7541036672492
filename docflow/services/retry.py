"""Bounded exponential-backoff retries built on tenacity."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from docflow.config import RetryConfig
from docflow.errors import is_retryable
from docflow.utils.logging_utils import structured_log

LOG = logging.getLogger("docflow.retry")

T = TypeVar("T")


class RetryPolicy:
    """Run an async operation with bounded attempts.

    ``retryable`` decides whether a failure is worth another attempt; anything
    it rejects is re-raised immediately. When attempts run out the last error
    is re-raised with ``attempts`` set on it. ``wait_floor`` lifts each backoff
    to at least the value it returns, such as the time left before a breaker
    admits its trial call.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        retryable: Callable[[BaseException], bool] = is_retryable,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "operation",
        wait_floor: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or RetryConfig()
        self._retryable = retryable
        self._sleep = sleep
        self.name = name
        self._wait_floor = wait_floor

    def delay_for(self, attempt: int) -> float:
        """Backoff in seconds after failed attempt ``attempt`` (1-based)."""
        cfg = self.config
        delay = cfg.base_delay_seconds * (cfg.backoff_multiplier ** max(0, attempt - 1))
        return min(delay, cfg.max_delay_seconds)

    def _retrying(self) -> AsyncRetrying:
        cfg = self.config
        backoff = wait_exponential(
            multiplier=cfg.base_delay_seconds,
            exp_base=cfg.backoff_multiplier,
            min=0,
            max=cfg.max_delay_seconds,
        )

        def _wait(retry_state: RetryCallState) -> float:
            delay = backoff(retry_state)
            if self._wait_floor is not None:
                delay = max(delay, self._wait_floor())
            return delay

        return AsyncRetrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=_wait,
            retry=retry_if_exception(self._retryable),
            sleep=self._sleep,
            before_sleep=self._log_retry,
            reraise=True,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else None
        structured_log(
            LOG,
            logging.WARNING,
            "retry_scheduled",
            component=self.name,
            attempt=retry_state.attempt_number,
            delay_seconds=delay,
            error_type=exc.__class__.__name__ if exc else None,
        )

    async def call(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        on_retry: Callable[[int, BaseException], None] | None = None,
        **kwargs: Any,
    ) -> T:
        attempt_number = 0
        last_error: BaseException | None = None
        try:
            async for attempt in self._retrying():
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    if last_error is not None and on_retry is not None:
                        on_retry(attempt_number, last_error)
                    try:
                        return await operation(*args, **kwargs)
                    except Exception as exc:
                        last_error = exc
                        raise
        except Exception as exc:
            exc.attempts = attempt_number  # type: ignore[attr-defined]
            raise
        raise RuntimeError("retry loop exited without a result")  # pragma: no cover


__all__ = ["RetryPolicy"]
