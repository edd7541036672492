"""Async circuit breaker with a rolling error-rate window.

CLOSED -> OPEN when the failure percentage inside the rolling window reaches
the configured threshold. OPEN rejects calls with ``CircuitOpenError`` until
the reset timeout elapses, then HALF_OPEN lets exactly one trial call through.
The trial's outcome closes or re-opens the circuit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, TypeVar

from docflow.config import CircuitBreakerConfig
from docflow.errors import (
    CircuitOpenError,
    NotFoundError,
    OperationTimeoutError,
    ValidationError,
)
from docflow.services.interfaces import MetricsClient
from docflow.services.metrics import NullMetrics
from docflow.utils.logging_utils import structured_log

LOG = logging.getLogger("docflow.circuit_breaker")

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_STATE_GAUGE = {CircuitState.CLOSED: 0, CircuitState.HALF_OPEN: 1, CircuitState.OPEN: 2}

StateChangeHandler = Callable[[str, CircuitState, CircuitState], None]


def _counts_as_failure(exc: BaseException) -> bool:
    # caller mistakes say nothing about downstream health
    return not isinstance(exc, (ValidationError, NotFoundError))


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        *,
        config: CircuitBreakerConfig | None = None,
        metrics: MetricsClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        failure_predicate: Callable[[BaseException], bool] = _counts_as_failure,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._metrics = metrics or NullMetrics()
        self._clock = clock
        self._is_failure = failure_predicate
        self._state = CircuitState.CLOSED
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._outcomes: Deque[tuple[float, bool]] = deque()
        self._handlers: list[StateChangeHandler] = []

    @property
    def state(self) -> CircuitState:
        return self._state

    def on_state_change(self, handler: StateChangeHandler) -> StateChangeHandler:
        """Register a synchronous observer called as ``handler(name, old, new)``."""
        self._handlers.append(handler)
        return handler

    async def call(
        self,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
        timeout: float | None = None,
        bounded: bool = True,
        **kwargs: Any,
    ) -> T:
        """Run ``operation`` through the breaker.

        ``timeout`` overrides the configured deadline. With ``bounded=False`` no
        deadline is applied and the operation is expected to bound its own
        external calls; failures are still counted.
        """
        is_trial = self._admit()
        limit = timeout if timeout is not None else self.config.timeout_seconds
        try:
            if bounded:
                result = await asyncio.wait_for(operation(*args, **kwargs), timeout=limit)
            else:
                result = await operation(*args, **kwargs)
        except asyncio.TimeoutError as exc:
            self._record(ok=False)
            if isinstance(exc, OperationTimeoutError):
                raise
            raise OperationTimeoutError(
                f"'{self.name}' call exceeded {limit:.1f}s", breaker=self.name
            ) from exc
        except Exception as exc:
            self._record(ok=not self._is_failure(exc))
            raise
        else:
            self._record(ok=True)
            return result
        finally:
            if is_trial:
                self._trial_in_flight = False

    def _admit(self) -> bool:
        if self._state is CircuitState.OPEN:
            opened_at = self._opened_at or 0.0
            if self._clock() - opened_at >= self.config.reset_timeout_seconds:
                self._transition(CircuitState.HALF_OPEN)
            else:
                self._reject()
        if self._state is CircuitState.HALF_OPEN:
            if self._trial_in_flight:
                self._reject()
            self._trial_in_flight = True
            return True
        return False

    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits its trial call; zero otherwise."""
        if self._state is not CircuitState.OPEN or self._opened_at is None:
            return 0.0
        elapsed = self._clock() - self._opened_at
        return max(0.0, self.config.reset_timeout_seconds - elapsed)

    def _reject(self) -> None:
        self._metrics.increment("circuit_rejected", stage=self.name)
        raise CircuitOpenError(self.name)

    def _record(self, *, ok: bool) -> None:
        now = self._clock()
        if self._state is CircuitState.HALF_OPEN:
            if ok:
                self._outcomes.clear()
                self._transition(CircuitState.CLOSED)
            else:
                self._open(now)
            return
        if self._state is CircuitState.OPEN:
            # a call admitted before the circuit opened finished late
            return
        self._outcomes.append((now, ok))
        self._prune(now)
        total = len(self._outcomes)
        if ok or total < self.config.minimum_requests:
            return
        if self.error_rate() >= self.config.error_threshold_percentage:
            self._open(now)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.rolling_window_seconds
        while self._outcomes and self._outcomes[0][0] < horizon:
            self._outcomes.popleft()

    def error_rate(self) -> float:
        self._prune(self._clock())
        total = len(self._outcomes)
        if total == 0:
            return 0.0
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return failures * 100.0 / total

    def _open(self, now: float) -> None:
        self._opened_at = now
        self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state is new_state:
            return
        self._state = new_state
        structured_log(
            LOG,
            logging.WARNING if new_state is CircuitState.OPEN else logging.INFO,
            "circuit_state_change",
            breaker=self.name,
            from_status=old_state.value,
            to_status=new_state.value,
        )
        self._metrics.record_metric("circuit_state", _STATE_GAUGE[new_state], stage=self.name)
        self._metrics.increment(f"circuit_{new_state.value.lower()}", stage=self.name)
        for handler in list(self._handlers):
            try:
                handler(self.name, old_state, new_state)
            except Exception:  # pylint: disable=broad-except
                LOG.exception("circuit_observer_failed", extra={"breaker": self.name})

    def snapshot(self) -> dict[str, Any]:
        self._prune(self._clock())
        failures = sum(1 for _, ok in self._outcomes if not ok)
        return {
            "name": self.name,
            "state": self._state.value,
            "requests": len(self._outcomes),
            "failures": failures,
            "error_rate": self.error_rate(),
        }


__all__ = ["CircuitBreaker", "CircuitState", "StateChangeHandler"]
