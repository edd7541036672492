"""Structured log records and per-stage telemetry for jobs and pipeline runs."""

from __future__ import annotations

import logging
import time
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any, Dict, Literal

from docflow.utils.redact import redact_text

if TYPE_CHECKING:  # pragma: no cover
    from docflow.services.interfaces import MetricsClient

# Only these keys reach the log sink; free text such as document content or
# credentials is dropped even if a caller passes it.
STRUCTURED_LOG_ALLOWED_FIELDS: frozenset[str] = frozenset(
    {
        "attempt",
        "attempts",
        "breaker",
        "bytes",
        "chunk_count",
        "component",
        "confidence",
        "delay_seconds",
        "document_id",
        "duration_ms",
        "entity_count",
        "error",
        "error_code",
        "error_type",
        "event",
        "from_status",
        "job_id",
        "mime_type",
        "next_run",
        "progress",
        "reason",
        "retry_count",
        "schedule_id",
        "skip_reason",
        "source",
        "stage",
        "status",
        "text_length",
        "to_status",
        "trace_id",
        "version",
        "workers",
    }
)


# Fields that may carry exception text or operator input.
_FREE_TEXT_FIELDS = frozenset({"error", "reason"})


def _clean(key: str, value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if key in _FREE_TEXT_FIELDS and isinstance(value, str):
        return redact_text(value)
    return value


def safe_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Keep allowlisted, non-null fields with enums unwrapped and free text scrubbed."""
    return {
        key: _clean(key, value)
        for key, value in fields.items()
        if value is not None and key in STRUCTURED_LOG_ALLOWED_FIELDS
    }


def structured_log(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    extra = safe_fields(fields)
    extra["event"] = event
    extra["_structured_log"] = True
    logger.log(level, event, extra=extra)


class StageMarker:
    """Log ``started`` on entry and ``completed``/``failed`` on exit of a stage.

    Works as both a sync and an async context manager. ``duration_ms`` is set
    on exit; `elapsed_ms` can be read while the stage is still running. When a
    metrics client is given the stage latency is also observed there.
    """

    def __init__(
        self,
        logger: logging.Logger,
        *,
        stage: str,
        level: int = logging.INFO,
        metrics: "MetricsClient | None" = None,
        **fields: Any,
    ) -> None:
        self._logger = logger
        self.stage = stage
        self._level = level
        self._metrics = metrics
        self._fields = safe_fields({**fields, "stage": stage})
        self._completion: Dict[str, Any] = {}
        self._t0: float | None = None
        self.duration_ms = 0

    def add_completion_fields(self, **fields: Any) -> None:
        self._completion.update(safe_fields(fields))

    def elapsed_ms(self) -> int:
        return 0 if self._t0 is None else int((time.perf_counter() - self._t0) * 1000)

    def _emit(self, level: int, status: str, **extra: Any) -> None:
        payload = {**self._fields, **extra, "status": status}
        structured_log(self._logger, level, "pipeline_stage", **payload)

    def _enter(self) -> "StageMarker":
        self._t0 = time.perf_counter()
        self._emit(self._level, "started")
        return self

    def _exit(self, exc: BaseException | None) -> Literal[False]:
        self.duration_ms = self.elapsed_ms()
        extra = {**self._completion, "duration_ms": self.duration_ms}
        if exc is None:
            self._emit(self._level, "completed", **extra)
        else:
            code = getattr(exc, "code", None)
            extra["error_type"] = type(exc).__name__
            extra["error_code"] = code if isinstance(code, str) else None
            self._emit(logging.ERROR, "failed", **extra)
        if self._metrics is not None:
            self._metrics.observe_latency(
                "stage_duration", self.duration_ms / 1000.0, stage=self.stage.lower()
            )
        return False

    def __enter__(self) -> "StageMarker":
        return self._enter()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> Literal[False]:
        return self._exit(exc)

    async def __aenter__(self) -> "StageMarker":
        return self._enter()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> Literal[False]:
        return self._exit(exc)


def stage_marker(
    logger: logging.Logger,
    *,
    stage: str,
    level: int = logging.INFO,
    metrics: "MetricsClient | None" = None,
    **fields: Any,
) -> StageMarker:
    return StageMarker(logger, stage=stage, level=level, metrics=metrics, **fields)


def log_stage_skipped(
    logger: logging.Logger,
    *,
    stage: str,
    reason: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    payload = {**fields, "stage": stage, "status": "skipped", "skip_reason": reason}
    structured_log(logger, level, "pipeline_stage", **payload)


__all__ = [
    "STRUCTURED_LOG_ALLOWED_FIELDS",
    "StageMarker",
    "log_stage_skipped",
    "safe_fields",
    "stage_marker",
    "structured_log",
]
