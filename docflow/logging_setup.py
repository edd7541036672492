"""Structured logging configuration.

Records are rendered as one JSON object per line with a Cloud Logging
``severity`` next to the plain ``level``. The job manager and the document
pipeline bind ``job_id`` / ``trace_id`` with `log_context(...)` so every record
emitted underneath carries the correlation ids. Call `configure_logging()`
once from the entry point.
"""

from __future__ import annotations

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
trace_id_var: ContextVar[str | None] = ContextVar("trace_id", default=None)

_CORRELATION_VARS: Dict[str, ContextVar[str | None]] = {
    "job_id": job_id_var,
    "trace_id": trace_id_var,
}

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

_HANDLER_MARKER = "_docflow_json_handler"


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        data: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "severity": record.levelname,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for key, var in _CORRELATION_VARS.items():
            value = var.get()
            if value and key not in record.__dict__:
                data[key] = value
        if record.exc_info:
            data["exc_info"] = self.formatException(record.exc_info)
        data.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _RECORD_ATTRIBUTES and not key.startswith("_")
        )
        return json.dumps(data, ensure_ascii=False, default=str)


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: int | str = logging.INFO, force: bool = False) -> None:
    """Install the JSON stdout handler on the root logger.

    Repeated calls only adjust the level unless ``force`` is set, in which case
    every existing root handler is replaced.
    """
    resolved = _resolve_level(level)
    root = logging.getLogger()
    if force:
        for handler in list(root.handlers):
            root.removeHandler(handler)
    installed = [h for h in root.handlers if getattr(h, _HANDLER_MARKER, False)]
    root.setLevel(resolved)
    if installed:
        for handler in installed:
            handler.setLevel(resolved)
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    setattr(handler, _HANDLER_MARKER, True)
    root.addHandler(handler)


@contextmanager
def log_context(*, job_id: str | None = None, trace_id: str | None = None) -> Iterator[None]:
    """Bind correlation ids for the duration of the block."""
    tokens = [
        (var, var.set(value))
        for var, value in ((job_id_var, job_id), (trace_id_var, trace_id))
        if value is not None
    ]
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


__all__ = [
    "JsonFormatter",
    "configure_logging",
    "log_context",
    "job_id_var",
    "trace_id_var",
]
