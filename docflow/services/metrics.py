"""Metrics utilities for the docflow job and pipeline core."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import ClassVar, Iterator

from prometheus_client import Counter, Gauge, Histogram

from .interfaces import MetricsClient

LOG = logging.getLogger(__name__)


class PrometheusMetrics(MetricsClient):
    """Prometheus-backed metrics client.

    Emission failures (bad label values, registry problems) are logged and
    swallowed so that metrics can never break a job or pipeline run.
    """

    _LATENCY = Histogram(
        "docflow_stage_latency_seconds",
        "Stage latency in seconds",
        ["stage", "name"],
    )
    _COUNTERS = Counter(
        "docflow_events_total",
        "Job and pipeline event counts",
        ["stage", "name"],
    )
    _VALUES = Gauge(
        "docflow_values",
        "Point-in-time values (breaker state, active executions, progress)",
        ["stage", "name"],
    )
    _DEFAULT_INSTANCE: ClassVar["PrometheusMetrics | None"] = None

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        try:
            PrometheusMetrics._LATENCY.labels(stage=stage, name=name).observe(value)
        except Exception:  # pragma: no cover
            LOG.debug("metric_emit_failed", extra={"metric": name}, exc_info=True)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        try:
            PrometheusMetrics._COUNTERS.labels(stage=stage, name=name).inc(amount)
        except Exception:  # pragma: no cover
            LOG.debug("metric_emit_failed", extra={"metric": name}, exc_info=True)

    def record_metric(self, name: str, value: float, **labels: str) -> None:
        stage = labels.get("stage", "unknown")
        try:
            PrometheusMetrics._VALUES.labels(stage=stage, name=name).set(value)
        except Exception:  # pragma: no cover
            LOG.debug("metric_emit_failed", extra={"metric": name}, exc_info=True)

    @contextmanager
    def time(self, name: str, **labels: str) -> Iterator[None]:
        start = time.perf_counter()
        try:
            yield
        finally:
            self.observe_latency(name, time.perf_counter() - start, **labels)

    @classmethod
    def default(cls) -> "PrometheusMetrics":
        if cls._DEFAULT_INSTANCE is None:
            cls._DEFAULT_INSTANCE = cls()
        return cls._DEFAULT_INSTANCE


class NullMetrics(MetricsClient):
    """No-op metrics implementation."""

    def observe_latency(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Metric ignored: %s=%s labels=%s", name, value, labels)

    def increment(self, name: str, amount: int = 1, **labels: str) -> None:
        LOG.debug("Counter ignored: %s+=%s labels=%s", name, amount, labels)

    def record_metric(self, name: str, value: float, **labels: str) -> None:
        LOG.debug("Value ignored: %s=%s labels=%s", name, value, labels)


__all__ = ["PrometheusMetrics", "NullMetrics"]
