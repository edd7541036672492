from __future__ import annotations

import io
import json
import logging
from typing import List

import pytest

from docflow.logging_setup import JsonFormatter, configure_logging, job_id_var, log_context
from docflow.utils.logging_utils import log_stage_skipped, stage_marker, structured_log
from docflow.models.job import JobStatus
from tests.stubs.metrics_stub import RecordingMetrics


@pytest.fixture
def captured_logger():
    logger = logging.getLogger("docflow-structured-test")
    original_handlers: List[logging.Handler] = list(logger.handlers)
    original_propagate = logger.propagate
    buffer = io.StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JsonFormatter())
    for existing in list(logger.handlers):
        logger.removeHandler(existing)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    try:
        yield logger, buffer
    finally:
        logger.removeHandler(handler)
        for existing in original_handlers:
            logger.addHandler(existing)
        logger.propagate = original_propagate


def _records(buffer: io.StringIO) -> list[dict]:
    return [json.loads(line) for line in buffer.getvalue().splitlines() if line.strip()]


def test_configure_logging_installs_json_formatter():
    root = logging.getLogger()
    original_handlers: List[logging.Handler] = list(root.handlers)
    original_level = root.level
    for handler in list(root.handlers):
        root.removeHandler(handler)
    try:
        configure_logging("debug")
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG

        configure_logging("warning")
        assert len(root.handlers) == 1, "second call must not stack handlers"
        assert root.level == logging.WARNING
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
        for handler in original_handlers:
            root.addHandler(handler)
        root.setLevel(original_level)


def test_log_context_binds_and_restores_correlation_ids(captured_logger):
    logger, buffer = captured_logger
    with log_context(job_id="job-7", trace_id="trace-7"):
        logger.info("inside")
    logger.info("outside")

    inside, outside = _records(buffer)
    assert inside["job_id"] == "job-7"
    assert inside["trace_id"] == "trace-7"
    assert "job_id" not in outside
    assert job_id_var.get() is None


def test_structured_log_allowlist_filters_unknown_fields(captured_logger):
    logger, buffer = captured_logger
    structured_log(
        logger,
        logging.INFO,
        "unit_event",
        job_id="job-1",
        stage="OCR",
        password="hunter2",
        document_text="patient note",
        confidence=None,
    )
    (record,) = _records(buffer)
    assert record["event"] == "unit_event"
    assert record["job_id"] == "job-1"
    assert record["stage"] == "OCR"
    assert "password" not in record
    assert "document_text" not in record
    assert "confidence" not in record


def test_stage_marker_reports_failure_with_error_code(captured_logger):
    logger, buffer = captured_logger

    class _Boom(Exception):
        code = "BOOM"

    with pytest.raises(_Boom):
        with stage_marker(logger, stage="NLP", document_id="doc-1") as marker:
            marker.add_completion_fields(entity_count=3, secret="x")
            raise _Boom()

    started, finished = _records(buffer)
    assert started["status"] == "started"
    assert finished["status"] == "failed"
    assert finished["error_code"] == "BOOM"
    assert finished["entity_count"] == 3
    assert "secret" not in finished
    assert finished["level"] == "ERROR"


@pytest.mark.asyncio
async def test_async_stage_marker_records_duration(captured_logger):
    logger, buffer = captured_logger
    async with stage_marker(logger, stage="OCR") as marker:
        pass
    assert marker.duration_ms >= 0
    assert _records(buffer)[-1]["status"] == "completed"


def test_log_stage_skipped(captured_logger):
    logger, buffer = captured_logger
    log_stage_skipped(logger, stage="PERSIST", reason="persist_disabled", document_id="doc-9")
    (record,) = _records(buffer)
    assert record["status"] == "skipped"
    assert record["skip_reason"] == "persist_disabled"
    assert record["document_id"] == "doc-9"


def test_free_text_is_scrubbed_and_enums_unwrapped(captured_logger):
    logger, buffer = captured_logger
    structured_log(
        logger,
        logging.WARNING,
        "job_failed",
        status=JobStatus.FAILED,
        error="upstream rejected jane.doe@example.com",
        trace_id="doc-1-1700000000000",
    )
    (record,) = _records(buffer)
    assert record["status"] == "FAILED"
    assert "jane.doe@example.com" not in record["error"]
    assert record["trace_id"] == "doc-1-1700000000000"
    assert record["severity"] == "WARNING"


def test_stage_marker_observes_latency_when_metrics_given(captured_logger):
    logger, _ = captured_logger
    metrics = RecordingMetrics()
    with stage_marker(logger, stage="OCR", metrics=metrics):
        pass
    assert [name for name, _ in metrics.latencies] == ["stage_duration"]
