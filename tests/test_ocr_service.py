import asyncio
import threading
import time

import pytest

from docflow.config import CircuitBreakerConfig, OCRSettings
from docflow.errors import NetworkError, NotFoundError, OperationTimeoutError, ProcessingCancelledError
from docflow.models.document import OCRStage
from docflow.services.circuit_breaker import CircuitBreaker
from docflow.services.ocr_service import WorkerPoolOCRService
from tests.stubs.metrics_stub import RecordingMetrics
from tests.stubs.pipeline_stubs import ScriptedRecognizer


@pytest.mark.asyncio
async def test_chunks_merge_in_order_with_mean_confidence(text_document):
    recognizer = ScriptedRecognizer([0.9, 0.95, 0.85])
    metrics = RecordingMetrics()
    service = WorkerPoolOCRService(
        recognizer=recognizer,
        settings=OCRSettings(worker_count=3, chunk_size_bytes=10),
        metrics=metrics,
    )
    text = "alpha beta gamma delta!"
    result = await service.process_document(text_document(text))

    assert result.chunk_count == 3
    assert result.text == text
    assert result.confidence == pytest.approx(0.9)
    assert [page.page_number for page in result.page_results] == [1, 2, 3]
    assert sorted(recognizer.seen) == [0, 1, 2]
    assert all(name.startswith("ocr-worker") for name in recognizer.threads)
    assert service.open_pools == 0
    assert metrics.counters["ocr_chunks"] == 3

    progress = service.get_progress("doc-1")
    assert progress.stage is OCRStage.POSTPROCESSING
    assert progress.progress == 100
    assert (progress.chunks_done, progress.chunks_total) == (3, 3)


@pytest.mark.asyncio
async def test_call_level_settings_override_defaults(text_document):
    service = WorkerPoolOCRService(
        recognizer=ScriptedRecognizer(), settings=OCRSettings(chunk_size_bytes=1024)
    )
    override = OCRSettings(chunk_size_bytes=10, worker_count=1)
    result = await service.process_document(text_document("x" * 30), override)
    assert result.chunk_count == 3


@pytest.mark.asyncio
async def test_chunk_failure_propagates_and_releases_pool(text_document):
    recognizer = ScriptedRecognizer(fail_on={1: NetworkError("engine unavailable")})
    service = WorkerPoolOCRService(recognizer=recognizer, settings=OCRSettings(chunk_size_bytes=5))

    with pytest.raises(NetworkError):
        await service.process_document(text_document("0123456789abcde"))
    assert service.open_pools == 0


@pytest.mark.asyncio
async def test_cancel_processing_stops_remaining_chunks(text_document):
    holder = {}

    def _cancel_after_first(chunk):
        if chunk.index == 0:
            holder["service"].cancel_processing("doc-1")

    recognizer = ScriptedRecognizer(on_chunk=_cancel_after_first)
    service = WorkerPoolOCRService(
        recognizer=recognizer,
        settings=OCRSettings(worker_count=1, chunk_size_bytes=4),
    )
    holder["service"] = service

    with pytest.raises(ProcessingCancelledError):
        await service.process_document(text_document("aaaabbbbcccc"))
    assert recognizer.seen == [0]
    assert service.open_pools == 0


def test_unknown_document_progress_and_cancel():
    service = WorkerPoolOCRService(recognizer=ScriptedRecognizer())
    with pytest.raises(NotFoundError):
        service.get_progress("ghost")
    with pytest.raises(NotFoundError):
        service.cancel_processing("ghost")


@pytest.mark.asyncio
async def test_document_without_content_rejected(text_document):
    document = text_document()
    document.content = None
    service = WorkerPoolOCRService(recognizer=ScriptedRecognizer())
    with pytest.raises(ValueError):
        await service.process_document(document)


@pytest.mark.asyncio
async def test_breaker_timeout_releases_event_loop_while_recognizer_blocks(text_document):
    release = threading.Event()
    recognizer = ScriptedRecognizer(on_chunk=lambda chunk: release.wait(2.0))
    service = WorkerPoolOCRService(
        recognizer=recognizer,
        settings=OCRSettings(worker_count=1, chunk_size_bytes=4),
    )
    breaker = CircuitBreaker("ocr", config=CircuitBreakerConfig(timeout_seconds=0.2))
    gaps = []

    async def _heartbeat():
        last = time.perf_counter()
        while True:
            await asyncio.sleep(0.02)
            now = time.perf_counter()
            gaps.append(now - last)
            last = now

    beat = asyncio.create_task(_heartbeat())
    started = time.perf_counter()
    try:
        with pytest.raises(OperationTimeoutError):
            await breaker.call(service.process_document, text_document("aaaabbbbcccc"))
        elapsed = time.perf_counter() - started
    finally:
        release.set()
        beat.cancel()
        await asyncio.gather(beat, return_exceptions=True)

    assert elapsed < 1.0
    assert max(gaps) < 0.5
    assert service.open_pools == 0
    assert recognizer.seen == [0]
