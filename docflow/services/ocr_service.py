"""Chunked OCR over a bounded thread pool.

`WorkerPoolOCRService` splits a document with `PayloadChunker`, hands every
chunk to a `ChunkRecognizer` on a dedicated ``ThreadPoolExecutor`` and merges
the results by chunk index: text is concatenated in order and confidence is
the arithmetic mean of the chunk confidences. The executor is created per
document and shut down in ``finally`` without waiting, so a caller timeout or
cancellation returns control to the event loop at once.
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from docflow.config import OCRSettings
from docflow.errors import NotFoundError, ProcessingCancelledError
from docflow.models.document import (
    Chunk,
    ChunkRecognition,
    DocumentContent,
    OCRProgress,
    OCRResult,
    OCRStage,
    PageResult,
)
from docflow.services.chunker import PayloadChunker
from docflow.services.interfaces import ChunkRecognizer, MetricsClient, OCRService
from docflow.services.metrics import NullMetrics
from docflow.utils.logging_utils import structured_log
from docflow.utils.ttl_cache import TTLCache

_LOG = logging.getLogger("docflow.ocr_service")


@dataclass(slots=True)
class _OCRRun:
    document_id: str
    started_at: float
    stage: OCRStage = OCRStage.PREPROCESSING
    chunks_total: int = 0
    chunks_done: int = 0
    cancelled: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)


class WorkerPoolOCRService(OCRService):
    def __init__(
        self,
        *,
        recognizer: ChunkRecognizer,
        settings: OCRSettings | None = None,
        metrics: MetricsClient | None = None,
        runs: TTLCache[str, _OCRRun] | None = None,
    ) -> None:
        self._recognizer = recognizer
        self._settings = settings or OCRSettings()
        self._metrics = metrics or NullMetrics()
        if runs is None:
            runs = TTLCache(ttl_seconds=300, max_entries=1024)
        self._runs: TTLCache[str, _OCRRun] = runs
        self._open_pools = 0

    @property
    def open_pools(self) -> int:
        """Executors not yet shut down; zero once every run has returned or raised."""
        return self._open_pools

    async def process_document(
        self, document: DocumentContent, config: OCRSettings | None = None
    ) -> OCRResult:
        settings = config or self._settings
        if document.content is None:
            raise ValueError("OCR requires document content to be loaded")
        document_id = document.document_id
        run = _OCRRun(document_id=document_id, started_at=time.perf_counter())
        self._runs.set(document_id, run)

        chunker = PayloadChunker(
            chunk_size_bytes=settings.chunk_size_bytes,
            pdf_pages_per_chunk=settings.pdf_pages_per_chunk,
        )
        chunks = await asyncio.to_thread(chunker.split, document.content, document.metadata.mime_type)
        run.chunks_total = len(chunks)
        run.stage = OCRStage.RECOGNITION
        workers = min(settings.worker_count, len(chunks))

        loop = asyncio.get_running_loop()
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ocr-worker")
        self._open_pools += 1
        try:
            futures = [
                loop.run_in_executor(executor, self._recognize_chunk, run, chunk)
                for chunk in chunks
            ]
            outcomes = await asyncio.gather(*futures, return_exceptions=True)
        except BaseException:
            # queued chunks are dropped; a chunk already inside the recognizer
            # finishes on its worker thread and its result is discarded
            run.cancelled.set()
            raise
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
            self._open_pools -= 1

        failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
        if failures:
            cancelled = [exc for exc in failures if isinstance(exc, ProcessingCancelledError)]
            _LOG.warning(
                "ocr_chunks_failed",
                extra={
                    "document_id": document_id,
                    "failed_chunks": len(failures),
                    "chunk_count": len(chunks),
                },
            )
            raise cancelled[0] if cancelled else failures[0]

        run.stage = OCRStage.POSTPROCESSING
        recognitions: list[ChunkRecognition] = list(outcomes)  # type: ignore[arg-type]
        result = _merge(document_id, chunks, recognitions)
        result.processing_time_ms = int((time.perf_counter() - run.started_at) * 1000)
        self._metrics.observe_latency("ocr_document", result.processing_time_ms / 1000.0, stage="ocr")
        self._metrics.increment("ocr_chunks", len(chunks), stage="ocr")
        structured_log(
            _LOG,
            logging.INFO,
            "ocr_completed",
            document_id=document_id,
            chunk_count=len(chunks),
            workers=workers,
            confidence=round(result.confidence, 4),
            duration_ms=result.processing_time_ms,
        )
        return result

    def _recognize_chunk(self, run: _OCRRun, chunk: Chunk) -> ChunkRecognition:
        if run.cancelled.is_set():
            raise ProcessingCancelledError(
                f"OCR cancelled for {run.document_id}", document_id=run.document_id
            )
        recognition = self._recognizer.recognize(chunk)
        with run.lock:
            run.chunks_done += 1
        return recognition

    def get_progress(self, document_id: str) -> OCRProgress:
        run = self._runs.get(document_id)
        if run is None:
            raise NotFoundError(f"no OCR run for {document_id}", document_id=document_id)
        with run.lock:
            done, total = run.chunks_done, run.chunks_total
        if run.stage is OCRStage.PREPROCESSING:
            progress = 0
        elif run.stage is OCRStage.POSTPROCESSING:
            progress = 100
        else:
            progress = 10 + int(80 * done / total) if total else 10
        remaining_ms: int | None = None
        if done and total:
            elapsed_ms = (time.perf_counter() - run.started_at) * 1000
            remaining_ms = int(elapsed_ms / done * (total - done))
        return OCRProgress(
            document_id=document_id,
            stage=run.stage,
            progress=progress,
            chunks_total=total,
            chunks_done=done,
            estimated_time_remaining_ms=remaining_ms,
        )

    def cancel_processing(self, document_id: str) -> None:
        run = self._runs.get(document_id)
        if run is None:
            raise NotFoundError(f"no OCR run for {document_id}", document_id=document_id)
        run.cancelled.set()
        _LOG.info("ocr_cancel_requested", extra={"document_id": document_id})


def _merge(document_id: str, chunks: list[Chunk], recognitions: list[ChunkRecognition]) -> OCRResult:
    ordered = sorted(zip(chunks, recognitions), key=lambda pair: pair[0].index)
    pages = [
        PageResult(page_number=chunk.index + 1, text=recognition.text, confidence=recognition.confidence)
        for chunk, recognition in ordered
    ]
    return OCRResult(
        document_id=document_id,
        text="".join(page.text for page in pages),
        confidence=statistics.fmean(page.confidence for page in pages),
        page_results=pages,
        chunk_count=len(pages),
    )


__all__ = ["WorkerPoolOCRService"]
