"""Per-document processing pipeline: EXTRACT -> OCR -> NLP -> VALIDATE -> PERSIST.

Stages run strictly in order. OCR, NLP and storage calls each go through their
own circuit breaker wrapped by a retry policy. The validation gate runs before
OCR (pre-processing), after OCR and NLP (intermediate) and as the VALIDATE
stage (post-processing); validation failures are never retried.

A `CancellationToken` is checked between stages only. A cancelled or failed
run still leaves a `ProcessingResult` in the per-document metrics record,
which stays queryable through `get_processing_metrics` until it ages out of
the TTL cache.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import resource
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from docflow.config import OCRSettings, PipelineConfig
from docflow.errors import (
    NotFoundError,
    ProcessingCancelledError,
    ValidationError,
    error_code,
)
from docflow.logging_setup import log_context
from docflow.models.document import (
    DocumentContent,
    PipelineMetrics,
    PipelineStage,
    ProcessingError,
    ProcessingResult,
    ProcessingStatus,
    sha256_hex,
)
from docflow.services.circuit_breaker import CircuitBreaker
from docflow.services.interfaces import BlobStore, MetricsClient, NLPService, OCRService
from docflow.services.metrics import NullMetrics
from docflow.services.result_repository import ResultRepository, build_result_payload
from docflow.services.retry import RetryPolicy
from docflow.services.validation import ValidationGate
from docflow.utils.logging_utils import StageMarker, log_stage_skipped, stage_marker, structured_log
from docflow.utils.redact import redact_text
from docflow.utils.ttl_cache import TTLCache

_LOG = logging.getLogger("docflow.document_pipeline")

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation flag shared between a controller and a run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancel requested") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self, stage: str | None = None) -> None:
        if self._event.is_set():
            error = ProcessingCancelledError(self.reason or "processing cancelled")
            error.stage = stage
            raise error


@dataclass(slots=True)
class PipelineOptions:
    min_confidence: float | None = None
    persist: bool = True
    ocr: OCRSettings | None = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _resource_snapshot() -> tuple[int, float]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return int(usage.ru_maxrss), time.process_time()


def _split_source(document: DocumentContent) -> tuple[str, str]:
    source = document.source_path or ""
    if source.startswith("gs://"):
        bucket, _, path = source[len("gs://"):].partition("/")
        if bucket and path:
            return bucket, path
    elif source and document.metadata.source_bucket:
        return document.metadata.source_bucket, source.lstrip("/")
    raise ValidationError(
        "document has no content and no resolvable source path",
        field="source_path",
        constraint="gs://bucket/path or source_bucket + path",
        value=source or None,
    )


class DocumentPipeline:
    def __init__(
        self,
        *,
        ocr_service: OCRService,
        nlp_service: NLPService,
        blob_store: BlobStore,
        results: ResultRepository,
        gate: ValidationGate | None = None,
        config: PipelineConfig | None = None,
        metrics: MetricsClient | None = None,
        runs: TTLCache[str, PipelineMetrics] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or PipelineConfig()
        self._ocr = ocr_service
        self._nlp = nlp_service
        self._blob_store = blob_store
        self._results = results
        self._gate = gate or ValidationGate()
        self._metrics = metrics or NullMetrics()
        if runs is None:
            runs = TTLCache(
                ttl_seconds=self.config.metrics_retention_seconds,
                max_entries=self.config.metrics_max_entries,
            )
        self._runs: TTLCache[str, PipelineMetrics] = runs
        cfg = self.config
        self.breakers: dict[str, CircuitBreaker] = {
            "ocr": CircuitBreaker("ocr", config=cfg.ocr_breaker, metrics=self._metrics),
            "nlp": CircuitBreaker("nlp", config=cfg.nlp_breaker, metrics=self._metrics),
            "storage": CircuitBreaker("storage", config=cfg.storage_breaker, metrics=self._metrics),
        }
        self._retries: dict[str, RetryPolicy] = {
            name: RetryPolicy(
                retry_config,
                sleep=sleep,
                name=name,
                wait_floor=self.breakers[name].retry_after,
            )
            for name, retry_config in (
                ("ocr", cfg.ocr_retry),
                ("nlp", cfg.nlp_retry),
                ("storage", cfg.storage_retry),
            )
        }

    def get_processing_metrics(self, document_id: str) -> PipelineMetrics:
        run = self._runs.get(document_id)
        if run is None:
            raise NotFoundError(f"no pipeline metrics for {document_id}", document_id=document_id)
        return copy.deepcopy(run)

    async def _guarded(
        self,
        name: str,
        run: PipelineMetrics,
        operation: Callable[..., Awaitable[T]],
        *args: Any,
    ) -> T:
        def _count_retry(attempt: int, exc: BaseException) -> None:
            run.retry_count += 1
            self._metrics.increment("pipeline_retries", stage=name)

        return await self._retries[name].call(
            self.breakers[name].call, operation, *args, on_retry=_count_retry
        )

    async def process_document(
        self,
        document: DocumentContent,
        *,
        cancel_token: CancellationToken | None = None,
        options: PipelineOptions | None = None,
    ) -> ProcessingResult:
        opts = options or PipelineOptions()
        token = cancel_token or CancellationToken()
        started = _now()
        document_id = document.document_id
        trace_id = f"{document_id}-{int(started.timestamp() * 1000)}"
        run = PipelineMetrics(document_id=document_id, trace_id=trace_id, start_time=started)
        run.max_rss_kb, run.cpu_time_seconds = _resource_snapshot()
        self._runs.set(document_id, run)

        with log_context(trace_id=trace_id):
            try:
                return await self._run_stages(document, run, token, opts)
            except ProcessingCancelledError as exc:
                if exc.stage is None and run.current_stage is not None:
                    exc.stage = run.current_stage.value
                self._finish(run, ProcessingStatus.CANCELLED, error=exc)
                structured_log(
                    _LOG,
                    logging.WARNING,
                    "pipeline_cancelled",
                    document_id=document_id,
                    trace_id=trace_id,
                    stage=exc.stage,
                )
                raise
            except Exception as exc:
                stage = run.current_stage.value if run.current_stage else None
                exc.stage = stage  # type: ignore[attr-defined]
                self._finish(run, ProcessingStatus.FAILED, error=exc)
                structured_log(
                    _LOG,
                    logging.ERROR,
                    "pipeline_failed",
                    document_id=document_id,
                    trace_id=trace_id,
                    stage=exc.stage,  # type: ignore[attr-defined]
                    error_code=error_code(exc),
                    error_type=exc.__class__.__name__,
                )
                raise

    async def _run_stages(
        self,
        document: DocumentContent,
        run: PipelineMetrics,
        token: CancellationToken,
        opts: PipelineOptions,
    ) -> ProcessingResult:
        document_id = run.document_id

        self._enter(run, PipelineStage.EXTRACT, token)
        async with self._stage(PipelineStage.EXTRACT, run) as marker:
            loaded = await self._extract(document, run)
            marker.add_completion_fields(bytes=len(loaded.content or b""))
        run.stage_durations_ms[PipelineStage.EXTRACT.value] = marker.duration_ms

        self._enter(run, PipelineStage.OCR, token)
        async with self._stage(PipelineStage.OCR, run) as marker:
            ocr_result = await self._guarded("ocr", run, self._ocr.process_document, loaded, opts.ocr)
            self._gate.validate_intermediate(
                document_id, PipelineStage.OCR, ocr_result, elapsed_ms=marker.elapsed_ms()
            )
            marker.add_completion_fields(chunk_count=ocr_result.chunk_count, confidence=ocr_result.confidence)
        run.stage_durations_ms[PipelineStage.OCR.value] = marker.duration_ms

        self._enter(run, PipelineStage.NLP, token)
        async with self._stage(PipelineStage.NLP, run) as marker:
            nlp_result = await self._guarded("nlp", run, self._nlp.process_text, ocr_result)
            self._gate.validate_intermediate(
                document_id, PipelineStage.NLP, nlp_result, elapsed_ms=marker.elapsed_ms()
            )
            marker.add_completion_fields(entity_count=len(nlp_result.entities))
        run.stage_durations_ms[PipelineStage.NLP.value] = marker.duration_ms

        self._enter(run, PipelineStage.VALIDATE, token)
        async with self._stage(PipelineStage.VALIDATE, run) as marker:
            payload = build_result_payload(loaded.metadata, ocr_result, nlp_result, trace_id=run.trace_id)
            self._gate.validate_post_processing(payload, min_confidence=opts.min_confidence)
        run.stage_durations_ms[PipelineStage.VALIDATE.value] = marker.duration_ms

        self._enter(run, PipelineStage.PERSIST, token)
        result_uri: str | None = None
        if opts.persist:
            async with self._stage(PipelineStage.PERSIST, run) as marker:
                ref = await self._guarded("storage", run, self._results.write_result, payload)
                result_uri = ref.uri
            run.stage_durations_ms[PipelineStage.PERSIST.value] = marker.duration_ms
        else:
            log_stage_skipped(
                _LOG,
                stage=PipelineStage.PERSIST.value,
                reason="persist_disabled",
                document_id=document_id,
                trace_id=run.trace_id,
            )

        result = self._finish(
            run,
            ProcessingStatus.COMPLETED,
            confidence=ocr_result.confidence,
            result_uri=result_uri,
        )
        structured_log(
            _LOG,
            logging.INFO,
            "pipeline_completed",
            document_id=document_id,
            trace_id=run.trace_id,
            confidence=round(ocr_result.confidence, 4),
            retry_count=run.retry_count,
            duration_ms=result.processing_duration_ms,
        )
        return result

    def _stage(self, stage: PipelineStage, run: PipelineMetrics) -> StageMarker:
        return stage_marker(
            _LOG,
            stage=stage.value,
            metrics=self._metrics,
            document_id=run.document_id,
            trace_id=run.trace_id,
        )

    def _enter(self, run: PipelineMetrics, stage: PipelineStage, token: CancellationToken) -> None:
        run.current_stage = stage
        token.raise_if_cancelled(stage.value)

    async def _extract(self, document: DocumentContent, run: PipelineMetrics) -> DocumentContent:
        content = document.content
        metadata = document.metadata
        if content is None:
            bucket, path = _split_source(document)
            content = await self._guarded("storage", run, self._blob_store.download, bucket, path)
            metadata = replace(metadata, size_bytes=len(content))
        if metadata.checksum and sha256_hex(content) != metadata.checksum:
            raise ValidationError(
                "content checksum does not match metadata",
                field="checksum",
                constraint="sha256",
                value=metadata.checksum,
            )
        loaded = DocumentContent(metadata=metadata, content=content, source_path=document.source_path)
        self._gate.validate_pre_processing(loaded)
        return loaded

    def _finish(
        self,
        run: PipelineMetrics,
        status: ProcessingStatus,
        *,
        error: BaseException | None = None,
        confidence: float | None = None,
        result_uri: str | None = None,
    ) -> ProcessingResult:
        run.end_time = _now()
        run.status = status
        run.max_rss_kb, run.cpu_time_seconds = _resource_snapshot()
        record = None
        if error is not None:
            record = ProcessingError(
                code=error_code(error),
                message=redact_text(str(error)),
                stage=run.current_stage,
                timestamp=run.end_time,
            )
        duration_ms = int((run.end_time - run.start_time).total_seconds() * 1000)
        result = ProcessingResult(
            document_id=run.document_id,
            status=status,
            start_time=run.start_time,
            end_time=run.end_time,
            processing_duration_ms=duration_ms,
            retry_count=run.retry_count,
            trace_id=run.trace_id,
            error=record,
            confidence=confidence,
            result_uri=result_uri,
        )
        run.result = result
        self._metrics.observe_latency("pipeline_document", duration_ms / 1000.0, stage="pipeline")
        self._metrics.increment(f"pipeline_{status.value.lower()}", stage="pipeline")
        return result


__all__ = ["CancellationToken", "DocumentPipeline", "PipelineOptions"]
