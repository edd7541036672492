"""Job runners and the execution context the job manager hands them.

A runner performs one attempt of a job. It reports progress and metrics
through `ExecutionContext` and must call `check_cancelled` between units of
work; the manager owns every status transition.
"""

from __future__ import annotations

import asyncio
import copy
import mimetypes
import posixpath
import time
from typing import Any, Awaitable, Callable, Mapping, Protocol, TypeVar

from docflow.errors import OperationTimeoutError, ValidationError
from docflow.models.document import DocumentContent, DocumentMetadata
from docflow.models.job import Job, JobMetrics, SourceType
from docflow.services.document_pipeline import CancellationToken, DocumentPipeline, PipelineOptions

T = TypeVar("T")


class ProgressTracker:
    """Monotonic progress in [0, 100].

    With a known total the value is ``items / total * 100``; without one it is
    ``items / (items + 1) * 100`` truncated and held at 99 until `complete`
    is called.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def update(self, items_processed: int, total: int | None = None) -> int:
        items = max(0, items_processed)
        if total is not None and total > 0:
            clamped = min(100, round(items / total * 100))
        else:
            clamped = min(99, int(items / (items + 1) * 100))
        if clamped > self._value:
            self._value = clamped
        return self._value

    def complete(self) -> int:
        self._value = 100
        return self._value


class ExecutionContext:
    def __init__(
        self,
        job_id: str,
        *,
        cancel_token: CancellationToken,
        tracker: ProgressTracker,
        metrics: JobMetrics,
        checkpoint: Callable[[], Awaitable[None]] | None = None,
        unit_timeout_seconds: float | None = None,
    ) -> None:
        self.job_id = job_id
        self.cancel_token = cancel_token
        self.tracker = tracker
        self._metrics = metrics
        self._checkpoint = checkpoint
        self.unit_timeout_seconds = unit_timeout_seconds

    @property
    def progress(self) -> int:
        return self.tracker.value

    def check_cancelled(self, stage: str | None = None) -> None:
        self.cancel_token.raise_if_cancelled(stage)

    def report_progress(self, items_processed: int, total: int | None = None) -> int:
        return self.tracker.update(items_processed, total)

    def record_request(self, response_time_ms: float, *, bytes_received: int = 0, ok: bool = True) -> None:
        m = self._metrics
        m.request_count += 1
        m.avg_response_time_ms += (response_time_ms - m.avg_response_time_ms) / m.request_count
        m.bytes_processed += bytes_received
        m.bandwidth_usage += bytes_received
        if not ok:
            m.error_count += 1
        m.success_rate = (m.request_count - m.error_count) * 100.0 / m.request_count

    def record_items(self, *, scraped: int = 0, processed: int = 0) -> None:
        self._metrics.items_scraped += scraped
        self._metrics.items_processed += processed

    def metrics_snapshot(self) -> JobMetrics:
        return copy.deepcopy(self._metrics)

    async def checkpoint(self) -> None:
        if self._checkpoint is not None:
            await self._checkpoint()

    async def bounded(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await one unit of work (a request, a page) under the job's ``timeout_ms``."""
        limit = self.unit_timeout_seconds
        if limit is None:
            return await operation(*args, **kwargs)
        try:
            return await asyncio.wait_for(operation(*args, **kwargs), timeout=limit)
        except asyncio.TimeoutError as exc:
            if isinstance(exc, OperationTimeoutError):
                raise
            raise OperationTimeoutError(
                f"unit of work for job {self.job_id} exceeded {limit:.1f}s", job_id=self.job_id
            ) from exc


class JobRunner(Protocol):
    async def run(self, job: Job, context: ExecutionContext) -> None: ...


def _document_for(job: Job, index: int, path: str, intake_bucket: str | None) -> DocumentContent:
    filename = posixpath.basename(path)
    mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    source_bucket = None if path.startswith("gs://") else intake_bucket
    metadata = DocumentMetadata(
        document_id=f"{job.job_id}-{index:04d}",
        filename=filename,
        mime_type=mime_type,
        size_bytes=0,
        source_bucket=source_bucket,
    )
    return DocumentContent(metadata=metadata, source_path=path)


class DocumentJobRunner(JobRunner):
    """Process every blob listed in ``config.source.documents`` through the pipeline.

    Each document is bounded by the pipeline's per-stage breakers (OCR and NLP
    may take minutes), so ``options.timeout_ms`` is not applied here.
    """

    def __init__(
        self,
        pipeline: DocumentPipeline,
        *,
        intake_bucket: str | None = None,
        options: PipelineOptions | None = None,
    ) -> None:
        self._pipeline = pipeline
        self._intake_bucket = intake_bucket
        self._options = options

    async def run(self, job: Job, context: ExecutionContext) -> None:
        paths = job.config.source.documents
        if not paths:
            raise ValidationError(
                "document job lists no documents",
                field="source.documents",
                constraint="non_empty",
            )
        total = len(paths)
        for index, path in enumerate(paths):
            context.check_cancelled("EXTRACT")
            document = _document_for(job, index, path, self._intake_bucket)
            started = time.perf_counter()
            try:
                result = await self._pipeline.process_document(
                    document, cancel_token=context.cancel_token, options=self._options
                )
            except Exception:
                context.record_request((time.perf_counter() - started) * 1000, ok=False)
                raise
            context.record_request(result.processing_duration_ms)
            context.record_items(processed=1)
            context.report_progress(index + 1, total)
            await context.checkpoint()


class RoutingJobRunner(JobRunner):
    def __init__(self, runners: Mapping[SourceType, JobRunner]) -> None:
        self._runners = dict(runners)

    async def run(self, job: Job, context: ExecutionContext) -> None:
        source_type = job.config.source.type
        runner = self._runners.get(source_type)
        if runner is None:
            raise ValidationError(
                f"no runner registered for {source_type.value} sources",
                field="source.type",
                constraint="supported",
                value=source_type.value,
            )
        await runner.run(job, context)


__all__ = [
    "DocumentJobRunner",
    "ExecutionContext",
    "JobRunner",
    "ProgressTracker",
    "RoutingJobRunner",
]
