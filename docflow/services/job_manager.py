"""Job lifecycle manager: the only component that changes a job's status.

Every status change goes through `JobLifecycleManager._transition`, which
validates the move against ``ALLOWED_TRANSITIONS`` before writing and passes
the last observed version to the store. An execution is tracked in an
in-process registry guarded by an ``asyncio.Lock`` so a job id has at most one
live execution per process; the store's version check covers the
multi-process case.

Attempts run through a shared circuit breaker that counts failures but sets no
deadline of its own: ``options.timeout_ms`` bounds each unit of work through
`ExecutionContext.bounded`, and document jobs are bounded by the pipeline
stage breakers. Retryable failures move the job to RETRYING and re-run it
after an exponential backoff, never shorter than the time left before an open
breaker admits a trial call, until ``options.retry_attempts`` attempts have
been made. ``retry_count`` accumulates across executions and is capped by
``JobManagerConfig.max_total_retries``.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from docflow.config import JobManagerConfig
from docflow.errors import (
    AlreadyRunningError,
    InvalidTransitionError,
    NotFoundError,
    ProcessingCancelledError,
    RetryLimitExceededError,
    ValidationError,
    VersionConflictError,
    categorize,
    error_code,
    is_retryable,
    public_error,
)
from docflow.logging_setup import log_context
from docflow.models.job import (
    TERMINAL_STATUSES,
    ExecutionDetails,
    Job,
    JobConfig,
    JobError,
    JobFilter,
    JobMetrics,
    JobStatus,
    new_job,
    parse_job_config,
    validate_transition,
)
from docflow.services.circuit_breaker import CircuitBreaker
from docflow.services.document_pipeline import CancellationToken
from docflow.services.interfaces import JobStore, MetricsClient
from docflow.services.job_runner import ExecutionContext, JobRunner, ProgressTracker
from docflow.services.metrics import NullMetrics
from docflow.utils.logging_utils import structured_log
from docflow.utils.redact import redact_mapping

_LOG = logging.getLogger("docflow.job_manager")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _counts_against_breaker(exc: BaseException) -> bool:
    return not isinstance(exc, (ValidationError, NotFoundError, ProcessingCancelledError))


def _job_error(exc: BaseException, attempt: int) -> JobError:
    return JobError(
        code=error_code(exc),
        category=categorize(exc),
        message=public_error(exc)["message"],
        retryable=is_retryable(exc),
        stage=getattr(exc, "stage", None),
        context=redact_mapping(
            {"error_type": exc.__class__.__name__, "detail": str(exc), "attempt": attempt}
        ),
    )


@dataclass(slots=True)
class _ExecutionHandle:
    job: Job
    token: CancellationToken = field(default_factory=CancellationToken)
    tracker: ProgressTracker = field(default_factory=ProgressTracker)
    metrics: JobMetrics = field(default_factory=JobMetrics)
    details: ExecutionDetails = field(default_factory=lambda: ExecutionDetails(start_time=_now()))
    stop_requested: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class JobLifecycleManager:
    def __init__(
        self,
        *,
        store: JobStore,
        runner: JobRunner,
        config: JobManagerConfig | None = None,
        metrics: MetricsClient | None = None,
        breaker: CircuitBreaker | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or JobManagerConfig()
        self._store = store
        self._runner = runner
        self._metrics = metrics or NullMetrics()
        self.breaker = breaker or CircuitBreaker(
            "job_execution",
            config=self.config.breaker,
            metrics=self._metrics,
            failure_predicate=_counts_against_breaker,
        )
        self._sleep = sleep
        self._active: dict[str, _ExecutionHandle] = {}
        self._registry_lock = asyncio.Lock()

    @property
    def active_count(self) -> int:
        return len(self._active)

    def is_active(self, job_id: str) -> bool:
        return job_id in self._active

    async def create_job(
        self,
        config: JobConfig | Mapping[str, Any],
        *,
        initial_status: JobStatus = JobStatus.PENDING,
    ) -> Job:
        job = new_job(parse_job_config(config), status=initial_status)
        return await self._store.create(job)

    async def get_job(self, job_id: str) -> Job:
        return await self._store.get(job_id)

    async def list_jobs(self, job_filter: JobFilter | None = None) -> list[Job]:
        return await self._store.list(job_filter)

    async def execute_job(self, job_id: str) -> Job:
        """Run ``job_id`` to a terminal or FAILED state and return the stored job.

        Raises the final error when the job ends FAILED. A job stopped through
        `stop_job` returns normally in CANCELLED.
        """
        async with self._registry_lock:
            if job_id in self._active:
                raise AlreadyRunningError(f"job {job_id} is already executing", job_id=job_id)
            job = await self._store.get(job_id)
            if job.status is JobStatus.RUNNING:
                raise AlreadyRunningError(f"job {job_id} is RUNNING in the store", job_id=job_id)
            if job.status in TERMINAL_STATUSES:
                raise InvalidTransitionError(job.status.value, JobStatus.RUNNING.value)
            handle = _ExecutionHandle(job=job)
            self._active[job_id] = handle
        self._metrics.record_metric("active_executions", len(self._active), stage="job")

        try:
            with log_context(job_id=job_id):
                return await self._execute(handle)
        finally:
            async with self._registry_lock:
                self._active.pop(job_id, None)
            handle.finished.set()
            self._metrics.record_metric("active_executions", len(self._active), stage="job")

    async def _execute(self, handle: _ExecutionHandle) -> Job:
        job_id = handle.job.job_id
        options = handle.job.config.options
        budget = options.max_attempts
        context = ExecutionContext(
            job_id,
            cancel_token=handle.token,
            tracker=handle.tracker,
            metrics=handle.metrics,
            checkpoint=lambda: self._checkpoint(handle),
            unit_timeout_seconds=options.timeout_ms / 1000.0,
        )

        if handle.job.status is JobStatus.FAILED:
            if handle.job.retry_count >= self.config.max_total_retries:
                raise await self._reject_at_retry_limit(handle)
            await self._transition(handle, JobStatus.RETRYING, retry_count=handle.job.retry_count + 1)

        attempt = 0
        while True:
            if handle.token.cancelled:
                # stopped during backoff; RETRYING only leaves through RUNNING
                await self._transition(handle, JobStatus.RUNNING)
                return await self._transition(handle, JobStatus.CANCELLED)
            attempt += 1
            handle.details.attempts = attempt
            await self._transition(handle, JobStatus.RUNNING)
            if handle.token.cancelled:
                return await self._transition(handle, JobStatus.CANCELLED)
            try:
                await self.breaker.call(self._runner.run, handle.job, context, bounded=False)
            except ProcessingCancelledError:
                return await self._transition(handle, JobStatus.CANCELLED)
            except Exception as exc:
                if handle.token.cancelled:
                    return await self._transition(handle, JobStatus.CANCELLED)
                self._record_error(handle, exc, attempt)
                if not is_retryable(exc) or attempt >= budget:
                    await self._fail(handle, exc, attempt)
                    raise
                if handle.job.retry_count >= self.config.max_total_retries:
                    await self._fail(handle, exc, attempt)
                    raise self._retry_limit(handle) from exc
                await self._transition(handle, JobStatus.RETRYING, retry_count=handle.job.retry_count + 1)
                delay = max(options.backoff_seconds(attempt), self.breaker.retry_after())
                structured_log(
                    _LOG,
                    logging.WARNING,
                    "job_retry_scheduled",
                    job_id=job_id,
                    attempt=attempt,
                    delay_seconds=delay,
                    retry_count=handle.job.retry_count,
                    error_code=error_code(exc),
                )
                await self._backoff(handle, delay)
                continue
            if handle.token.cancelled:
                return await self._transition(handle, JobStatus.CANCELLED)
            handle.tracker.complete()
            handle.details.error = None
            return await self._transition(handle, JobStatus.COMPLETED)

    async def _backoff(self, handle: _ExecutionHandle, delay: float) -> None:
        sleeper = asyncio.ensure_future(self._sleep(delay))
        stopper = asyncio.ensure_future(handle.stop_requested.wait())
        done, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            task.result()

    def _retry_limit(self, handle: _ExecutionHandle) -> RetryLimitExceededError:
        job = handle.job
        structured_log(
            _LOG,
            logging.ERROR,
            "job_retry_limit_reached",
            job_id=job.job_id,
            retry_count=job.retry_count,
        )
        return RetryLimitExceededError(
            f"job {job.job_id} reached the retry ceiling of {self.config.max_total_retries}",
            job_id=job.job_id,
            retry_count=job.retry_count,
        )

    async def _reject_at_retry_limit(self, handle: _ExecutionHandle) -> RetryLimitExceededError:
        """Record the ceiling error on the stored FAILED job and return it for raising."""
        error = self._retry_limit(handle)
        job = handle.job
        details = copy.deepcopy(job.execution_details)
        details.error = _job_error(error, details.attempts)
        details.last_checkpoint = _now()
        handle.details = details
        handle.job = await self._store.update_status(job.job_id, JobStatus.FAILED, details, job.version)
        return error

    def _record_error(self, handle: _ExecutionHandle, exc: BaseException, attempt: int) -> None:
        handle.details.error = _job_error(exc, attempt)

    async def _fail(self, handle: _ExecutionHandle, exc: BaseException, attempt: int) -> None:
        structured_log(
            _LOG,
            logging.ERROR,
            "job_execution_failed",
            job_id=handle.job.job_id,
            stage=getattr(exc, "stage", None),
            attempts=attempt,
            error_code=error_code(exc),
            error_type=exc.__class__.__name__,
        )
        await self._transition(handle, JobStatus.FAILED)

    async def _checkpoint(self, handle: _ExecutionHandle) -> None:
        await self._transition(handle, handle.job.status)

    async def _transition(
        self,
        handle: _ExecutionHandle,
        status: JobStatus,
        *,
        retry_count: int | None = None,
    ) -> Job:
        job = handle.job
        if status != job.status:
            validate_transition(job.status, status)
        now = _now()
        details = handle.details
        details.last_checkpoint = now
        details.progress = handle.tracker.value
        details.metrics = copy.deepcopy(handle.metrics)
        if details.attempts:
            details.metrics.retry_rate = (details.attempts - 1) * 100.0 / details.attempts
        if details.start_time is not None:
            details.duration_ms = int((now - details.start_time).total_seconds() * 1000)
        if status in TERMINAL_STATUSES or status is JobStatus.FAILED:
            details.end_time = now
        try:
            updated = await self._store.update_status(
                job.job_id, status, copy.deepcopy(details), job.version, retry_count=retry_count
            )
        except VersionConflictError as exc:
            structured_log(
                _LOG,
                logging.ERROR,
                "job_version_conflict",
                job_id=job.job_id,
                status=status.value,
                version=job.version,
                error_code=exc.code,
            )
            raise
        handle.job = updated
        if status != job.status:
            self._metrics.increment(f"job_{status.value.lower()}", stage="job")
        return updated

    async def stop_job(self, job_id: str) -> Job:
        """Request cooperative cancellation and wait for the execution to observe it."""
        async with self._registry_lock:
            handle = self._active.get(job_id)
        if handle is None:
            raise NotFoundError(f"job {job_id} has no active execution", job_id=job_id)
        handle.token.cancel("stop requested")
        handle.stop_requested.set()
        structured_log(_LOG, logging.INFO, "job_stop_requested", job_id=job_id)
        await handle.finished.wait()
        return await self._store.get(job_id)

    async def cancel_job(self, job_id: str) -> Job:
        """Cancel a job whether or not it is executing in this process."""
        if job_id in self._active:
            return await self.stop_job(job_id)
        job = await self._store.get(job_id)
        validate_transition(job.status, JobStatus.CANCELLED)
        details = copy.deepcopy(job.execution_details)
        details.end_time = _now()
        updated = await self._store.update_status(job_id, JobStatus.CANCELLED, details, job.version)
        self._metrics.increment("job_cancelled", stage="job")
        return updated

    async def get_job_status(self, job_id: str) -> ExecutionDetails:
        handle = self._active.get(job_id)
        if handle is not None:
            details = copy.deepcopy(handle.details)
            details.metrics = copy.deepcopy(handle.metrics)
            details.progress = handle.tracker.value
            if details.start_time is not None:
                details.duration_ms = int((_now() - details.start_time).total_seconds() * 1000)
            return details
        job = await self._store.get(job_id)
        return job.execution_details

    async def health_check(self) -> dict[str, Any]:
        store_ok = True
        try:
            await self._store.list(JobFilter(limit=1))
        except Exception:  # pylint: disable=broad-except
            _LOG.exception("job_store_health_check_failed")
            store_ok = False
        breaker = self.breaker.snapshot()
        healthy = store_ok and breaker["state"] != "OPEN"
        return {
            "status": "ok" if healthy else "degraded",
            "store": "ok" if store_ok else "unavailable",
            "breaker": breaker,
            "active_executions": len(self._active),
        }


__all__ = ["JobLifecycleManager"]
