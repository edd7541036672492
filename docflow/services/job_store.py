"""Job persistence with optimistic versioning.

Every accepted ``update_status`` call bumps ``Job.version`` by exactly one.
Callers pass the version they last observed; a mismatch raises
``VersionConflictError`` and leaves the record untouched. Transition rules are
checked inside the same critical section as the version check, so an illegal
request never reaches storage.

Backends:

* `InMemoryJobStore` for tests and single-process deployments.
* `GCSJobStore` storing one JSON object per job; writes use
  ``if_generation_match`` so concurrent processes cannot lose updates.
* `CachingJobStore` wrapping either with a short-lived read cache.
"""
from __future__ import annotations

import asyncio
import copy
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Dict

from google.api_core import exceptions as gexc
from google.cloud import storage

from docflow.config import AppConfig, get_config
from docflow.errors import DocflowError, NotFoundError, VersionConflictError
from docflow.models.job import (
    ExecutionDetails,
    Job,
    JobFilter,
    JobStatus,
    clone_job,
    job_from_dict,
    job_to_dict,
    validate_transition,
)
from docflow.services.interfaces import JobStore
from docflow.utils.ttl_cache import TTLCache

LOG = logging.getLogger("docflow.job_store")

MAX_WRITE_ATTEMPTS = 5


class DuplicateJobError(DocflowError):
    """Raised when a job id already exists in the store."""

    code = "DUPLICATE_JOB"
    public_message = "A job with this id already exists"

    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} already exists")
        self.job_id = job_id


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _apply_update(
    job: Job,
    status: JobStatus,
    execution_details: ExecutionDetails,
    expected_version: int,
    retry_count: int | None,
) -> JobStatus:
    """Mutate ``job`` in place after the version and transition checks pass."""
    if job.version != expected_version:
        raise VersionConflictError(job.job_id, expected_version, job.version)
    previous = job.status
    if status != previous:
        validate_transition(previous, status)
    elif job.is_terminal:
        validate_transition(previous, status)
    job.status = status
    job.execution_details = copy.deepcopy(execution_details)
    if retry_count is not None:
        job.retry_count = retry_count
    job.version += 1
    job.updated_at = _now()
    return previous


def _log_transition(job: Job, previous: JobStatus) -> None:
    LOG.info(
        "job_status_transition",
        extra={
            "job_id": job.job_id,
            "from_status": previous.value,
            "to_status": job.status.value,
            "version": job.version,
            "retry_count": job.retry_count,
        },
    )


class InMemoryJobStore(JobStore):
    """Thread-safe in-memory store used for tests and local development."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.RLock()

    async def create(self, job: Job) -> Job:
        with self._lock:
            if job.job_id in self._jobs:
                raise DuplicateJobError(job.job_id)
            self._jobs[job.job_id] = clone_job(job)
            LOG.info(
                "job_created",
                extra={"job_id": job.job_id, "status": job.status.value, "job_name": job.config.name},
            )
            return clone_job(job)

    async def get(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFoundError(f"job {job_id} not found", job_id=job_id)
            return clone_job(job)

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        execution_details: ExecutionDetails,
        expected_version: int,
        *,
        retry_count: int | None = None,
    ) -> Job:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                raise NotFoundError(f"job {job_id} not found", job_id=job_id)
            candidate = clone_job(current)
            previous = _apply_update(candidate, status, execution_details, expected_version, retry_count)
            self._jobs[job_id] = candidate
            _log_transition(candidate, previous)
            return clone_job(candidate)

    async def list(self, job_filter: JobFilter | None = None) -> list[Job]:
        with self._lock:
            jobs = [clone_job(job) for job in self._jobs.values()]
        return _filter_jobs(jobs, job_filter)


def _filter_jobs(jobs: list[Job], job_filter: JobFilter | None) -> list[Job]:
    if job_filter is not None:
        jobs = [job for job in jobs if job_filter.matches(job)]
    jobs.sort(key=lambda job: job.created_at)
    if job_filter is not None and job_filter.limit is not None:
        jobs = jobs[: job_filter.limit]
    return jobs


class GCSJobStore(JobStore):
    """GCS-backed job store with generation-match writes."""

    def __init__(
        self,
        bucket: str,
        prefix: str = "job-state",
        *,
        client: Any | None = None,
        kms_key_name: str | None = None,
    ) -> None:
        self._client = client or storage.Client()
        self._bucket_name = bucket
        self._bucket = self._client.bucket(bucket)
        self._prefix = prefix.rstrip("/")
        self._kms_key = kms_key_name

    async def create(self, job: Job) -> Job:
        return await asyncio.to_thread(self._create_sync, job)

    async def get(self, job_id: str) -> Job:
        return await asyncio.to_thread(self._get_sync, job_id)

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        execution_details: ExecutionDetails,
        expected_version: int,
        *,
        retry_count: int | None = None,
    ) -> Job:
        return await asyncio.to_thread(
            self._update_sync, job_id, status, execution_details, expected_version, retry_count
        )

    async def list(self, job_filter: JobFilter | None = None) -> list[Job]:
        return await asyncio.to_thread(self._list_sync, job_filter)

    def _create_sync(self, job: Job) -> Job:
        try:
            self._write_job(job, if_generation_match=0)
        except gexc.PreconditionFailed as exc:
            raise DuplicateJobError(job.job_id) from exc
        LOG.info(
            "job_created",
            extra={"job_id": job.job_id, "status": job.status.value, "job_name": job.config.name},
        )
        return clone_job(job)

    def _get_sync(self, job_id: str) -> Job:
        blob = self._job_blob(job_id)
        try:
            data = blob.download_as_bytes()
        except gexc.NotFound as exc:
            raise NotFoundError(f"job {job_id} not found", job_id=job_id) from exc
        return job_from_dict(json.loads(data.decode("utf-8")))

    def _update_sync(
        self,
        job_id: str,
        status: JobStatus,
        execution_details: ExecutionDetails,
        expected_version: int,
        retry_count: int | None,
    ) -> Job:
        for attempt in range(MAX_WRITE_ATTEMPTS):
            blob = self._job_blob(job_id)
            try:
                blob.reload()
                current_generation = blob.generation
                payload = json.loads(blob.download_as_bytes().decode("utf-8"))
            except gexc.NotFound as exc:
                raise NotFoundError(f"job {job_id} not found", job_id=job_id) from exc
            job = job_from_dict(payload)
            previous = _apply_update(job, status, execution_details, expected_version, retry_count)
            try:
                self._write_job(job, if_generation_match=current_generation)
            except gexc.PreconditionFailed:
                # object changed between read and write; the re-read decides
                # whether this is a real version conflict
                time.sleep(0.1 * (attempt + 1))
                continue
            _log_transition(job, previous)
            return job
        raise VersionConflictError(job_id, expected_version, -1)

    def _list_sync(self, job_filter: JobFilter | None) -> list[Job]:
        jobs: list[Job] = []
        for blob in self._client.list_blobs(self._bucket_name, prefix=f"{self._prefix}/jobs/"):
            payload = json.loads(blob.download_as_bytes().decode("utf-8"))
            jobs.append(job_from_dict(payload))
        return _filter_jobs(jobs, job_filter)

    def _job_blob(self, job_id: str):
        path = f"{self._prefix}/jobs/{job_id}.json"
        blob = self._bucket.blob(path)
        if self._kms_key:
            setattr(blob, "kms_key_name", self._kms_key)
        return blob

    def _write_job(self, job: Job, *, if_generation_match: int | None) -> None:
        blob = self._job_blob(job.job_id)
        payload = json.dumps(job_to_dict(job), separators=(",", ":"), sort_keys=True)
        kwargs: Dict[str, Any] = {"content_type": "application/json"}
        if if_generation_match is not None:
            kwargs["if_generation_match"] = if_generation_match
        blob.upload_from_string(payload, **kwargs)


class CachingJobStore(JobStore):
    """Read-through cache in front of another store.

    Writes go straight to the inner store and refresh the cached copy; a
    version conflict evicts the entry so the caller's reload sees fresh data.
    """

    def __init__(self, inner: JobStore, cache: TTLCache[str, Job]) -> None:
        self._inner = inner
        self._cache = cache

    async def create(self, job: Job) -> Job:
        created = await self._inner.create(job)
        self._cache.set(created.job_id, clone_job(created))
        return created

    async def get(self, job_id: str) -> Job:
        cached = self._cache.get(job_id)
        if cached is not None:
            return clone_job(cached)
        job = await self._inner.get(job_id)
        self._cache.set(job_id, clone_job(job))
        return job

    async def update_status(
        self,
        job_id: str,
        status: JobStatus,
        execution_details: ExecutionDetails,
        expected_version: int,
        *,
        retry_count: int | None = None,
    ) -> Job:
        try:
            updated = await self._inner.update_status(
                job_id, status, execution_details, expected_version, retry_count=retry_count
            )
        except (VersionConflictError, NotFoundError):
            self._cache.invalidate(job_id)
            raise
        self._cache.set(job_id, clone_job(updated))
        return updated

    async def list(self, job_filter: JobFilter | None = None) -> list[Job]:
        return await self._inner.list(job_filter)


def create_job_store_from_env(
    config: AppConfig | None = None,
    *,
    client: Any | None = None,
) -> JobStore:
    """Instantiate the configured backend wrapped in the read cache."""

    cfg = config or get_config()
    backend = (cfg.job_state_backend or "memory").strip().lower()
    inner: JobStore
    if backend == "gcs":
        if not cfg.job_state_bucket:
            raise RuntimeError("JOB_STATE_BUCKET required when JOB_STATE_BACKEND=gcs")
        inner = GCSJobStore(bucket=cfg.job_state_bucket, prefix=cfg.job_state_prefix, client=client)
    elif backend == "memory":
        inner = InMemoryJobStore()
    else:
        raise RuntimeError(f"Unsupported JOB_STATE_BACKEND '{cfg.job_state_backend}'")
    LOG.info("job_store_backend", extra={"backend": backend})
    cache: TTLCache[str, Job] = TTLCache(
        ttl_seconds=cfg.job_cache_ttl_seconds,
        max_entries=cfg.job_cache_max_entries,
    )
    return CachingJobStore(inner, cache)


__all__ = [
    "CachingJobStore",
    "DuplicateJobError",
    "GCSJobStore",
    "InMemoryJobStore",
    "create_job_store_from_env",
]
