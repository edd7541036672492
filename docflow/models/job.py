"""Job records, configuration and the lifecycle transition table.

``Job`` is the persisted unit of schedulable, retryable work. Its ``config``
is an immutable pydantic model validated when the job is created; the mutable
parts (status, execution details, counters) live on the dataclass and are only
changed through the job manager's transition function.
"""
from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from docflow.errors import ErrorCategory, InvalidTransitionError, ValidationError
from docflow.utils.redact import redact_value


class JobStatus(str, Enum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    RETRYING = "RETRYING"


ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RETRYING, JobStatus.CANCELLED}
    ),
    JobStatus.RETRYING: frozenset({JobStatus.RUNNING, JobStatus.FAILED}),
    JobStatus.FAILED: frozenset({JobStatus.RETRYING}),
    JobStatus.SCHEDULED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES: frozenset[JobStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(current: JobStatus, new: JobStatus) -> None:
    if not can_transition(current, new):
        raise InvalidTransitionError(current.value, new.value)


class SourceType(str, Enum):
    WEBSITE = "WEBSITE"
    API = "API"
    DOCUMENT = "DOCUMENT"


class AuthType(str, Enum):
    NONE = "NONE"
    BASIC = "BASIC"
    TOKEN = "TOKEN"
    OAUTH = "OAUTH"


class _FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class AuthConfig(_FrozenModel):
    type: AuthType = AuthType.NONE
    credentials: Dict[str, str] = Field(default_factory=dict)


class SourceConfig(_FrozenModel):
    type: SourceType
    url: str | None = None
    documents: tuple[str, ...] = ()
    selectors: Dict[str, str] = Field(default_factory=dict)
    auth: AuthConfig = AuthConfig()


class ScheduleConfig(_FrozenModel):
    enabled: bool = False
    cron_expression: str | None = None
    timezone: str = "UTC"


class RateLimit(_FrozenModel):
    requests: int = Field(60, ge=1)
    period_seconds: float = Field(60.0, gt=0)


class JobOptions(_FrozenModel):
    retry_attempts: int = Field(3, ge=0, le=10)
    retry_delay_ms: int = Field(1000, ge=0)
    backoff_multiplier: float = Field(2.0, ge=1)
    max_delay_ms: int = Field(30_000, ge=0)
    timeout_ms: int = Field(30_000, gt=0, le=300_000)
    user_agent: str = "docflow/1.0"
    rate_limit: RateLimit | None = None
    max_pages: int = Field(1, ge=1, le=100)
    respect_robots: bool = True

    @property
    def max_attempts(self) -> int:
        return max(1, self.retry_attempts)

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before re-running after failed attempt number ``attempt`` (1-based)."""
        exponent = max(0, attempt - 1)
        delay_ms = self.retry_delay_ms * (self.backoff_multiplier ** exponent)
        return min(delay_ms, self.max_delay_ms) / 1000.0


class JobConfig(_FrozenModel):
    name: str = Field(min_length=1, max_length=200)
    source: SourceConfig
    schedule: ScheduleConfig = ScheduleConfig()
    options: JobOptions = JobOptions()
    metadata: Dict[str, str] = Field(default_factory=dict)


def parse_job_config(payload: JobConfig | Mapping[str, Any]) -> JobConfig:
    """Validate a raw job configuration, reporting the first failing field."""
    if isinstance(payload, JobConfig):
        return payload
    try:
        return JobConfig.model_validate(dict(payload))
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field_name = ".".join(str(part) for part in first.get("loc", ())) or "config"
        raise ValidationError(
            f"Invalid job configuration: {field_name}",
            field=field_name,
            constraint=first.get("type", "invalid"),
            value=redact_value(field_name, first.get("input")),
        ) from exc


@dataclass(slots=True)
class JobMetrics:
    request_count: int = 0
    bytes_processed: int = 0
    items_scraped: int = 0
    items_processed: int = 0
    error_count: int = 0
    avg_response_time_ms: float = 0.0
    success_rate: float = 100.0
    bandwidth_usage: int = 0
    retry_rate: float = 0.0


@dataclass(slots=True)
class JobError:
    code: str
    category: ErrorCategory
    message: str
    retryable: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    stage: str | None = None
    context: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionDetails:
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_ms: int = 0
    attempts: int = 0
    last_checkpoint: datetime | None = None
    progress: int = 0
    metrics: JobMetrics = field(default_factory=JobMetrics)
    error: JobError | None = None


@dataclass(slots=True)
class Job:
    job_id: str
    config: JobConfig
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    execution_details: ExecutionDetails = field(default_factory=ExecutionDetails)
    retry_count: int = 0
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobFilter:
    status: JobStatus | None = None
    source_type: SourceType | None = None
    name: str | None = None
    limit: int | None = None

    def matches(self, job: Job) -> bool:
        if self.status is not None and job.status != self.status:
            return False
        if self.source_type is not None and job.config.source.type != self.source_type:
            return False
        if self.name is not None and job.config.name != self.name:
            return False
        return True


def new_job(config: JobConfig, *, status: JobStatus = JobStatus.PENDING) -> Job:
    if status not in (JobStatus.PENDING, JobStatus.SCHEDULED):
        raise ValueError(f"jobs cannot be created in status {status.value}")
    return Job(job_id=uuid.uuid4().hex, config=config, status=status)


def clone_job(job: Job) -> Job:
    # config is frozen and shared; everything else is copied
    return Job(
        job_id=job.job_id,
        config=job.config,
        status=job.status,
        created_at=job.created_at,
        updated_at=job.updated_at,
        execution_details=copy.deepcopy(job.execution_details),
        retry_count=job.retry_count,
        version=job.version,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def execution_details_to_dict(details: ExecutionDetails) -> Dict[str, Any]:
    payload = asdict(details)
    payload["start_time"] = _iso(details.start_time)
    payload["end_time"] = _iso(details.end_time)
    payload["last_checkpoint"] = _iso(details.last_checkpoint)
    if details.error is not None:
        payload["error"]["category"] = details.error.category.value
        payload["error"]["timestamp"] = _iso(details.error.timestamp)
    return payload


def execution_details_from_dict(payload: Mapping[str, Any]) -> ExecutionDetails:
    error_payload = payload.get("error")
    error = None
    if error_payload:
        error = JobError(
            code=error_payload["code"],
            category=ErrorCategory(error_payload["category"]),
            message=error_payload["message"],
            retryable=bool(error_payload.get("retryable", False)),
            timestamp=_parse_dt(error_payload.get("timestamp")) or datetime.now(timezone.utc),
            stage=error_payload.get("stage"),
            context=dict(error_payload.get("context") or {}),
        )
    return ExecutionDetails(
        start_time=_parse_dt(payload.get("start_time")),
        end_time=_parse_dt(payload.get("end_time")),
        duration_ms=int(payload.get("duration_ms", 0)),
        attempts=int(payload.get("attempts", 0)),
        last_checkpoint=_parse_dt(payload.get("last_checkpoint")),
        progress=int(payload.get("progress", 0)),
        metrics=JobMetrics(**(payload.get("metrics") or {})),
        error=error,
    )


def job_to_dict(job: Job) -> Dict[str, Any]:
    return {
        "job_id": job.job_id,
        "config": job.config.model_dump(mode="json"),
        "status": job.status.value,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "execution_details": execution_details_to_dict(job.execution_details),
        "retry_count": job.retry_count,
        "version": job.version,
    }


def job_from_dict(payload: Mapping[str, Any]) -> Job:
    return Job(
        job_id=payload["job_id"],
        config=JobConfig.model_validate(payload["config"]),
        status=JobStatus(payload["status"]),
        created_at=_parse_dt(payload.get("created_at")) or datetime.now(timezone.utc),
        updated_at=_parse_dt(payload.get("updated_at")) or datetime.now(timezone.utc),
        execution_details=execution_details_from_dict(payload.get("execution_details") or {}),
        retry_count=int(payload.get("retry_count", 0)),
        version=int(payload.get("version", 1)),
    )


def job_public_view(job: Job) -> Dict[str, Any]:
    """Serialisable view for API responses; error context is omitted."""
    details = execution_details_to_dict(job.execution_details)
    if details.get("error"):
        details["error"] = {
            "code": details["error"]["code"],
            "message": details["error"]["message"],
        }
    return {
        "job_id": job.job_id,
        "name": job.config.name,
        "status": job.status.value,
        "version": job.version,
        "retry_count": job.retry_count,
        "created_at": _iso(job.created_at),
        "updated_at": _iso(job.updated_at),
        "execution_details": details,
    }


__all__ = [
    "ALLOWED_TRANSITIONS",
    "TERMINAL_STATUSES",
    "AuthConfig",
    "AuthType",
    "ExecutionDetails",
    "Job",
    "JobConfig",
    "JobError",
    "JobFilter",
    "JobMetrics",
    "JobOptions",
    "JobStatus",
    "RateLimit",
    "ScheduleConfig",
    "SourceConfig",
    "SourceType",
    "can_transition",
    "clone_job",
    "job_from_dict",
    "job_public_view",
    "job_to_dict",
    "new_job",
    "parse_job_config",
    "validate_transition",
]
