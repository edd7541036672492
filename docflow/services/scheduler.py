"""Cron scheduling on top of the job lifecycle manager.

Each `ScheduleEntry` points at the job that will run on the next fire. When a
fire finds that job already finished, a fresh SCHEDULED job is created from
the same configuration so recurring runs never re-open a terminal record.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from docflow.config import SchedulerConfig
from docflow.errors import NotFoundError, ValidationError
from docflow.models.job import Job, JobConfig, JobStatus, parse_job_config
from docflow.services.circuit_breaker import CircuitBreaker
from docflow.services.interfaces import MetricsClient
from docflow.services.job_manager import JobLifecycleManager
from docflow.services.metrics import NullMetrics
from docflow.utils.logging_utils import structured_log

_LOG = logging.getLogger("docflow.scheduler")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ScheduleEntry:
    schedule_id: str
    job_id: str
    name: str
    cron_expression: str
    timezone: str
    next_run: datetime
    created_at: datetime = field(default_factory=_now)
    last_run: datetime | None = None
    runs: int = 0


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(
            f"unknown timezone {name}",
            field="schedule.timezone",
            constraint="IANA zone name",
            value=name,
        ) from exc


def next_fire_time(cron_expression: str, tz_name: str, after: datetime) -> datetime:
    """Next fire strictly after ``after``, evaluated in ``tz_name`` and returned in UTC."""
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)
    local = after.astimezone(_zone(tz_name))
    fire = croniter(cron_expression, local).get_next(datetime)
    return fire.astimezone(timezone.utc)


class JobScheduler:
    def __init__(
        self,
        *,
        manager: JobLifecycleManager,
        config: SchedulerConfig | None = None,
        metrics: MetricsClient | None = None,
        clock: Callable[[], datetime] = _now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or SchedulerConfig()
        self._manager = manager
        self._metrics = metrics or NullMetrics()
        self._clock = clock
        self._sleep = sleep
        self.breaker = CircuitBreaker("scheduler", config=self.config.breaker, metrics=self._metrics)
        self._entries: dict[str, ScheduleEntry] = {}

    def _validate(self, config: JobConfig) -> None:
        schedule = config.schedule
        if not schedule.enabled:
            raise ValidationError(
                "schedule is not enabled for this job",
                field="schedule.enabled",
                constraint="true",
                value=False,
            )
        expression = schedule.cron_expression or ""
        if not croniter.is_valid(expression):
            raise ValidationError(
                "invalid cron expression",
                field="schedule.cron_expression",
                constraint="cron",
                value=expression,
            )
        _zone(schedule.timezone)

    async def schedule_job(self, config: JobConfig | Mapping[str, Any]) -> ScheduleEntry:
        job_config = parse_job_config(config)
        self._validate(job_config)
        job = await self.breaker.call(
            self._manager.create_job, job_config, initial_status=JobStatus.SCHEDULED
        )
        schedule = job_config.schedule
        entry = ScheduleEntry(
            schedule_id=job.job_id,
            job_id=job.job_id,
            name=job_config.name,
            cron_expression=schedule.cron_expression or "",
            timezone=schedule.timezone,
            next_run=next_fire_time(schedule.cron_expression or "", schedule.timezone, self._clock()),
        )
        self._entries[entry.schedule_id] = entry
        self._metrics.record_metric("scheduled_jobs", len(self._entries), stage="scheduler")
        structured_log(
            _LOG,
            logging.INFO,
            "job_scheduled",
            schedule_id=entry.schedule_id,
            job_id=job.job_id,
            next_run=entry.next_run.isoformat(),
        )
        return entry

    def _find(self, job_id: str) -> ScheduleEntry:
        entry = self._entries.get(job_id)
        if entry is not None:
            return entry
        for candidate in self._entries.values():
            if candidate.job_id == job_id:
                return candidate
        raise NotFoundError(f"no schedule for {job_id}", job_id=job_id)

    async def unschedule_job(self, job_id: str) -> ScheduleEntry:
        """Drop the schedule; a job that has not started yet is cancelled."""
        entry = self._find(job_id)
        del self._entries[entry.schedule_id]
        job = await self._manager.get_job(entry.job_id)
        if job.status is JobStatus.SCHEDULED:
            await self._manager.cancel_job(entry.job_id)
        self._metrics.record_metric("scheduled_jobs", len(self._entries), stage="scheduler")
        structured_log(
            _LOG,
            logging.INFO,
            "job_unscheduled",
            schedule_id=entry.schedule_id,
            job_id=entry.job_id,
            status=job.status.value,
        )
        return entry

    def list_scheduled_jobs(self) -> list[ScheduleEntry]:
        return sorted(self._entries.values(), key=lambda entry: entry.next_run)

    async def handle_scheduled_execution(self, job_id: str) -> Job:
        entry = self._find(job_id)
        job = await self._manager.get_job(entry.job_id)
        if job.is_terminal or job.status is JobStatus.FAILED:
            job = await self.breaker.call(
                self._manager.create_job, job.config, initial_status=JobStatus.SCHEDULED
            )
            entry.job_id = job.job_id
        entry.last_run = self._clock()
        entry.runs += 1
        structured_log(
            _LOG,
            logging.INFO,
            "scheduled_execution_started",
            schedule_id=entry.schedule_id,
            job_id=job.job_id,
        )
        return await self._manager.execute_job(job.job_id)

    async def run_due(self, now: datetime | None = None) -> list[Job]:
        current = now or self._clock()
        finished: list[Job] = []
        for entry in list(self._entries.values()):
            if entry.next_run > current:
                continue
            entry.next_run = next_fire_time(entry.cron_expression, entry.timezone, current)
            try:
                finished.append(await self.handle_scheduled_execution(entry.schedule_id))
            except Exception:  # pylint: disable=broad-except
                # the manager has already recorded the failure on the job
                _LOG.exception(
                    "scheduled_execution_failed",
                    extra={"schedule_id": entry.schedule_id, "job_id": entry.job_id},
                )
                self._metrics.increment("scheduled_execution_failed", stage="scheduler")
        return finished

    async def run_forever(self, *, ticks: int | None = None) -> None:
        tick = 0
        while ticks is None or tick < ticks:
            await self.run_due()
            tick += 1
            if ticks is None or tick < ticks:
                await self._sleep(self.config.poll_interval_seconds)


__all__ = ["JobScheduler", "ScheduleEntry", "next_fire_time"]
