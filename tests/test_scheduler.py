from datetime import datetime, timezone

import pytest

from docflow.errors import NetworkError, NotFoundError, ValidationError
from docflow.models.job import JobStatus
from docflow.services.job_manager import JobLifecycleManager
from docflow.services.job_store import InMemoryJobStore
from docflow.services.scheduler import JobScheduler, next_fire_time
from tests.stubs.metrics_stub import RecordingMetrics


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _CountingRunner:
    def __init__(self, fail: bool = False) -> None:
        self.job_ids: list[str] = []
        self.fail = fail

    async def run(self, job, context):
        self.job_ids.append(job.job_id)
        if self.fail:
            raise NetworkError("target offline")


def _scheduled_config(job_config_factory, cron="*/5 * * * *", tz="UTC", enabled=True):
    return job_config_factory(
        schedule={"enabled": enabled, "cron_expression": cron, "timezone": tz},
        options={"retry_attempts": 1},
    )


@pytest.fixture
def scheduler_setup(no_sleep):
    def _make(runner=None):
        runner = runner or _CountingRunner()
        manager = JobLifecycleManager(
            store=InMemoryJobStore(),
            runner=runner,
            sleep=no_sleep,
        )
        clock = _Clock(datetime(2026, 1, 1, 0, 1, tzinfo=timezone.utc))
        metrics = RecordingMetrics()
        scheduler = JobScheduler(manager=manager, metrics=metrics, clock=clock, sleep=no_sleep)
        return scheduler, manager, runner, clock, metrics

    return _make


def test_next_fire_time_respects_timezone():
    after = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
    fire = next_fire_time("0 9 * * *", "America/New_York", after)
    assert fire == datetime(2026, 1, 15, 14, 0, tzinfo=timezone.utc)
    naive = next_fire_time("*/10 * * * *", "UTC", datetime(2026, 1, 15, 12, 3))
    assert naive == datetime(2026, 1, 15, 12, 10, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_schedule_job_creates_scheduled_job(job_config_factory, scheduler_setup):
    scheduler, manager, _, _, metrics = scheduler_setup()
    entry = await scheduler.schedule_job(_scheduled_config(job_config_factory))

    job = await manager.get_job(entry.job_id)
    assert job.status is JobStatus.SCHEDULED
    assert entry.next_run == datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)
    assert scheduler.list_scheduled_jobs() == [entry]
    assert metrics.values["scheduled_jobs"] == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides, field",
    [
        ({"enabled": False}, "schedule.enabled"),
        ({"cron": "every five minutes"}, "schedule.cron_expression"),
        ({"tz": "Mars/Olympus_Mons"}, "schedule.timezone"),
    ],
)
async def test_invalid_schedules_are_rejected(job_config_factory, scheduler_setup, overrides, field):
    scheduler, manager, _, _, _ = scheduler_setup()
    with pytest.raises(ValidationError) as excinfo:
        await scheduler.schedule_job(_scheduled_config(job_config_factory, **overrides))
    assert excinfo.value.field == field
    assert await manager.list_jobs() == []


@pytest.mark.asyncio
async def test_run_due_executes_and_recreates_finished_jobs(job_config_factory, scheduler_setup):
    scheduler, manager, runner, clock, _ = scheduler_setup()
    entry = await scheduler.schedule_job(_scheduled_config(job_config_factory))
    first_job_id = entry.job_id

    clock.now = datetime(2026, 1, 1, 0, 4, tzinfo=timezone.utc)
    assert await scheduler.run_due() == []

    clock.now = datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)
    (finished,) = await scheduler.run_due()
    assert finished.job_id == first_job_id
    assert finished.status is JobStatus.COMPLETED
    assert entry.next_run == datetime(2026, 1, 1, 0, 10, tzinfo=timezone.utc)
    assert entry.runs == 1

    clock.now = datetime(2026, 1, 1, 0, 10, tzinfo=timezone.utc)
    (second,) = await scheduler.run_due()
    assert second.job_id != first_job_id
    assert entry.job_id == second.job_id
    assert entry.schedule_id == first_job_id
    assert runner.job_ids == [first_job_id, second.job_id]


@pytest.mark.asyncio
async def test_failed_scheduled_run_is_logged_and_schedule_survives(
    job_config_factory, scheduler_setup, caplog
):
    scheduler, manager, _, clock, metrics = scheduler_setup(_CountingRunner(fail=True))
    entry = await scheduler.schedule_job(_scheduled_config(job_config_factory))

    clock.now = datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)
    with caplog.at_level("ERROR", logger="docflow.scheduler"):
        assert await scheduler.run_due() == []

    assert (await manager.get_job(entry.job_id)).status is JobStatus.FAILED
    assert metrics.counters["scheduled_execution_failed"] == 1
    assert any(record.message == "scheduled_execution_failed" for record in caplog.records)
    assert scheduler.list_scheduled_jobs() == [entry]


@pytest.mark.asyncio
async def test_unschedule_cancels_job_that_never_ran(job_config_factory, scheduler_setup):
    scheduler, manager, _, _, _ = scheduler_setup()
    entry = await scheduler.schedule_job(_scheduled_config(job_config_factory))

    removed = await scheduler.unschedule_job(entry.job_id)
    assert removed is entry
    assert scheduler.list_scheduled_jobs() == []
    assert (await manager.get_job(entry.job_id)).status is JobStatus.CANCELLED
    with pytest.raises(NotFoundError):
        await scheduler.unschedule_job(entry.job_id)


@pytest.mark.asyncio
async def test_run_forever_polls_for_given_ticks(job_config_factory, scheduler_setup, no_sleep):
    scheduler, _, runner, clock, _ = scheduler_setup()
    await scheduler.schedule_job(_scheduled_config(job_config_factory))
    clock.now = datetime(2026, 1, 1, 0, 5, tzinfo=timezone.utc)

    await scheduler.run_forever(ticks=3)

    assert len(runner.job_ids) == 1
    assert no_sleep.delays == [1.0, 1.0]
