"""
Tests for the Schedule Registry.

============================================================
PURPOSE
============================================================
- Timer arming, firing and re-arming
- Enable/disable and manual triggers
- Cancellation of pending jobs
- Stats and persistence across restarts

============================================================
"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

from core.exceptions import (
    ConfigNotFoundError,
    ConfigurationError,
    JobNotFoundError,
    ScheduleError,
)
from scheduled_exports.delivery import DeliveryRouter
from scheduled_exports.executor import JobExecutor
from scheduled_exports.models import (
    JobStatus,
    JobTrigger,
    RecurrenceKind,
    RecurrenceSpec,
    ScheduledExportJob,
)
from scheduled_exports.registry import ScheduleRegistry
from scheduled_exports.store import InMemoryScheduleStore


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


DAILY_NINE = RecurrenceSpec(kind=RecurrenceKind.DAILY, time_of_day="09:00")


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def store():
    return InMemoryScheduleStore()


@pytest.fixture
def make_registry(export_service, clock, store):
    """Factory for registries sharing the test's store and clock."""

    def make(sleep=None, max_retries: int = 3) -> ScheduleRegistry:
        executor = JobExecutor(
            service=export_service,
            delivery=DeliveryRouter(clock=clock),
            clock=clock,
            sleep=sleep or AsyncMock(),
        )
        return ScheduleRegistry(
            executor=executor,
            store=store,
            clock=clock,
            max_retries=max_retries,
        )

    return make


# ============================================================
# TIMERS
# ============================================================

class TestTimers:
    """Tests for arming and firing."""

    @pytest.mark.asyncio
    async def test_create_arms_timer(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)

        config = await registry.create_config("Daily products", export_spec, DAILY_NINE)

        assert config.next_run == utc(2025, 1, 6, 9, 0)
        assert registry.timers == {config.config_id: utc(2025, 1, 6, 9, 0)}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_fires_when_due_and_rearms(self, make_registry, export_spec, export_service, clock):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily products", export_spec, DAILY_NINE)

        clock.set_time(utc(2025, 1, 6, 8, 30))
        assert await registry.run_due() == []

        clock.set_time(utc(2025, 1, 6, 9, 0))
        started = await registry.run_due()
        assert len(started) == 1

        job = await registry.wait_for_job(started[0])
        assert job.status == JobStatus.COMPLETED
        assert job.trigger == JobTrigger.SCHEDULED
        export_service.export_data.assert_awaited_once_with(export_spec)

        assert config.last_run == utc(2025, 1, 6, 9, 0)
        assert config.next_run == utc(2025, 1, 7, 9, 0)
        assert registry.timers == {config.config_id: utc(2025, 1, 7, 9, 0)}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_once_does_not_rearm(self, make_registry, export_spec, clock):
        registry = make_registry()
        await registry.start(run_loop=False)
        schedule = RecurrenceSpec(kind=RecurrenceKind.ONCE, start_date=utc(2025, 1, 6, 12, 0))
        config = await registry.create_config("One-off", export_spec, schedule)

        clock.set_time(utc(2025, 1, 6, 12, 0))
        started = await registry.run_due()
        await registry.wait_for_job(started[0])

        assert config.next_run is None
        assert registry.timers == {}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_past_end_date_is_not_armed(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        schedule = RecurrenceSpec(
            kind=RecurrenceKind.DAILY,
            time_of_day="09:00",
            start_date=utc(2024, 12, 1),
            end_date=utc(2025, 1, 1),
        )

        config = await registry.create_config("Expired", export_spec, schedule)

        assert config.next_run is None
        assert registry.timers == {}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_naive_end_date_is_taken_as_utc(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        schedule = RecurrenceSpec(kind=RecurrenceKind.DAILY, time_of_day="09:00", end_date=datetime(2025, 3, 1))

        config = await registry.create_config("Until March", export_spec, schedule)

        assert config.next_run == utc(2025, 1, 6, 9, 0)
        assert registry.timers == {config.config_id: utc(2025, 1, 6, 9, 0)}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_naive_past_end_date_is_not_armed(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        schedule = RecurrenceSpec(kind=RecurrenceKind.DAILY, time_of_day="09:00", end_date=datetime(2025, 1, 1))

        config = await registry.create_config("Expired", export_spec, schedule)

        assert config.next_run is None
        assert registry.timers == {}
        await registry.stop()


# ============================================================
# ENABLE / DISABLE / TRIGGER
# ============================================================

class TestEnableDisable:
    """Tests for enable/disable and manual triggers."""

    @pytest.mark.asyncio
    async def test_disable_clears_timer_manual_trigger_still_runs(self, make_registry, export_spec, export_service):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Weekly", export_spec, RecurrenceSpec(
            kind=RecurrenceKind.WEEKLY, day_of_week=1, time_of_day="09:00",
        ))

        await registry.set_enabled(config.config_id, False)
        assert registry.timers == {}
        assert config.next_run is None

        job_id = await registry.trigger_export(config.config_id)
        job = await registry.wait_for_job(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.trigger == JobTrigger.MANUAL
        assert export_service.export_data.await_count == 1
        assert registry.timers == {}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_reenable_rearms(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE, enabled=False)
        assert registry.timers == {}

        await registry.set_enabled(config.config_id, True)

        assert registry.timers == {config.config_id: utc(2025, 1, 6, 9, 0)}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_disable_cancels_job_waiting_for_retry(
        self, make_registry, export_spec, export_service, make_export_result
    ):
        sleeping = asyncio.Event()
        gate = asyncio.Event()

        async def slow_sleep(delay):
            sleeping.set()
            await gate.wait()

        export_service.export_data = AsyncMock(return_value=make_export_result(success=False))
        registry = make_registry(sleep=slow_sleep)
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        job_id = await registry.trigger_export(config.config_id)
        await sleeping.wait()
        assert registry.get_job(job_id).status == JobStatus.PENDING

        await registry.set_enabled(config.config_id, False)
        gate.set()
        job = await registry.wait_for_job(job_id)

        assert job.status == JobStatus.CANCELLED
        assert export_service.export_data.await_count == 1
        await registry.stop()


# ============================================================
# JOBS
# ============================================================

class TestJobs:
    """Tests for job cancellation, lookup and subscriptions."""

    @pytest.mark.asyncio
    async def test_cancel_pending_job_once(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        job_id = await registry.trigger_export(config.config_id)

        assert await registry.cancel_job(job_id) is True
        assert await registry.cancel_job(job_id) is False

        job = await registry.wait_for_job(job_id)
        assert job.status == JobStatus.CANCELLED
        await registry.stop()

    @pytest.mark.asyncio
    async def test_cancel_unknown_job(self, make_registry):
        registry = make_registry()
        with pytest.raises(JobNotFoundError):
            await registry.cancel_job("job_missing")

    @pytest.mark.asyncio
    async def test_subscribe_sees_each_step(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)
        statuses = []

        job_id = await registry.trigger_export(config.config_id)
        registry.subscribe(job_id, lambda job: statuses.append(job.status))
        await registry.wait_for_job(job_id)

        assert statuses == [JobStatus.RUNNING, JobStatus.COMPLETED]
        await registry.stop()

    @pytest.mark.asyncio
    async def test_job_listings(self, make_registry, export_spec, clock):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        first = await registry.trigger_export(config.config_id)
        await registry.wait_for_job(first)
        clock.advance(60)
        second = await registry.trigger_export(config.config_id)
        await registry.wait_for_job(second)

        assert [j.job_id for j in registry.get_config_jobs(config.config_id)] == [second, first]
        assert [j.job_id for j in registry.get_recent_jobs(limit=1)] == [second]
        await registry.stop()

    @pytest.mark.asyncio
    async def test_stats(self, make_registry, export_spec, export_service, make_export_result, clock):
        export_service.export_data = AsyncMock(side_effect=[
            make_export_result(success=False),
            make_export_result(),
        ])
        registry = make_registry(max_retries=0)
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        for _ in range(2):
            await registry.wait_for_job(await registry.trigger_export(config.config_id))

        stats = registry.get_config_stats(config.config_id)
        assert stats.total_jobs == 2
        assert stats.completed_jobs == 1
        assert stats.failed_jobs == 1
        assert stats.average_execution_seconds == 0.0
        assert stats.last_successful_run == clock.now()
        assert stats.next_scheduled_run == utc(2025, 1, 6, 9, 0)
        await registry.stop()


# ============================================================
# CONFIG CHANGES
# ============================================================

class TestConfigChanges:
    """Tests for config validation, updates and deletes."""

    @pytest.mark.asyncio
    async def test_invalid_schedule_rejected(self, make_registry, export_spec):
        registry = make_registry()
        with pytest.raises(ConfigurationError) as exc_info:
            await registry.create_config("Bad", export_spec, RecurrenceSpec(kind=RecurrenceKind.WEEKLY))
        assert exc_info.value.context["errors"]

    @pytest.mark.asyncio
    async def test_update_schedule_rebuilds_timer(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        await registry.update_config(
            config.config_id,
            schedule=RecurrenceSpec(kind=RecurrenceKind.CUSTOM, interval_minutes=30),
        )

        assert registry.timers == {config.config_id: utc(2025, 1, 6, 8, 30)}
        await registry.stop()

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, make_registry, export_spec):
        registry = make_registry()
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        with pytest.raises(ScheduleError):
            await registry.update_config(config.config_id, config_id="other")

    @pytest.mark.asyncio
    async def test_update_rejects_invalid_schedule(self, make_registry, export_spec):
        registry = make_registry()
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        with pytest.raises(ConfigurationError):
            await registry.update_config(
                config.config_id,
                schedule=RecurrenceSpec(kind=RecurrenceKind.MONTHLY, day_of_month=40),
            )
        assert config.schedule is DAILY_NINE

    @pytest.mark.asyncio
    async def test_delete(self, make_registry, export_spec):
        registry = make_registry()
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)

        await registry.delete_config(config.config_id)

        assert registry.get_config(config.config_id) is None
        assert registry.timers == {}
        with pytest.raises(ConfigNotFoundError):
            await registry.delete_config(config.config_id)
        await registry.stop()


# ============================================================
# PERSISTENCE
# ============================================================

class TestRestart:
    """Tests for state surviving a restart."""

    @pytest.mark.asyncio
    async def test_configs_survive_restart(self, make_registry, export_spec, store):
        first = make_registry()
        await first.start(run_loop=False)
        config = await first.create_config("Daily", export_spec, DAILY_NINE)
        await first.stop()

        second = make_registry()
        await second.start(run_loop=False)

        restored = second.get_config(config.config_id)
        assert restored.name == "Daily"
        assert restored.export.entity_type == "products"
        assert second.timers == {config.config_id: utc(2025, 1, 6, 9, 0)}
        await second.stop()

    @pytest.mark.asyncio
    async def test_missed_run_is_recomputed(self, make_registry, export_spec, clock):
        first = make_registry()
        await first.start(run_loop=False)
        config = await first.create_config("Daily", export_spec, DAILY_NINE)
        await first.stop()

        clock.set_time(utc(2025, 1, 8, 10, 0))
        second = make_registry()
        await second.start(run_loop=False)

        assert second.timers == {config.config_id: utc(2025, 1, 9, 9, 0)}
        await second.stop()

    @pytest.mark.asyncio
    async def test_interrupted_job_is_marked_failed(self, make_registry, store, clock):
        interrupted = ScheduledExportJob(
            job_id="job_interrupted",
            config_id="export_gone",
            scheduled_at=clock.now() - timedelta(minutes=5),
            status=JobStatus.RUNNING,
        )
        store.save_jobs({interrupted.job_id: interrupted.to_dict()})

        registry = make_registry()
        await registry.start(run_loop=False)

        job = registry.get_job("job_interrupted")
        assert job.status == JobStatus.FAILED
        assert job.is_terminal
        assert job.result.error == "Interrupted before completion"
        assert store.load_jobs()["job_interrupted"]["status"] == "failed"
        await registry.stop()

    @pytest.mark.asyncio
    async def test_start_keeps_job_triggered_before_it(
        self, make_registry, export_spec, export_service, make_export_result
    ):
        exporting = asyncio.Event()
        release = asyncio.Event()

        async def blocking_export(spec):
            exporting.set()
            await release.wait()
            return make_export_result()

        export_service.export_data = AsyncMock(side_effect=blocking_export)
        registry = make_registry()
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)
        job_id = await registry.trigger_export(config.config_id)
        await exporting.wait()
        job = registry.get_job(job_id)
        assert job.status == JobStatus.RUNNING

        await registry.start(run_loop=False)
        assert registry.get_job(job_id) is job
        assert registry.get_config(config.config_id) is config
        assert job.status == JobStatus.RUNNING

        release.set()
        finished = await registry.wait_for_job(job_id)

        assert finished.status == JobStatus.COMPLETED
        assert finished.retry_count == 0
        assert finished.result.success
        await registry.stop()

    @pytest.mark.asyncio
    async def test_stop_does_not_wait_out_backoff(
        self, make_registry, export_spec, export_service, make_export_result, store
    ):
        exporting = asyncio.Event()
        release = asyncio.Event()
        backoffs = []

        async def failing_export(spec):
            exporting.set()
            await release.wait()
            return make_export_result(success=False)

        async def backoff_sleep(delay):
            backoffs.append(delay)
            await asyncio.sleep(3600)

        export_service.export_data = AsyncMock(side_effect=failing_export)
        registry = make_registry(sleep=backoff_sleep)
        await registry.start(run_loop=False)
        config = await registry.create_config("Daily", export_spec, DAILY_NINE)
        job_id = await registry.trigger_export(config.config_id)
        await exporting.wait()

        stop_task = asyncio.create_task(registry.stop())
        await asyncio.sleep(0)
        release.set()
        await asyncio.wait_for(stop_task, timeout=1)

        job = registry.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.retry_count == 1
        assert backoffs == []
        assert store.load_jobs()[job_id]["status"] == "pending"
