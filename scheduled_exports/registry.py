"""
Scheduled Exports - Schedule Registry.

============================================================
RESPONSIBILITY
============================================================
Owns scheduled export configs, their timers and job history.

- One fire-at instant per enabled config
- A single scheduler task sleeps until the earliest instant
  (capped by the poll interval) or until a config change
  wakes it
- Each job runs in its own task through the JobExecutor
- Configs and jobs are persisted through a ScheduleStore

============================================================
TIMER PATH
============================================================
fire -> clear timer -> new job -> execute -> last_run = fire time
     -> recompute next_run -> re-arm

No re-arm for `once` schedules, disabled or deleted configs, or
when the validity window is exhausted. Manual triggers never
touch the timer.

============================================================
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import asyncio
import logging
import uuid

from core.clock import ClockFactory, ClockProtocol, ensure_utc
from core.exceptions import (
    ConfigNotFoundError,
    ConfigurationError,
    JobNotFoundError,
    ScheduleError,
)

from import_export.models import ExportSpecification
from import_export.progress import ProgressBroadcaster

from .executor import JobExecutor
from .models import (
    DeliveryConfig,
    JobResult,
    JobStatus,
    JobTrigger,
    RecurrenceKind,
    RecurrenceSpec,
    ScheduledExportConfig,
    ScheduledExportJob,
    ScheduledExportStats,
)
from .recurrence import is_exhausted, next_run
from .store import InMemoryScheduleStore, ScheduleStore


logger = logging.getLogger(__name__)


UPDATABLE_FIELDS = {"name", "description", "export", "schedule", "delivery", "enabled"}


class ScheduleRegistry:
    """
    Recurring export scheduler.

    Lifecycle is explicit: nothing runs until start(), and
    stop() waits for running jobs before persisting.
    """

    def __init__(
        self,
        executor: JobExecutor,
        store: Optional[ScheduleStore] = None,
        clock: Optional[ClockProtocol] = None,
        poll_seconds: float = 60.0,
        max_retries: int = 3,
        subscriber_failure_limit: int = 3,
    ):
        self._executor = executor
        self._store = store or InMemoryScheduleStore()
        self._clock = clock or ClockFactory.get_clock()
        self._poll_seconds = poll_seconds
        self._max_retries = max_retries

        self._configs: Dict[str, ScheduledExportConfig] = {}
        self._jobs: Dict[str, ScheduledExportJob] = {}
        self._timers: Dict[str, datetime] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

        self._broadcaster = ProgressBroadcaster(failure_limit=subscriber_failure_limit)
        self._loop_task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._running = False

        self._executor.set_update_callback(self._on_job_update)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def timers(self) -> Dict[str, datetime]:
        """Copy of the armed fire-at instants, keyed by config id."""
        return dict(self._timers)

    # ----------------------------------------------------------
    # LIFECYCLE
    # ----------------------------------------------------------

    async def start(self, run_loop: bool = True) -> None:
        """Load state, re-arm enabled configs and start the scheduler task."""
        if self._running:
            return

        loaded_jobs = self._load()
        now = self._clock.now()

        for config in self._configs.values():
            if not config.enabled:
                continue
            if config.schedule.kind == RecurrenceKind.ONCE and config.last_run is not None:
                continue
            if config.next_run is None or config.next_run < now:
                if config.next_run is not None:
                    logger.info(f"Config {config.config_id} missed its run at {config.next_run}, recomputing")
                config.next_run = next_run(config.schedule, now)
            self._arm(config, now)

        for job_id in loaded_jobs:
            job = self._jobs[job_id]
            if job.status == JobStatus.RUNNING and job_id not in self._tasks:
                logger.warning(f"Job {job.job_id} was interrupted by a restart, marking failed")
                job.transition_to(JobStatus.FAILED)
                job.retry_count = job.max_retries
                job.completed_at = now
                job.result = JobResult(success=False, error="Interrupted before completion")

        self._persist_configs()
        self._persist_jobs()
        self._running = True
        self._executor.resume()
        self._wake = asyncio.Event()
        if run_loop:
            self._loop_task = asyncio.create_task(self._run_loop())

        logger.info(
            f"Schedule registry started: {len(self._configs)} configs, "
            f"{len(self._timers)} armed, {len(self._jobs)} jobs in history"
        )

    async def stop(self) -> None:
        """Stop the scheduler task, wait for running jobs, persist."""
        if not self._running:
            return
        self._running = False
        self._executor.request_stop()

        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        # Jobs waiting out a retry backoff stay pending and resume on next start
        for job_id, task in list(self._tasks.items()):
            job = self._jobs.get(job_id)
            if job is None or job.status != JobStatus.RUNNING:
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()

        self._timers.clear()
        self._persist_configs()
        self._persist_jobs()
        logger.info("Schedule registry stopped")

    async def _run_loop(self) -> None:
        while self._running:
            self._wake.clear()
            try:
                await self.run_due()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._seconds_until_next())
            except asyncio.TimeoutError:
                pass

    def _seconds_until_next(self) -> float:
        delay = self._poll_seconds
        for fire_at in self._timers.values():
            delay = min(delay, self._clock.seconds_until(fire_at))
        return max(delay, 0.0)

    def _wake_loop(self) -> None:
        if self._wake is not None:
            self._wake.set()

    async def run_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Fire every timer due at now and resume due pending jobs.

        Returns the ids of the jobs started.
        """
        now = now or self._clock.now()
        started: List[str] = []

        due = sorted(
            (fire_at, config_id)
            for config_id, fire_at in self._timers.items()
            if fire_at <= now
        )
        for fire_at, config_id in due:
            self._timers.pop(config_id, None)
            config = self._configs.get(config_id)
            if config is None or not config.enabled:
                continue
            job = self._new_job(config, JobTrigger.SCHEDULED, now)
            logger.info(f"Config {config_id} fired (due {fire_at.isoformat()}), job {job.job_id}")
            self._spawn(job, reschedule=True, fired_at=now)
            started.append(job.job_id)

        for job in list(self._jobs.values()):
            if (
                job.status == JobStatus.PENDING
                and job.job_id not in self._tasks
                and job.scheduled_at <= now
            ):
                logger.info(f"Resuming pending job {job.job_id}")
                self._spawn(job, reschedule=False, fired_at=now)
                started.append(job.job_id)

        if started:
            self._persist_jobs()
        return started

    # ----------------------------------------------------------
    # CONFIGS
    # ----------------------------------------------------------

    async def create_config(
        self,
        name: str,
        export: ExportSpecification,
        schedule: RecurrenceSpec,
        delivery: Optional[DeliveryConfig] = None,
        description: str = "",
        enabled: bool = True,
    ) -> ScheduledExportConfig:
        """Create and (when enabled) arm a scheduled export."""
        errors = schedule.validate()
        if errors:
            raise ConfigurationError(f"Invalid schedule for '{name}'", errors=errors)

        now = self._clock.now()
        config = ScheduledExportConfig(
            config_id=f"export_{uuid.uuid4().hex[:12]}",
            name=name,
            description=description,
            export=export,
            schedule=schedule,
            delivery=delivery or DeliveryConfig(),
            enabled=enabled,
            created_at=now,
            updated_at=now,
        )
        if enabled:
            config.next_run = next_run(schedule, now)
            self._arm(config, now)

        self._configs[config.config_id] = config
        self._persist_configs()
        self._wake_loop()
        logger.info(f"Created scheduled export {config.config_id} '{name}', next run {config.next_run}")
        return config

    async def update_config(self, config_id: str, **changes: Any) -> ScheduledExportConfig:
        """Apply field changes and rebuild the config's timer."""
        config = self._require_config(config_id)

        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ScheduleError(
                f"Cannot update fields: {', '.join(sorted(unknown))}",
                context={"config_id": config_id},
            )
        schedule = changes.get("schedule")
        if schedule is not None:
            errors = schedule.validate()
            if errors:
                raise ConfigurationError(f"Invalid schedule for '{config.name}'", errors=errors)

        for key, value in changes.items():
            setattr(config, key, value)

        now = self._clock.now()
        config.updated_at = now
        self._timers.pop(config_id, None)

        if config.enabled:
            config.next_run = next_run(config.schedule, now)
            self._arm(config, now)
        else:
            config.next_run = None
            self._cancel_pending_jobs(config_id)

        self._persist_configs()
        self._wake_loop()
        logger.info(f"Updated scheduled export {config_id}: {', '.join(sorted(changes))}")
        return config

    async def set_enabled(self, config_id: str, enabled: bool) -> ScheduledExportConfig:
        return await self.update_config(config_id, enabled=enabled)

    async def delete_config(self, config_id: str) -> None:
        """Remove a config; its pending jobs are cancelled, history is kept."""
        self._require_config(config_id)
        self._timers.pop(config_id, None)
        self._cancel_pending_jobs(config_id)
        del self._configs[config_id]

        self._persist_configs()
        self._wake_loop()
        logger.info(f"Deleted scheduled export {config_id}")

    def get_config(self, config_id: str) -> Optional[ScheduledExportConfig]:
        return self._configs.get(config_id)

    def get_configs(self) -> List[ScheduledExportConfig]:
        return sorted(self._configs.values(), key=lambda c: (c.created_at is None, c.created_at))

    def _require_config(self, config_id: str) -> ScheduledExportConfig:
        config = self._configs.get(config_id)
        if config is None:
            raise ConfigNotFoundError(config_id)
        return config

    def _arm(self, config: ScheduledExportConfig, now: datetime) -> None:
        if config.next_run is None:
            return
        end_date = config.schedule.end_date
        if end_date is not None and ensure_utc(end_date) < now:
            logger.info(f"Config {config.config_id} validity window ended {end_date}, not arming")
            config.next_run = None
            return
        self._timers[config.config_id] = config.next_run

    def _reschedule(self, config_id: str, fired_at: datetime) -> None:
        config = self._configs.get(config_id)
        if config is None:
            return

        config.last_run = fired_at
        if not config.enabled or config.schedule.kind == RecurrenceKind.ONCE:
            config.next_run = None
        else:
            upcoming = next_run(config.schedule, self._clock.now())
            if is_exhausted(config.schedule, fired_at, upcoming):
                logger.info(f"Config {config_id} schedule exhausted after {fired_at}")
                config.next_run = None
            else:
                config.next_run = upcoming
                self._arm(config, self._clock.now())

        self._persist_configs()
        self._wake_loop()

    # ----------------------------------------------------------
    # JOBS
    # ----------------------------------------------------------

    async def trigger_export(self, config_id: str) -> str:
        """Run a config now, regardless of its enabled flag; returns the job id."""
        config = self._require_config(config_id)
        job = self._new_job(config, JobTrigger.MANUAL, self._clock.now())
        self._persist_jobs()
        logger.info(f"Manual export of {config_id} requested, job {job.job_id}")
        self._spawn(job, reschedule=False, fired_at=job.scheduled_at)
        return job.job_id

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending job. Running and finished jobs are left alone."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.PENDING:
            return False

        self._cancel(job)
        self._persist_jobs()
        await self._broadcaster.publish(job.job_id, job)
        return True

    def get_job(self, job_id: str) -> Optional[ScheduledExportJob]:
        return self._jobs.get(job_id)

    def get_config_jobs(self, config_id: str) -> List[ScheduledExportJob]:
        """Jobs of one config, newest first."""
        jobs = [job for job in self._jobs.values() if job.config_id == config_id]
        return sorted(jobs, key=lambda j: j.scheduled_at, reverse=True)

    def get_recent_jobs(self, limit: int = 50) -> List[ScheduledExportJob]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.scheduled_at, reverse=True)
        return jobs[:limit]

    def get_config_stats(self, config_id: str) -> ScheduledExportStats:
        jobs = self.get_config_jobs(config_id)
        completed = [j for j in jobs if j.status == JobStatus.COMPLETED]
        failed = [j for j in jobs if j.status == JobStatus.FAILED]

        durations = [j.duration_seconds for j in completed if j.duration_seconds is not None]
        successful = [
            j for j in completed
            if j.result is not None and j.result.success and j.completed_at is not None
        ]
        config = self._configs.get(config_id)

        return ScheduledExportStats(
            total_jobs=len(jobs),
            completed_jobs=len(completed),
            failed_jobs=len(failed),
            average_execution_seconds=sum(durations) / len(durations) if durations else 0.0,
            last_successful_run=max((j.completed_at for j in successful), default=None),
            next_scheduled_run=config.next_run if config else None,
        )

    def subscribe(self, job_id: str, callback: Callable[[ScheduledExportJob], Any]) -> Callable[[], None]:
        """Receive the live job object after each change."""
        return self._broadcaster.subscribe(job_id, callback)

    async def wait_for_job(self, job_id: str) -> ScheduledExportJob:
        """Wait until the job's task (if any) has finished."""
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait([task])
        return job

    def _new_job(self, config: ScheduledExportConfig, trigger: JobTrigger, now: datetime) -> ScheduledExportJob:
        job = ScheduledExportJob(
            job_id=f"job_{uuid.uuid4().hex[:12]}",
            config_id=config.config_id,
            scheduled_at=now,
            trigger=trigger,
            max_retries=self._max_retries,
        )
        self._jobs[job.job_id] = job
        return job

    def _spawn(self, job: ScheduledExportJob, reschedule: bool, fired_at: datetime) -> None:
        self._tasks[job.job_id] = asyncio.create_task(self._run_job(job, reschedule, fired_at))

    async def _run_job(self, job: ScheduledExportJob, reschedule: bool, fired_at: datetime) -> None:
        try:
            await self._executor.execute(job, self._configs.get(job.config_id))
        except asyncio.CancelledError:
            logger.info(f"Job {job.job_id} task cancelled while {job.status.value}")
            raise
        except Exception as e:
            logger.error(f"Job {job.job_id} crashed: {e}", exc_info=True)
        finally:
            self._tasks.pop(job.job_id, None)
            if reschedule and self._running:
                self._reschedule(job.config_id, fired_at)

    def _cancel(self, job: ScheduledExportJob) -> None:
        job.transition_to(JobStatus.CANCELLED)
        job.completed_at = self._clock.now()
        logger.info(f"Cancelled job {job.job_id}")

    def _cancel_pending_jobs(self, config_id: str) -> int:
        pending = [
            job for job in self._jobs.values()
            if job.config_id == config_id and job.status == JobStatus.PENDING
        ]
        for job in pending:
            self._cancel(job)
        if pending:
            self._persist_jobs()
        return len(pending)

    async def _on_job_update(self, job: ScheduledExportJob) -> None:
        self._persist_jobs()
        await self._broadcaster.publish(job.job_id, job)

    # ----------------------------------------------------------
    # PERSISTENCE
    # ----------------------------------------------------------

    def _load(self) -> List[str]:
        """Read stored state; entries already held in memory win. Returns the loaded job ids."""
        try:
            configs = self._store.load_configs()
            jobs = self._store.load_jobs()
        except ScheduleError as e:
            logger.error(f"Failed to load schedules, starting empty: {e.to_log_format()}")
            return []

        loaded_jobs = []
        for config_id, data in configs.items():
            if config_id in self._configs:
                continue
            try:
                self._configs[config_id] = ScheduledExportConfig.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable config {config_id}: {e}")
        for job_id, data in jobs.items():
            if job_id in self._jobs:
                continue
            try:
                self._jobs[job_id] = ScheduledExportJob.from_dict(data)
                loaded_jobs.append(job_id)
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable job {job_id}: {e}")
        return loaded_jobs

    def _persist_configs(self) -> None:
        try:
            self._store.save_configs({cid: c.to_dict() for cid, c in self._configs.items()})
        except ScheduleError as e:
            logger.error(e.to_log_format())

    def _persist_jobs(self) -> None:
        try:
            self._store.save_jobs({jid: j.to_dict() for jid, j in self._jobs.items()})
        except ScheduleError as e:
            logger.error(e.to_log_format())
