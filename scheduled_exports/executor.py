"""
Scheduled Exports - Job Executor.

============================================================
RESPONSIBILITY
============================================================
Runs one ScheduledExportJob to a terminal state.

- pending -> running -> export via BatchOperationsService
- success: deliver, mark completed, notify
- failure: retry with 2^n x base backoff while budget remains,
  otherwise mark failed and notify

============================================================
RULES
============================================================
- retry_count is incremented before the backoff is computed
  (delays of 2, 4, 8 units for the 1st, 2nd, 3rd retry)
- Backoff is an awaited sleep, never a busy wait
- A job cancelled while waiting for its retry is not re-run
- Delivery and notification failures never touch the job
- Every job mutation is handed to on_job_update

============================================================
"""

from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional
import asyncio
import inspect
import logging

from core.clock import ClockFactory, ClockProtocol
from core.exceptions import JobError

from import_export.models import ExportResult
from import_export.service import BatchOperationsService

from .delivery import DeliveryRouter, ExportNotifier
from .models import JobResult, JobStatus, ScheduledExportConfig, ScheduledExportJob


logger = logging.getLogger(__name__)


JobUpdateCallback = Callable[[ScheduledExportJob], Any]
SleepFunction = Callable[[float], Awaitable[None]]


class JobExecutor:
    """Executes scheduled export jobs with bounded retries."""

    def __init__(
        self,
        service: BatchOperationsService,
        delivery: DeliveryRouter,
        notifier: Optional[ExportNotifier] = None,
        clock: Optional[ClockProtocol] = None,
        sleep: Optional[SleepFunction] = None,
        retry_base_seconds: float = 60.0,
        on_job_update: Optional[JobUpdateCallback] = None,
    ):
        self._service = service
        self._delivery = delivery
        self._notifier = notifier
        self._clock = clock or ClockFactory.get_clock()
        self._sleep = sleep or asyncio.sleep
        self._retry_base_seconds = retry_base_seconds
        self._on_job_update = on_job_update
        self._stopping = False

    def set_update_callback(self, callback: Optional[JobUpdateCallback]) -> None:
        self._on_job_update = callback

    def request_stop(self) -> None:
        """Jobs that fail from now on stay pending instead of waiting out their backoff."""
        self._stopping = True

    def resume(self) -> None:
        self._stopping = False

    def retry_delay(self, retry_count: int) -> float:
        """Backoff before retry number retry_count (1-based)."""
        return (2 ** retry_count) * self._retry_base_seconds

    async def execute(
        self,
        job: ScheduledExportJob,
        config: Optional[ScheduledExportConfig],
    ) -> ScheduledExportJob:
        """Run job until it completes, fails for good, or is cancelled."""
        if config is None:
            job.transition_to(JobStatus.FAILED)
            job.retry_count = job.max_retries
            job.completed_at = self._clock.now()
            job.result = JobResult(success=False, error="Configuration not found")
            logger.error(f"Job {job.job_id}: configuration {job.config_id} not found")
            await self._publish(job)
            return job

        while True:
            if job.status == JobStatus.CANCELLED:
                logger.info(f"Job {job.job_id} was cancelled before running")
                return job

            job.transition_to(JobStatus.RUNNING)
            job.started_at = self._clock.now()
            job.completed_at = None
            await self._publish(job)
            logger.info(
                f"Job {job.job_id} running export '{config.name}' "
                f"(attempt {job.retry_count + 1}/{job.max_retries + 1})"
            )

            try:
                result = await self._service.export_data(config.export)
                if not result.success:
                    raise JobError(
                        result.error or "Export failed",
                        job_id=job.job_id,
                        attempt=job.retry_count + 1,
                    )
            except Exception as e:
                job.transition_to(JobStatus.FAILED)
                job.completed_at = self._clock.now()
                job.result = JobResult(success=False, error=str(e))

                if job.can_retry:
                    job.retry_count += 1
                    delay = self.retry_delay(job.retry_count)
                    job.transition_to(JobStatus.PENDING)
                    job.scheduled_at = self._clock.now() + timedelta(seconds=delay)
                    await self._publish(job)
                    logger.warning(
                        f"Job {job.job_id} failed: {e}; retry {job.retry_count}/{job.max_retries} "
                        f"in {delay:.0f}s"
                    )

                    if self._stopping:
                        logger.info(f"Job {job.job_id} left pending for retry after shutdown")
                        return job
                    await self._sleep(delay)
                    continue

                await self._publish(job)
                logger.error(f"Job {job.job_id} failed after {job.retry_count} retries: {e}")
                await self._notify(config, job, success=False)
                return job

            await self._delivery.deliver(config.delivery, result, name=config.name)

            job.transition_to(JobStatus.COMPLETED)
            job.completed_at = self._clock.now()
            job.result = self._success_result(result)
            await self._publish(job)
            logger.info(
                f"Job {job.job_id} completed: {job.result.record_count} records "
                f"in {job.result.file_name}"
            )
            await self._notify(config, job, success=True)
            return job

    @staticmethod
    def _success_result(result: ExportResult) -> JobResult:
        artifact = result.artifact
        return JobResult(
            success=True,
            file_name=artifact.file_name if artifact else None,
            file_size=artifact.size_bytes if artifact else None,
            record_count=result.progress.processed_records,
            download_url=artifact.download_url if artifact else None,
        )

    async def _notify(self, config: ScheduledExportConfig, job: ScheduledExportJob, success: bool) -> None:
        if self._notifier is None:
            return
        await self._notifier.notify(config, job, success)

    async def _publish(self, job: ScheduledExportJob) -> None:
        if self._on_job_update is None:
            return
        try:
            outcome = self._on_job_update(job)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception as e:
            logger.error(f"Job update handler failed for {job.job_id}: {e}", exc_info=True)
