"""
Backoffice - Application.

============================================================
RESPONSIBILITY
============================================================
Builds the batch service and the export scheduler from
configuration plus injected collaborators, and owns their
lifecycle.

- Nothing is constructed at import time
- start()/stop() are explicit (or use `async with`)
- Collaborators (bulk-write, fetch) come from the host system

============================================================
"""

from typing import Optional
import logging

from core.clock import ClockFactory, ClockProtocol
from core.config import BatchOpsConfig
from core.exceptions import ConfigurationError

from import_export.batch import BulkWriteService
from import_export.codec import TabularCodec
from import_export.service import BatchOperationsService, FetchService
from scheduled_exports.delivery import create_delivery
from scheduled_exports.executor import JobExecutor, SleepFunction
from scheduled_exports.registry import ScheduleRegistry
from scheduled_exports.store import ScheduleStore, create_schedule_store


logger = logging.getLogger(__name__)


class BackofficeApp:
    """Long-lived owner of the batch service and schedule registry."""

    def __init__(
        self,
        config: Optional[BatchOpsConfig] = None,
        write_service: Optional[BulkWriteService] = None,
        fetch_service: Optional[FetchService] = None,
        store: Optional[ScheduleStore] = None,
        clock: Optional[ClockProtocol] = None,
        sleep: Optional[SleepFunction] = None,
    ):
        self._config = config or BatchOpsConfig.from_env()
        errors = self._config.validate()
        if errors:
            raise ConfigurationError("Invalid batch operations configuration", errors=errors)

        self._clock = clock or ClockFactory.get_clock()

        self._service = BatchOperationsService(
            write_service=write_service,
            fetch_service=fetch_service,
            codec=TabularCodec(),
            config=self._config,
            clock=self._clock,
        )
        self._delivery, self._notifier = create_delivery(self._config, clock=self._clock)
        self._executor = JobExecutor(
            service=self._service,
            delivery=self._delivery,
            notifier=self._notifier,
            clock=self._clock,
            sleep=sleep,
            retry_base_seconds=self._config.retry_base_delay_seconds,
        )
        self._store = store or create_schedule_store(
            database_url=self._config.schedule_database_url,
            path=self._config.schedule_store_path,
        )
        self._registry = ScheduleRegistry(
            executor=self._executor,
            store=self._store,
            clock=self._clock,
            poll_seconds=self._config.scheduler_poll_seconds,
            max_retries=self._config.job_max_retries,
            subscriber_failure_limit=self._config.subscriber_failure_limit,
        )
        self._started = False

    @property
    def config(self) -> BatchOpsConfig:
        return self._config

    @property
    def service(self) -> BatchOperationsService:
        return self._service

    @property
    def registry(self) -> ScheduleRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._started

    async def start(self, run_scheduler_loop: bool = True) -> None:
        if self._started:
            return
        await self._registry.start(run_loop=run_scheduler_loop)
        self._started = True
        logger.info("Backoffice batch operations started")

    async def stop(self) -> None:
        if not self._started:
            return
        try:
            await self._registry.stop()
        finally:
            await self._delivery.close()
            self._started = False
        logger.info("Backoffice batch operations stopped")

    async def __aenter__(self) -> "BackofficeApp":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def create_app(
    config: Optional[BatchOpsConfig] = None,
    write_service: Optional[BulkWriteService] = None,
    fetch_service: Optional[FetchService] = None,
) -> BackofficeApp:
    """Create the application from environment configuration."""
    return BackofficeApp(config=config, write_service=write_service, fetch_service=fetch_service)
