"""
Scheduled Exports.

============================================================
PURPOSE
============================================================
Recurring exports: administrators define what to export, when
and where to send it; the registry fires jobs at the computed
instants and keeps their history.

============================================================
COMPONENTS
============================================================
- recurrence: next_run(spec, now), a pure function
- executor:   one job to completion, retries with backoff
- delivery:   email / webhook / storage channels and notices
- registry:   configs, timers, scheduler task, job history
- store:      JSON file and SQLAlchemy persistence

============================================================
"""

from .delivery import DeliveryRouter, EmailSender, ExportNotifier, StorageWriter, WebhookSender, create_delivery
from .executor import JobExecutor
from .models import (
    DeliveryConfig,
    DeliveryMethod,
    JobResult,
    JobStatus,
    JobTrigger,
    RecurrenceKind,
    RecurrenceSpec,
    ScheduledExportConfig,
    ScheduledExportJob,
    ScheduledExportStats,
)
from .recurrence import next_run
from .registry import ScheduleRegistry
from .store import (
    InMemoryScheduleStore,
    JsonFileScheduleStore,
    ScheduleStore,
    SqlScheduleStore,
    create_schedule_store,
)


__all__ = [
    "DeliveryRouter",
    "EmailSender",
    "ExportNotifier",
    "StorageWriter",
    "WebhookSender",
    "create_delivery",
    "JobExecutor",
    "ScheduleRegistry",
    "next_run",
    "InMemoryScheduleStore",
    "JsonFileScheduleStore",
    "ScheduleStore",
    "SqlScheduleStore",
    "create_schedule_store",
    "DeliveryConfig",
    "DeliveryMethod",
    "JobResult",
    "JobStatus",
    "JobTrigger",
    "RecurrenceKind",
    "RecurrenceSpec",
    "ScheduledExportConfig",
    "ScheduledExportJob",
    "ScheduledExportStats",
]
