"""
Scheduled Exports - Models.

============================================================
PURPOSE
============================================================
Data models for recurring exports:
- RecurrenceSpec: when a config fires
- DeliveryConfig: where the artifact goes
- ScheduledExportConfig: what, when and where
- ScheduledExportJob: one (possibly retried) execution

============================================================
JOB LIFECYCLE
============================================================
pending -> running -> completed
                   -> failed -> pending (retry, while budget remains)
pending -> cancelled
pending -> failed (config vanished before the run)

completed, cancelled and exhausted failed jobs are terminal.

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from core.clock import ensure_utc, from_iso8601, to_iso8601
from core.exceptions import JobStateError

from import_export.models import ExportSpecification


# ============================================================
# RECURRENCE
# ============================================================

class RecurrenceKind(Enum):
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    CUSTOM = "custom"


@dataclass
class RecurrenceSpec:
    """
    When a scheduled export fires.

    day_of_week uses 0 = Sunday .. 6 = Saturday.
    time_of_day is "HH:MM" in the schedule's timezone.
    """
    kind: RecurrenceKind
    time_of_day: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    interval_minutes: int = 60
    timezone: str = "UTC"
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    def __post_init__(self):
        # Naive bounds are taken as UTC so they compare with clock instants
        if self.start_date is not None:
            self.start_date = ensure_utc(self.start_date)
        if self.end_date is not None:
            self.end_date = ensure_utc(self.end_date)

    def validate(self) -> List[str]:
        """Validate the recurrence, return list of errors."""
        errors = []

        if self.time_of_day is not None:
            parts = self.time_of_day.split(":")
            if (
                len(parts) != 2
                or not all(p.isdigit() for p in parts)
                or not 0 <= int(parts[0]) <= 23
                or not 0 <= int(parts[1]) <= 59
            ):
                errors.append(f"time_of_day must be HH:MM, got {self.time_of_day!r}")

        if self.kind == RecurrenceKind.WEEKLY:
            if self.day_of_week is None or not 0 <= self.day_of_week <= 6:
                errors.append("weekly schedules need day_of_week between 0 (Sunday) and 6")
        if self.kind == RecurrenceKind.MONTHLY:
            if self.day_of_month is None or not 1 <= self.day_of_month <= 31:
                errors.append("monthly schedules need day_of_month between 1 and 31")
        if self.kind == RecurrenceKind.CUSTOM and self.interval_minutes < 1:
            errors.append("interval_minutes must be at least 1")

        if self.start_date and self.end_date and self.end_date < self.start_date:
            errors.append("end_date is before start_date")

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "time_of_day": self.time_of_day,
            "day_of_week": self.day_of_week,
            "day_of_month": self.day_of_month,
            "interval_minutes": self.interval_minutes,
            "timezone": self.timezone,
            "start_date": to_iso8601(self.start_date),
            "end_date": to_iso8601(self.end_date),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurrenceSpec":
        return cls(
            kind=RecurrenceKind(data["kind"]),
            time_of_day=data.get("time_of_day"),
            day_of_week=data.get("day_of_week"),
            day_of_month=data.get("day_of_month"),
            interval_minutes=data.get("interval_minutes", 60),
            timezone=data.get("timezone") or "UTC",
            start_date=from_iso8601(data.get("start_date")),
            end_date=from_iso8601(data.get("end_date")),
        )


# ============================================================
# DELIVERY
# ============================================================

class DeliveryMethod(Enum):
    DOWNLOAD = "download"
    EMAIL = "email"
    WEBHOOK = "webhook"
    STORAGE = "storage"


@dataclass
class DeliveryConfig:
    """Where a finished artifact is sent and who hears about it."""
    method: DeliveryMethod = DeliveryMethod.DOWNLOAD
    recipients: List[str] = field(default_factory=list)
    webhook_url: Optional[str] = None
    storage_location: Optional[str] = None
    notify_on_success: bool = False
    notify_on_failure: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "recipients": list(self.recipients),
            "webhook_url": self.webhook_url,
            "storage_location": self.storage_location,
            "notify_on_success": self.notify_on_success,
            "notify_on_failure": self.notify_on_failure,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeliveryConfig":
        return cls(
            method=DeliveryMethod(data.get("method", "download")),
            recipients=list(data.get("recipients") or []),
            webhook_url=data.get("webhook_url"),
            storage_location=data.get("storage_location"),
            notify_on_success=data.get("notify_on_success", False),
            notify_on_failure=data.get("notify_on_failure", True),
        )


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass
class ScheduledExportConfig:
    """A recurring export owned by an administrator."""
    config_id: str
    name: str
    export: ExportSpecification
    schedule: RecurrenceSpec
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    description: str = ""
    enabled: bool = True

    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "config_id": self.config_id,
            "name": self.name,
            "description": self.description,
            "export": self.export.to_dict(),
            "schedule": self.schedule.to_dict(),
            "delivery": self.delivery.to_dict(),
            "enabled": self.enabled,
            "last_run": to_iso8601(self.last_run),
            "next_run": to_iso8601(self.next_run),
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledExportConfig":
        return cls(
            config_id=data["config_id"],
            name=data["name"],
            description=data.get("description", ""),
            export=ExportSpecification.from_dict(data["export"]),
            schedule=RecurrenceSpec.from_dict(data["schedule"]),
            delivery=DeliveryConfig.from_dict(data.get("delivery") or {}),
            enabled=data.get("enabled", True),
            last_run=from_iso8601(data.get("last_run")),
            next_run=from_iso8601(data.get("next_run")),
            created_at=from_iso8601(data.get("created_at")),
            updated_at=from_iso8601(data.get("updated_at")),
        )


# ============================================================
# JOBS
# ============================================================

class JobStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobTrigger(Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


JOB_TRANSITIONS: Dict[JobStatus, Set[JobStatus]] = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.FAILED: {JobStatus.PENDING},
    JobStatus.COMPLETED: set(),
    JobStatus.CANCELLED: set(),
}


@dataclass
class JobResult:
    """Outcome of the latest attempt of a job."""
    success: bool
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    record_count: Optional[int] = None
    download_url: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "file_name": self.file_name,
            "file_size": self.file_size,
            "record_count": self.record_count,
            "download_url": self.download_url,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobResult":
        return cls(
            success=data["success"],
            file_name=data.get("file_name"),
            file_size=data.get("file_size"),
            record_count=data.get("record_count"),
            download_url=data.get("download_url"),
            error=data.get("error"),
        )


@dataclass
class ScheduledExportJob:
    """One execution of a scheduled export config."""
    job_id: str
    config_id: str
    scheduled_at: datetime
    status: JobStatus = JobStatus.PENDING
    trigger: JobTrigger = JobTrigger.SCHEDULED

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Optional[JobResult] = None

    retry_count: int = 0
    max_retries: int = 3

    @property
    def is_terminal(self) -> bool:
        if self.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
            return True
        return self.status == JobStatus.FAILED and self.retry_count >= self.max_retries

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def can_transition_to(self, target: JobStatus) -> bool:
        return target in JOB_TRANSITIONS.get(self.status, set())

    def transition_to(self, target: JobStatus) -> None:
        """Move to target status or raise JobStateError."""
        if not self.can_transition_to(target):
            raise JobStateError(
                f"Invalid job transition: {self.status.value} -> {target.value}",
                job_id=self.job_id,
                from_state=self.status.value,
                to_state=target.value,
            )
        self.status = target

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "config_id": self.config_id,
            "status": self.status.value,
            "trigger": self.trigger.value,
            "scheduled_at": to_iso8601(self.scheduled_at),
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "result": self.result.to_dict() if self.result else None,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledExportJob":
        result = data.get("result")
        return cls(
            job_id=data["job_id"],
            config_id=data["config_id"],
            status=JobStatus(data.get("status", "pending")),
            trigger=JobTrigger(data.get("trigger", "scheduled")),
            scheduled_at=from_iso8601(data["scheduled_at"]),
            started_at=from_iso8601(data.get("started_at")),
            completed_at=from_iso8601(data.get("completed_at")),
            result=JobResult.from_dict(result) if result else None,
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
        )


@dataclass
class ScheduledExportStats:
    """Aggregate history of one config."""
    total_jobs: int = 0
    completed_jobs: int = 0
    failed_jobs: int = 0
    average_execution_seconds: float = 0.0
    last_successful_run: Optional[datetime] = None
    next_scheduled_run: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_jobs": self.total_jobs,
            "completed_jobs": self.completed_jobs,
            "failed_jobs": self.failed_jobs,
            "average_execution_seconds": self.average_execution_seconds,
            "last_successful_run": to_iso8601(self.last_successful_run),
            "next_scheduled_run": to_iso8601(self.next_scheduled_run),
        }
