"""
Core Module - Configuration.

============================================================
RESPONSIBILITY
============================================================
Runtime configuration for the batch service and the export
scheduler, loaded from environment variables (a local .env
file is honoured).

============================================================
ENVIRONMENT
============================================================
BATCH_CHUNK_SIZE              Records per bulk-write call
BATCH_EXPORT_PAGE_SIZE        Records per fetch page
BATCH_MAX_UPLOAD_BYTES        Upload size limit
BATCH_PROGRESS_INTERVAL       Rows between validation updates
BATCH_PROGRESS_RETENTION      Seconds a finished operation is kept
EXPORT_DIR                    Where export artifacts are written
SCHEDULE_STORE_PATH           JSON file for schedules and jobs
SCHEDULE_DATABASE_URL         SQLAlchemy URL (overrides the file)
SCHEDULE_POLL_SECONDS         Max scheduler sleep
SCHEDULE_MAX_RETRIES          Retries per job
SCHEDULE_RETRY_BASE_SECONDS   Backoff unit (2^n x base)
SMTP_HOST / SMTP_PORT / SMTP_USER / SMTP_PASSWORD / SMTP_USE_TLS
EMAIL_FROM
LOG_LEVEL / LOG_FORMAT

============================================================
"""

from dataclasses import dataclass
from typing import List, Optional
import os

from dotenv import load_dotenv


load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes")


@dataclass
class BatchOpsConfig:
    """Configuration for the batch service and scheduler."""

    # Import / export
    default_chunk_size: int = 100
    """Records per bulk-write call when an import does not say."""

    export_page_size: int = 1000
    """Records per fetch page when an export does not say."""

    max_upload_bytes: int = 10 * 1024 * 1024
    """Uploads above this size are rejected."""

    progress_interval_rows: int = 100
    """Rows validated between advisory progress updates."""

    progress_retention_seconds: int = 3600
    """How long a finished operation's progress is kept."""

    subscriber_failure_limit: int = 3
    """Consecutive callback failures before a subscriber is dropped."""

    export_dir: Optional[str] = None
    """Directory export artifacts are written to (None keeps them in memory)."""

    boolean_true_token: str = "Yes"
    boolean_false_token: str = "No"

    # Scheduler
    schedule_store_path: Optional[str] = None
    """JSON file holding configs and job history."""

    schedule_database_url: Optional[str] = None
    """SQLAlchemy URL; takes precedence over schedule_store_path."""

    scheduler_poll_seconds: float = 60.0
    """Upper bound on how long the scheduler sleeps between checks."""

    job_max_retries: int = 3
    retry_base_delay_seconds: float = 60.0

    # Delivery
    webhook_timeout_seconds: float = 30.0
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_use_tls: bool = True
    email_from: str = "exports@localhost"

    # Logging
    log_level: str = "INFO"
    log_format: str = "text"

    @classmethod
    def from_env(cls) -> "BatchOpsConfig":
        """Load configuration from environment variables."""
        return cls(
            default_chunk_size=int(os.getenv("BATCH_CHUNK_SIZE", "100")),
            export_page_size=int(os.getenv("BATCH_EXPORT_PAGE_SIZE", "1000")),
            max_upload_bytes=int(os.getenv("BATCH_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024))),
            progress_interval_rows=int(os.getenv("BATCH_PROGRESS_INTERVAL", "100")),
            subscriber_failure_limit=int(os.getenv("BATCH_SUBSCRIBER_FAILURE_LIMIT", "3")),
            progress_retention_seconds=int(os.getenv("BATCH_PROGRESS_RETENTION", "3600")),
            export_dir=os.getenv("EXPORT_DIR"),
            schedule_store_path=os.getenv("SCHEDULE_STORE_PATH"),
            schedule_database_url=os.getenv("SCHEDULE_DATABASE_URL"),
            scheduler_poll_seconds=float(os.getenv("SCHEDULE_POLL_SECONDS", "60")),
            job_max_retries=int(os.getenv("SCHEDULE_MAX_RETRIES", "3")),
            retry_base_delay_seconds=float(os.getenv("SCHEDULE_RETRY_BASE_SECONDS", "60")),
            webhook_timeout_seconds=float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30")),
            smtp_host=os.getenv("SMTP_HOST"),
            smtp_port=int(os.getenv("SMTP_PORT", "587")),
            smtp_user=os.getenv("SMTP_USER"),
            smtp_password=os.getenv("SMTP_PASSWORD"),
            smtp_use_tls=_env_bool("SMTP_USE_TLS", "true"),
            email_from=os.getenv("EMAIL_FROM", "exports@localhost"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )

    def validate(self) -> List[str]:
        """Validate configuration, return list of errors."""
        errors = []

        if self.default_chunk_size < 1:
            errors.append("default_chunk_size must be at least 1")
        if self.export_page_size < 1:
            errors.append("export_page_size must be at least 1")
        if self.max_upload_bytes < 1:
            errors.append("max_upload_bytes must be positive")
        if self.progress_interval_rows < 1:
            errors.append("progress_interval_rows must be at least 1")
        if self.progress_retention_seconds < 0:
            errors.append("progress_retention_seconds cannot be negative")
        if self.subscriber_failure_limit < 1:
            errors.append("subscriber_failure_limit must be at least 1")
        if self.scheduler_poll_seconds <= 0:
            errors.append("scheduler_poll_seconds must be positive")
        if self.job_max_retries < 0:
            errors.append("job_max_retries cannot be negative")
        if self.retry_base_delay_seconds < 0:
            errors.append("retry_base_delay_seconds cannot be negative")
        if not 0 < self.smtp_port < 65536:
            errors.append("smtp_port must be a valid port")
        if self.log_format not in ("json", "text"):
            errors.append("log_format must be 'json' or 'text'")

        return errors


__all__ = ["BatchOpsConfig"]
