"""
Core Module - Exceptions.

============================================================
RESPONSIBILITY
============================================================
Exception hierarchy for batch import/export and scheduled
exports.

How each layer treats failures:
- row and chunk problems are recorded as data, never raised
- a failed operation surfaces through raise_for_status()
- a failed job attempt is retried by the executor
- a failed delivery is logged and leaves the job alone

============================================================
EXCEPTION HIERARCHY
============================================================
BatchOpsException (base)
├── ConfigurationError
├── DataError
│   ├── DataValidationError
│   │   └── UploadRejectedError
│   └── ParseError
├── OperationError
│   ├── OperationStateError
│   └── ChunkWriteError
├── ScheduleError
│   ├── ConfigNotFoundError
│   ├── JobNotFoundError
│   ├── JobStateError
│   └── JobError
└── DeliveryError

============================================================
"""

from enum import Enum
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ============================================================
# SEVERITY & CLASSIFICATION
# ============================================================

class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"          # an operation or job was lost
    CRITICAL = "critical"  # the service cannot continue


class ErrorClassification(Enum):
    """Drives retry decisions."""

    RECOVERABLE = "recoverable"          # fix the input, then resubmit
    TRANSIENT = "transient"              # retrying may succeed
    NON_RECOVERABLE = "non_recoverable"  # needs a code or config change


def _with_details(kwargs: Dict[str, Any], **details: Any) -> Dict[str, Any]:
    """Fold the non-None details into kwargs['context']."""
    context = dict(kwargs.pop("context", None) or {})
    context.update({key: value for key, value in details.items() if value is not None})
    kwargs["context"] = context
    return kwargs


# ============================================================
# BASE EXCEPTION
# ============================================================

class BatchOpsException(Exception):
    """
    Root of every batch operations error.

    Carries a severity (alerting), a classification (retries),
    a context dict (log fields) and the UTC time it was raised.
    The wrapped cause, if any, is copied into the context.
    """

    default_severity: Severity = Severity.MEDIUM
    default_classification: ErrorClassification = ErrorClassification.RECOVERABLE

    def __init__(
        self,
        message: str,
        severity: Optional[Severity] = None,
        context: Optional[Dict[str, Any]] = None,
        classification: Optional[ErrorClassification] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity or self.default_severity
        self.classification = classification or self.default_classification
        self.context = dict(context or {})
        self.cause = cause
        self.timestamp = datetime.now(timezone.utc)

        if cause is not None:
            self.context.update(cause_type=type(cause).__name__, cause_message=str(cause))

    @property
    def is_retryable(self) -> bool:
        return self.classification == ErrorClassification.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "severity": self.severity.value,
            "classification": self.classification.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "cause": str(self.cause) if self.cause else None,
        }

    def to_log_format(self) -> str:
        """One line: [SEVERITY] Type: message | key=value, ..."""
        head = f"[{self.severity.value.upper()}] {type(self).__name__}: {self.message}"
        if not self.context:
            return head
        return head + " | " + ", ".join(f"{key}={value}" for key, value in self.context.items())


# ============================================================
# CONFIGURATION
# ============================================================

class ConfigurationError(BatchOpsException):
    """Invalid settings, schedules or missing collaborators."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(self, message: str, errors: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **_with_details(kwargs, errors=list(errors) if errors else None))


# ============================================================
# INPUT DATA
# ============================================================

class DataError(BatchOpsException):
    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.RECOVERABLE


class DataValidationError(DataError):
    """Input refused before any record was written."""

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None, **kwargs):
        super().__init__(message, **_with_details(kwargs, field=field, value=value))


class UploadRejectedError(DataValidationError):
    """File too large or of an unsupported type."""

    def __init__(self, message: str, file_name: Optional[str] = None, **kwargs):
        super().__init__(message, **_with_details(kwargs, file_name=file_name))


class ParseError(DataError):
    """Bytes could not be decoded into a header and rows."""

    def __init__(self, message: str, file_format: Optional[str] = None, **kwargs):
        super().__init__(message, **_with_details(kwargs, file_format=file_format))


# ============================================================
# OPERATIONS
# ============================================================

class OperationError(BatchOpsException):
    """A whole import or export run failed."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        status: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **_with_details(kwargs, operation_id=operation_id, status=status))


class OperationStateError(OperationError):
    """Operation status would move backwards or skip a stage."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(message, **_with_details(kwargs, from_state=from_state, to_state=to_state))


class ChunkWriteError(OperationError):
    """Kept in a ChunkFailure when the bulk writer rejects a chunk."""

    default_severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        chunk_index: Optional[int] = None,
        record_count: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **_with_details(kwargs, chunk_index=chunk_index, record_count=record_count))


# ============================================================
# SCHEDULES & JOBS
# ============================================================

class ScheduleError(BatchOpsException):
    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.RECOVERABLE


class ConfigNotFoundError(ScheduleError):
    def __init__(self, config_id: str, **kwargs):
        super().__init__(
            f"Scheduled export config not found: {config_id}",
            **_with_details(kwargs, config_id=config_id),
        )
        self.config_id = config_id


class JobNotFoundError(ScheduleError):
    def __init__(self, job_id: str, **kwargs):
        super().__init__(f"Job not found: {job_id}", **_with_details(kwargs, job_id=job_id))
        self.job_id = job_id


class JobStateError(ScheduleError):
    """Job status change not allowed by the job state machine."""

    default_classification = ErrorClassification.NON_RECOVERABLE

    def __init__(
        self,
        message: str,
        job_id: Optional[str] = None,
        from_state: Optional[str] = None,
        to_state: Optional[str] = None,
        **kwargs,
    ):
        super().__init__(
            message,
            **_with_details(kwargs, job_id=job_id, from_state=from_state, to_state=to_state),
        )


class JobError(ScheduleError):
    """One export attempt of a job failed; the executor may retry."""

    default_severity = Severity.HIGH
    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, job_id: Optional[str] = None, attempt: Optional[int] = None, **kwargs):
        super().__init__(message, **_with_details(kwargs, job_id=job_id, attempt=attempt))


# ============================================================
# DELIVERY
# ============================================================

class DeliveryError(BatchOpsException):
    """Email, webhook or storage hand-off failed."""

    default_severity = Severity.MEDIUM
    default_classification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, method: Optional[str] = None, target: Optional[str] = None, **kwargs):
        super().__init__(message, **_with_details(kwargs, method=method, target=target))


__all__ = [
    "Severity",
    "ErrorClassification",
    "BatchOpsException",
    "ConfigurationError",
    "DataError",
    "DataValidationError",
    "UploadRejectedError",
    "ParseError",
    "OperationError",
    "OperationStateError",
    "ChunkWriteError",
    "ScheduleError",
    "ConfigNotFoundError",
    "JobNotFoundError",
    "JobStateError",
    "JobError",
    "DeliveryError",
]
