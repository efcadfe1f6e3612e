"""
Import/Export - Core Models.

============================================================
PURPOSE
============================================================
Data models shared by the batch import/export pipeline:
- Validation rules and issues
- Parsed rows (typed cell values)
- Operation lifecycle and progress
- Import/export configuration and results

============================================================
LIFECYCLES
============================================================
Import:  preparing -> validating -> processing -> completed
Export:  preparing -> fetching -> formatting -> generating -> completed
Either may end in `error`; transitions never go backwards.

============================================================
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from core.clock import from_iso8601, to_iso8601
from core.exceptions import OperationError


# A decoded cell is resolved to one of these once, at decode time.
CellValue = Union[str, int, float, bool, datetime, date, None]


# ============================================================
# FORMATS
# ============================================================

class TabularFormat(Enum):
    """Supported spreadsheet-like file formats."""
    CSV = "csv"
    EXCEL = "excel"

    @property
    def extension(self) -> str:
        return "xlsx" if self == TabularFormat.EXCEL else "csv"

    @property
    def content_type(self) -> str:
        if self == TabularFormat.EXCEL:
            return "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
        return "text/csv;charset=utf-8"


# ============================================================
# VALIDATION
# ============================================================

class RuleKind(Enum):
    """Kinds of per-field validation rules."""
    REQUIRED = "required"
    EMAIL = "email"
    NUMERIC = "numeric"
    DATE = "date"
    ENUM = "enum"
    PATTERN = "pattern"
    CUSTOM = "custom"


class IssueSeverity(Enum):
    """Errors exclude a row from processing; warnings do not."""
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationRule:
    """One typed rule applied to one field."""
    field: str
    kind: RuleKind
    message: str = ""

    # Kind-specific options
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    values: Optional[Tuple[Any, ...]] = None
    predicate: Optional[Callable[[Any], bool]] = None

    severity: IssueSeverity = IssueSeverity.ERROR

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationRule":
        """Build a rule from plain data (custom predicates cannot be serialized)."""
        values = data.get("values")
        return cls(
            field=data["field"],
            kind=RuleKind(data["kind"]),
            message=data.get("message", ""),
            min=data.get("min"),
            max=data.get("max"),
            pattern=data.get("pattern"),
            values=tuple(values) if values is not None else None,
            severity=IssueSeverity(data.get("severity", "error")),
        )


@dataclass
class FieldValidationResult:
    """Outcome of one rule against one value."""
    is_valid: bool
    message: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ImportIssue:
    """A problem found in one row (and optionally one field)."""
    row: int
    message: str
    field: Optional[str] = None
    value: Any = None
    severity: IssueSeverity = IssueSeverity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        return {
            "row": self.row,
            "field": self.field,
            "message": self.message,
            "value": value,
            "severity": self.severity.value,
        }


# ============================================================
# PARSED DATA
# ============================================================

@dataclass
class ParsedRow:
    """
    One data row keyed by header.

    row_index is the human-facing row number in the source file
    (header is row 1, first data row is row 2).
    """
    row_index: int
    values: Dict[str, CellValue]

    def get(self, field_name: str) -> CellValue:
        return self.values.get(field_name)

    def to_record(self) -> Dict[str, CellValue]:
        """Plain field-keyed record for the write collaborator."""
        return dict(self.values)

    @property
    def is_blank(self) -> bool:
        return all(v is None for v in self.values.values())


@dataclass
class DecodedTable:
    """Header list plus data rows of a decoded file."""
    headers: List[str]
    rows: List[ParsedRow]

    @property
    def row_count(self) -> int:
        return len(self.rows)


# ============================================================
# OPERATION LIFECYCLE
# ============================================================

class OperationKind(Enum):
    IMPORT = "import"
    EXPORT = "export"


class OperationStatus(Enum):
    """Lifecycle status of an import or export."""
    PREPARING = "preparing"
    VALIDATING = "validating"
    PROCESSING = "processing"
    FETCHING = "fetching"
    FORMATTING = "formatting"
    GENERATING = "generating"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationStatus.COMPLETED, OperationStatus.ERROR)


IMPORT_TRANSITIONS: Dict[OperationStatus, Set[OperationStatus]] = {
    OperationStatus.PREPARING: {OperationStatus.VALIDATING, OperationStatus.ERROR},
    OperationStatus.VALIDATING: {OperationStatus.PROCESSING, OperationStatus.ERROR},
    OperationStatus.PROCESSING: {OperationStatus.COMPLETED, OperationStatus.ERROR},
    OperationStatus.COMPLETED: set(),
    OperationStatus.ERROR: set(),
}

EXPORT_TRANSITIONS: Dict[OperationStatus, Set[OperationStatus]] = {
    OperationStatus.PREPARING: {OperationStatus.FETCHING, OperationStatus.ERROR},
    OperationStatus.FETCHING: {OperationStatus.FORMATTING, OperationStatus.ERROR},
    OperationStatus.FORMATTING: {OperationStatus.GENERATING, OperationStatus.ERROR},
    OperationStatus.GENERATING: {OperationStatus.COMPLETED, OperationStatus.ERROR},
    OperationStatus.COMPLETED: set(),
    OperationStatus.ERROR: set(),
}


@dataclass
class OperationProgress:
    """
    Live progress of one import or export.

    Mutated in place by the owning service and handed to
    subscribers after every meaningful change. Subscribers must
    treat it as read-only.
    """
    operation_id: str
    kind: OperationKind
    started_at: datetime
    status: OperationStatus = OperationStatus.PREPARING

    total_records: int = 0
    processed_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    duplicate_records: int = 0
    created_records: int = 0
    updated_records: int = 0

    current_chunk: int = 0
    total_chunks: int = 0

    errors: List[ImportIssue] = field(default_factory=list)
    warnings: List[ImportIssue] = field(default_factory=list)

    # Operation-level failure; row problems live in errors
    error: Optional[str] = None

    ended_at: Optional[datetime] = None

    # Export only
    file_name: Optional[str] = None
    download_url: Optional[str] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Detached snapshot for logging or transport."""
        return {
            "operation_id": self.operation_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "valid_records": self.valid_records,
            "invalid_records": self.invalid_records,
            "duplicate_records": self.duplicate_records,
            "created_records": self.created_records,
            "updated_records": self.updated_records,
            "current_chunk": self.current_chunk,
            "total_chunks": self.total_chunks,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "error": self.error,
            "started_at": to_iso8601(self.started_at),
            "ended_at": to_iso8601(self.ended_at),
            "file_name": self.file_name,
            "download_url": self.download_url,
        }


# ============================================================
# IMPORT CONFIGURATION & RESULTS
# ============================================================

@dataclass
class DuplicatePolicy:
    """How the write collaborator treats records that already exist."""
    skip_duplicates: bool = True
    update_existing: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "skip_duplicates": self.skip_duplicates,
            "update_existing": self.update_existing,
        }


@dataclass
class ImportConfig:
    """Configuration of one import run."""
    entity_type: str
    format: TabularFormat = TabularFormat.CSV
    rules: List[ValidationRule] = field(default_factory=list)
    chunk_size: int = 100
    duplicate_policy: DuplicatePolicy = field(default_factory=DuplicatePolicy)
    field_mappings: Dict[str, str] = field(default_factory=dict)


@dataclass
class BulkWriteResult:
    """Per-chunk answer of the write collaborator."""
    created: int = 0
    updated: int = 0
    duplicates: int = 0
    data: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def coerce(cls, response: Any) -> "BulkWriteResult":
        """Accept either a BulkWriteResult or a plain mapping."""
        if isinstance(response, cls):
            return response
        if isinstance(response, dict):
            return cls(
                created=int(response.get("created", 0)),
                updated=int(response.get("updated", 0)),
                duplicates=int(response.get("duplicates", 0)),
                data=list(response.get("data") or []),
            )
        raise TypeError(f"Unexpected bulk write response: {type(response).__name__}")


@dataclass
class ChunkFailure:
    """Rows lost because their chunk's write call failed."""
    chunk_index: int
    row_indices: List[int]
    error: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "row_indices": list(self.row_indices),
            "error": self.error,
        }


@dataclass
class ImportSummary:
    """Final counts of an import."""
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    duplicates: int = 0
    updated: int = 0
    created: int = 0
    failed_chunks: int = 0

    def describe(self) -> str:
        """Human-readable partial-success line."""
        imported = self.created + self.updated
        text = (
            f"{imported:,} of {self.total_processed:,} imported, "
            f"{self.failed:,} invalid"
        )
        if self.duplicates:
            text += f", {self.duplicates:,} duplicates"
        if self.failed_chunks:
            text += f", {self.failed_chunks} chunks failed"
        return text

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_processed": self.total_processed,
            "successful": self.successful,
            "failed": self.failed,
            "duplicates": self.duplicates,
            "updated": self.updated,
            "created": self.created,
            "failed_chunks": self.failed_chunks,
        }


@dataclass
class ImportResult:
    """Result of one import run."""
    success: bool
    operation_id: str
    progress: OperationProgress
    summary: ImportSummary
    data: List[Dict[str, Any]] = field(default_factory=list)
    failed_chunks: List[ChunkFailure] = field(default_factory=list)
    error: Optional[str] = None

    def raise_for_status(self) -> None:
        """Raise OperationError if the import failed as a whole."""
        if not self.success:
            raise OperationError(
                self.error or "Import failed",
                operation_id=self.operation_id,
                status=self.progress.status.value,
            )


# ============================================================
# EXPORT CONFIGURATION & RESULTS
# ============================================================

@dataclass
class DateRange:
    """Inclusive date window on one field."""
    field: str
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "start": to_iso8601(self.start),
            "end": to_iso8601(self.end),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DateRange":
        return cls(
            field=data["field"],
            start=from_iso8601(data["start"]),
            end=from_iso8601(data["end"]),
        )


@dataclass
class ExportSpecification:
    """What to export and how to render it."""
    entity_type: str
    fields: List[str]
    format: TabularFormat = TabularFormat.CSV
    filters: Dict[str, Any] = field(default_factory=dict)
    date_range: Optional[DateRange] = None
    include_related: List[str] = field(default_factory=list)
    include_headers: bool = True
    page_size: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "fields": list(self.fields),
            "format": self.format.value,
            "filters": dict(self.filters),
            "date_range": self.date_range.to_dict() if self.date_range else None,
            "include_related": list(self.include_related),
            "include_headers": self.include_headers,
            "page_size": self.page_size,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportSpecification":
        date_range = data.get("date_range")
        return cls(
            entity_type=data["entity_type"],
            fields=list(data.get("fields") or []),
            format=TabularFormat(data.get("format", "csv")),
            filters=dict(data.get("filters") or {}),
            date_range=DateRange.from_dict(date_range) if date_range else None,
            include_related=list(data.get("include_related") or []),
            include_headers=data.get("include_headers", True),
            page_size=data.get("page_size"),
        )


@dataclass
class PageQuery:
    """One page request to the fetch collaborator."""
    limit: int
    offset: int
    fields: List[str]
    filters: Dict[str, Any] = field(default_factory=dict)
    date_range: Optional[DateRange] = None
    include: List[str] = field(default_factory=list)


@dataclass
class ExportArtifact:
    """A generated export file."""
    file_name: str
    content: bytes
    format: TabularFormat
    record_count: int
    download_url: Optional[str] = None

    @property
    def content_type(self) -> str:
        return self.format.content_type

    @property
    def size_bytes(self) -> int:
        return len(self.content)


@dataclass
class ExportSummary:
    """Record counts of an export."""
    total_records: int = 0
    exported_records: int = 0
    skipped_records: int = 0
    file_size: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_records": self.total_records,
            "exported_records": self.exported_records,
            "skipped_records": self.skipped_records,
            "file_size": self.file_size,
        }


@dataclass
class ExportResult:
    """Result of one export run."""
    success: bool
    operation_id: str
    progress: OperationProgress
    artifact: Optional[ExportArtifact] = None
    summary: Optional[ExportSummary] = None
    error: Optional[str] = None

    @property
    def file_name(self) -> Optional[str]:
        return self.artifact.file_name if self.artifact else None

    def raise_for_status(self) -> None:
        """Raise OperationError if the export failed."""
        if not self.success:
            raise OperationError(
                self.error or "Export failed",
                operation_id=self.operation_id,
                status=self.progress.status.value,
            )
