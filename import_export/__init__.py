"""
Import/Export Batch Pipeline.

============================================================
PURPOSE
============================================================
Bulk creation/update of records from CSV or XLSX uploads, and
bulk extraction of records into CSV or XLSX artifacts.

============================================================
PIPELINE
============================================================
Import: upload -> TabularCodec.decode -> RecordValidationStage
        -> BatchProcessor -> bulk-write collaborator
Export: fetch collaborator (paged) -> projection/normalisation
        -> TabularCodec.encode -> ExportArtifact

Row-level and chunk-level problems are reported as data in the
result; only operation-level failures end in status `error`.

============================================================
USAGE
============================================================

from import_export import create_batch_operations_service

service = create_batch_operations_service(write_service=writer)

result = await service.import_data(
    content,
    ImportConfig(entity_type="products", rules=rules),
    file_name="products.csv",
    progress_callback=print_progress,
)
print(result.summary.describe())

============================================================
"""

from .batch import BatchProcessor, BulkWriteService, chunk_records
from .codec import TabularCodec, create_codec, detect_format, normalize_value, validate_upload
from .models import (
    BulkWriteResult,
    CellValue,
    ChunkFailure,
    DateRange,
    DuplicatePolicy,
    ExportArtifact,
    ExportResult,
    ExportSpecification,
    ExportSummary,
    ImportConfig,
    ImportIssue,
    ImportResult,
    ImportSummary,
    IssueSeverity,
    OperationKind,
    OperationProgress,
    OperationStatus,
    PageQuery,
    ParsedRow,
    RuleKind,
    TabularFormat,
    ValidationRule,
)
from .progress import ProgressBroadcaster
from .reports import build_import_template, build_issue_report
from .service import BatchOperationsService, FetchService, create_batch_operations_service
from .validation import RecordValidationStage, ValidationOutcome, validate_field


__all__ = [
    # Service
    "BatchOperationsService",
    "create_batch_operations_service",
    "BulkWriteService",
    "FetchService",
    # Stages
    "BatchProcessor",
    "chunk_records",
    "RecordValidationStage",
    "ValidationOutcome",
    "validate_field",
    "TabularCodec",
    "create_codec",
    "detect_format",
    "normalize_value",
    "validate_upload",
    "ProgressBroadcaster",
    "build_import_template",
    "build_issue_report",
    # Models
    "BulkWriteResult",
    "CellValue",
    "ChunkFailure",
    "DateRange",
    "DuplicatePolicy",
    "ExportArtifact",
    "ExportResult",
    "ExportSpecification",
    "ExportSummary",
    "ImportConfig",
    "ImportIssue",
    "ImportResult",
    "ImportSummary",
    "IssueSeverity",
    "OperationKind",
    "OperationProgress",
    "OperationStatus",
    "PageQuery",
    "ParsedRow",
    "RuleKind",
    "TabularFormat",
    "ValidationRule",
]
