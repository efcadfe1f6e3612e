"""
Shared fixtures for scheduled export tests.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from core.clock import MockClock
from import_export.models import (
    ExportArtifact,
    ExportResult,
    ExportSpecification,
    ExportSummary,
    OperationKind,
    OperationProgress,
    OperationStatus,
    TabularFormat,
)


START = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    # 2025-01-06 is a Monday
    return MockClock(START)


@pytest.fixture
def export_spec():
    return ExportSpecification(entity_type="products", fields=["sku", "name"])


@pytest.fixture
def make_export_result():
    """Factory for successful or failed ExportResults."""

    def make(success: bool = True, records: int = 3, error: str = "catalog unavailable") -> ExportResult:
        progress = OperationProgress(
            operation_id="op_test",
            kind=OperationKind.EXPORT,
            started_at=START,
            status=OperationStatus.COMPLETED if success else OperationStatus.ERROR,
            processed_records=records if success else 0,
        )
        if not success:
            return ExportResult(success=False, operation_id="op_test", progress=progress, error=error)

        content = b"\xef\xbb\xbfsku,name\n" + b"".join(b"S%d,Item\n" % i for i in range(records))
        artifact = ExportArtifact(
            file_name="products_export_2025-01-06T08-00-00-000Z.csv",
            content=content,
            format=TabularFormat.CSV,
            record_count=records,
            download_url="file:///exports/products_export_2025-01-06T08-00-00-000Z.csv",
        )
        return ExportResult(
            success=True,
            operation_id="op_test",
            progress=progress,
            artifact=artifact,
            summary=ExportSummary(
                total_records=records,
                exported_records=records,
                file_size=len(content),
            ),
        )

    return make


@pytest.fixture
def export_service(make_export_result):
    """BatchOperationsService stand-in whose exports succeed by default."""
    service = MagicMock()
    service.export_data = AsyncMock(return_value=make_export_result())
    return service
