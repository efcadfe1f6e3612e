"""
Tests for the Batch Operations Service.

============================================================
PURPOSE
============================================================
End-to-end import and export runs against in-memory
collaborators:
- Lifecycle order and progress publishing
- Partial success (invalid rows, failed chunks)
- Operation-level failures
- Export paging, projection and artifacts
- Operation registry retention

============================================================
"""

import pytest
from datetime import datetime, timezone
from typing import Any, Dict, List
from unittest.mock import MagicMock

from core.clock import MockClock
from core.config import BatchOpsConfig
from core.exceptions import ConfigurationError, OperationError
from import_export.models import (
    ExportSpecification,
    ImportConfig,
    OperationStatus,
    PageQuery,
    RuleKind,
    TabularFormat,
    ValidationRule,
)
from import_export.service import BatchOperationsService, create_batch_operations_service


# ============================================================
# FIXTURES
# ============================================================

class FakeWriter:
    """Creates every record; chosen calls raise."""

    def __init__(self, fail_calls=()):
        self.calls: List[List[Dict[str, Any]]] = []
        self._fail_calls = set(fail_calls)

    async def bulk_write(self, entity_type, records, policy):
        self.calls.append(records)
        if len(self.calls) in self._fail_calls:
            raise RuntimeError("write timeout")
        return {"created": len(records)}


class FakeFetcher:
    """Serves a fixed record list page by page."""

    def __init__(self, records: List[Dict[str, Any]], fail: bool = False):
        self.records = records
        self.queries: List[PageQuery] = []
        self._fail = fail

    async def page(self, entity_type, query):
        self.queries.append(query)
        if self._fail:
            raise ConnectionError("catalog unavailable")
        return self.records[query.offset:query.offset + query.limit]


class CountingFetcher(FakeFetcher):
    async def count(self, entity_type, filters, date_range):
        return len(self.records)


@pytest.fixture
def clock():
    return MockClock(datetime(2025, 1, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def product_rules():
    return [
        ValidationRule(field="name", kind=RuleKind.REQUIRED, message="Name is required"),
        ValidationRule(field="price", kind=RuleKind.NUMERIC, min=0, message="Price must be a number"),
    ]


@pytest.fixture
def products():
    return [
        {"sku": f"SKU-{i}", "name": f"Product {i}", "active": i % 2 == 0, "price": i}
        for i in range(25)
    ]


def csv_bytes(header: str, lines: List[str]) -> bytes:
    return ("\n".join([header] + lines) + "\n").encode("utf-8")


def status_recorder():
    seen: List[OperationStatus] = []

    def record(progress):
        if not seen or seen[-1] != progress.status:
            seen.append(progress.status)

    return seen, record


# ============================================================
# IMPORT
# ============================================================

class TestImport:
    """Tests for import_data."""

    @pytest.mark.asyncio
    async def test_partial_success(self, clock, product_rules):
        writer = FakeWriter()
        service = create_batch_operations_service(write_service=writer, clock=clock)
        content = csv_bytes("name,price", ["Mug,3", ",4", "Plate,abc", "Lamp,10"])
        statuses, record = status_recorder()

        result = await service.import_data(
            content,
            ImportConfig(entity_type="products", rules=product_rules),
            file_name="products.csv",
            progress_callback=record,
        )

        assert result.success
        assert statuses == [
            OperationStatus.PREPARING,
            OperationStatus.VALIDATING,
            OperationStatus.PROCESSING,
            OperationStatus.COMPLETED,
        ]
        assert result.summary.total_processed == 4
        assert result.summary.failed == 2
        assert result.summary.created == 2
        assert result.summary.successful == 2
        assert result.summary.describe() == "2 of 4 imported, 2 invalid"
        assert [issue.row for issue in result.progress.errors] == [3, 4]
        assert [r["name"] for r in writer.calls[0]] == ["Mug", "Lamp"]

    @pytest.mark.asyncio
    async def test_failed_chunk_still_completes(self, clock):
        writer = FakeWriter(fail_calls={3})
        service = create_batch_operations_service(write_service=writer, clock=clock)
        content = csv_bytes("sku", [f"SKU-{i}" for i in range(237)])

        result = await service.import_data(content, ImportConfig(entity_type="products", chunk_size=50))

        progress = result.progress
        assert result.success
        assert progress.status == OperationStatus.COMPLETED
        assert progress.total_chunks == 5
        assert progress.current_chunk == 5
        assert progress.created_records == 187
        assert progress.processed_records == 237
        assert result.summary.failed_chunks == 1
        assert result.failed_chunks[0].row_indices == list(range(102, 152))
        assert result.summary.describe() == "187 of 237 imported, 0 invalid, 1 chunks failed"

    @pytest.mark.asyncio
    async def test_no_valid_rows_is_an_operation_failure(self, clock, product_rules):
        writer = FakeWriter()
        service = create_batch_operations_service(write_service=writer, clock=clock)
        content = csv_bytes("name,price", [",1", ",2"])

        result = await service.import_data(content, ImportConfig(entity_type="products", rules=product_rules))

        assert not result.success
        assert result.progress.status == OperationStatus.ERROR
        assert "No valid records to import" in result.error
        assert result.progress.error == result.error
        assert [issue.row for issue in result.progress.errors] == [2, 3]
        assert result.progress.ended_at == clock.now()
        assert writer.calls == []
        with pytest.raises(OperationError):
            result.raise_for_status()

    @pytest.mark.asyncio
    async def test_rejected_upload(self, clock):
        service = create_batch_operations_service(write_service=FakeWriter(), clock=clock)

        result = await service.import_data(b"name\nMug\n", ImportConfig(entity_type="products"), file_name="products.pdf")

        assert not result.success
        assert result.error == "Only Excel (.xlsx) and CSV files are supported"
        assert result.progress.error == result.error
        assert result.progress.errors == []

    @pytest.mark.asyncio
    async def test_unparseable_file(self, clock):
        service = create_batch_operations_service(write_service=FakeWriter(), clock=clock)

        result = await service.import_data(b"", ImportConfig(entity_type="products"))

        assert not result.success
        assert result.progress.status == OperationStatus.ERROR

    @pytest.mark.asyncio
    async def test_requires_write_service(self):
        service = BatchOperationsService()
        with pytest.raises(ConfigurationError):
            await service.import_data(b"name\nMug\n", ImportConfig(entity_type="products"))

    @pytest.mark.asyncio
    async def test_subscribe_before_start(self, clock):
        service = create_batch_operations_service(write_service=FakeWriter(), clock=clock)
        op_id = service.new_operation_id()
        listener = MagicMock()
        service.subscribe(op_id, listener)

        result = await service.import_data(b"name\nMug\n", ImportConfig(entity_type="products"), operation_id=op_id)

        assert result.operation_id == op_id
        assert listener.call_count >= 4
        assert service.get_progress(op_id) is result.progress

    @pytest.mark.asyncio
    async def test_per_call_callback_is_unsubscribed(self, clock):
        service = create_batch_operations_service(write_service=FakeWriter(), clock=clock)
        callback = MagicMock()

        result = await service.import_data(b"name\nMug\n", ImportConfig(entity_type="products"), progress_callback=callback)

        assert service._broadcaster.subscriber_count(result.operation_id) == 0


# ============================================================
# EXPORT
# ============================================================

class TestExport:
    """Tests for export_data."""

    @pytest.mark.asyncio
    async def test_pages_until_short_page(self, clock, products):
        fetcher = FakeFetcher(products)
        service = create_batch_operations_service(fetch_service=fetcher, clock=clock)
        statuses, record = status_recorder()

        result = await service.export_data(
            ExportSpecification(entity_type="products", fields=["sku", "active"], page_size=10),
            progress_callback=record,
        )

        assert result.success
        assert [q.offset for q in fetcher.queries] == [0, 10, 20]
        assert all(q.limit == 10 for q in fetcher.queries)
        assert statuses == [
            OperationStatus.PREPARING,
            OperationStatus.FETCHING,
            OperationStatus.FORMATTING,
            OperationStatus.GENERATING,
            OperationStatus.COMPLETED,
        ]
        assert result.artifact.record_count == 25
        assert result.progress.processed_records == 25
        assert result.summary.exported_records == 25

        lines = result.artifact.content.decode("utf-8-sig").splitlines()
        assert lines[0] == "sku,active"
        assert lines[1] == "SKU-0,Yes"
        assert lines[2] == "SKU-1,No"
        assert len(lines) == 26

    @pytest.mark.asyncio
    async def test_full_last_page_needs_one_more_call(self, clock, products):
        fetcher = FakeFetcher(products[:20])
        service = create_batch_operations_service(fetch_service=fetcher, clock=clock)

        result = await service.export_data(ExportSpecification(entity_type="products", fields=["sku"], page_size=10))

        assert [q.offset for q in fetcher.queries] == [0, 10, 20]
        assert result.artifact.record_count == 20

    @pytest.mark.asyncio
    async def test_count_sizes_progress(self, clock, products):
        fetcher = CountingFetcher(products)
        service = create_batch_operations_service(fetch_service=fetcher, clock=clock)
        totals = []

        await service.export_data(
            ExportSpecification(entity_type="products", fields=["sku"], page_size=10),
            progress_callback=lambda p: totals.append((p.status, p.total_records, p.total_chunks)),
        )

        fetching = [t for t in totals if t[0] == OperationStatus.FETCHING]
        assert fetching[0][1:] == (0, 0)
        assert all(t[1:] == (25, 3) for t in fetching[1:])

    @pytest.mark.asyncio
    async def test_query_carries_spec(self, clock, products):
        fetcher = FakeFetcher(products)
        service = create_batch_operations_service(fetch_service=fetcher, clock=clock)

        await service.export_data(ExportSpecification(
            entity_type="products",
            fields=["sku"],
            filters={"category": "kitchen"},
            include_related=["supplier"],
        ))

        query = fetcher.queries[0]
        assert query.limit == BatchOpsConfig().export_page_size
        assert query.filters == {"category": "kitchen"}
        assert query.include == ["supplier"]
        assert query.fields == ["sku"]

    @pytest.mark.asyncio
    async def test_filename_and_workbook(self, clock, products):
        service = create_batch_operations_service(fetch_service=FakeFetcher(products), clock=clock)

        result = await service.export_data(
            ExportSpecification(entity_type="products", fields=["sku"], format=TabularFormat.EXCEL)
        )

        assert result.file_name == "products_export_2025-01-01T10-00-00-000Z.xlsx"
        assert result.artifact.content_type.startswith("application/vnd.openxmlformats")
        assert result.progress.file_name == result.file_name

    @pytest.mark.asyncio
    async def test_empty_export(self, clock):
        service = create_batch_operations_service(fetch_service=FakeFetcher([]), clock=clock)

        result = await service.export_data(ExportSpecification(entity_type="products", fields=["sku", "name"]))

        assert result.success
        assert result.artifact.content == b"\xef\xbb\xbfsku,name\n"
        assert result.artifact.record_count == 0

    @pytest.mark.asyncio
    async def test_artifact_written_to_export_dir(self, clock, products, tmp_path):
        service = create_batch_operations_service(
            fetch_service=FakeFetcher(products),
            config=BatchOpsConfig(export_dir=str(tmp_path)),
            clock=clock,
        )

        result = await service.export_data(ExportSpecification(entity_type="products", fields=["sku"]))

        path = tmp_path / result.file_name
        assert path.read_bytes() == result.artifact.content
        assert result.artifact.download_url == path.resolve().as_uri()
        assert result.progress.download_url == result.artifact.download_url

    @pytest.mark.asyncio
    async def test_fetch_failure(self, clock):
        service = create_batch_operations_service(fetch_service=FakeFetcher([], fail=True), clock=clock)

        result = await service.export_data(ExportSpecification(entity_type="products", fields=["sku"]))

        assert not result.success
        assert result.progress.status == OperationStatus.ERROR
        assert result.error == "catalog unavailable"
        assert result.artifact is None

    @pytest.mark.asyncio
    async def test_requires_fetch_service(self):
        with pytest.raises(ConfigurationError):
            await BatchOperationsService().export_data(ExportSpecification(entity_type="products", fields=["sku"]))


# ============================================================
# REGISTRY
# ============================================================

class TestOperationRegistry:
    """Tests for progress lookup and retention."""

    @pytest.mark.asyncio
    async def test_finished_operations_expire(self, clock, products):
        service = create_batch_operations_service(
            fetch_service=FakeFetcher(products),
            config=BatchOpsConfig(progress_retention_seconds=60),
            clock=clock,
        )
        result = await service.export_data(ExportSpecification(entity_type="products", fields=["sku"]))
        assert service.get_progress(result.operation_id) is not None

        clock.advance(61)

        assert service.get_progress(result.operation_id) is None
        assert service.list_operations() == []

    @pytest.mark.asyncio
    async def test_release(self, clock, products):
        service = create_batch_operations_service(fetch_service=FakeFetcher(products), clock=clock)
        result = await service.export_data(ExportSpecification(entity_type="products", fields=["sku"]))

        assert service.release(result.operation_id)
        assert not service.release(result.operation_id)
        assert service.get_progress(result.operation_id) is None
