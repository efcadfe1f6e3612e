"""
Import/Export - Batch Operations Service.

============================================================
RESPONSIBILITY
============================================================
Runs import and export operations end to end and owns their
live progress.

Import:  decode -> validate -> chunked bulk write
Export:  paged fetch -> projection -> encode -> artifact

============================================================
ARCHITECTURAL POSITION
============================================================
- Persistence is delegated to the bulk-write and fetch collaborators
- Row and chunk problems are reported in the result, never raised
- Operation-level failures set status `error` and return a failed result
- Progress is published to subscribers after each meaningful change

============================================================
"""

from datetime import timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple
import logging
import uuid

from core.clock import ClockFactory, ClockProtocol
from core.config import BatchOpsConfig
from core.exceptions import (
    ConfigurationError,
    DataValidationError,
    OperationStateError,
    UploadRejectedError,
)

from .batch import BatchProcessor, BulkWriteService, ChunkOutcome
from .codec import (
    TabularCodec,
    build_export_filename,
    project_record,
    validate_upload,
)
from .models import (
    EXPORT_TRANSITIONS,
    IMPORT_TRANSITIONS,
    ExportArtifact,
    ExportResult,
    ExportSpecification,
    ExportSummary,
    ImportConfig,
    ImportResult,
    ImportSummary,
    OperationKind,
    OperationProgress,
    OperationStatus,
    PageQuery,
)
from .progress import ProgressBroadcaster, ProgressCallback
from .validation import RecordValidationStage


logger = logging.getLogger(__name__)


# ============================================================
# COLLABORATORS
# ============================================================

class FetchService(Protocol):
    """
    Paging reader for one entity type.

    A `count(entity_type, filters, date_range) -> int` coroutine is
    optional; when present it sizes the progress totals up front.
    """

    async def page(self, entity_type: str, query: PageQuery) -> List[Dict[str, Any]]:
        ...


# ============================================================
# SERVICE
# ============================================================

class BatchOperationsService:
    """
    Import/export orchestrator.

    One instance serves many concurrent operations; each
    operation's progress object is touched only by its own run.
    """

    def __init__(
        self,
        write_service: Optional[BulkWriteService] = None,
        fetch_service: Optional[FetchService] = None,
        codec: Optional[TabularCodec] = None,
        config: Optional[BatchOpsConfig] = None,
        clock: Optional[ClockProtocol] = None,
    ):
        self._write_service = write_service
        self._fetch_service = fetch_service
        self._codec = codec or TabularCodec()
        self._config = config or BatchOpsConfig()
        self._clock = clock or ClockFactory.get_clock()

        self._operations: Dict[str, OperationProgress] = {}
        self._broadcaster = ProgressBroadcaster(
            failure_limit=self._config.subscriber_failure_limit,
        )
        self._validation = RecordValidationStage(
            progress_interval=self._config.progress_interval_rows,
        )

    # ----------------------------------------------------------
    # OPERATION REGISTRY
    # ----------------------------------------------------------

    def new_operation_id(self) -> str:
        """Mint an id so callers can subscribe before starting."""
        return f"op_{uuid.uuid4().hex[:12]}"

    def subscribe(self, operation_id: str, callback: ProgressCallback) -> Callable[[], None]:
        """Receive the live progress object after each change."""
        return self._broadcaster.subscribe(operation_id, callback)

    def get_progress(self, operation_id: str) -> Optional[OperationProgress]:
        self._prune_finished()
        return self._operations.get(operation_id)

    def list_operations(self) -> List[OperationProgress]:
        self._prune_finished()
        return list(self._operations.values())

    def release(self, operation_id: str) -> bool:
        """Forget an operation and its subscribers."""
        self._broadcaster.clear(operation_id)
        return self._operations.pop(operation_id, None) is not None

    def _prune_finished(self) -> None:
        retention = timedelta(seconds=self._config.progress_retention_seconds)
        cutoff = self._clock.now() - retention
        expired = [
            op_id for op_id, progress in self._operations.items()
            if progress.status.is_terminal
            and progress.ended_at is not None
            and progress.ended_at <= cutoff
        ]
        for op_id in expired:
            logger.debug(f"Releasing expired operation {op_id}")
            self.release(op_id)

    def _begin(
        self,
        kind: OperationKind,
        operation_id: Optional[str],
        progress_callback: Optional[ProgressCallback],
    ) -> Tuple[OperationProgress, Optional[Callable[[], None]]]:
        self._prune_finished()
        op_id = operation_id or self.new_operation_id()
        progress = OperationProgress(
            operation_id=op_id,
            kind=kind,
            started_at=self._clock.now(),
        )
        self._operations[op_id] = progress

        unsubscribe = None
        if progress_callback is not None:
            unsubscribe = self.subscribe(op_id, progress_callback)
        return progress, unsubscribe

    def _transition(self, progress: OperationProgress, to_status: OperationStatus) -> None:
        table = IMPORT_TRANSITIONS if progress.kind == OperationKind.IMPORT else EXPORT_TRANSITIONS
        if to_status not in table.get(progress.status, set()):
            raise OperationStateError(
                f"Invalid {progress.kind.value} transition: "
                f"{progress.status.value} -> {to_status.value}",
                operation_id=progress.operation_id,
                from_state=progress.status.value,
                to_state=to_status.value,
            )
        progress.status = to_status
        if to_status.is_terminal:
            progress.ended_at = self._clock.now()

    async def _publish(self, progress: OperationProgress) -> None:
        await self._broadcaster.publish(progress.operation_id, progress)

    async def _fail(self, progress: OperationProgress, message: str) -> None:
        progress.error = message
        if not progress.status.is_terminal:
            self._transition(progress, OperationStatus.ERROR)
        await self._publish(progress)

    # ----------------------------------------------------------
    # IMPORT
    # ----------------------------------------------------------

    async def import_data(
        self,
        content: bytes,
        config: ImportConfig,
        file_name: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
        operation_id: Optional[str] = None,
    ) -> ImportResult:
        """
        Import one file.

        Returns a result whose `success` is False only when the
        operation failed as a whole; invalid rows and failed chunks
        are listed in the progress and result instead.
        """
        if self._write_service is None:
            raise ConfigurationError("Import requires a bulk-write service")

        progress, unsubscribe = self._begin(OperationKind.IMPORT, operation_id, progress_callback)
        summary = ImportSummary()
        logger.info(f"Import {progress.operation_id} started for {config.entity_type}")

        try:
            await self._publish(progress)

            if file_name is not None:
                rejection = validate_upload(file_name, len(content), self._config.max_upload_bytes)
                if rejection:
                    raise UploadRejectedError(rejection, file_name=file_name)

            table = self._codec.decode(content, config.format)
            progress.total_records = table.row_count

            # Validating
            self._transition(progress, OperationStatus.VALIDATING)
            await self._publish(progress)

            async def on_rows_validated(count: int) -> None:
                progress.processed_records = count
                await self._publish(progress)

            outcome = await self._validation.validate(
                table.rows,
                config.rules,
                config.field_mappings,
                on_progress=on_rows_validated,
            )

            progress.processed_records = table.row_count
            progress.valid_records = len(outcome.valid_records)
            progress.invalid_records = outcome.invalid_row_count
            progress.errors.extend(outcome.errors)
            progress.warnings.extend(outcome.warnings)
            summary.total_processed = progress.total_records
            summary.failed = progress.invalid_records
            await self._publish(progress)

            if progress.valid_records == 0 and progress.invalid_records > 0:
                raise DataValidationError(
                    f"No valid records to import ({progress.invalid_records} invalid rows)"
                )

            # Processing
            processor = BatchProcessor(self._write_service, chunk_size=config.chunk_size)
            self._transition(progress, OperationStatus.PROCESSING)
            progress.processed_records = 0
            progress.current_chunk = 0
            progress.total_chunks = processor.total_chunks(len(outcome.valid_records))
            await self._publish(progress)

            async def on_chunk(chunk: ChunkOutcome, total_chunks: int) -> None:
                progress.current_chunk = chunk.chunk_index + 1
                progress.processed_records += chunk.record_count
                if chunk.result is not None:
                    progress.created_records += chunk.result.created
                    progress.updated_records += chunk.result.updated
                    progress.duplicate_records += chunk.result.duplicates
                await self._publish(progress)

            batch = await processor.process(
                config.entity_type,
                outcome.valid_records,
                config.duplicate_policy,
                on_chunk=on_chunk,
            )

            summary.created = batch.created
            summary.updated = batch.updated
            summary.duplicates = batch.duplicates
            summary.successful = batch.created + batch.updated
            summary.failed_chunks = len(batch.failed_chunks)

            self._transition(progress, OperationStatus.COMPLETED)
            await self._publish(progress)

            logger.info(f"Import {progress.operation_id} completed: {summary.describe()}")
            return ImportResult(
                success=True,
                operation_id=progress.operation_id,
                progress=progress,
                summary=summary,
                data=batch.data,
                failed_chunks=batch.failed_chunks,
            )

        except Exception as e:
            logger.error(f"Import {progress.operation_id} failed: {e}", exc_info=True)
            await self._fail(progress, str(e))
            return ImportResult(
                success=False,
                operation_id=progress.operation_id,
                progress=progress,
                summary=summary,
                error=str(e),
            )

        finally:
            if unsubscribe:
                unsubscribe()

    # ----------------------------------------------------------
    # EXPORT
    # ----------------------------------------------------------

    async def export_data(
        self,
        spec: ExportSpecification,
        progress_callback: Optional[ProgressCallback] = None,
        operation_id: Optional[str] = None,
    ) -> ExportResult:
        """Export one entity type into a CSV or workbook artifact."""
        if self._fetch_service is None:
            raise ConfigurationError("Export requires a fetch service")

        progress, unsubscribe = self._begin(OperationKind.EXPORT, operation_id, progress_callback)
        logger.info(f"Export {progress.operation_id} started for {spec.entity_type}")

        try:
            await self._publish(progress)

            # Fetching
            self._transition(progress, OperationStatus.FETCHING)
            await self._publish(progress)
            records = await self._fetch_all(spec, progress)

            # Formatting
            self._transition(progress, OperationStatus.FORMATTING)
            await self._publish(progress)
            projected = [
                project_record(
                    record,
                    spec.fields,
                    self._config.boolean_true_token,
                    self._config.boolean_false_token,
                )
                for record in records
            ]

            # Generating
            self._transition(progress, OperationStatus.GENERATING)
            await self._publish(progress)
            content = self._codec.encode(
                projected,
                spec.fields,
                spec.format,
                sheet_name=spec.entity_type,
                include_headers=spec.include_headers,
            )
            file_name = build_export_filename(spec.entity_type, spec.format, self._clock.now())
            artifact = ExportArtifact(
                file_name=file_name,
                content=content,
                format=spec.format,
                record_count=len(projected),
                download_url=self._store_artifact(file_name, content),
            )

            progress.processed_records = len(projected)
            progress.file_name = artifact.file_name
            progress.download_url = artifact.download_url
            self._transition(progress, OperationStatus.COMPLETED)
            await self._publish(progress)

            logger.info(
                f"Export {progress.operation_id} completed: "
                f"{artifact.record_count} records, {artifact.size_bytes} bytes"
            )
            return ExportResult(
                success=True,
                operation_id=progress.operation_id,
                progress=progress,
                artifact=artifact,
                summary=ExportSummary(
                    total_records=len(records),
                    exported_records=len(projected),
                    skipped_records=len(records) - len(projected),
                    file_size=artifact.size_bytes,
                ),
            )

        except Exception as e:
            logger.error(f"Export {progress.operation_id} failed: {e}", exc_info=True)
            await self._fail(progress, str(e))
            return ExportResult(
                success=False,
                operation_id=progress.operation_id,
                progress=progress,
                error=str(e),
            )

        finally:
            if unsubscribe:
                unsubscribe()

    async def _fetch_all(
        self,
        spec: ExportSpecification,
        progress: OperationProgress,
    ) -> List[Dict[str, Any]]:
        page_size = spec.page_size or self._config.export_page_size

        counter = getattr(self._fetch_service, "count", None)
        if callable(counter):
            total = int(await counter(spec.entity_type, spec.filters, spec.date_range))
            progress.total_records = total
            progress.total_chunks = -(-total // page_size)
            await self._publish(progress)

        records: List[Dict[str, Any]] = []
        offset = 0
        while True:
            query = PageQuery(
                limit=page_size,
                offset=offset,
                fields=list(spec.fields),
                filters=dict(spec.filters),
                date_range=spec.date_range,
                include=list(spec.include_related),
            )
            page = list(await self._fetch_service.page(spec.entity_type, query) or [])
            records.extend(page)
            offset += len(page)

            progress.current_chunk += 1
            progress.total_records = max(progress.total_records, len(records))
            progress.total_chunks = max(progress.total_chunks, progress.current_chunk)
            progress.processed_records = len(records)
            await self._publish(progress)

            if len(page) < page_size:
                break

        return records

    def _store_artifact(self, file_name: str, content: bytes) -> Optional[str]:
        if not self._config.export_dir:
            return None
        directory = Path(self._config.export_dir)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / file_name
        path.write_bytes(content)
        return path.resolve().as_uri()


def create_batch_operations_service(
    write_service: Optional[BulkWriteService] = None,
    fetch_service: Optional[FetchService] = None,
    config: Optional[BatchOpsConfig] = None,
    clock: Optional[ClockProtocol] = None,
) -> BatchOperationsService:
    """Create a batch operations service with the default codec."""
    return BatchOperationsService(
        write_service=write_service,
        fetch_service=fetch_service,
        codec=TabularCodec(),
        config=config,
        clock=clock,
    )
