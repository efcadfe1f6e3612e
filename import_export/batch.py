"""
Import/Export - Batch Processor.

============================================================
PURPOSE
============================================================
Feeds validated records to the bulk-write collaborator in
fixed-size chunks.

============================================================
RULES
============================================================
- Chunks are consecutive, exhaustive and non-overlapping
- Chunk i+1 is not started until chunk i has returned or failed
- A failing chunk is recorded and skipped; later chunks still run
- The failed chunk's row numbers are kept for reprocessing

============================================================
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence, TypeVar, Union
import logging

from core.exceptions import ChunkWriteError

from .models import BulkWriteResult, ChunkFailure, DuplicatePolicy, ParsedRow


logger = logging.getLogger(__name__)


T = TypeVar("T")


def chunk_records(records: Sequence[T], size: int) -> List[List[T]]:
    """Split records into consecutive slices of at most `size`."""
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")
    return [list(records[i:i + size]) for i in range(0, len(records), size)]


# ============================================================
# COLLABORATOR
# ============================================================

class BulkWriteService(Protocol):
    """Create-or-update N records of one entity type."""

    async def bulk_write(
        self,
        entity_type: str,
        records: List[Dict[str, Any]],
        policy: DuplicatePolicy,
    ) -> Union[BulkWriteResult, Dict[str, Any]]:
        ...


# ============================================================
# PROCESSOR
# ============================================================

@dataclass
class ChunkOutcome:
    """What one chunk contributed (zeros when it failed)."""
    chunk_index: int
    record_count: int
    result: Optional[BulkWriteResult] = None
    failure: Optional[ChunkFailure] = None

    @property
    def succeeded(self) -> bool:
        return self.failure is None


@dataclass
class BatchOutcome:
    """Totals over all chunks."""
    created: int = 0
    updated: int = 0
    duplicates: int = 0
    processed: int = 0
    data: List[Dict[str, Any]] = field(default_factory=list)
    failed_chunks: List[ChunkFailure] = field(default_factory=list)


ChunkCallback = Callable[[ChunkOutcome, int], Awaitable[None]]


class BatchProcessor:
    """Sequential chunked writer over a BulkWriteService."""

    def __init__(self, write_service: BulkWriteService, chunk_size: int = 100):
        if chunk_size < 1:
            raise ValueError(f"Chunk size must be at least 1, got {chunk_size}")
        self._write_service = write_service
        self._chunk_size = chunk_size

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def total_chunks(self, record_count: int) -> int:
        return -(-record_count // self._chunk_size)

    async def process(
        self,
        entity_type: str,
        records: Sequence[ParsedRow],
        policy: DuplicatePolicy,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> BatchOutcome:
        """
        Write all records chunk by chunk.

        on_chunk receives each ChunkOutcome and the total chunk
        count after the chunk settles. It runs inside the chunk
        loop, so the next chunk waits for it.
        """
        chunks = chunk_records(records, self._chunk_size)
        outcome = BatchOutcome()

        for index, chunk in enumerate(chunks):
            chunk_outcome = await self._write_chunk(entity_type, index, chunk, policy)
            outcome.processed += chunk_outcome.record_count

            if chunk_outcome.result is not None:
                outcome.created += chunk_outcome.result.created
                outcome.updated += chunk_outcome.result.updated
                outcome.duplicates += chunk_outcome.result.duplicates
                outcome.data.extend(chunk_outcome.result.data)
            if chunk_outcome.failure is not None:
                outcome.failed_chunks.append(chunk_outcome.failure)

            if on_chunk:
                await on_chunk(chunk_outcome, len(chunks))

        if outcome.failed_chunks:
            lost = sum(len(f.row_indices) for f in outcome.failed_chunks)
            logger.warning(
                f"{entity_type}: {len(outcome.failed_chunks)} of {len(chunks)} chunks failed "
                f"({lost} rows not written)"
            )
        return outcome

    async def _write_chunk(
        self,
        entity_type: str,
        index: int,
        chunk: List[ParsedRow],
        policy: DuplicatePolicy,
    ) -> ChunkOutcome:
        try:
            response = await self._write_service.bulk_write(
                entity_type,
                [row.to_record() for row in chunk],
                policy,
            )
            result = BulkWriteResult.coerce(response)
        except Exception as e:
            error = ChunkWriteError(
                f"Chunk {index} of {entity_type} failed: {e}",
                chunk_index=index,
                record_count=len(chunk),
                cause=e,
            )
            logger.error(error.to_log_format(), exc_info=True)
            return ChunkOutcome(
                chunk_index=index,
                record_count=len(chunk),
                failure=ChunkFailure(
                    chunk_index=index,
                    row_indices=[row.row_index for row in chunk],
                    error=str(e),
                ),
            )

        return ChunkOutcome(chunk_index=index, record_count=len(chunk), result=result)
