from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from specimen_ingest.core.logging import get_logger
from specimen_ingest.core.storage import BlobStore, CompletedPart, StorageError

from .errors import Unavailable

__all__ = ["PartBufferState", "AppendOutcome", "BufferFlushController"]


class PartBufferState(Protocol):
    """Columns a durable upload record must expose to be driven by the controller."""

    part_number: int
    part_etags: list
    buffered_bytes: int
    buffered_data: Optional[bytes]
    backend_upload_id: str
    object_key: str


@dataclass(slots=True)
class AppendOutcome:
    flushed: bool
    buffered_bytes: int
    part_number: Optional[int] = None


class BufferFlushController:
    """Batches client chunks into backend parts of at least ``threshold`` bytes.

    The record is only mutated after the backend accepted the part, so a
    failing upload leaves it exactly as loaded and the caller can retry.
    Persisting the record is the caller's job.
    """

    def __init__(self, store: BlobStore, threshold: int):
        if threshold < 1:
            raise ValueError("flush threshold must be positive")
        self.store = store
        self.threshold = threshold
        self.logger = get_logger(component="buffer_flush")

    async def append(self, record: PartBufferState, chunk: bytes) -> AppendOutcome:
        combined = (record.buffered_data or b"") + chunk
        if len(combined) < self.threshold:
            record.buffered_data = combined
            record.buffered_bytes = len(combined)
            return AppendOutcome(flushed=False, buffered_bytes=len(combined))

        part_number = record.part_number
        await self._write_part(record, part_number, combined)
        return AppendOutcome(flushed=True, buffered_bytes=0, part_number=part_number)

    async def flush_remainder(self, record: PartBufferState) -> bool:
        """Write whatever is buffered as the final part, regardless of size."""
        if not record.buffered_data:
            return False
        await self._write_part(record, record.part_number, record.buffered_data)
        return True

    async def assemble(self, record: PartBufferState) -> None:
        parts = self.completed_parts(record)
        try:
            await asyncio.to_thread(self.store.complete_multipart, record.object_key, record.backend_upload_id, parts)
        except StorageError as exc:
            self.logger.error("multipart_assembly_failed", key=record.object_key, parts=len(parts), error=str(exc))
            raise Unavailable("Blob storage could not assemble the upload", reason=str(exc)) from exc

    @staticmethod
    def completed_parts(record: PartBufferState) -> list[CompletedPart]:
        return [CompletedPart(part_number=index, etag=etag) for index, etag in enumerate(record.part_etags, start=1)]

    @staticmethod
    def reset(record: PartBufferState) -> None:
        record.buffered_data = None
        record.buffered_bytes = 0
        record.part_etags = []
        record.part_number = 1

    async def _write_part(self, record: PartBufferState, part_number: int, payload: bytes) -> None:
        try:
            etag = await asyncio.to_thread(
                self.store.upload_part,
                record.object_key,
                record.backend_upload_id,
                part_number,
                payload,
            )
        except StorageError as exc:
            self.logger.error("upload_part_failed", key=record.object_key, part_number=part_number, error=str(exc))
            raise Unavailable("Blob storage rejected the part; retry the same request", reason=str(exc)) from exc

        # JSON column: assign a new list so the change is tracked.
        record.part_etags = [*record.part_etags, etag]
        record.part_number = part_number + 1
        record.buffered_data = None
        record.buffered_bytes = 0
        self.logger.info("upload_part_flushed", key=record.object_key, part_number=part_number, size_bytes=len(payload))
