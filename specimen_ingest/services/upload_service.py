from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import asc, desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from specimen_ingest.core.config import Settings
from specimen_ingest.core.logging import get_logger
from specimen_ingest.core.storage import BlobStore, StorageError
from specimen_ingest.db.models import NON_TERMINAL_STATUSES, Specimen, SpecimenImage, UploadSession, UploadStatus
from specimen_ingest.uploads.buffering import AppendOutcome, BufferFlushController
from specimen_ingest.uploads.errors import (
    Conflict,
    InvalidArgument,
    InvalidState,
    NotFound,
    Unavailable,
)
from specimen_ingest.uploads.integrity import validate_content_hash
from specimen_ingest.uploads.keys import ObjectKeyBuilder, derive_object_key, extension_for

from .completion import CompletionCoordinator
from .specimens import SpecimenDirectory, image_url


SORTABLE_COLUMNS = {
    "id": UploadSession.id,
    "created_at": UploadSession.created_at,
    "updated_at": UploadSession.updated_at,
    "status": UploadSession.status,
}


@dataclass(slots=True)
class AppendResult:
    upload: UploadSession
    outcome: AppendOutcome


@dataclass(slots=True)
class CompletionResult:
    upload: UploadSession
    image: SpecimenImage
    image_url: str


class UploadService:
    """Explicit initiate / append / complete upload flow for specimen images."""

    def __init__(
        self,
        settings: Settings,
        storage: BlobStore,
        session: AsyncSession,
        *,
        key_builder: ObjectKeyBuilder = derive_object_key,
    ):
        self.settings = settings
        self.storage = storage
        self.session = session
        self.key_builder = key_builder
        self.directory = SpecimenDirectory(session)
        self.controller = BufferFlushController(storage, settings.upload_flush_threshold_bytes)
        self.coordinator = CompletionCoordinator(storage, session, self.controller)
        self.logger = get_logger(component="upload_service")

    async def initiate(self, *, specimen_ref: str, content_type: str, content_hash: str) -> UploadSession:
        if content_type not in self.settings.accepted_content_types:
            raise InvalidArgument(
                "Invalid content type",
                expected=list(self.settings.accepted_content_types),
                received=content_type,
            )
        validate_content_hash(content_hash)
        specimen = await self.directory.get_specimen(specimen_ref)

        stmt = select(UploadSession).where(
            UploadSession.specimen_id == specimen.id,
            UploadSession.content_hash == content_hash,
            UploadSession.status.in_(NON_TERMINAL_STATUSES),
        )
        existing = (await self.session.execute(stmt.limit(1))).scalar_one_or_none()
        if existing is not None:
            raise Conflict("An upload for this file is already in progress for this specimen", upload_id=existing.id)

        upload_id = uuid4().hex
        object_key = self.key_builder(specimen.specimen_code, specimen.id, upload_id, extension_for(content_type))
        try:
            backend_upload_id = await asyncio.to_thread(self.storage.create_multipart, object_key, content_type=content_type)
        except StorageError as exc:
            self.logger.error("backend_multipart_open_failed", specimen_id=specimen.id, key=object_key, error=str(exc))
            raise Unavailable("Blob storage could not open the upload", reason=str(exc)) from exc

        upload = UploadSession(
            id=upload_id,
            specimen_id=specimen.id,
            status=UploadStatus.pending,
            content_hash=content_hash,
            content_type=content_type,
            current_part_index=0,
            part_number=1,
            part_etags=[],
            buffered_bytes=0,
            backend_upload_id=backend_upload_id,
            object_key=object_key,
        )
        self.session.add(upload)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            raise Conflict("An upload for this file is already in progress for this specimen") from exc

        self.logger.info("upload_initiated", upload_id=upload.id, specimen_id=specimen.id, key=object_key)
        return upload

    async def append(self, *, specimen_ref: str, upload_id: str, part_index: int, chunk: bytes) -> AppendResult:
        specimen = await self.directory.get_specimen(specimen_ref)
        upload = await self._get_upload(specimen, upload_id)

        if upload.status not in (UploadStatus.pending, UploadStatus.in_progress):
            raise InvalidState("Upload is not in a valid state for appending", status=upload.status.value)
        if not chunk:
            raise InvalidArgument("Chunk is empty")
        if len(chunk) > self.settings.max_chunk_size_bytes:
            raise InvalidArgument("Chunk exceeds the maximum size", limit=self.settings.max_chunk_size_bytes, received=len(chunk))
        if part_index != upload.current_part_index:
            raise InvalidArgument("Invalid part index", expected=upload.current_part_index, received=part_index)

        outcome = await self.controller.append(upload, chunk)
        upload.current_part_index += 1
        upload.status = UploadStatus.in_progress
        await self.coordinator.commit(upload)

        self.logger.debug(
            "upload_chunk_accepted",
            upload_id=upload.id,
            part_index=part_index,
            flushed=outcome.flushed,
            buffered_bytes=upload.buffered_bytes,
        )
        return AppendResult(upload=upload, outcome=outcome)

    async def complete(self, *, specimen_ref: str, upload_id: str, target_image_id: Optional[int] = None) -> CompletionResult:
        specimen = await self.directory.get_specimen(specimen_ref)
        upload = await self._get_upload(specimen, upload_id)

        if upload.status == UploadStatus.pending:
            raise InvalidState("No data has been appended to this upload", status=upload.status.value)
        if upload.status not in (UploadStatus.in_progress, UploadStatus.assembling):
            raise InvalidState("Upload is not in progress", status=upload.status.value)

        target = await self.directory.get_image(specimen, target_image_id) if target_image_id is not None else None

        result = await self.coordinator.finish(upload, specimen, declared_hash=upload.content_hash, target=target)

        self.logger.info("upload_completed", upload_id=upload.id, image_id=result.image.id, parts=upload.total_parts)
        return CompletionResult(upload=upload, image=result.image, image_url=image_url(specimen, result.image))

    async def get_status(self, *, specimen_ref: str, upload_id: str) -> UploadSession:
        specimen = await self.directory.get_specimen(specimen_ref)
        return await self._get_upload(specimen, upload_id)

    async def list_uploads(
        self,
        *,
        specimen_ref: str,
        status: Optional[UploadStatus] = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> tuple[list[UploadSession], int]:
        specimen = await self.directory.get_specimen(specimen_ref)
        column = SORTABLE_COLUMNS.get(sort_by)
        if column is None:
            raise InvalidArgument("Unsupported sort field", expected=sorted(SORTABLE_COLUMNS), received=sort_by)

        filters = [UploadSession.specimen_id == specimen.id]
        if status is not None:
            filters.append(UploadSession.status == status)

        total = (await self.session.execute(select(func.count()).select_from(UploadSession).where(*filters))).scalar_one()
        ordering = asc(column) if sort_order == "asc" else desc(column)
        stmt = select(UploadSession).where(*filters).order_by(ordering, UploadSession.id).limit(limit).offset(offset)
        uploads = list((await self.session.execute(stmt)).scalars().all())
        return uploads, total

    async def list_stale(self, *, older_than: datetime) -> list[UploadSession]:
        """Non-terminal sessions untouched since ``older_than``. Nothing reclaims them automatically."""
        stmt = (
            select(UploadSession)
            .where(UploadSession.status.in_(NON_TERMINAL_STATUSES), UploadSession.updated_at < older_than)
            .order_by(UploadSession.updated_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def _get_upload(self, specimen: Specimen, upload_id: str) -> UploadSession:
        stmt = select(UploadSession).where(UploadSession.id == upload_id, UploadSession.specimen_id == specimen.id)
        upload = (await self.session.execute(stmt)).scalar_one_or_none()
        if upload is None:
            raise NotFound("Upload not found", upload_id=upload_id)
        return upload


__all__ = ["UploadService", "AppendResult", "CompletionResult", "SORTABLE_COLUMNS"]
