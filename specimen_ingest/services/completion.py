from __future__ import annotations

from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from specimen_ingest.core.logging import get_logger
from specimen_ingest.core.storage import BlobStore
from specimen_ingest.db.models import BackendPartsMixin, Specimen, SpecimenImage, UploadStatus
from specimen_ingest.uploads.buffering import BufferFlushController
from specimen_ingest.uploads.errors import Conflict, ContentIntegrityError

from .linking import ImageLinker, LinkResult


class CompletionCoordinator:
    """Drives an upload record from "all bytes received" to a linked image.

    Shared by the explicit upload flow and the tus adapter. The record may be
    any model carrying ``BackendPartsMixin`` columns.
    """

    def __init__(self, storage: BlobStore, session: AsyncSession, controller: BufferFlushController):
        self.storage = storage
        self.session = session
        self.controller = controller
        self.linker = ImageLinker(storage, session)
        self.logger = get_logger(component="completion")

    async def finish(
        self,
        record: BackendPartsMixin,
        specimen: Specimen,
        *,
        declared_hash: Optional[str],
        target: Optional[SpecimenImage] = None,
    ) -> LinkResult:
        # total_parts marks a finished backend assembly, so a retry after a
        # failed read-back goes straight to verification.
        if record.total_parts is None:
            await self.claim(record)
            await self.controller.flush_remainder(record)
            await self.controller.assemble(record)
            record.total_parts = len(record.part_etags)
            await self.commit(record)

        try:
            result = await self.linker.finalize_and_link(
                specimen,
                object_key=record.object_key,
                content_type=record.content_type,
                declared_hash=declared_hash,
                target=target,
            )
        except (ContentIntegrityError, Conflict) as exc:
            await self.fail(record, reason=exc.kind)
            raise
        except IntegrityError as exc:
            await self.fail(record, reason=Conflict.kind)
            raise Conflict("Duplicate image: a file with this content hash already exists for this specimen") from exc

        record.status = UploadStatus.completed
        record.image_id = result.image.id
        self.controller.reset(record)
        await self.commit(record)
        return result

    async def claim(self, record: BackendPartsMixin) -> None:
        """Move the record to ``assembling`` before any irreversible backend call.

        The version-checked commit makes a concurrent writer that loaded the
        row earlier lose here, while the multipart upload is still open.
        Appends are refused once the claim is visible. A record already
        claimed by an earlier attempt is resumed as is.
        """
        if record.status == UploadStatus.assembling:
            return
        record.status = UploadStatus.assembling
        await self.commit(record)

    async def commit(self, record: BackendPartsMixin) -> None:
        """Commit, turning a lost optimistic-version race into Conflict."""
        record_id = record.id
        try:
            await self.session.commit()
        except StaleDataError as exc:
            await self.session.rollback()
            self.logger.warning("upload_concurrent_modification", upload_id=record_id)
            raise Conflict("Upload was modified by a concurrent request; re-read its status and retry", upload_id=record_id) from exc

    async def fail(self, record: BackendPartsMixin, *, reason: str) -> None:
        """Discard staged changes and mark the record terminally failed."""
        record_id = record.id
        await self.session.rollback()
        await self.session.refresh(record)
        record.status = UploadStatus.failed
        await self.commit(record)
        self.logger.warning("upload_failed", upload_id=record_id, reason=reason)


__all__ = ["CompletionCoordinator"]
