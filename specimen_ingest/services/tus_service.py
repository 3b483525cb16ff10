"""tus 1.0.0 front door for specimen images.

Bytes written with PATCH go through the same part buffering as the explicit
upload flow, and the final PATCH hands over to the shared completion routine,
so both ingress paths give identical integrity and deduplication guarantees.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from specimen_ingest.core.config import Settings
from specimen_ingest.core.logging import get_logger
from specimen_ingest.core.storage import BlobStore, StorageError
from specimen_ingest.db.models import Specimen, SpecimenImage, TusUpload, UploadStatus
from specimen_ingest.uploads.buffering import BufferFlushController
from specimen_ingest.uploads.errors import Conflict, InvalidArgument, InvalidState, NotFound, Unavailable
from specimen_ingest.uploads.integrity import validate_content_hash
from specimen_ingest.uploads.keys import ObjectKeyBuilder, derive_object_key, extension_for

from .completion import CompletionCoordinator
from .specimens import SpecimenDirectory, image_url


TUS_VERSION = "1.0.0"
TUS_EXTENSIONS = ("creation",)

CONTENT_TYPE_KEYS = ("contentType", "filetype")


def parse_metadata(header: Optional[str]) -> dict[str, str]:
    """Decode an ``Upload-Metadata`` header: comma separated ``key base64value`` pairs."""
    metadata: dict[str, str] = {}
    if not header:
        return metadata
    for pair in header.split(","):
        pair = pair.strip()
        if not pair:
            continue
        key, _, encoded = pair.partition(" ")
        if not key or key in metadata:
            raise InvalidArgument("Malformed Upload-Metadata header", key=key)
        try:
            metadata[key] = base64.b64decode(encoded.strip(), validate=True).decode("utf-8") if encoded.strip() else ""
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise InvalidArgument("Upload-Metadata values must be base64 encoded", key=key) from exc
    return metadata


def encode_metadata(metadata: dict[str, str]) -> str:
    return ",".join(
        f"{key} {base64.b64encode(value.encode('utf-8')).decode('ascii')}" if value else key
        for key, value in metadata.items()
    )


@dataclass(slots=True)
class TusPatchResult:
    upload: TusUpload
    image: Optional[SpecimenImage] = None
    image_url: Optional[str] = None


class TusService:
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
        self.controller = BufferFlushController(storage, settings.tus_part_size_bytes)
        self.coordinator = CompletionCoordinator(storage, session, self.controller)
        self.logger = get_logger(component="tus_service")

    async def create(self, *, specimen_ref: str, upload_length: int, metadata: dict[str, str]) -> TusUpload:
        content_type = next((metadata[key] for key in CONTENT_TYPE_KEYS if metadata.get(key)), None)
        if content_type not in self.settings.accepted_content_types:
            raise InvalidArgument(
                "Invalid content type",
                expected=list(self.settings.accepted_content_types),
                received=content_type,
            )
        declared_hash = metadata.get("filemd5") or None
        if declared_hash is not None:
            validate_content_hash(declared_hash)
        if upload_length < 1:
            raise InvalidArgument("Upload-Length must be positive", received=upload_length)

        specimen = await self.directory.get_specimen(specimen_ref)
        target = await self._resolve_target(specimen, metadata.get("imageId"))

        if target is not None and declared_hash is not None and target.content_hash != declared_hash:
            raise Conflict(
                "Target image content differs from the declared file hash",
                image_id=target.id,
                expected=target.content_hash,
                received=declared_hash,
            )

        if declared_hash is not None:
            collision = await self.directory.find_image_by_hash(
                specimen.id,
                declared_hash,
                exclude_image_id=target.id if target else None,
            )
            if collision is not None:
                raise Conflict(
                    "Duplicate image: a file with this content hash already exists for this specimen",
                    image_id=collision.id,
                    content_hash=declared_hash,
                )

        upload_id = uuid4().hex
        object_key = self.key_builder(specimen.specimen_code, specimen.id, upload_id, extension_for(content_type))
        try:
            backend_upload_id = await asyncio.to_thread(self.storage.create_multipart, object_key, content_type=content_type)
        except StorageError as exc:
            self.logger.error("backend_multipart_open_failed", specimen_id=specimen.id, key=object_key, error=str(exc))
            raise Unavailable("Blob storage could not open the upload", reason=str(exc)) from exc

        upload = TusUpload(
            id=upload_id,
            specimen_id=specimen.id,
            status=UploadStatus.pending,
            upload_length=upload_length,
            upload_offset=0,
            upload_metadata=metadata,
            content_type=content_type,
            declared_hash=declared_hash,
            target_image_id=target.id if target else None,
            part_number=1,
            part_etags=[],
            buffered_bytes=0,
            backend_upload_id=backend_upload_id,
            object_key=object_key,
        )
        self.session.add(upload)
        await self.session.commit()
        self.logger.info("tus_upload_created", upload_id=upload.id, specimen_id=specimen.id, length=upload_length)
        return upload

    async def get(self, *, specimen_ref: str, upload_id: str) -> TusUpload:
        specimen = await self.directory.get_specimen(specimen_ref)
        return await self._get_upload(specimen, upload_id)

    async def patch(self, *, specimen_ref: str, upload_id: str, offset: int, chunk: bytes) -> TusPatchResult:
        specimen = await self.directory.get_specimen(specimen_ref)
        upload = await self._get_upload(specimen, upload_id)

        if upload.status.is_terminal:
            raise InvalidState("Upload is already finished", status=upload.status.value)
        if upload.status == UploadStatus.assembling and chunk:
            raise InvalidState("Upload is being assembled; resume with an empty PATCH", status=upload.status.value)
        if offset != upload.upload_offset:
            raise Conflict("Upload-Offset does not match the current offset", expected=upload.upload_offset, received=offset)
        if offset + len(chunk) > upload.upload_length:
            raise InvalidArgument(
                "Request body exceeds Upload-Length",
                upload_length=upload.upload_length,
                received_end=offset + len(chunk),
            )

        if chunk:
            await self.controller.append(upload, chunk)
            upload.upload_offset += len(chunk)
            upload.status = UploadStatus.in_progress
            await self.coordinator.commit(upload)

        if upload.upload_offset < upload.upload_length:
            return TusPatchResult(upload=upload)

        # All bytes received. A PATCH with an empty body at the final offset
        # resumes a finish that previously failed with Unavailable.
        target = await self._resolve_target(specimen, upload.target_image_id)
        result = await self.coordinator.finish(upload, specimen, declared_hash=upload.declared_hash, target=target)
        self.logger.info("tus_upload_completed", upload_id=upload.id, image_id=result.image.id)
        return TusPatchResult(upload=upload, image=result.image, image_url=image_url(specimen, result.image))

    async def _resolve_target(self, specimen: Specimen, raw: object) -> Optional[SpecimenImage]:
        if raw in (None, ""):
            return None
        try:
            image_id = int(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidArgument("imageId must be an integer", received=raw) from exc
        return await self.directory.get_image(specimen, image_id)

    async def _get_upload(self, specimen: Specimen, upload_id: str) -> TusUpload:
        stmt = select(TusUpload).where(TusUpload.id == upload_id, TusUpload.specimen_id == specimen.id)
        upload = (await self.session.execute(stmt)).scalar_one_or_none()
        if upload is None:
            raise NotFound("Upload not found", upload_id=upload_id)
        return upload


__all__ = ["TusService", "TusPatchResult", "parse_metadata", "encode_metadata", "TUS_VERSION", "TUS_EXTENSIONS"]
