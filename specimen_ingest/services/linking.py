from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from specimen_ingest.core.logging import get_logger
from specimen_ingest.core.storage import BlobStore, StorageError
from specimen_ingest.db.models import Specimen, SpecimenImage
from specimen_ingest.uploads.errors import Conflict, ContentIntegrityError, Unavailable
from specimen_ingest.uploads.integrity import VerifiedObject, ensure_hash_matches, hash_stored_object

from .specimens import SpecimenDirectory


@dataclass(slots=True)
class LinkResult:
    image: SpecimenImage
    verified: VerifiedObject
    created: bool


class ImageLinker:
    """Verify an assembled object and attach it to a specimen.

    This is the single finalize-and-link routine behind both upload front doors.
    It stages changes on the caller's session without committing, so linking
    and the caller's status update land in one transaction.
    """

    def __init__(self, store: BlobStore, session: AsyncSession):
        self.store = store
        self.session = session
        self.directory = SpecimenDirectory(session)
        self.logger = get_logger(component="image_linker")

    async def finalize_and_link(
        self,
        specimen: Specimen,
        *,
        object_key: str,
        content_type: str,
        declared_hash: Optional[str],
        target: Optional[SpecimenImage] = None,
    ) -> LinkResult:
        try:
            verified = await asyncio.to_thread(hash_stored_object, self.store, object_key)
        except StorageError as exc:
            self.logger.error("assembled_object_unreadable", key=object_key, error=str(exc))
            raise Unavailable("Blob storage could not read back the assembled object", reason=str(exc)) from exc

        if declared_hash is not None:
            try:
                ensure_hash_matches(declared_hash, verified.content_hash)
            except ContentIntegrityError:
                self.logger.warning(
                    "upload_integrity_failed",
                    specimen_id=specimen.id,
                    key=object_key,
                    expected=declared_hash,
                    received=verified.content_hash,
                )
                raise

        if target is not None:
            if target.content_hash != verified.content_hash:
                raise Conflict(
                    "Target image content differs from the uploaded bytes",
                    image_id=target.id,
                    expected=target.content_hash,
                    received=verified.content_hash,
                )
            target.storage_key = object_key
            target.content_type = content_type
            image, created = target, False
        else:
            existing = await self.directory.find_image_by_hash(specimen.id, verified.content_hash)
            if existing is not None:
                raise Conflict(
                    "Duplicate image: a file with this content hash already exists for this specimen",
                    image_id=existing.id,
                    content_hash=verified.content_hash,
                )
            image = SpecimenImage(
                specimen_id=specimen.id,
                storage_key=object_key,
                content_hash=verified.content_hash,
                content_type=content_type,
            )
            self.session.add(image)
            created = True

        await self.session.flush()
        if specimen.primary_image_id is None:
            specimen.primary_image_id = image.id

        self.logger.info(
            "image_linked",
            specimen_id=specimen.id,
            image_id=image.id,
            created=created,
            size_bytes=verified.size_bytes,
        )
        return LinkResult(image=image, verified=verified, created=created)


__all__ = ["ImageLinker", "LinkResult"]
