from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from specimen_ingest.db.models import Specimen, SpecimenImage
from specimen_ingest.uploads.errors import NotFound


def _as_int(value: str) -> Optional[int]:
    return int(value) if value.isdigit() and int(value) > 0 else None


class SpecimenDirectory:
    """Read access to specimens and their images, owned by the specimen CRUD surface."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_specimen(self, ref: str) -> Optional[Specimen]:
        """Resolve a specimen by numeric id or by its external code."""
        numeric = _as_int(ref)
        if numeric is not None:
            specimen = await self.session.get(Specimen, numeric)
            if specimen:
                return specimen
        stmt = select(Specimen).where(Specimen.specimen_code == ref)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_specimen(self, ref: str) -> Specimen:
        specimen = await self.find_specimen(ref)
        if specimen is None:
            raise NotFound("Specimen not found", specimen=ref)
        return specimen

    async def get_image(self, specimen: Specimen, image_id: int) -> SpecimenImage:
        stmt = select(SpecimenImage).where(SpecimenImage.id == image_id, SpecimenImage.specimen_id == specimen.id)
        image = (await self.session.execute(stmt)).scalar_one_or_none()
        if image is None:
            raise NotFound("Image not found for this specimen", image_id=image_id)
        return image

    async def list_images(self, specimen: Specimen) -> list[SpecimenImage]:
        stmt = (
            select(SpecimenImage)
            .where(SpecimenImage.specimen_id == specimen.id)
            .order_by(SpecimenImage.created_at.desc(), SpecimenImage.id.desc())
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def find_image_by_ref(self, specimen: Specimen, ref: str) -> Optional[SpecimenImage]:
        """Look an image up by id, falling back to its content hash."""
        numeric = _as_int(ref)
        if numeric is not None:
            stmt = select(SpecimenImage).where(SpecimenImage.id == numeric, SpecimenImage.specimen_id == specimen.id)
            image = (await self.session.execute(stmt)).scalar_one_or_none()
            if image:
                return image
        return await self.find_image_by_hash(specimen.id, ref)

    async def find_image_by_hash(
        self,
        specimen_id: int,
        content_hash: str,
        *,
        exclude_image_id: Optional[int] = None,
    ) -> Optional[SpecimenImage]:
        stmt = select(SpecimenImage).where(
            SpecimenImage.specimen_id == specimen_id,
            SpecimenImage.content_hash == content_hash,
        )
        if exclude_image_id is not None:
            stmt = stmt.where(SpecimenImage.id != exclude_image_id)
        return (await self.session.execute(stmt.limit(1))).scalar_one_or_none()


def image_url(specimen: Specimen, image: SpecimenImage) -> str:
    return f"/v1/specimens/{specimen.specimen_code}/images/{image.id}"


__all__ = ["SpecimenDirectory", "image_url"]
