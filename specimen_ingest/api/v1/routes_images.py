from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from specimen_ingest.api import deps
from specimen_ingest.core.logging import get_logger
from specimen_ingest.core.storage import BlobStore, ObjectNotFound, StorageError
from specimen_ingest.db.models import Specimen, SpecimenImage
from specimen_ingest.services.specimens import image_url
from specimen_ingest.uploads.errors import NotFound, Unavailable

from . import schemas


router = APIRouter(prefix="/specimens/{specimen_ref}/images", tags=["images"])
logger = get_logger(component="image_delivery")

IMAGE_CACHE_CONTROL = "public, max-age=3600"


def _describe(specimen: Specimen, image: SpecimenImage) -> schemas.SpecimenImageResponse:
    return schemas.SpecimenImageResponse(
        image_id=image.id,
        image_url=image_url(specimen, image),
        content_hash=image.content_hash,
        content_type=image.content_type,
        is_primary=specimen.primary_image_id == image.id,
        created_at=image.created_at,
        updated_at=image.updated_at,
    )


@router.get("", response_model=schemas.SpecimenImageListResponse, summary="List the images of a specimen")
async def list_images(specimen_ref: str, directory: deps.DirectoryDependency) -> schemas.SpecimenImageListResponse:
    specimen = await directory.get_specimen(specimen_ref)
    images = await directory.list_images(specimen)
    primary = next((image for image in images if image.id == specimen.primary_image_id), None)
    return schemas.SpecimenImageListResponse(
        images=[_describe(specimen, image) for image in images],
        primary_image_id=primary.id if primary else None,
        primary_image_url=image_url(specimen, primary) if primary else None,
    )


@router.get(
    "/{image_ref}/info",
    response_model=schemas.SpecimenImageResponse,
    responses={404: {"model": schemas.ErrorResponse}},
    summary="Describe a specimen image without its bytes",
)
async def get_image_info(specimen_ref: str, image_ref: str, directory: deps.DirectoryDependency) -> schemas.SpecimenImageResponse:
    specimen = await directory.get_specimen(specimen_ref)
    image = await directory.find_image_by_ref(specimen, image_ref)
    if image is None:
        raise NotFound("Image not found for this specimen", image=image_ref)
    return _describe(specimen, image)


@router.get(
    "/{image_ref}",
    response_class=StreamingResponse,
    responses={404: {"model": schemas.ErrorResponse}, 503: {"model": schemas.ErrorResponse}},
    summary="Stream the bytes of a specimen image",
)
async def get_image(
    specimen_ref: str,
    image_ref: str,
    directory: deps.DirectoryDependency,
    storage: BlobStore = Depends(deps.get_storage),
) -> StreamingResponse:
    specimen = await directory.get_specimen(specimen_ref)
    image = await directory.find_image_by_ref(specimen, image_ref)
    if image is None:
        raise NotFound("Image not found for this specimen", image=image_ref)

    try:
        stat = await asyncio.to_thread(storage.stat, image.storage_key)
    except ObjectNotFound as exc:
        logger.warning("image_object_missing", image_id=image.id, key=image.storage_key)
        raise NotFound("Image bytes are missing from storage", image_id=image.id) from exc
    except StorageError as exc:
        raise Unavailable("Blob storage could not serve the image", reason=str(exc)) from exc

    headers = {"Cache-Control": IMAGE_CACHE_CONTROL, "Content-Length": str(stat.size_bytes)}
    if stat.etag:
        headers["ETag"] = stat.etag
    media_type = image.content_type or stat.content_type or "application/octet-stream"
    return StreamingResponse(storage.iter_bytes(image.storage_key), media_type=media_type, headers=headers)


__all__ = ["router"]
