"""tus 1.0.0 endpoints (core protocol plus the ``creation`` extension)."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status

from specimen_ingest.api import deps
from specimen_ingest.core.config import Settings
from specimen_ingest.services.tus_service import TUS_EXTENSIONS, TUS_VERSION, encode_metadata, parse_metadata


OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

router = APIRouter(
    prefix="/specimens/{specimen_ref}/uploads/tus",
    tags=["tus"],
    dependencies=[Depends(deps.bind_upload_context)],
)


def _tus_headers(**extra: str) -> dict[str, str]:
    return {"Tus-Resumable": TUS_VERSION, **extra}


def _require_tus_version(tus_resumable: Optional[str]) -> None:
    if tus_resumable != TUS_VERSION:
        raise HTTPException(
            status_code=status.HTTP_412_PRECONDITION_FAILED,
            detail="unsupported_tus_version",
            headers={"Tus-Version": TUS_VERSION},
        )


def _parse_header_int(value: Optional[str], name: str) -> int:
    if value is None or not value.strip().isdigit():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"invalid_{name.lower().replace('-', '_')}")
    return int(value)


@router.options("", status_code=status.HTTP_204_NO_CONTENT, summary="tus capability discovery")
async def tus_options(settings: Settings = Depends(deps.get_app_settings)) -> Response:
    return Response(
        status_code=status.HTTP_204_NO_CONTENT,
        headers=_tus_headers(
            **{
                "Tus-Version": TUS_VERSION,
                "Tus-Extension": ",".join(TUS_EXTENSIONS),
                "Tus-Max-Size": str(settings.tus_max_size_bytes),
            }
        ),
    )


@router.post("", status_code=status.HTTP_201_CREATED, summary="Create a tus upload")
async def tus_create(
    specimen_ref: str,
    request: Request,
    service: deps.TusServiceDependency,
    _: deps.UploaderDependency,
    settings: Settings = Depends(deps.get_app_settings),
    tus_resumable: Optional[str] = Header(default=None, alias="Tus-Resumable"),
    upload_length: Optional[str] = Header(default=None, alias="Upload-Length"),
    upload_metadata: Optional[str] = Header(default=None, alias="Upload-Metadata"),
) -> Response:
    _require_tus_version(tus_resumable)
    length = _parse_header_int(upload_length, "Upload-Length")
    if length > settings.tus_max_size_bytes:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="upload_too_large")

    upload = await service.create(specimen_ref=specimen_ref, upload_length=length, metadata=parse_metadata(upload_metadata))
    location = request.url_for("tus_head", specimen_ref=specimen_ref, upload_id=upload.id)
    return Response(status_code=status.HTTP_201_CREATED, headers=_tus_headers(Location=str(location)))


@router.head("/{upload_id}", name="tus_head", summary="Current offset of a tus upload")
async def tus_head(
    specimen_ref: str,
    upload_id: str,
    service: deps.TusServiceDependency,
    _: deps.UploaderDependency,
    tus_resumable: Optional[str] = Header(default=None, alias="Tus-Resumable"),
) -> Response:
    _require_tus_version(tus_resumable)
    upload = await service.get(specimen_ref=specimen_ref, upload_id=upload_id)
    headers = _tus_headers(
        **{
            "Upload-Offset": str(upload.upload_offset),
            "Upload-Length": str(upload.upload_length),
            "Cache-Control": "no-store",
        }
    )
    if upload.upload_metadata:
        headers["Upload-Metadata"] = encode_metadata(upload.upload_metadata)
    return Response(status_code=status.HTTP_200_OK, headers=headers)


@router.patch("/{upload_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Write bytes to a tus upload")
async def tus_patch(
    specimen_ref: str,
    upload_id: str,
    request: Request,
    service: deps.TusServiceDependency,
    _: deps.UploaderDependency,
    tus_resumable: Optional[str] = Header(default=None, alias="Tus-Resumable"),
    content_type: Optional[str] = Header(default=None, alias="Content-Type"),
    upload_offset: Optional[str] = Header(default=None, alias="Upload-Offset"),
) -> Response:
    _require_tus_version(tus_resumable)
    if content_type != OFFSET_CONTENT_TYPE:
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="unsupported_content_type")
    offset = _parse_header_int(upload_offset, "Upload-Offset")

    chunk = await request.body()
    result = await service.patch(specimen_ref=specimen_ref, upload_id=upload_id, offset=offset, chunk=chunk)

    headers = _tus_headers(**{"Upload-Offset": str(result.upload.upload_offset)})
    if result.image is not None:
        headers["Image-Id"] = str(result.image.id)
        headers["Image-Url"] = result.image_url
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=headers)


__all__ = ["router", "OFFSET_CONTENT_TYPE"]
