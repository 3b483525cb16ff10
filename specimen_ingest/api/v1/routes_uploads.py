from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, File, Form, Query, UploadFile, status

from specimen_ingest.api import deps
from specimen_ingest.db.models import UploadSession, UploadStatus

from . import schemas


router = APIRouter(
    prefix="/specimens/{specimen_ref}/uploads",
    tags=["uploads"],
    dependencies=[Depends(deps.bind_upload_context)],
)


def _status_payload(upload: UploadSession) -> schemas.UploadStatusResponse:
    return schemas.UploadStatusResponse(
        upload_id=upload.id,
        status=upload.status,
        current_part_index=upload.current_part_index,
        # total_parts is only meaningful to clients once the image exists
        total_parts=upload.total_parts if upload.status == UploadStatus.completed else None,
        buffered_bytes=upload.buffered_bytes,
        content_hash=upload.content_hash,
        content_type=upload.content_type,
        image_id=upload.image_id,
        created_at=upload.created_at,
        updated_at=upload.updated_at,
    )


@router.post(
    "",
    response_model=schemas.InitiateUploadResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": schemas.ErrorResponse}, 404: {"model": schemas.ErrorResponse}, 409: {"model": schemas.ErrorResponse}},
    summary="Open a resumable upload session",
)
async def initiate_upload(
    specimen_ref: str,
    payload: schemas.InitiateUploadRequest,
    service: deps.UploadServiceDependency,
    _: deps.UploaderDependency,
) -> schemas.InitiateUploadResponse:
    upload = await service.initiate(
        specimen_ref=specimen_ref,
        content_type=payload.content_type,
        content_hash=payload.content_hash,
    )
    return schemas.InitiateUploadResponse(upload_id=upload.id, current_part_index=upload.current_part_index)


@router.get("", response_model=schemas.UploadListResponse, summary="List upload sessions for a specimen")
async def list_uploads(
    specimen_ref: str,
    service: deps.UploadServiceDependency,
    _: deps.UploaderDependency,
    status_filter: Optional[UploadStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    sort_by: str = Query(default="created_at", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
) -> schemas.UploadListResponse:
    uploads, total = await service.list_uploads(
        specimen_ref=specimen_ref,
        status=status_filter,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return schemas.UploadListResponse(
        uploads=[_status_payload(upload) for upload in uploads],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + len(uploads) < total,
    )


@router.post(
    "/{upload_id}/parts",
    response_model=schemas.AppendPartResponse,
    responses={400: {"model": schemas.ErrorResponse}, 409: {"model": schemas.ErrorResponse}, 503: {"model": schemas.ErrorResponse}},
    summary="Append the next chunk to an upload session",
)
async def append_part(
    specimen_ref: str,
    upload_id: str,
    service: deps.UploadServiceDependency,
    _: deps.UploaderDependency,
    file: UploadFile = File(...),
    part_index: int = Form(..., alias="partIndex", ge=0),
) -> schemas.AppendPartResponse:
    chunk = await file.read()
    await file.close()
    result = await service.append(specimen_ref=specimen_ref, upload_id=upload_id, part_index=part_index, chunk=chunk)
    return schemas.AppendPartResponse(
        current_part_index=result.upload.current_part_index,
        buffered_bytes=result.upload.buffered_bytes,
        flushed=result.outcome.flushed,
    )


@router.post(
    "/{upload_id}/complete",
    response_model=schemas.CompleteUploadResponse,
    responses={409: {"model": schemas.ErrorResponse}, 422: {"model": schemas.ErrorResponse}, 503: {"model": schemas.ErrorResponse}},
    summary="Assemble, verify and link an upload",
)
async def complete_upload(
    specimen_ref: str,
    upload_id: str,
    service: deps.UploadServiceDependency,
    _: deps.UploaderDependency,
    payload: Optional[schemas.CompleteUploadRequest] = Body(default=None),
) -> schemas.CompleteUploadResponse:
    result = await service.complete(
        specimen_ref=specimen_ref,
        upload_id=upload_id,
        target_image_id=payload.target_image_id if payload else None,
    )
    return schemas.CompleteUploadResponse(image_id=result.image.id, image_url=result.image_url)


@router.get("/{upload_id}", response_model=schemas.UploadStatusResponse, summary="Upload session status")
async def get_upload(
    specimen_ref: str,
    upload_id: str,
    service: deps.UploadServiceDependency,
    _: deps.UploaderDependency,
) -> schemas.UploadStatusResponse:
    upload = await service.get_status(specimen_ref=specimen_ref, upload_id=upload_id)
    return _status_payload(upload)


__all__ = ["router"]
