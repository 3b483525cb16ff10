from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from specimen_ingest.db.models import UploadStatus


class CamelModel(BaseModel):
    """Wire models use camelCase field names; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class HealthResponse(BaseModel):
    status: str = Field(default="ok", description="Health status indicator.")
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class InitiateUploadRequest(CamelModel):
    content_type: str = Field(..., json_schema_extra={"example": "image/jpeg"})
    content_hash: str = Field(..., json_schema_extra={"example": "9e107d9d372bb6826bd81d3542a419d6"})


class InitiateUploadResponse(CamelModel):
    upload_id: str
    current_part_index: int


class AppendPartResponse(CamelModel):
    current_part_index: int
    buffered_bytes: int
    flushed: bool = Field(description="Whether this append wrote a part to blob storage.")


class CompleteUploadRequest(CamelModel):
    target_image_id: Optional[int] = Field(default=None, ge=1, description="Existing image to re-point instead of creating one.")


class CompleteUploadResponse(CamelModel):
    image_id: int
    image_url: str


class UploadStatusResponse(CamelModel):
    upload_id: str
    status: UploadStatus
    current_part_index: int
    total_parts: Optional[int] = None
    buffered_bytes: int
    content_hash: str
    content_type: str
    image_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UploadListResponse(CamelModel):
    uploads: List[UploadStatusResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class SpecimenImageResponse(CamelModel):
    image_id: int
    image_url: str
    content_hash: str
    content_type: Optional[str] = None
    is_primary: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SpecimenImageListResponse(CamelModel):
    images: List[SpecimenImageResponse]
    primary_image_id: Optional[int] = None
    primary_image_url: Optional[str] = None


class DevTokenRequest(BaseModel):
    scopes: list[str] = Field(default_factory=lambda: ["uploads"])
    user_id: str | None = Field(default=None, examples=["user-123"])


class DevTokenResponse(BaseModel):
    token: str


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None


__all__ = [
    "HealthResponse",
    "InitiateUploadRequest",
    "InitiateUploadResponse",
    "AppendPartResponse",
    "CompleteUploadRequest",
    "CompleteUploadResponse",
    "SpecimenImageResponse",
    "SpecimenImageListResponse",
    "UploadStatusResponse",
    "UploadListResponse",
    "DevTokenRequest",
    "DevTokenResponse",
    "ErrorResponse",
]
