from __future__ import annotations

import enum
from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Index, Integer, LargeBinary, String, UniqueConstraint, func, text
from sqlalchemy.dialects.postgresql import BIGINT
from sqlalchemy.orm import Mapped, declared_attr, mapped_column, relationship

from specimen_ingest.core.db import Base


class UploadStatus(str, enum.Enum):
    pending = "pending"
    in_progress = "in_progress"
    assembling = "assembling"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {UploadStatus.completed, UploadStatus.failed}


NON_TERMINAL_STATUSES = (UploadStatus.pending, UploadStatus.in_progress, UploadStatus.assembling)

_ACTIVE_SESSION = text("status IN ('pending', 'in_progress', 'assembling')")


class Specimen(Base):
    """Owning resource. Managed by the specimen CRUD surface; this service only reads it
    and maintains ``primary_image_id``."""

    __tablename__ = "specimens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    specimen_code: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    primary_image_id: Mapped[int | None] = mapped_column(
        ForeignKey("specimen_images.id", ondelete="SET NULL", use_alter=True, name="fk_specimens_primary_image"),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    images: Mapped[List["SpecimenImage"]] = relationship(
        back_populates="specimen",
        foreign_keys="SpecimenImage.specimen_id",
        cascade="all, delete-orphan",
    )


class SpecimenImage(Base):
    __tablename__ = "specimen_images"
    __table_args__ = (UniqueConstraint("specimen_id", "content_hash", name="uq_specimen_images_specimen_hash"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    specimen_id: Mapped[int] = mapped_column(ForeignKey("specimens.id", ondelete="CASCADE"), nullable=False)
    storage_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    content_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    specimen: Mapped[Specimen] = relationship(back_populates="images", foreign_keys=[specimen_id])


class BackendPartsMixin:
    """Backend multipart bookkeeping plus the durable byte buffer shared by both upload front doors."""

    status: Mapped[UploadStatus] = mapped_column(Enum(UploadStatus), default=UploadStatus.pending, nullable=False)
    part_number: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    part_etags: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    buffered_bytes: Mapped[int] = mapped_column(BIGINT, default=0, nullable=False)
    buffered_data: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    backend_upload_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    object_key: Mapped[str] = mapped_column(String(1024), nullable=False)
    content_type: Mapped[str] = mapped_column(String(64), nullable=False)
    total_parts: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @declared_attr
    def specimen_id(cls) -> Mapped[int]:
        return mapped_column(ForeignKey("specimens.id", ondelete="CASCADE"), nullable=False)

    @declared_attr
    def image_id(cls) -> Mapped[Optional[int]]:
        return mapped_column(ForeignKey("specimen_images.id", ondelete="SET NULL"), nullable=True)


class UploadSession(BackendPartsMixin, Base):
    __tablename__ = "upload_sessions"
    __table_args__ = (
        Index("ix_upload_sessions_specimen_hash", "specimen_id", "content_hash"),
        Index(
            "uq_upload_sessions_active_hash",
            "specimen_id",
            "content_hash",
            unique=True,
            sqlite_where=_ACTIVE_SESSION,
            postgresql_where=_ACTIVE_SESSION,
        ),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    current_part_index: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


class TusUpload(BackendPartsMixin, Base):
    __tablename__ = "tus_uploads"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    upload_length: Mapped[int] = mapped_column(BIGINT, nullable=False)
    upload_offset: Mapped[int] = mapped_column(BIGINT, default=0, nullable=False)
    upload_metadata: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    declared_hash: Mapped[str | None] = mapped_column(String(32), nullable=True)
    target_image_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}


__all__ = [
    "Specimen",
    "SpecimenImage",
    "UploadSession",
    "TusUpload",
    "UploadStatus",
    "BackendPartsMixin",
    "NON_TERMINAL_STATUSES",
]
