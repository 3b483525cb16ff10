from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from specimen_ingest.core.auth import AuthContext, require_upload_scope
from specimen_ingest.core.config import Settings, get_settings
from specimen_ingest.core.logging import bind_request_context
from specimen_ingest.core.storage import BlobStore
from specimen_ingest.services.specimens import SpecimenDirectory
from specimen_ingest.services.tus_service import TusService
from specimen_ingest.services.upload_service import UploadService


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory = request.app.state.session_factory
    if not isinstance(session_factory, async_sessionmaker):  # pragma: no cover - defensive
        raise RuntimeError("session_factory_not_configured")
    async with session_factory() as session:
        yield session


def get_storage(request: Request) -> BlobStore:
    storage: BlobStore = request.app.state.storage
    return storage


def get_app_settings() -> Settings:
    return get_settings()


def bind_upload_context(request: Request) -> None:
    bind_request_context(
        specimen=request.path_params.get("specimen_ref"),
        upload_id=request.path_params.get("upload_id"),
    )


async def get_upload_service(
    session: AsyncSession = Depends(get_session),
    storage: BlobStore = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[UploadService]:
    service = UploadService(settings, storage, session)
    yield service


async def get_tus_service(
    session: AsyncSession = Depends(get_session),
    storage: BlobStore = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[TusService]:
    service = TusService(settings, storage, session)
    yield service


async def get_specimen_directory(session: AsyncSession = Depends(get_session)) -> SpecimenDirectory:
    return SpecimenDirectory(session)


UploadServiceDependency = Annotated[UploadService, Depends(get_upload_service)]
TusServiceDependency = Annotated[TusService, Depends(get_tus_service)]
DirectoryDependency = Annotated[SpecimenDirectory, Depends(get_specimen_directory)]
UploaderDependency = Annotated[AuthContext, Depends(require_upload_scope)]


__all__ = [
    "get_session",
    "get_storage",
    "get_app_settings",
    "bind_upload_context",
    "get_upload_service",
    "get_tus_service",
    "get_specimen_directory",
    "UploadServiceDependency",
    "TusServiceDependency",
    "DirectoryDependency",
    "UploaderDependency",
]
