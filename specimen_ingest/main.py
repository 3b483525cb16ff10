from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from specimen_ingest.api.v1 import get_api_router
from specimen_ingest.core.config import get_settings
from specimen_ingest.core.db import create_engine, create_schema, create_session_factory
from specimen_ingest.core.logging import configure_logging, get_logger
from specimen_ingest.core.storage import get_storage
from specimen_ingest.uploads.errors import InvalidArgument, UploadError


logger = get_logger(component="api")


async def handle_upload_error(request: Request, exc: UploadError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log("upload_request_rejected", path=request.url.path, error=exc.kind, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = InvalidArgument(
        "Request validation failed",
        errors=[{"loc": list(item.get("loc", ())), "msg": item.get("msg")} for item in exc.errors()],
    )
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


def create_app() -> FastAPI:
    settings = get_settings()
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)
    configure_logging(level=log_level, json=settings.environment_lower not in {"development", "dev"})
    storage = get_storage(settings)
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.auto_create_schema:
            await create_schema(engine)
        app.state.settings = settings
        app.state.storage = storage
        app.state.engine = engine
        app.state.session_factory = session_factory
        logger.info("app_started", environment=settings.environment, storage_backend=settings.storage_backend)
        try:
            yield
        finally:
            await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json",
        docs_url="/docs",
    )
    app.add_exception_handler(UploadError, handle_upload_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)

    app.include_router(get_api_router())
    return app


app = create_app()


__all__ = ["app", "create_app"]
