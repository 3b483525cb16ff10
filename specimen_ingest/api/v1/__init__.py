"""Versioned API routing for specimen image ingest."""

from fastapi import APIRouter

from . import routes_admin, routes_images, routes_system, routes_tus, routes_uploads


def get_api_router() -> APIRouter:
    router = APIRouter(prefix="/v1")
    router.include_router(routes_system.router)
    router.include_router(routes_admin.router)
    # tus paths sit under the uploads prefix, so they are registered first
    router.include_router(routes_tus.router)
    router.include_router(routes_uploads.router)
    router.include_router(routes_images.router)
    return router


__all__ = ["get_api_router"]
