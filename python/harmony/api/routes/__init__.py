"""API route definitions.

Uses a factory so importing route modules never loads settings.
"""

from fastapi import APIRouter, Depends

from harmony.api.deps import require_internal_header
from harmony.api.routes.complaint_rewrites import router as complaint_rewrites_router
from harmony.api.routes.health import router as health_router
from harmony.api.routes.internal_rewrites import router as internal_rewrites_router


def create_api_router() -> APIRouter:
    """Create the API router; everything except /health needs the internal header."""
    guarded = [Depends(require_internal_header)]

    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(
        complaint_rewrites_router, tags=["complaint-rewrites"], dependencies=guarded
    )
    api_router.include_router(internal_rewrites_router, tags=["internal"], dependencies=guarded)
    return api_router


__all__ = ["create_api_router"]
