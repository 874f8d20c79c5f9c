"""
Health check and status endpoints.
"""
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from cat_engine.core import settings

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint.
    Returns basic health status and the number of registered exams.
    """
    registry = getattr(request.app.state, "registry", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "exams": len(registry) if registry is not None else 0,
    }
