"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from app.config import settings
from app.kinds.registry import registry

router = APIRouter()

_dispatcher = None


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


@router.get("/health")
async def health_check():
    """Service health, registered job kinds and background pollers."""
    return {
        "status": "healthy",
        "job_store": settings.job_store,
        "provider_configured": bool(settings.replicate_api_token),
        "job_kinds": [
            {"name": k.name, "resource": k.resource, "target_table": k.target_table, "description": k.description}
            for k in registry.list_kinds()
        ],
        "active_pollers": len(_dispatcher.active()) if _dispatcher is not None else 0,
        "timeout_policy": settings.timeout_policy,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
