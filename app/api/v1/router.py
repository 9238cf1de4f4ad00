"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.health import router as health_router
from app.api.v1.jobs import router as jobs_router
from app.api.v1.lora import router as lora_router
from app.api.v1.models_api import router as models_router
from app.api.v1.poses import router as poses_router
from app.api.v1.products import router as products_router
from app.api.v1.upload import router as upload_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(jobs_router, tags=["jobs"])
v1_router.include_router(lora_router, tags=["lora"])
v1_router.include_router(poses_router, tags=["poses"])
v1_router.include_router(products_router, tags=["products"])
v1_router.include_router(models_router, tags=["models"])
v1_router.include_router(upload_router, tags=["upload"])
