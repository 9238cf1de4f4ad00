"""Models API: AI models with their LoRA state and generated poses."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Body, HTTPException
from pydantic import BaseModel

from app.api.v1 import jobs
from app.api.v1.products import catalog_patch
from app.jobs.errors import JobNotFoundError

router = APIRouter()


class ModelCreate(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_code: str
    name: str
    gender: Literal["male", "female", "non-binary"]
    base_image_url: str
    ethnicity: Optional[str] = None
    age_range: Optional[str] = None
    body_type: Optional[str] = None
    thumbnail_url: Optional[str] = None
    style_tags: List[str] = []
    is_active: bool = True
    metadata: Dict[str, Any] = {}


def _with_poses(store, model: dict) -> dict:
    poses = store.list_targets("model_poses", model_id=model["id"])
    poses.sort(key=lambda p: not p.get("is_default"))
    return {**model, "poses": poses}


@router.post("/models", status_code=201)
async def create_model(request: ModelCreate):
    store = jobs.get_service().store
    if store.list_targets("ai_models", model_code=request.model_code):
        raise HTTPException(status_code=409, detail=f"Model code {request.model_code} already exists")
    return store.insert_target("ai_models", {**request.model_dump(), "has_lora_training": False})


@router.get("/models")
async def list_models(
    gender: Optional[str] = None,
    include_poses: bool = False,
    include_inactive: bool = False,
):
    """List AI models with optional filtering. Models still training are inactive."""
    store = jobs.get_service().store
    filters = {} if include_inactive else {"is_active": True}
    if gender:
        filters["gender"] = gender
    models = store.list_targets("ai_models", **filters)
    if include_poses:
        models = [_with_poses(store, m) for m in models]
    return {"models": models, "count": len(models)}


@router.get("/models/{model_id}")
async def get_model(model_id: str):
    service = jobs.get_service()
    model = service.store.get_target("ai_models", model_id)
    if model is None:
        raise JobNotFoundError(f"Model {model_id} not found")
    training = service.list(kind="lora_training", target_id=model_id)
    return {
        **_with_poses(service.store, model),
        "latest_training_job": jobs.job_view(training[0]) if training else None,
    }


@router.patch("/models/{model_id}")
async def update_model(model_id: str, body: Dict[str, Any] = Body(...)):
    """Edit or archive/unarchive a model (``{"is_active": false}``)."""
    updated = jobs.get_service().store.update_target("ai_models", model_id, catalog_patch(body))
    if updated is None:
        raise JobNotFoundError(f"Model {model_id} not found")
    return updated


@router.delete("/models/{model_id}")
async def delete_model(model_id: str):
    updated = jobs.get_service().store.update_target(
        "ai_models", model_id, {"is_active": False, "updated_at": datetime.utcnow().isoformat()}
    )
    if updated is None:
        raise JobNotFoundError(f"Model {model_id} not found")
    return {"id": model_id, "is_active": False, "message": "Model archived"}
