"""LoRA training API."""

from typing import List, Optional

from fastapi import APIRouter
from pydantic import BaseModel

from app.api.v1 import jobs
from app.api.v1.errors import raise_if_start_failed

router = APIRouter()


class LoraTrainRequest(BaseModel):
    model_config = {"protected_namespaces": ()}

    # Either an existing model, or the name and gender for a new one
    model_id: Optional[str] = None
    model_name: Optional[str] = None
    gender: Optional[str] = None
    training_images: List[str] = []
    trigger_word: Optional[str] = None
    steps: Optional[int] = None
    learning_rate: Optional[float] = None
    rank: Optional[int] = None


@router.post("/lora/train", status_code=202)
async def train_lora(request: LoraTrainRequest):
    """Start LoRA training. Poll GET /api/v1/jobs/{job_id} for progress."""
    job = await jobs.get_service().start("lora_training", request.model_dump())
    raise_if_start_failed(job)
    return {
        "job_id": job.id,
        "model_id": job.target_id,
        "trigger_word": job.params.get("trigger_word"),
        "status": job.status.value,
        "message": "Training started. This usually takes 15-30 minutes.",
    }
