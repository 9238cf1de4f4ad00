"""Pose generation API."""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from app.api.v1 import jobs
from app.api.v1.errors import raise_if_start_failed

router = APIRouter()


class PoseGenerateRequest(BaseModel):
    model_config = {"protected_namespaces": ()}

    model_id: str
    pose: str
    custom_prompt: Optional[str] = None
    reference_image_url: Optional[str] = None
    transformation_strength: Optional[float] = None
    use_controlnet: bool = True


@router.post("/poses/generate", status_code=202)
async def generate_pose(request: PoseGenerateRequest):
    job = await jobs.get_service().start("pose_generation", request.model_dump())
    raise_if_start_failed(job)
    return {
        "job_id": job.id,
        "model_id": job.target_id,
        "pose": job.params.get("pose"),
        "model_used": job.params.get("model_used"),
        "status": job.status.value,
    }
