"""Pose generation: a new studio pose for an existing AI model.

Generation modes, in order of face preservation:
  lora        - FLUX with the model's trained LoRA (falls back to controlnet)
  controlnet  - ControlNet Union Pro, depth control on the reference image
  img2img     - plain FLUX img2img, cheapest
"""

import logging
import uuid
from typing import Any, Dict, Optional

from app.config import settings
from app.jobs.errors import JobNotFoundError, JobValidationError, ProviderOutputError, RemoteJobError
from app.jobs.models import JobRecord, RemoteSnapshot, TargetWrite
from app.kinds.base import JobContext, JobKind, KindSpec, RemoteStart, first_output_url
from app.providers.replicate_client import PREDICTIONS, RemoteJobClient
from app.storage.images import flatten_to_rgb, has_alpha

logger = logging.getLogger(__name__)

CONTROLNET_MODEL = "lucataco/controlnet-union-pro:bd0dacc60e6247a2a4c28502434a6d6dd5d63f93c39950e5f366775d7a9b114a"
FLUX_DEV_MODEL = "black-forest-labs/flux-dev"
FLUX_IMG2IMG_MODEL = "bxclib2/flux_img2img:0ce45202d83c6bd379dfe58f4c0c41e6cadf93ebbd9d938cc63cc0f2fcb729a5"

POSE_DESCRIPTIONS = {
    "arms_down": "arms relaxed down by sides, standing straight, facing camera directly",
    "side_angle": "body turned 30 degrees to the side, head turned toward camera, looking down slightly",
    "looking_down": "standing straight, head tilted down with eyes cast downward",
    "natural": "natural relaxed pose, standing confidently",
}
POSES = tuple(POSE_DESCRIPTIONS) + ("custom",)

POSE_TYPES = {"side_angle": "side"}  # everything else is a front pose

# Default transformation strength per mode; LoRA can go higher because the face is locked
DEFAULT_STRENGTH = {"lora": 0.40, "controlnet": 0.20, "img2img": 0.15}


def build_pose_prompt(pose: str, custom_prompt: Optional[str] = None) -> str:
    if custom_prompt:
        return custom_prompt
    description = POSE_DESCRIPTIONS.get(pose, POSE_DESCRIPTIONS["natural"])
    return (
        "Professional studio fashion portrait of the same person in a different pose. "
        "Keep the exact same face, facial structure, hair and skin tone; do not modify the face. "
        f"Pose: {description}. Natural, relaxed professional model stance. "
        "Clean white photography studio background, soft even studio lighting. "
        "Clothing: plain solid beige (#C8A882) sports bra and briefs, no patterns or prints. "
        "High-quality, sharp, editorial magazine quality."
    )


class PoseGenerationKind(JobKind):

    def spec(self) -> KindSpec:
        return KindSpec(
            name="pose_generation",
            resource=PREDICTIONS,
            target_table="model_poses",
            poll_interval=settings.prediction_poll_interval_seconds,
            description="Generate a new pose for an AI model",
        )

    def validate(self, params):
        if not params.get("model_id"):
            raise JobValidationError("model_id is required")
        pose = params.get("pose")
        if pose not in POSES:
            raise JobValidationError(f"pose must be one of {list(POSES)}")
        if pose == "custom" and not params.get("custom_prompt"):
            raise JobValidationError("custom_prompt is required for a custom pose")
        strength = params.get("transformation_strength")
        if strength is not None:
            try:
                strength = float(strength)
            except (TypeError, ValueError) as exc:
                raise JobValidationError("transformation_strength must be a number") from exc
            if not 0.05 <= strength <= 0.95:
                raise JobValidationError("transformation_strength must be between 0.05 and 0.95")
        return {
            "model_id": params["model_id"],
            "pose": pose,
            "custom_prompt": params.get("custom_prompt"),
            "reference_image_url": params.get("reference_image_url"),
            "transformation_strength": strength,
            "use_controlnet": params.get("use_controlnet", True) is not False,
        }

    def resolve_target(self, params, ctx):
        model = ctx.store.get_target("ai_models", params["model_id"])
        if model is None:
            raise JobNotFoundError(f"Model {params['model_id']} not found")
        reference = params.get("reference_image_url") or model.get("base_image_url")
        if not reference:
            raise JobValidationError("Model has no base image to use as a pose reference")

        lora_ref = None
        if model.get("has_lora_training") and model.get("lora_trigger_word"):
            if model.get("lora_weights_url"):
                lora_ref = {"weights_url": model["lora_weights_url"]}
            elif model.get("lora_version_id"):
                lora_ref = {"version": model["lora_version_id"]}

        if lora_ref:
            mode = "lora"
        elif params["use_controlnet"]:
            mode = "controlnet"
        else:
            mode = "img2img"

        return model["id"], {
            **params,
            "mode": mode,
            "reference_image_url": reference,
            "trigger_word": model.get("lora_trigger_word") if lora_ref else None,
            "lora": lora_ref,
            "prompt": build_pose_prompt(params["pose"], params.get("custom_prompt")),
        }

    async def prepare(self, job: JobRecord, ctx: JobContext) -> Dict[str, Any]:
        # Depth/img2img models need 3-channel input; cut-outs are often RGBA PNGs
        reference = job.params["reference_image_url"]
        data, _ = await ctx.blobs.fetch(reference)
        if not has_alpha(data):
            return {}
        url = ctx.blobs.upload(
            settings.models_bucket,
            f"pose-inputs/{job.id}.jpg",
            flatten_to_rgb(data),
            "image/jpeg",
        )
        logger.info("Flattened RGBA reference for job %s -> %s", job.id, url)
        return {"original_reference_image_url": reference, "reference_image_url": url}

    async def start(self, job: JobRecord, client: RemoteJobClient) -> RemoteStart:
        p = job.params
        if p["mode"] == "lora":
            try:
                handle = await self._start_lora(p, client)
                return RemoteStart(handle=handle, details={"model_used": "lora"})
            except RemoteJobError as e:
                logger.warning("LoRA generation failed to start for job %s, falling back to ControlNet: %s", job.id, e)
            handle = await self._start_controlnet(p, client, DEFAULT_STRENGTH["controlnet"])
            return RemoteStart(handle=handle, details={"model_used": "controlnet", "lora_fallback": True})

        if p["mode"] == "controlnet":
            handle = await self._start_controlnet(p, client, p["transformation_strength"] or DEFAULT_STRENGTH["controlnet"])
            return RemoteStart(handle=handle, details={"model_used": "controlnet"})

        handle = await client.start_prediction(FLUX_IMG2IMG_MODEL, {
            "image": p["reference_image_url"],
            "positive_prompt": p["prompt"],
            "denoising": p["transformation_strength"] or DEFAULT_STRENGTH["img2img"],
            "steps": 28,
            "sampler_name": "euler",
            "scheduler": "simple",
        })
        return RemoteStart(handle=handle, details={"model_used": "img2img"})

    async def _start_lora(self, p, client: RemoteJobClient) -> str:
        prompt = p["prompt"].replace("person", f"{p['trigger_word']} person")
        inputs = {
            "prompt": prompt,
            "guidance_scale": 3.5,
            "num_inference_steps": 28,
            "strength": p["transformation_strength"] or DEFAULT_STRENGTH["lora"],
        }
        lora = p["lora"]
        if lora.get("weights_url"):
            return await client.start_prediction(
                FLUX_DEV_MODEL, {**inputs, "lora": lora["weights_url"], "lora_scale": 1.0}
            )
        # The trained model version already carries the LoRA
        return await client.start_prediction(FLUX_DEV_MODEL, inputs, version=lora["version"])

    async def _start_controlnet(self, p, client: RemoteJobClient, strength: float) -> str:
        return await client.start_prediction(CONTROLNET_MODEL, {
            "prompt": p["prompt"],
            "control_image": p["reference_image_url"],
            "control_type": "depth",
            "control_strength": strength,
            "guidance_scale": 3.5,
            "steps": 28,
        })

    async def extract_result(self, job: JobRecord, snapshot: RemoteSnapshot, ctx: JobContext):
        url = first_output_url(snapshot.output)
        if not url:
            raise ProviderOutputError(f"Pose generation returned no image: {snapshot.output!r}")
        stored_url = await ctx.blobs.copy_from_url(
            settings.models_bucket,
            f"model-{job.target_id}-pose-{job.params['pose']}-{job.id[:8]}.jpg",
            url,
        )
        return {
            "output_url": stored_url,
            "provider_output_url": url,
            "pose_id": str(uuid.uuid4()),
            "model_used": job.params.get("model_used", job.params["mode"]),
        }

    def completion_write(self, job, result, ctx):
        pose = job.params["pose"]
        return TargetWrite(
            table="model_poses",
            target_id=result["pose_id"],
            insert=True,
            values={
                "model_id": job.target_id,
                "pose_name": f"{pose}-{job.id[:8]}",
                "pose_type": POSE_TYPES.get(pose, "front"),
                "pose_image_url": result["output_url"],
                "thumbnail_url": result["output_url"],
                "generation_job_id": job.id,
                "is_default": False,
            },
        )
