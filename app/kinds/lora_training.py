"""LoRA training: per-person FLUX LoRA for face and body consistency.

Runs ostris/flux-dev-lora-trainer on 8-20 full-body photos. On success the
AI model record gets the weights, the trigger word, and is activated.
"""

import random
import re
import uuid
from typing import Any, Dict, List, Optional, Tuple

from app.config import settings
from app.jobs.errors import JobNotFoundError, JobValidationError, ProviderOutputError
from app.jobs.models import JobRecord, RemoteSnapshot, TargetWrite
from app.kinds.base import JobContext, JobKind, KindSpec, RemoteStart
from app.providers.replicate_client import TRAININGS, RemoteJobClient

FLUX_LORA_TRAINER = "ostris/flux-dev-lora-trainer"
FLUX_LORA_TRAINER_VERSION = "26dce37a7f4accc0946e6e54a086274b3cdbe66ceb62e39dc8ef00e7e16e7d66"

MIN_TRAINING_IMAGES = 8
MAX_TRAINING_IMAGES = 20
GENDERS = ("male", "female", "non-binary")

DEFAULT_STEPS = 1000
DEFAULT_LEARNING_RATE = 0.0004
DEFAULT_RANK = 16


def generate_trigger_word(model_name: str) -> str:
    """Unique but memorable trigger word, e.g. "SARAH042"."""
    sanitized = re.sub(r"[^A-Z0-9]", "", (model_name or "").upper())[:10] or "MDL"
    return f"{sanitized}{random.randint(0, 999):03d}"


def _model_code(gender: str) -> str:
    prefix = {"male": "M", "female": "F"}.get(gender, "N")
    return f"{prefix}{uuid.uuid4().hex[:4].upper()}"


class LoraTrainingKind(JobKind):

    def spec(self) -> KindSpec:
        return KindSpec(
            name="lora_training",
            resource=TRAININGS,
            target_table="ai_models",
            poll_interval=settings.lora_poll_interval_seconds,
            description="Train a FLUX LoRA for an AI model",
        )

    def validate(self, params):
        images = params.get("training_images")
        if not isinstance(images, list) or not all(isinstance(i, str) and i.strip() for i in images):
            raise JobValidationError("training_images must be a list of image URLs")
        if not MIN_TRAINING_IMAGES <= len(images) <= MAX_TRAINING_IMAGES:
            raise JobValidationError(
                f"Training requires {MIN_TRAINING_IMAGES}-{MAX_TRAINING_IMAGES} images, got {len(images)}"
            )
        if not params.get("model_id"):
            if not params.get("model_name") or not params.get("gender"):
                raise JobValidationError("model_name and gender are required when model_id is not given")
            if params["gender"] not in GENDERS:
                raise JobValidationError(f"gender must be one of {list(GENDERS)}")

        try:
            steps = int(params.get("steps") or DEFAULT_STEPS)
            learning_rate = float(params.get("learning_rate") or DEFAULT_LEARNING_RATE)
            rank = int(params.get("rank") or DEFAULT_RANK)
        except (TypeError, ValueError) as exc:
            raise JobValidationError(f"Invalid training option: {exc}") from exc
        if steps <= 0 or learning_rate <= 0 or rank <= 0:
            raise JobValidationError("steps, learning_rate and rank must be positive")

        trigger_word = params.get("trigger_word")
        if trigger_word is not None and not re.fullmatch(r"[A-Za-z0-9_]{2,50}", trigger_word):
            raise JobValidationError("trigger_word must be 2-50 letters, digits or underscores")

        return {
            "training_images": [i.strip() for i in images],
            "model_id": params.get("model_id"),
            "model_name": params.get("model_name"),
            "gender": params.get("gender"),
            "trigger_word": trigger_word,
            "steps": steps,
            "learning_rate": learning_rate,
            "rank": rank,
        }

    def resolve_target(self, params, ctx) -> Tuple[Optional[str], Dict[str, Any]]:
        model_id = params.get("model_id")
        if model_id:
            model = ctx.store.get_target("ai_models", model_id)
            if model is None:
                raise JobNotFoundError(f"Model {model_id} not found")
            name = params.get("model_name") or model.get("name") or ""
        else:
            # New models stay inactive until training completes
            model = ctx.store.insert_target("ai_models", {
                "model_code": _model_code(params["gender"]),
                "name": params["model_name"],
                "gender": params["gender"],
                "base_image_url": params["training_images"][0],
                "thumbnail_url": params["training_images"][0],
                "has_lora_training": False,
                "is_active": False,
            })
            model_id = model["id"]
            name = params["model_name"]

        trigger_word = params.get("trigger_word") or generate_trigger_word(name)
        return model_id, {**params, "model_id": model_id, "trigger_word": trigger_word}

    async def start(self, job: JobRecord, client: RemoteJobClient) -> RemoteStart:
        p = job.params
        destination = f"{settings.replicate_username}/fashion-model-{job.id[:8]}"
        handle = await client.start_training(
            FLUX_LORA_TRAINER,
            FLUX_LORA_TRAINER_VERSION,
            destination,
            {
                "steps": p["steps"],
                "lora_rank": p["rank"],
                "optimizer": "adamw8bit",
                "batch_size": 1,
                "resolution": "768,1024",  # full-body fashion framing
                "autocaption": True,
                "trigger_word": p["trigger_word"],
                "learning_rate": p["learning_rate"],
                "caption_dropout_rate": 0.05,
                "cache_latents_to_disk": False,
                "input_images": "|".join(p["training_images"]),
            },
        )
        return RemoteStart(handle=handle, details={"destination": destination})

    async def extract_result(self, job: JobRecord, snapshot: RemoteSnapshot, ctx: JobContext):
        output = snapshot.output
        weights_url: Optional[str] = None
        version: Optional[str] = None
        samples: List[str] = []

        if isinstance(output, str):
            weights_url = output
        elif isinstance(output, dict):
            weights_url = output.get("weights") or None
            version = output.get("version") or None
            if isinstance(output.get("images"), list):
                samples = [i for i in output["images"] if isinstance(i, str)]

        if not weights_url and not version:
            raise ProviderOutputError(f"Training succeeded without weights or version: {output!r}")

        return {
            "lora_weights_url": weights_url,
            "replicate_version_id": version,
            "replicate_model": job.params.get("destination"),
            "sample_images": samples,
            "trigger_word": job.params["trigger_word"],
        }

    def completion_write(self, job, result, ctx):
        return TargetWrite(
            table="ai_models",
            target_id=job.target_id,
            values={
                "has_lora_training": True,
                "lora_training_job_id": job.id,
                "lora_trigger_word": result["trigger_word"],
                "lora_weights_url": result["lora_weights_url"],
                "lora_version_id": result["replicate_version_id"],
                "is_active": True,
            },
        )
