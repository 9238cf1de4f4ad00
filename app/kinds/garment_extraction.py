"""Garment extraction: a clean studio shot from a product photo via background removal."""

from datetime import datetime

from app.config import settings
from app.jobs.errors import JobNotFoundError, JobValidationError, ProviderOutputError
from app.jobs.models import JobRecord, RemoteSnapshot, TargetWrite
from app.kinds.base import JobContext, JobKind, KindSpec, RemoteStart, first_output_url
from app.providers.replicate_client import PREDICTIONS, RemoteJobClient

REMBG_MODEL = "cjwbw/rembg:fb8af171cfa1616ddcf1242c093f9c46bcada5ad4cf6f2fbe8b81b330ec5c003"

GARMENT_TYPES = ("upper", "lower", "full", "auto")


class GarmentExtractionKind(JobKind):

    def spec(self) -> KindSpec:
        return KindSpec(
            name="garment_extraction",
            resource=PREDICTIONS,
            target_table="products",
            poll_interval=settings.prediction_poll_interval_seconds,
            description="Extract a studio garment image from a product photo",
        )

    def validate(self, params):
        if not params.get("product_id"):
            raise JobValidationError("product_id is required")
        garment_type = params.get("garment_type")
        if garment_type is not None and garment_type not in GARMENT_TYPES:
            raise JobValidationError(f"garment_type must be one of {list(GARMENT_TYPES)}")
        return {"product_id": params["product_id"], "garment_type": garment_type}

    def resolve_target(self, params, ctx):
        product = ctx.store.get_target("products", params["product_id"])
        if product is None:
            raise JobNotFoundError(f"Product {params['product_id']} not found")
        if not product.get("original_image_url"):
            raise JobValidationError(f"Product {product.get('sku') or product['id']} has no original image")
        return product["id"], {
            **params,
            "sku": product.get("sku"),
            "image_url": product["original_image_url"],
            "garment_type": params.get("garment_type") or product.get("garment_type") or "auto",
        }

    async def prepare(self, job: JobRecord, ctx: JobContext):
        ctx.store.update_target("products", job.target_id, {"extraction_status": "processing"})
        return {}

    async def start(self, job: JobRecord, client: RemoteJobClient) -> RemoteStart:
        handle = await client.start_prediction(REMBG_MODEL, {"image": job.params["image_url"]})
        return RemoteStart(handle=handle, details={"model_used": "rembg"})

    async def extract_result(self, job: JobRecord, snapshot: RemoteSnapshot, ctx: JobContext):
        url = first_output_url(snapshot.output)
        if not url:
            raise ProviderOutputError(f"Background removal returned no image: {snapshot.output!r}")
        name = job.params.get("sku") or job.target_id
        stored_url = await ctx.blobs.copy_from_url(
            settings.products_bucket,
            f"studio/{name}-{job.id[:8]}.png",
            url,
        )
        return {
            "garment_url": stored_url,
            "provider_output_url": url,
            "detected_type": job.params["garment_type"],
            "model_used": "rembg",
        }

    def completion_write(self, job, result, ctx):
        product = ctx.store.get_target("products", job.target_id) or {}
        metadata = {
            **(product.get("metadata") or {}),
            "extraction_model": result["model_used"],
            "extraction_job_id": job.id,
            "extracted_at": datetime.utcnow().isoformat(),
        }
        return TargetWrite(
            table="products",
            target_id=job.target_id,
            values={
                "studio_image_url": result["garment_url"],
                "extraction_status": "completed",
                "extraction_job_id": job.id,
                "metadata": metadata,
            },
        )

    def failure_write(self, job, ctx):
        return TargetWrite(
            table="products",
            target_id=job.target_id,
            values={"extraction_status": "failed"},
        )
