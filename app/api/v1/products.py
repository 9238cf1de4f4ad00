"""Products API: batch garment extraction and extraction status."""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, HTTPException
from pydantic import BaseModel

from app.api.v1 import jobs
from app.jobs.errors import JobError, JobNotFoundError

router = APIRouter()

EXTRACTION_STATUSES = ("pending", "processing", "completed", "failed")

# Columns a PATCH may never set
_READ_ONLY = ("id", "created_at", "updated_at")


class ProductCreate(BaseModel):
    sku: str
    name: Optional[str] = None
    brand: str = "TH8TA"
    category: str = "apparel"
    garment_type: str = "upper"
    color: Optional[str] = None
    color_hex: Optional[str] = None
    size_range: Optional[List[str]] = None
    original_image_url: Optional[str] = None
    studio_image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    extraction_status: str = "pending"
    tags: List[str] = []
    is_active: bool = True
    metadata: Dict[str, Any] = {}


def catalog_patch(body: Dict[str, Any]) -> Dict[str, Any]:
    """Editable columns of a PATCH body, stamped with ``updated_at``."""
    values = {k: v for k, v in body.items() if k not in _READ_ONLY}
    if not values:
        raise HTTPException(status_code=400, detail="No fields to update")
    values["updated_at"] = datetime.utcnow().isoformat()
    return values


def _visible(row: Dict[str, Any], include_inactive: bool) -> bool:
    return include_inactive or row.get("is_active", True) is not False


class ExtractRequest(BaseModel):
    product_ids: List[str]
    garment_type: Optional[str] = None


@router.post("/products/extract", status_code=202)
async def extract_products(request: ExtractRequest):
    """Start one extraction job per product.

    Per-product problems (unknown product, busy, provider refused) are
    reported in ``errors`` and do not stop the rest of the batch.
    """
    service = jobs.get_service()
    started, errors = [], []
    for product_id in dict.fromkeys(request.product_ids):
        try:
            job = await service.start(
                "garment_extraction",
                {"product_id": product_id, "garment_type": request.garment_type},
            )
        except JobError as e:
            errors.append({"product_id": product_id, "error": str(e)})
            continue
        if job.error:
            errors.append({"product_id": product_id, "job_id": job.id, "error": job.error})
        else:
            started.append({"product_id": product_id, "job_id": job.id, "status": job.status.value})
    return {"jobs": started, "errors": errors, "count": len(started)}


@router.post("/products", status_code=201)
async def create_product(request: ProductCreate):
    store = jobs.get_service().store
    if store.list_targets("products", sku=request.sku):
        raise HTTPException(status_code=409, detail=f"Product with SKU {request.sku} already exists")
    values = request.model_dump()
    values["name"] = values["name"] or request.sku
    if values["extraction_status"] not in EXTRACTION_STATUSES:
        raise HTTPException(status_code=400, detail=f"extraction_status must be one of {list(EXTRACTION_STATUSES)}")
    return store.insert_target("products", values)


@router.get("/products")
async def list_products(extraction_status: Optional[str] = None, include_inactive: bool = False):
    """Active products by default; soft-deleted ones only with ``include_inactive``."""
    store = jobs.get_service().store
    products = [p for p in store.list_targets("products") if _visible(p, include_inactive)]
    counts = Counter(p.get("extraction_status") or "pending" for p in products)
    if extraction_status:
        products = [p for p in products if (p.get("extraction_status") or "pending") == extraction_status]
    return {
        "products": products,
        "count": len(products),
        "status_counts": {s: counts.get(s, 0) for s in EXTRACTION_STATUSES},
    }


@router.get("/products/{product_id}")
async def get_product(product_id: str):
    service = jobs.get_service()
    product = service.store.get_target("products", product_id)
    if product is None:
        raise JobNotFoundError(f"Product {product_id} not found")
    latest = service.list(kind="garment_extraction", target_id=product_id)
    return {
        **product,
        "latest_extraction_job": jobs.job_view(latest[0]) if latest else None,
    }


@router.patch("/products/{product_id}")
async def update_product(product_id: str, body: Dict[str, Any] = Body(...)):
    updated = jobs.get_service().store.update_target("products", product_id, catalog_patch(body))
    if updated is None:
        raise JobNotFoundError(f"Product {product_id} not found")
    return updated


@router.delete("/products/{product_id}")
async def delete_product(product_id: str):
    """Soft delete: the row stays so past extraction jobs keep their target."""
    updated = jobs.get_service().store.update_target(
        "products", product_id, {"is_active": False, "updated_at": datetime.utcnow().isoformat()}
    )
    if updated is None:
        raise JobNotFoundError(f"Product {product_id} not found")
    return {"id": product_id, "is_active": False, "message": "Product deleted"}
