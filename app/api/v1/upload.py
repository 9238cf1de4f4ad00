"""Image upload into Supabase Storage.

POST /upload  - multipart ``file`` plus optional ``bucket``, ``folder`` and
``flatten`` (composite transparency onto white and store as JPEG, for
inputs to models that need RGB).
"""

import os
import random
import string
import time

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from app.config import settings
from app.storage.images import ALLOWED_FORMATS, flatten_to_rgb, inspect_image

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py)
_blob_store = None

_ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

_EXTENSIONS = {"JPEG": "jpg", "PNG": "png", "WEBP": "webp"}


def set_blob_store(blob_store):
    global _blob_store
    _blob_store = blob_store


def _file_name(ext: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=6))
    return f"{int(time.time() * 1000)}-{suffix}.{ext}"


@router.post("/upload")
async def upload_image(
    file: UploadFile = File(...),
    bucket: str = Form(None),
    folder: str = Form(""),
    flatten: bool = Form(False),
):
    """Validate an uploaded image and store it. Returns {url, path, format, width, height}."""
    if _blob_store is None:
        raise HTTPException(status_code=503, detail="Blob store not ready")

    bucket = bucket or settings.products_bucket
    if bucket not in (settings.products_bucket, settings.models_bucket):
        raise HTTPException(status_code=400, detail=f"Unknown bucket '{bucket}'")
    if file.content_type not in _ALLOWED_CONTENT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid file type. Only JPEG, PNG, and WebP are allowed.")

    chunks = []
    total = 0
    while True:
        chunk = await file.read(1024 * 1024)  # 1 MB chunks
        if not chunk:
            break
        total += len(chunk)
        if total > settings.max_upload_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File too large (max {settings.max_upload_bytes // (1024 * 1024)} MB)",
            )
        chunks.append(chunk)
    data = b"".join(chunks)
    if not data:
        raise HTTPException(status_code=400, detail="No file provided")

    # Raises InvalidImageError (400) for anything Pillow cannot read
    fmt, width, height = inspect_image(data)
    content_type = ALLOWED_FORMATS[fmt]
    ext = _EXTENSIONS[fmt]
    if flatten:
        data = flatten_to_rgb(data)
        content_type, ext = "image/jpeg", "jpg"

    path = os.path.join(folder.strip("/"), _file_name(ext)) if folder.strip("/") else _file_name(ext)
    url = _blob_store.upload(bucket, path, data, content_type)
    return {
        "url": url,
        "path": path,
        "bucket": bucket,
        "format": fmt,
        "width": width,
        "height": height,
        "size": len(data),
        "original_filename": file.filename,
    }
