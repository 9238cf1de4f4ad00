"""Service-role Supabase client singleton and storage bucket setup."""

import logging
from typing import Iterable, List

from supabase import create_client, Client

from app.config import settings

logger = logging.getLogger(__name__)

_client: Client | None = None

_BUCKET_MIME_TYPES = ["image/jpeg", "image/jpg", "image/png", "image/webp"]


def get_supabase() -> Client:
    """Get or create the Supabase client using service role key."""
    global _client
    if _client is None:
        if not settings.supabase_url or not settings.supabase_service_role_key:
            raise RuntimeError(
                "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set for JOB_STORE=supabase"
            )
        _client = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
    return _client


def ensure_buckets(client: Client, names: Iterable[str]) -> List[str]:
    """Create any missing public image buckets. Returns the names created."""
    existing = {b.name for b in client.storage.list_buckets()}
    created = []
    for name in names:
        if name in existing:
            continue
        client.storage.create_bucket(
            name,
            options={
                "public": True,
                "file_size_limit": settings.max_upload_bytes,
                "allowed_mime_types": _BUCKET_MIME_TYPES,
            },
        )
        logger.info("Created storage bucket %r", name)
        created.append(name)
    return created
