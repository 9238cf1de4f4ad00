"""Object storage for uploaded inputs and copied provider outputs.

Provider output URLs expire, so results are copied into Supabase Storage
before they are written to a target entity.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Tuple

import httpx
from supabase import Client

from app.jobs.errors import BlobStoreError

logger = logging.getLogger(__name__)


class BlobStore(ABC):

    def __init__(self, timeout: float = 60.0):
        self._timeout = timeout

    @abstractmethod
    def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        """Store ``data`` and return its public URL."""
        ...

    async def fetch(self, url: str) -> Tuple[bytes, str]:
        """Download ``url``. Returns (bytes, content_type)."""
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise BlobStoreError(f"Failed to fetch {url}: {exc}") from exc
        content_type = response.headers.get("content-type", "image/jpeg").split(";")[0]
        return response.content, content_type

    async def copy_from_url(self, bucket: str, path: str, url: str) -> str:
        data, content_type = await self.fetch(url)
        public_url = self.upload(bucket, path, data, content_type)
        logger.info("Copied %s -> %s/%s (%d bytes)", url, bucket, path, len(data))
        return public_url


class SupabaseBlobStore(BlobStore):

    def __init__(self, client: Client, timeout: float = 60.0):
        super().__init__(timeout=timeout)
        self._client = client

    def upload(self, bucket, path, data, content_type):
        try:
            self._client.storage.from_(bucket).upload(
                path,
                data,
                {"content-type": content_type, "cache-control": "3600", "upsert": "true"},
            )
        except Exception as exc:
            raise BlobStoreError(f"Upload to {bucket}/{path} failed: {exc}") from exc
        return self._client.storage.from_(bucket).get_public_url(path)


class InMemoryBlobStore(BlobStore):
    """Dict-backed store for local development and tests.

    Stored objects get ``memory://bucket/path`` URLs, and ``fetch`` serves
    any URL present in ``objects`` without touching the network.
    """

    def __init__(self, timeout: float = 60.0):
        super().__init__(timeout=timeout)
        self.objects: Dict[str, Tuple[bytes, str]] = {}

    def upload(self, bucket, path, data, content_type):
        url = f"memory://{bucket}/{path}"
        self.objects[url] = (data, content_type)
        return url

    async def fetch(self, url):
        if url in self.objects:
            return self.objects[url]
        if url.startswith("memory://"):
            raise BlobStoreError(f"No object at {url}")
        return await super().fetch(url)
