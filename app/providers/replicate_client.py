"""Remote job client for the Replicate HTTP API.

Two resources are used: ``trainings`` (LoRA training) and ``predictions``
(pose generation, garment extraction). Both share the same status
vocabulary: starting, processing, succeeded, failed, canceled.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.jobs.errors import RemoteJobError
from app.jobs.models import RemoteSnapshot

logger = logging.getLogger(__name__)

TRAININGS = "trainings"
PREDICTIONS = "predictions"

# tqdm progress bars in provider logs, e.g. "flux_train_replicate:  45%|████▌     | 450/1000"
_PROGRESS_RE = re.compile(r"(\d{1,3})%\|")


def parse_log_progress(logs: Optional[str]) -> Optional[int]:
    """Return the last percentage printed by a progress bar in ``logs``."""
    if not logs:
        return None
    matches = _PROGRESS_RE.findall(logs)
    if not matches:
        return None
    value = int(matches[-1])
    return value if 0 <= value <= 100 else None


def _created_handle(body: Dict[str, Any], what: str) -> str:
    handle = body.get("id")
    if not handle or not isinstance(handle, str):
        raise RemoteJobError(f"Replicate {what} response has no id: {body!r}")
    return handle


class RemoteJobClient(ABC):
    """Starts, polls and cancels jobs on an inference provider."""

    @abstractmethod
    async def start_training(
        self, model: str, version: str, destination: str, input: Dict[str, Any]
    ) -> str:
        """Start a training job. Returns the provider handle."""
        ...

    @abstractmethod
    async def start_prediction(
        self, model: str, input: Dict[str, Any], version: Optional[str] = None
    ) -> str:
        """Start a prediction.

        ``model`` is "owner/name" or "owner/name:version"; an explicit
        ``version`` wins over both.
        """
        ...

    @abstractmethod
    async def get(self, resource: str, handle: str) -> RemoteSnapshot:
        ...

    @abstractmethod
    async def cancel(self, resource: str, handle: str) -> bool:
        """Best-effort cancel. Returns False if the provider refused."""
        ...

    async def aclose(self) -> None:
        pass


class ReplicateClient(RemoteJobClient):

    def __init__(
        self,
        api_token: str,
        base_url: str = "https://api.replicate.com/v1",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            raise RemoteJobError(f"Replicate request timed out: {method} {path}", transient=True) from exc
        except httpx.TransportError as exc:
            raise RemoteJobError(f"Replicate unreachable: {exc}", transient=True) from exc

        if response.status_code >= 400:
            detail = response.text
            try:
                body = response.json()
                detail = body.get("detail") or body.get("title") or detail
            except ValueError:
                pass
            transient = response.status_code == 429 or response.status_code >= 500
            raise RemoteJobError(
                f"Replicate {method} {path} failed ({response.status_code}): {detail}",
                transient=transient,
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteJobError(
                f"Replicate {method} {path} returned a non-JSON body ({response.status_code})",
                status_code=response.status_code,
            ) from exc
        if not isinstance(body, dict):
            raise RemoteJobError(
                f"Replicate {method} {path} returned {type(body).__name__}, expected an object",
                status_code=response.status_code,
            )
        return body

    async def start_training(self, model, version, destination, input):
        owner, name = model.split("/", 1)
        body = await self._request(
            "POST",
            f"/models/{owner}/{name}/versions/{version}/trainings",
            json={"destination": destination, "input": input},
        )
        handle = _created_handle(body, "training")
        logger.info("Replicate training %s created (%s)", handle, body.get("status"))
        return handle

    async def start_prediction(self, model, input, version=None):
        if version is None and ":" in model:
            _, version = model.split(":", 1)
        if version:
            body = await self._request("POST", "/predictions", json={"version": version, "input": input})
        else:
            owner, name = model.split("/", 1)
            body = await self._request("POST", f"/models/{owner}/{name}/predictions", json={"input": input})
        handle = _created_handle(body, "prediction")
        logger.info("Replicate prediction %s created (%s)", handle, body.get("status"))
        return handle

    async def get(self, resource, handle):
        body = await self._request("GET", f"/{resource}/{handle}")
        error = body.get("error")
        return RemoteSnapshot(
            handle=handle,
            state=body.get("status", "unknown"),
            progress=parse_log_progress(body.get("logs")),
            output=body.get("output"),
            error=str(error) if error else None,
            logs=body.get("logs"),
        )

    async def cancel(self, resource, handle):
        try:
            await self._request("POST", f"/{resource}/{handle}/cancel")
        except RemoteJobError as e:
            logger.warning("Cancel of %s %s failed: %s", resource, handle, e)
            return False
        return True

    async def aclose(self):
        await self._client.aclose()


def build_remote_client() -> RemoteJobClient:
    if not settings.replicate_api_token:
        raise RuntimeError("REPLICATE_API_TOKEN must be set")
    return ReplicateClient(
        settings.replicate_api_token,
        base_url=settings.replicate_api_base,
        timeout=settings.http_timeout_seconds,
    )
