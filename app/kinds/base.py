"""Base job-kind interface and data types for the kind registry."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from app.jobs.models import JobRecord, JobStatus, Observation, RemoteSnapshot, TargetWrite
from app.jobs.store import JobStore
from app.providers.replicate_client import RemoteJobClient
from app.storage.blob_store import BlobStore

logger = logging.getLogger(__name__)

# Provider vocabulary -> internal status
_PROVIDER_STATES = {
    "starting": JobStatus.RUNNING,
    "processing": JobStatus.RUNNING,
    "succeeded": JobStatus.COMPLETED,
    "failed": JobStatus.FAILED,
    "canceled": JobStatus.CANCELLED,
    "cancelled": JobStatus.CANCELLED,
}


@dataclass
class KindSpec:
    """Metadata describing a registered job kind."""
    name: str
    resource: str          # provider resource polled for status ("trainings" / "predictions")
    target_table: str      # entity table updated on completion
    poll_interval: float
    description: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class JobContext:
    """Collaborators a kind may use while preparing and finishing a job."""
    store: JobStore
    blobs: BlobStore


@dataclass
class RemoteStart:
    handle: str
    # merged into job.params, e.g. which model actually ran after a fallback
    details: Dict[str, Any] = field(default_factory=dict)


class JobKind(ABC):
    """Abstract base class for all provider-backed job kinds.

    To register a new kind:
    1. Create a new .py file in app/kinds/
    2. Subclass JobKind
    3. Implement spec(), validate(), resolve_target(), start(),
       extract_result() and completion_write()
    4. The registry auto-discovers it at startup
    """

    @abstractmethod
    def spec(self) -> KindSpec:
        ...

    @abstractmethod
    def validate(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Return normalised params or raise JobValidationError. No I/O."""
        ...

    @abstractmethod
    def resolve_target(self, params: Dict[str, Any], ctx: JobContext) -> Tuple[Optional[str], Dict[str, Any]]:
        """Find (or create) the target entity. Returns (target_id, params)."""
        ...

    async def prepare(self, job: JobRecord, ctx: JobContext) -> Dict[str, Any]:
        """Transfer inputs before the remote job starts (the ``uploading`` step).

        Returns params to merge into the job.
        """
        return {}

    @abstractmethod
    async def start(self, job: JobRecord, client: RemoteJobClient) -> RemoteStart:
        ...

    def map_state(self, snapshot: RemoteSnapshot) -> Observation:
        status = _PROVIDER_STATES.get(snapshot.state)
        if status is None:
            logger.warning("Unknown provider state %r for %s; treating as running", snapshot.state, snapshot.handle)
            status = JobStatus.RUNNING
        error = None
        if status == JobStatus.FAILED:
            error = snapshot.error or f"{self.spec().name} failed"
        elif status == JobStatus.CANCELLED:
            error = snapshot.error or f"{self.spec().name} canceled by provider"
        return Observation(status=status, progress=snapshot.progress, error=error)

    @abstractmethod
    async def extract_result(self, job: JobRecord, snapshot: RemoteSnapshot, ctx: JobContext) -> Dict[str, Any]:
        """Turn provider output into the job's result payload.

        Raises ProviderOutputError when the output is unusable.
        """
        ...

    @abstractmethod
    def completion_write(self, job: JobRecord, result: Dict[str, Any], ctx: JobContext) -> Optional[TargetWrite]:
        ...

    def failure_write(self, job: JobRecord, ctx: JobContext) -> Optional[TargetWrite]:
        return None


def first_output_url(output: Any) -> Optional[str]:
    """Provider outputs come back as a URL, a list of URLs, or {"url": ...}."""
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        for item in output:
            url = first_output_url(item)
            if url:
                return url
        return None
    if isinstance(output, dict):
        url = output.get("url")
        return url if isinstance(url, str) and url else None
    return None
