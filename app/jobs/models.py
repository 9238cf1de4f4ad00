"""Job record data model for provider-backed async jobs."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import uuid


class JobStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ErrorKind(str, Enum):
    UPLOAD = "upload"
    REMOTE_START = "remote_start"
    REMOTE_FAILURE = "remote_failure"
    TRANSIENT_EXHAUSTED = "transient_exhausted"
    TIMEOUT = "timeout"
    OUTPUT = "output"
    CANCELLED = "cancelled"


class JobRecord(BaseModel):
    """Tracks the lifecycle of a job delegated to the inference provider."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: str
    target_id: Optional[str] = None
    external_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    # None until the provider reports a percentage
    progress: Optional[int] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    poll_errors: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class RemoteSnapshot(BaseModel):
    """One answer from the provider's job-status endpoint, in its own vocabulary."""
    handle: str
    state: str
    progress: Optional[int] = None
    output: Any = None
    error: Optional[str] = None
    logs: Optional[str] = None


class Observation(BaseModel):
    """A RemoteSnapshot translated into the internal status vocabulary."""
    status: JobStatus
    progress: Optional[int] = None
    error: Optional[str] = None


class JobOutcome(BaseModel):
    job: JobRecord
    polls: int = 0
    timed_out: bool = False
    # timeout_policy == "detach": the job is still running remotely, check back later
    still_running: bool = False


class TargetWrite(BaseModel):
    """A single update (or insert) against a target entity table."""
    table: str
    target_id: str
    values: Dict[str, Any]
    insert: bool = False
