"""Exceptions raised by the job lifecycle."""

from typing import Optional


class JobError(Exception):
    """Base class for job lifecycle errors."""


class JobValidationError(JobError):
    """Job parameters are missing or malformed. Raised before any remote call."""


class JobNotFoundError(JobError):
    pass


class TargetBusyError(JobError):
    """Another non-terminal job of the same kind already drives this target."""

    def __init__(self, kind: str, target_id: str, active_job_id: Optional[str] = None):
        self.kind = kind
        self.target_id = target_id
        self.active_job_id = active_job_id
        msg = f"A {kind} job is already active for target {target_id}"
        if active_job_id:
            msg += f" (job {active_job_id})"
        super().__init__(msg)


class InvalidTransitionError(JobError):
    def __init__(self, src, dst):
        self.src = src
        self.dst = dst
        super().__init__(f"Invalid job status transition: {_value(src)} -> {_value(dst)}")


class RemoteJobError(JobError):
    """The inference provider rejected a call or could not be reached.

    ``transient`` is True for network failures, rate limiting and 5xx
    responses; those are retried by the poller instead of failing the job.
    """

    def __init__(self, message: str, transient: bool = False, status_code: Optional[int] = None):
        self.transient = transient
        self.status_code = status_code
        super().__init__(message)


class BlobStoreError(JobError):
    pass


class ProviderOutputError(JobError):
    """The provider reported success but its output is unusable."""


def _value(status) -> str:
    return getattr(status, "value", str(status))
