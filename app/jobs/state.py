"""Job status state machine.

    pending -> uploading -> running -> {completed | failed | cancelled}

pending may skip straight to running when a kind has nothing to upload, and
any non-terminal state may fail or be cancelled. running -> running is the
progress-only update. Terminal states have no outgoing edges.
"""

from typing import Dict, FrozenSet

from app.jobs.errors import InvalidTransitionError
from app.jobs.models import JobStatus

_TRANSITIONS: Dict[JobStatus, FrozenSet[JobStatus]] = {
    JobStatus.PENDING: frozenset({
        JobStatus.UPLOADING,
        JobStatus.RUNNING,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.UPLOADING: frozenset({
        JobStatus.RUNNING,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.RUNNING: frozenset({
        JobStatus.RUNNING,
        JobStatus.COMPLETED,
        JobStatus.FAILED,
        JobStatus.CANCELLED,
    }),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(src: JobStatus, dst: JobStatus) -> bool:
    return JobStatus(dst) in _TRANSITIONS[JobStatus(src)]


def ensure_transition(src: JobStatus, dst: JobStatus) -> None:
    if not can_transition(src, dst):
        raise InvalidTransitionError(JobStatus(src), JobStatus(dst))
