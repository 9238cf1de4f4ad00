"""Job record store interface and the in-memory implementation.

The store is the only shared mutable resource of the job lifecycle. Every
job write is a single-row update keyed by job id and conditional on the
status the writer last observed, so a duplicate poller can never overwrite
a newer state. Terminal transitions and the target-entity write they imply
happen in one ``finish`` call, which implementations must make atomic.
"""

import copy
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.jobs.errors import InvalidTransitionError, JobNotFoundError, TargetBusyError
from app.jobs.models import JobRecord, JobStatus, TargetWrite, TERMINAL_STATUSES
from app.jobs.state import ensure_transition

ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.UPLOADING, JobStatus.RUNNING)


class JobStore(ABC):
    """Abstract interface for job and target-entity persistence."""

    @abstractmethod
    def create(self, job: JobRecord) -> JobRecord:
        """Insert a new job.

        Raises TargetBusyError if a non-terminal job of the same kind
        already exists for the same target.
        """
        ...

    @abstractmethod
    def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    def list(
        self,
        kind: Optional[str] = None,
        status: Optional[JobStatus] = None,
        target_id: Optional[str] = None,
    ) -> List[JobRecord]:
        ...

    @abstractmethod
    def update(self, job_id: str, expected_status: JobStatus, **fields: Any) -> Optional[JobRecord]:
        """Update a non-terminal job if its status still equals ``expected_status``.

        A ``progress`` field only applies if it is not lower than the stored
        value. Returns the updated record, or None if the row has moved on
        (or already holds higher progress).
        Raises InvalidTransitionError for transitions the state machine forbids.
        """
        ...

    @abstractmethod
    def finish(
        self,
        job_id: str,
        expected_status: JobStatus,
        fields: Dict[str, Any],
        target_write: Optional[TargetWrite] = None,
    ) -> Optional[JobRecord]:
        """Move a job to a terminal status and apply ``target_write`` atomically.

        Returns None (and writes nothing) if the job is no longer in
        ``expected_status``.
        """
        ...

    @abstractmethod
    def get_target(self, table: str, target_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def list_targets(self, table: str, **filters: Any) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    def insert_target(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    def update_target(self, table: str, target_id: str, values: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ...

    def list_active(self) -> List[JobRecord]:
        jobs: List[JobRecord] = []
        for status in ACTIVE_STATUSES:
            jobs.extend(self.list(status=status))
        return jobs


def check_update(expected_status: JobStatus, fields: Dict[str, Any]) -> None:
    dst = JobStatus(fields.get("status", expected_status))
    if dst in TERMINAL_STATUSES:
        # Terminal writes carry a target write and go through finish()
        raise InvalidTransitionError(expected_status, dst)
    if dst == expected_status:
        return
    ensure_transition(expected_status, dst)


def progress_regresses(current: Optional[int], fields: Dict[str, Any]) -> bool:
    new = fields.get("progress")
    return new is not None and current is not None and new < current


def check_finish(expected_status: JobStatus, fields: Dict[str, Any]) -> None:
    dst = JobStatus(fields["status"])
    if dst not in TERMINAL_STATUSES:
        raise ValueError(f"finish() needs a terminal status, got {dst.value}")
    ensure_transition(expected_status, dst)


class InMemoryJobStore(JobStore):
    """Dict-backed store for local development and tests.

    A single lock serialises all writes, which makes ``finish`` atomic.
    ``writes`` counts every row written (job rows and target rows).
    """

    def __init__(self):
        self._jobs: Dict[str, JobRecord] = {}
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self.writes = 0

    def create(self, job: JobRecord) -> JobRecord:
        with self._lock:
            if job.target_id is not None:
                for other in self._jobs.values():
                    if (
                        other.kind == job.kind
                        and other.target_id == job.target_id
                        and not other.is_terminal
                    ):
                        raise TargetBusyError(job.kind, job.target_id, other.id)
            stored = job.model_copy(deep=True)
            self._jobs[stored.id] = stored
            self.writes += 1
            return stored.model_copy(deep=True)

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list(self, kind=None, status=None, target_id=None) -> List[JobRecord]:
        with self._lock:
            jobs = [
                j for j in self._jobs.values()
                if (kind is None or j.kind == kind)
                and (status is None or j.status == JobStatus(status))
                and (target_id is None or j.target_id == target_id)
            ]
            jobs.sort(key=lambda j: j.created_at, reverse=True)
            return [j.model_copy(deep=True) for j in jobs]

    def update(self, job_id: str, expected_status: JobStatus, **fields: Any) -> Optional[JobRecord]:
        check_update(expected_status, fields)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != expected_status or progress_regresses(job.progress, fields):
                return None
            updated = job.model_copy(update={**fields, "updated_at": datetime.utcnow()}, deep=True)
            self._jobs[job_id] = JobRecord.model_validate(updated.model_dump())
            self.writes += 1
            return self._jobs[job_id].model_copy(deep=True)

    def finish(self, job_id, expected_status, fields, target_write=None) -> Optional[JobRecord]:
        check_finish(expected_status, fields)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != expected_status:
                return None
            # Validate the target before touching anything so a failure leaves both rows unchanged
            if target_write is not None and not target_write.insert:
                if self._row(target_write.table, target_write.target_id) is None:
                    raise JobNotFoundError(f"{target_write.table}/{target_write.target_id}")
            if target_write is not None:
                if target_write.insert:
                    self._insert(target_write.table, {"id": target_write.target_id, **target_write.values})
                else:
                    self._update(target_write.table, target_write.target_id, target_write.values)
            updated = job.model_copy(update={**fields, "updated_at": datetime.utcnow()}, deep=True)
            self._jobs[job_id] = JobRecord.model_validate(updated.model_dump())
            self.writes += 1
            return self._jobs[job_id].model_copy(deep=True)

    # Target tables

    def get_target(self, table, target_id):
        with self._lock:
            row = self._row(table, target_id)
            return copy.deepcopy(row) if row is not None else None

    def list_targets(self, table, **filters):
        with self._lock:
            rows = [
                r for r in self._tables.get(table, {}).values()
                if all(r.get(k) == v for k, v in filters.items())
            ]
            rows.sort(key=lambda r: r.get("created_at") or "", reverse=True)
            return copy.deepcopy(rows)

    def insert_target(self, table, values):
        with self._lock:
            return copy.deepcopy(self._insert(table, values))

    def update_target(self, table, target_id, values):
        with self._lock:
            if self._row(table, target_id) is None:
                return None
            return copy.deepcopy(self._update(table, target_id, values))

    def _row(self, table: str, target_id: str) -> Optional[Dict[str, Any]]:
        return self._tables.get(table, {}).get(target_id)

    def _insert(self, table: str, values: Dict[str, Any]) -> Dict[str, Any]:
        row = copy.deepcopy(values)
        row.setdefault("id", str(uuid.uuid4()))
        row.setdefault("created_at", datetime.utcnow().isoformat())
        self._tables.setdefault(table, {})[row["id"]] = row
        self.writes += 1
        return row

    def _update(self, table: str, target_id: str, values: Dict[str, Any]) -> Dict[str, Any]:
        row = self._tables[table][target_id]
        row.update(copy.deepcopy(values))
        self.writes += 1
        return row
