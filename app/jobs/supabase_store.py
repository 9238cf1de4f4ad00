"""Supabase-backed job store.

Jobs live in the ``provider_jobs`` table. Conditional updates use an extra
``status = expected`` filter so a stale writer updates zero rows. Terminal
transitions go through the ``finish_provider_job`` Postgres function (see
supabase/migrations/) so the job row and the target row change in the same
transaction.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from app.jobs.errors import JobNotFoundError, TargetBusyError
from app.jobs.models import JobRecord, JobStatus, TargetWrite
from app.jobs.store import ACTIVE_STATUSES, JobStore, check_finish, check_update

logger = logging.getLogger(__name__)

JOBS_TABLE = "provider_jobs"
UNIQUE_VIOLATION = "23505"
NO_DATA_FOUND = "P0002"  # raised by finish_provider_job for a missing target row


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


class SupabaseJobStore(JobStore):

    def __init__(self, client: Client):
        self._client = client

    def _jobs(self):
        return self._client.table(JOBS_TABLE)

    def create(self, job: JobRecord) -> JobRecord:
        row = job.model_dump(mode="json")
        try:
            response = self._jobs().insert(row).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION and job.target_id:
                active = [
                    j for j in self.list(kind=job.kind, target_id=job.target_id)
                    if not j.is_terminal
                ]
                raise TargetBusyError(job.kind, job.target_id, active[0].id if active else None) from e
            raise
        return JobRecord.model_validate(response.data[0])

    def get(self, job_id: str) -> Optional[JobRecord]:
        response = self._jobs().select("*").eq("id", job_id).limit(1).execute()
        if not response.data:
            return None
        return JobRecord.model_validate(response.data[0])

    def list(self, kind=None, status=None, target_id=None) -> List[JobRecord]:
        query = self._jobs().select("*")
        if kind:
            query = query.eq("kind", kind)
        if status:
            query = query.eq("status", JobStatus(status).value)
        if target_id:
            query = query.eq("target_id", target_id)
        response = query.order("created_at", desc=True).execute()
        return [JobRecord.model_validate(r) for r in response.data or []]

    def list_active(self) -> List[JobRecord]:
        response = (
            self._jobs()
            .select("*")
            .in_("status", [s.value for s in ACTIVE_STATUSES])
            .order("created_at")
            .execute()
        )
        return [JobRecord.model_validate(r) for r in response.data or []]

    def update(self, job_id: str, expected_status: JobStatus, **fields: Any) -> Optional[JobRecord]:
        check_update(expected_status, fields)
        patch = _jsonable({**fields, "updated_at": datetime.utcnow()})
        query = (
            self._jobs()
            .update(patch)
            .eq("id", job_id)
            .eq("status", JobStatus(expected_status).value)
        )
        if fields.get("progress") is not None:
            # Progress never moves backwards, even with two pollers on one job
            query = query.or_(f"progress.is.null,progress.lte.{int(fields['progress'])}")
        response = query.execute()
        if not response.data:
            return None
        return JobRecord.model_validate(response.data[0])

    def finish(self, job_id, expected_status, fields, target_write: Optional[TargetWrite] = None):
        check_finish(expected_status, fields)
        params = {
            "p_job_id": job_id,
            "p_expected_status": JobStatus(expected_status).value,
            "p_job": _jsonable({**fields, "updated_at": datetime.utcnow()}),
            "p_target_table": target_write.table if target_write else None,
            "p_target_id": target_write.target_id if target_write else None,
            "p_target": _jsonable(target_write.values) if target_write else None,
            "p_target_insert": target_write.insert if target_write else False,
        }
        try:
            response = self._client.rpc("finish_provider_job", params).execute()
        except APIError as e:
            if e.code == NO_DATA_FOUND:
                raise JobNotFoundError(f"{target_write.table}/{target_write.target_id}") from e
            raise
        if not response.data:
            logger.info("Job %s was no longer %s; finish skipped", job_id, JobStatus(expected_status).value)
            return None
        return self.get(job_id)

    def get_target(self, table, target_id):
        response = self._client.table(table).select("*").eq("id", target_id).limit(1).execute()
        return response.data[0] if response.data else None

    def list_targets(self, table, **filters):
        query = self._client.table(table).select("*")
        for column, value in filters.items():
            query = query.eq(column, _jsonable(value))
        response = query.order("created_at", desc=True).execute()
        return response.data or []

    def insert_target(self, table, values):
        response = self._client.table(table).insert(_jsonable(values)).execute()
        return response.data[0]

    def update_target(self, table, target_id, values):
        response = self._client.table(table).update(_jsonable(values)).eq("id", target_id).execute()
        return response.data[0] if response.data else None
