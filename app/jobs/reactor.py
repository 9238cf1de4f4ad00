"""Completion reactor: terminal job writes and their target-entity effects.

Every terminal transition goes through here so the job row and the target
row are written by one ``JobStore.finish`` call.
"""

import logging
from datetime import datetime
from typing import Optional

from app.jobs.errors import BlobStoreError, JobNotFoundError, ProviderOutputError
from app.jobs.models import ErrorKind, JobRecord, JobStatus, RemoteSnapshot
from app.kinds.base import JobContext, JobKind

logger = logging.getLogger(__name__)


class CompletionReactor:

    def __init__(self, ctx: JobContext):
        self._ctx = ctx

    async def complete(self, job: JobRecord, kind: JobKind, snapshot: RemoteSnapshot) -> Optional[JobRecord]:
        """Finish ``job`` as completed from a succeeded snapshot.

        Returns the finished record, or None if another writer finished it first.
        """
        try:
            result = await kind.extract_result(job, snapshot, self._ctx)
        except (ProviderOutputError, BlobStoreError) as e:
            logger.error("Job %s succeeded remotely but its output is unusable: %s", job.id, e)
            return self.fail(job, kind, ErrorKind.OUTPUT, str(e))
        except Exception as e:
            logger.exception("Handling output of job %s failed", job.id)
            return self.fail(job, kind, ErrorKind.OUTPUT, f"Could not process provider output: {e!r}")
        if not result:
            return self.fail(job, kind, ErrorKind.OUTPUT, "Provider returned an empty result")

        try:
            finished = self._ctx.store.finish(
                job.id,
                job.status,
                {
                    "status": JobStatus.COMPLETED,
                    "progress": 100,
                    "result": result,
                    "error": None,
                    "error_kind": None,
                    "completed_at": datetime.utcnow(),
                },
                kind.completion_write(job, result, self._ctx),
            )
        except JobNotFoundError as e:
            logger.error("Job %s succeeded but its target is gone: %s", job.id, e)
            return self.fail(job, kind, ErrorKind.OUTPUT, f"Target no longer exists: {e}")
        if finished is not None:
            logger.info("Job %s (%s) completed", job.id, job.kind)
        return finished

    def fail(
        self,
        job: JobRecord,
        kind: JobKind,
        error_kind: ErrorKind,
        message: Optional[str],
        status: JobStatus = JobStatus.FAILED,
    ) -> Optional[JobRecord]:
        """Finish ``job`` as failed or cancelled. The error message is never empty."""
        message = message or f"{job.kind} {status.value}"
        fields = {
            "status": status,
            "progress": job.progress,
            "result": None,
            "error": message,
            "error_kind": error_kind,
            "completed_at": datetime.utcnow(),
        }
        target_write = kind.failure_write(job, self._ctx)
        try:
            finished = self._ctx.store.finish(job.id, job.status, fields, target_write)
        except JobNotFoundError:
            if target_write is None:
                raise
            # The job still has to end even when its target row was deleted
            logger.warning("Target %s/%s of job %s is gone; finishing without it",
                           target_write.table, target_write.target_id, job.id)
            finished = self._ctx.store.finish(job.id, job.status, fields)
        if finished is not None:
            logger.warning("Job %s (%s) %s [%s]: %s", job.id, job.kind, status.value, error_kind.value, message)
        return finished
