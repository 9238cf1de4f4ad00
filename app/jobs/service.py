"""Job service: starts provider jobs and exposes their lifecycle to the API."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.jobs.dispatcher import JobDispatcher
from app.jobs.errors import InvalidTransitionError, JobError, JobNotFoundError, RemoteJobError
from app.jobs.models import ErrorKind, JobRecord, JobStatus
from app.jobs.poller import StatusPoller
from app.jobs.reactor import CompletionReactor
from app.kinds.base import JobContext
from app.kinds.registry import KindRegistry
from app.providers.replicate_client import RemoteJobClient
from app.storage.images import InvalidImageError

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
INTERRUPTED = "Interrupted before the provider job was started"


class JobService:

    def __init__(
        self,
        ctx: JobContext,
        client: RemoteJobClient,
        kinds: KindRegistry,
        reactor: CompletionReactor,
        poller: StatusPoller,
        dispatcher: Optional[JobDispatcher] = None,
    ):
        self.ctx = ctx
        self.store = ctx.store
        self._client = client
        self._kinds = kinds
        self._reactor = reactor
        self.poller = poller
        self._dispatcher = dispatcher

    def set_dispatcher(self, dispatcher: JobDispatcher) -> None:
        self._dispatcher = dispatcher

    async def start(self, kind_name: str, params: Dict[str, Any]) -> JobRecord:
        """Validate, create, prepare and start a job, then hand it to the background poller.

        Validation, missing targets and busy targets raise before anything
        remote happens. Upload and remote-start failures are recorded on the
        job, which is returned already failed.
        """
        kind = self._kinds.require(kind_name)
        params = kind.validate(params)
        target_id, params = kind.resolve_target(params, self.ctx)

        created = self.store.create(JobRecord(kind=kind_name, target_id=target_id, params=params))
        logger.info("Created %s job %s for target %s", kind_name, created.id, target_id)

        # A None from update means a concurrent cancel got there first
        job = self.store.update(created.id, JobStatus.PENDING, status=JobStatus.UPLOADING)
        if job is None:
            return self.get(created.id)

        try:
            extra = await kind.prepare(job, self.ctx)
        except (JobError, InvalidImageError, OSError) as e:
            logger.error("Preparing inputs for job %s failed: %s", job.id, e)
            return self._finished(job, self._reactor.fail(job, kind, ErrorKind.UPLOAD, f"Input upload failed: {e}"))
        except Exception as e:
            logger.exception("Unexpected error preparing inputs for job %s", job.id)
            return self._finished(job, self._reactor.fail(job, kind, ErrorKind.UPLOAD, f"Input upload failed: {e!r}"))
        if extra:
            job = self.store.update(job.id, JobStatus.UPLOADING, params={**job.params, **extra})
            if job is None:
                return self.get(created.id)

        try:
            started = await kind.start(job, self._client)
        except RemoteJobError as e:
            logger.error("Provider refused %s job %s: %s", kind_name, job.id, e)
            return self._finished(job, self._reactor.fail(job, kind, ErrorKind.REMOTE_START, str(e)))
        except Exception as e:
            logger.exception("Unexpected error starting %s job %s", kind_name, job.id)
            return self._finished(
                job, self._reactor.fail(job, kind, ErrorKind.REMOTE_START, f"Provider start failed: {e!r}")
            )

        running = self.store.update(
            job.id,
            JobStatus.UPLOADING,
            status=JobStatus.RUNNING,
            external_id=started.handle,
            started_at=datetime.utcnow(),
            params={**job.params, **started.details},
        )
        if running is None:
            # Cancelled while the provider call was in flight
            await self._client.cancel(kind.spec().resource, started.handle)
            return self.get(job.id)

        logger.info("Started %s job %s as provider %s %s", kind_name, job.id, kind.spec().resource, started.handle)
        await self._submit(running.id)
        return running

    def get(self, job_id: str) -> JobRecord:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {job_id} not found")
        return job

    def list(self, kind: Optional[str] = None, status: Optional[JobStatus] = None,
             target_id: Optional[str] = None) -> List[JobRecord]:
        return self.store.list(kind=kind, status=status, target_id=target_id)

    async def check(self, job_id: str) -> JobRecord:
        """One status poll. Terminal jobs come back unchanged."""
        self.get(job_id)
        return await self.poller.check_once(job_id)

    async def cancel(self, job_id: str) -> JobRecord:
        job = self.get(job_id)
        if job.is_terminal:
            raise InvalidTransitionError(job.status, JobStatus.CANCELLED)
        kind = self._kinds.require(job.kind)
        if job.external_id:
            await self._client.cancel(kind.spec().resource, job.external_id)

        # The status can move under us (uploading -> running); retry against the fresh row
        for _ in range(3):
            finished = self._reactor.fail(job, kind, ErrorKind.CANCELLED, CANCELLED_BY_USER, status=JobStatus.CANCELLED)
            if finished is not None:
                return finished
            job = self.get(job_id)
            if job.is_terminal:
                raise InvalidTransitionError(job.status, JobStatus.CANCELLED)
            if job.external_id:
                await self._client.cancel(kind.spec().resource, job.external_id)
        raise InvalidTransitionError(job.status, JobStatus.CANCELLED)

    async def resume(self, job_id: str) -> bool:
        """Re-attach a background poller to a running job (e.g. one left by the detach policy)."""
        job = self.get(job_id)
        if job.status != JobStatus.RUNNING:
            return False
        return await self._submit(job.id)

    async def resume_active(self) -> int:
        """Pick up non-terminal jobs left over from a previous process.

        Running jobs get a poller again. Jobs that never reached the provider
        cannot be resumed and are failed.
        """
        resumed = 0
        for job in self.store.list_active():
            kind = self._kinds.get(job.kind)
            if kind is None:
                logger.warning("Skipping job %s of unknown kind %s", job.id, job.kind)
                continue
            if job.status == JobStatus.RUNNING and job.external_id:
                if await self._submit(job.id):
                    resumed += 1
                continue
            error_kind = ErrorKind.UPLOAD if job.status == JobStatus.UPLOADING else ErrorKind.REMOTE_START
            self._reactor.fail(job, kind, error_kind, INTERRUPTED)
        if resumed:
            logger.info("Resumed polling for %d running job(s)", resumed)
        return resumed

    async def _submit(self, job_id: str) -> bool:
        if self._dispatcher is None:
            logger.warning("No dispatcher; job %s will only advance through status checks", job_id)
            return False
        return await self._dispatcher.submit(job_id)

    def _finished(self, job: JobRecord, finished: Optional[JobRecord]) -> JobRecord:
        return finished if finished is not None else self.get(job.id)
