"""Status poller shared by every job kind.

Polls the provider on a fixed interval until the job reaches a terminal
state or the wait budget runs out. Provider states are translated by the
job's kind; only changes are persisted.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Tuple

from app.jobs.errors import JobNotFoundError, RemoteJobError
from app.jobs.models import ErrorKind, JobOutcome, JobRecord, JobStatus
from app.jobs.reactor import CompletionReactor
from app.jobs.store import JobStore
from app.kinds.base import JobKind
from app.kinds.registry import KindRegistry
from app.providers.replicate_client import RemoteJobClient

logger = logging.getLogger(__name__)

TIMEOUT_FAIL = "fail"
TIMEOUT_DETACH = "detach"


def merge_progress(current: Optional[int], reported: Optional[int]) -> Optional[int]:
    """Provider-reported progress only moves forward; None keeps the last value."""
    if reported is None:
        return current
    if current is None:
        return reported
    return max(current, reported)


class StatusPoller:

    def __init__(
        self,
        store: JobStore,
        client: RemoteJobClient,
        reactor: CompletionReactor,
        kinds: KindRegistry,
        max_wait: float,
        max_consecutive_errors: int = 5,
        timeout_policy: str = TIMEOUT_FAIL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if timeout_policy not in (TIMEOUT_FAIL, TIMEOUT_DETACH):
            raise ValueError(f"Unknown timeout policy {timeout_policy!r}")
        self._store = store
        self._client = client
        self._reactor = reactor
        self._kinds = kinds
        self._max_wait = max_wait
        self._max_errors = max_consecutive_errors
        self._timeout_policy = timeout_policy
        self._sleep = sleep
        self._clock = clock

    async def poll_until_terminal(
        self,
        job_id: str,
        interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> JobOutcome:
        job = self._load(job_id)
        if job.is_terminal:
            return JobOutcome(job=job)

        kind = self._kinds.require(job.kind)
        interval = interval if interval is not None else kind.spec().poll_interval
        max_wait = max_wait if max_wait is not None else self._max_wait
        deadline = self._clock() + max_wait
        polls = 0
        logger.info("Polling job %s (%s) every %ss for up to %ss", job.id, job.kind, interval, max_wait)

        while True:
            await self._sleep(interval)
            polls += 1
            job, done = await self._step(job, kind)
            if done:
                return JobOutcome(job=job, polls=polls)
            if self._clock() >= deadline:
                return await self._on_timeout(job, kind, max_wait, polls)

    async def check_once(self, job_id: str) -> JobRecord:
        """One poll step without sleeping. Terminal jobs are returned untouched."""
        job = self._load(job_id)
        if job.is_terminal:
            return job
        job, _ = await self._step(job, self._kinds.require(job.kind))
        return job

    async def _step(self, job: JobRecord, kind: JobKind) -> Tuple[JobRecord, bool]:
        if job.status != JobStatus.RUNNING or not job.external_id:
            # Not started remotely yet (or someone else moved it); re-read and wait
            job = self._load(job.id)
            return job, job.is_terminal

        try:
            snapshot = await self._client.get(kind.spec().resource, job.external_id)
            observation = kind.map_state(snapshot)
        except RemoteJobError as e:
            return self._on_poll_error(job, kind, e)
        except Exception as e:
            logger.exception("Unexpected error reading status of job %s", job.id)
            return self._on_poll_error(job, kind, e)

        if observation.status == JobStatus.COMPLETED:
            try:
                finished = await self._reactor.complete(job, kind, snapshot)
            except Exception as e:
                # Retried on the next poll, bounded by the error limit and the deadline
                logger.exception("Recording completion of job %s failed", job.id)
                return self._on_poll_error(job, kind, e)
            return self._settle(job, finished)

        if observation.status in (JobStatus.FAILED, JobStatus.CANCELLED):
            error_kind = ErrorKind.CANCELLED if observation.status == JobStatus.CANCELLED else ErrorKind.REMOTE_FAILURE
            return self._settle(
                job,
                self._reactor.fail(job, kind, error_kind, observation.error, status=observation.status),
            )

        changes = {}
        progress = merge_progress(job.progress, observation.progress)
        if progress != job.progress:
            changes["progress"] = progress
        if job.poll_errors:
            changes["poll_errors"] = 0
        if not changes:
            return job, False
        logger.debug("Job %s progress %s", job.id, progress)
        return self._settle(job, self._store.update(job.id, job.status, **changes))

    def _on_poll_error(self, job: JobRecord, kind: JobKind, error: Exception) -> Tuple[JobRecord, bool]:
        errors = job.poll_errors + 1
        logger.warning(
            "Poll of job %s failed (%d/%d consecutive, transient=%s): %s",
            job.id, errors, self._max_errors, getattr(error, "transient", False), error,
        )
        if errors >= self._max_errors:
            return self._settle(job, self._reactor.fail(
                job,
                kind,
                ErrorKind.TRANSIENT_EXHAUSTED,
                f"Provider status unavailable after {errors} consecutive poll failures: {error}",
            ))
        return self._settle(job, self._store.update(job.id, job.status, poll_errors=errors))

    async def _on_timeout(self, job: JobRecord, kind: JobKind, max_wait: float, polls: int) -> JobOutcome:
        if self._timeout_policy == TIMEOUT_DETACH:
            logger.warning("Job %s still running after %ss; detaching poller", job.id, max_wait)
            return JobOutcome(job=job, polls=polls, timed_out=True, still_running=True)

        message = f"Timed out after {int(max_wait)}s waiting for provider"
        failed = self._reactor.fail(job, kind, ErrorKind.TIMEOUT, message)
        if failed is not None and job.external_id:
            # Best-effort; the provider may have finished in the meantime
            await self._client.cancel(kind.spec().resource, job.external_id)
        job, _ = self._settle(job, failed)
        return JobOutcome(job=job, polls=polls, timed_out=True)

    def _settle(self, job: JobRecord, written: Optional[JobRecord]) -> Tuple[JobRecord, bool]:
        if written is None:
            # Lost a conditional write: the row was cancelled or finished elsewhere
            written = self._load(job.id)
            logger.info("Job %s changed underneath the poller (now %s)", job.id, written.status.value)
        return written, written.is_terminal

    def _load(self, job_id: str) -> JobRecord:
        job = self._store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
