"""In-process job dispatcher using asyncio.

Each submitted job gets its own polling task; a semaphore bounds how many
run at once. No external dependencies (Redis, Celery) needed. Pollers only
read and write through the job store, so a restart loses nothing that
``JobService.resume_active`` cannot pick up again.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Set

from app.jobs.dispatcher import JobDispatcher
from app.jobs.models import JobOutcome

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async job queue. Runs one poller task per job."""

    def __init__(self, runner: Callable[[str], Awaitable[JobOutcome]], max_concurrent: int = 8):
        """
        runner: async callable(job_id) -> JobOutcome
            Usually ``StatusPoller.poll_until_terminal``.
        """
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._runner = runner
        self._max_concurrent = max_concurrent
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._pending: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    async def submit(self, job_id: str) -> bool:
        if job_id in self._pending or job_id in self._tasks:
            logger.debug("Job %s is already being polled", job_id)
            return False
        self._pending.add(job_id)
        await self._queue.put(job_id)
        return True

    def active(self) -> List[str]:
        return sorted(self._pending | set(self._tasks))

    async def start(self) -> None:
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._running = True
        self._task = asyncio.create_task(self._worker_loop())
        logger.info("Job dispatcher started (max %d concurrent pollers)", self._max_concurrent)

    async def stop(self) -> None:
        self._running = False
        tasks = [t for t in (self._task, *self._tasks.values()) if t is not None]
        for task in tasks:
            task.cancel()
        # Pollers persist every change as it happens, so cancelling them loses nothing
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._pending.clear()
        logger.info("Job dispatcher stopped")

    async def join(self) -> None:
        """Wait until every queued job has a poller and every poller has finished."""
        await self._queue.join()
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def _worker_loop(self) -> None:
        """Hand queued job ids to their own polling tasks."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

            self._pending.discard(job_id)
            task = asyncio.create_task(self._run(job_id))
            self._tasks[job_id] = task
            task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
            self._queue.task_done()

    async def _run(self, job_id: str) -> None:
        async with self._semaphore:
            try:
                outcome = await self._runner(job_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                # The job stays non-terminal in the store; a status check or restart resumes it
                logger.exception("Poller for job %s crashed", job_id)
                return
        if outcome.still_running:
            logger.info("Job %s detached after %d polls; still running at the provider", job_id, outcome.polls)
        else:
            logger.info("Job %s finished polling as %s after %d polls", job_id, outcome.job.status.value, outcome.polls)
