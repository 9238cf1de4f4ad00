"""Job dispatcher interface for background status polling."""

from abc import ABC, abstractmethod
from typing import List


class JobDispatcher(ABC):
    """Abstract interface for running pollers outside the request that started the job."""

    @abstractmethod
    async def submit(self, job_id: str) -> bool:
        """Queue a job for polling. Returns False if it is already being polled."""
        ...

    @abstractmethod
    def active(self) -> List[str]:
        """Ids of jobs currently queued or being polled."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
