import os
import socket
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional, Sequence
from uuid import uuid4

from jobrunner.domain.models import Job
from jobrunner.domain.states import JobStatus
from jobrunner.utils.clock import Clock, SystemClock

DEFAULT_QUEUES = ("default", "mailer")
DEFAULT_QUEUE = "default"

def get_queues(configured: Optional[Iterable[str]] = None) -> list[str]:
    """Default queues first, then configured ones, without duplicates."""
    queues = list(DEFAULT_QUEUES)
    for name in configured or ():
        if name not in queues:
            queues.append(name)
    return queues

def make_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"

class QueueBackend(ABC):
    """
    Contract shared by every queue backend.

    Status writes happen only inside enqueue, claim, ack, fail and the
    reclaim/operator operations below.

    Claims are routed by tags: a claimer without tags takes only untagged
    jobs, a claimer with tags takes only jobs sharing one of them. Among
    eligible jobs the highest priority wins, then the earliest run_at.
    """

    def __init__(
        self,
        *,
        lease_timeout: int = 300,
        max_attempts: int = 3,
        retry_base_delay: float = 10,
        retry_max_delay: float = 3600,
        clock: Optional[Clock] = None,
        worker_id: Optional[str] = None,
    ):
        self.lease_timeout = lease_timeout
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.clock = clock or SystemClock()
        self.worker_id = worker_id or make_worker_id()

    # Lifecycle

    async def setup(self) -> None:
        """Creates whatever storage the backend needs. Idempotent."""

    async def close(self) -> None:
        pass

    # Core protocol

    @abstractmethod
    async def enqueue(
        self,
        queue: str,
        name: str,
        payload: Any,
        run_at: Optional[datetime] = None,
        interval: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        priority: int = 0,
    ) -> str: ...

    @abstractmethod
    async def claim(self, queues: Sequence[str], tags: Optional[Sequence[str]] = None) -> Optional[Job]: ...

    @abstractmethod
    async def ack(self, job_id: str) -> None: ...

    @abstractmethod
    async def fail(self, job_id: str, error: str, permanent: bool = False) -> JobStatus: ...

    @abstractmethod
    async def clear(self, queue: str) -> int: ...

    @abstractmethod
    async def ping(self) -> None: ...

    async def wait_for_job(self, queues: Sequence[str], timeout: float) -> None:
        """Suspends a poller with nothing to claim. Poll backends just sleep."""
        await self.clock.sleep(timeout)

    # Leases

    @abstractmethod
    async def heartbeat(self, job_ids: Sequence[str]) -> int: ...

    @abstractmethod
    async def requeue_expired(self) -> int: ...

    # Operator helpers

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]: ...

    @abstractmethod
    async def get_jobs(
        self,
        status: Optional[Sequence[JobStatus]] = None,
        older_than: Optional[timedelta] = None,
        queue: Optional[str] = None,
    ) -> list[Job]: ...

    @abstractmethod
    async def cancel_jobs(self, name: str) -> int: ...

    @abstractmethod
    async def clear_all(self) -> int: ...

    @abstractmethod
    async def clear_by_status(self, statuses: Sequence[JobStatus]) -> int: ...

    @abstractmethod
    async def clear_jobs_older_than(
        self, age: timedelta, statuses: Optional[Sequence[JobStatus]] = None
    ) -> int: ...

    @abstractmethod
    async def requeue(self, older_than: timedelta) -> int: ...

    def _max_attempts(self, value: Optional[int]) -> int:
        return value if value is not None else self.max_attempts
