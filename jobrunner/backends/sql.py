import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Optional, Sequence
from uuid import uuid4

from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from jobrunner.backends.base import QueueBackend
from jobrunner.commands.claim_job import claim_job
from jobrunner.commands.complete_job import complete_job
from jobrunner.commands.enqueue_job import enqueue_job, find_live_recurring
from jobrunner.commands.fail_job import fail_job
from jobrunner.commands.heartbeat import heartbeat
from jobrunner.commands.manage_jobs import cancel_jobs_by_name, delete_jobs, get_jobs
from jobrunner.commands.requeue_expired import requeue_expired_jobs, requeue_stalled_jobs
from jobrunner.db.models import Job as JobRow
from jobrunner.db.session import Base, create_engine, create_session_factory
from jobrunner.domain.errors import BackendError
from jobrunner.domain.models import Job, encode_tags, interval_to_ms, normalize_tags
from jobrunner.domain.states import JobStatus
from jobrunner.utils.locking import ensure_queue_lock_row, release_queue_lock, try_acquire_queue_lock

logger = logging.getLogger(__name__)

class SqlQueueBackend(QueueBackend):
    """
    Relational poll queue. Subclasses decide how claims are kept exclusive.
    """
    skip_locked = True

    def __init__(self, uri: Optional[str] = None, *, engine: Optional[AsyncEngine] = None, echo: bool = False, **kwargs):
        super().__init__(**kwargs)
        if engine is None:
            if uri is None:
                raise ValueError("either uri or engine is required")
            engine = create_engine(uri, echo=echo)
        self.engine = engine
        self.session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    yield session
        except (OperationalError, InterfaceError) as e:
            raise BackendError(f"{type(e).__name__}: {e}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                raise BackendError(f"connection lost: {e}") from e
            raise
        except OSError as e:
            raise BackendError(str(e)) from e

    async def setup(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (OperationalError, InterfaceError, OSError) as e:
            raise BackendError(f"could not create queue tables: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

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
    ) -> str:
        now = self.clock.now()
        interval_ms = interval_to_ms(interval)
        encoded_tags = encode_tags(tags or ())
        try:
            async with self.transaction() as session:
                job = await enqueue_job(
                    session,
                    queue=queue,
                    name=name,
                    payload=payload,
                    run_at=run_at or now,
                    now=now,
                    interval_ms=interval_ms,
                    max_attempts=self._max_attempts(max_attempts),
                    tags=encoded_tags,
                    priority=priority,
                )
                return job.id
        except IntegrityError:
            if interval_ms is None:
                raise
            # Another producer inserted the live instance first
            async with self.transaction() as session:
                existing = await find_live_recurring(session, queue, name, interval_ms)
                if existing is None:
                    raise
                logger.debug("Recurring job %s already live as %s", name, existing.id)
                return existing.id

    async def claim(self, queues: Sequence[str], tags: Optional[Sequence[str]] = None) -> Optional[Job]:
        now = self.clock.now()
        async with self.transaction() as session:
            job = await claim_job(
                session,
                queues,
                worker_id=self.worker_id,
                lease_seconds=self.lease_timeout,
                now=now,
                skip_locked=self.skip_locked,
                tags=normalize_tags(tags),
            )
            return job.to_domain() if job else None

    async def ack(self, job_id: str) -> None:
        async with self.transaction() as session:
            job, next_job = await complete_job(session, job_id, self.clock.now(), worker_id=self.worker_id)
            if next_job is not None:
                logger.info("Recurring job %s re-enqueued as %s at %s", job.id, next_job.id, next_job.run_at)

    async def fail(self, job_id: str, error: str, permanent: bool = False) -> JobStatus:
        async with self.transaction() as session:
            job = await fail_job(
                session,
                job_id,
                error,
                self.clock.now(),
                permanent=permanent,
                worker_id=self.worker_id,
                base_delay_seconds=self.retry_base_delay,
                max_delay_seconds=self.retry_max_delay,
            )
            return JobStatus(job.status)

    async def clear(self, queue: str) -> int:
        async with self.transaction() as session:
            return await delete_jobs(session, queue=queue)

    async def ping(self) -> None:
        async with self.transaction() as session:
            await session.execute(select(JobRow.id).limit(1))

    async def heartbeat(self, job_ids: Sequence[str]) -> int:
        async with self.transaction() as session:
            return await heartbeat(session, job_ids, self.worker_id, self.clock.now(), extend_seconds=self.lease_timeout)

    async def requeue_expired(self) -> int:
        async with self.transaction() as session:
            return await requeue_expired_jobs(session, self.clock.now())

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self.transaction() as session:
            row = await session.get(JobRow, job_id)
            return row.to_domain() if row else None

    async def get_jobs(
        self,
        status: Optional[Sequence[JobStatus]] = None,
        older_than: Optional[timedelta] = None,
        queue: Optional[str] = None,
    ) -> list[Job]:
        created_before = self.clock.now() - older_than if older_than is not None else None
        async with self.transaction() as session:
            rows = await get_jobs(session, statuses=status, created_before=created_before, queue=queue)
            return [row.to_domain() for row in rows]

    async def cancel_jobs(self, name: str) -> int:
        async with self.transaction() as session:
            return await cancel_jobs_by_name(session, name, self.clock.now())

    async def clear_all(self) -> int:
        async with self.transaction() as session:
            return await delete_jobs(session)

    async def clear_by_status(self, statuses: Sequence[JobStatus]) -> int:
        async with self.transaction() as session:
            return await delete_jobs(session, statuses=statuses)

    async def clear_jobs_older_than(
        self, age: timedelta, statuses: Optional[Sequence[JobStatus]] = None
    ) -> int:
        async with self.transaction() as session:
            return await delete_jobs(session, statuses=statuses, older_than=age, now=self.clock.now())

    async def requeue(self, older_than: timedelta) -> int:
        async with self.transaction() as session:
            return await requeue_stalled_jobs(session, self.clock.now(), older_than)

class PostgresQueueBackend(SqlQueueBackend):
    """Claims with SELECT ... FOR UPDATE SKIP LOCKED."""
    skip_locked = True

    async def ping(self) -> None:
        async with self.transaction() as session:
            await session.execute(text("SELECT 1"))

class SqliteQueueBackend(SqlQueueBackend):
    """
    SQLite has no SKIP LOCKED, so the claim itself is serialized through the
    singleton lock row. A poller that dies holding it blocks claims only
    until `lock_timeout` elapses.
    """
    skip_locked = False

    def __init__(self, uri: Optional[str] = None, *, lock_timeout: int = 30, **kwargs):
        super().__init__(uri, **kwargs)
        self.lock_timeout = lock_timeout

    async def setup(self) -> None:
        await super().setup()
        async with self.transaction() as session:
            await ensure_queue_lock_row(session)

    async def claim(self, queues: Sequence[str], tags: Optional[Sequence[str]] = None) -> Optional[Job]:
        owner = f"{self.worker_id}:{uuid4().hex[:8]}"

        async with self.transaction() as session:
            acquired = await try_acquire_queue_lock(session, owner, self.clock.now(), self.lock_timeout)
        if not acquired:
            logger.debug("Queue lock busy, skipping claim")
            return None

        try:
            return await super().claim(queues, tags)
        finally:
            async with self.transaction() as session:
                await release_queue_lock(session, owner)
