from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job, JobEventLog
from jobrunner.domain.states import ACTIVE_STATUSES, JobStatus, JobEvent
from jobrunner.metrics import JOBS_ENQUEUED

async def find_live_recurring(session: AsyncSession, queue: str, name: str, interval_ms: int) -> Optional[Job]:
    stmt = select(Job).where(
        Job.name == name,
        Job.queue == queue,
        Job.interval == interval_ms,
        Job.status.in_(ACTIVE_STATUSES)
    ).limit(1)
    return await session.scalar(stmt)

async def enqueue_job(
    session: AsyncSession,
    queue: str,
    name: str,
    payload: Any,
    run_at: datetime,
    now: datetime,
    interval_ms: Optional[int] = None,
    max_attempts: int = 3,
    tags: Optional[str] = None,
    priority: int = 0,
) -> Job:
    """
    Inserts a queued job. A recurring job (interval set) is only inserted
    when no queued or processing twin with the same name, queue and interval
    exists; the twin is returned instead. A producer racing past this check
    is stopped by the ux_jobrunner_jobs_recurring index with an IntegrityError.
    """
    if interval_ms is not None:
        existing = await find_live_recurring(session, queue, name, interval_ms)
        if existing:
            return existing

    job = Job(
        name=name,
        queue=queue,
        payload=payload,
        status=JobStatus.QUEUED,
        run_at=run_at,
        interval=interval_ms,
        attempts=0,
        max_attempts=max_attempts,
        tags=tags,
        priority=priority,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    await session.flush()

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.ENQUEUED,
        timestamp=now,
        meta={"queue": queue, "run_at": run_at.isoformat(), "priority": priority}
    ))
    await session.flush()

    JOBS_ENQUEUED.labels(queue=queue, name=name).inc()
    return job
