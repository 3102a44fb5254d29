from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job, JobEventLog
from jobrunner.domain.states import JobStatus, JobEvent
from jobrunner.domain.errors import JobNotFoundError, InvalidJobStateError
from jobrunner.metrics import JOBS_COMPLETED, JOBS_ENQUEUED

async def complete_job(
    session: AsyncSession,
    job_id: str,
    now: datetime,
    worker_id: Optional[str] = None,
) -> tuple[Job, Optional[Job]]:
    """
    Marks a processing job as COMPLETED.
    Recurring jobs get a fresh queued row at now + interval, returned as the
    second element.
    """
    job = await session.get(Job, job_id, with_for_update=True)

    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.COMPLETED)

    # A reclaimed job now belongs to someone else
    if worker_id and job.worker_id and job.worker_id != worker_id:
        raise InvalidJobStateError(f"{job.status} (owned by {job.worker_id})", JobStatus.COMPLETED)

    job.status = JobStatus.COMPLETED
    job.lease_expires_at = None
    job.updated_at = now

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.COMPLETED,
        timestamp=now,
        meta={"worker_id": job.worker_id, "attempt": job.attempts}
    ))
    JOBS_COMPLETED.labels(queue=job.queue, name=job.name).inc()

    next_job = None
    if job.interval is not None:
        # The finished row must leave the live set before its successor enters it
        await session.flush()
        run_at = now + timedelta(milliseconds=job.interval)
        next_job = Job(
            name=job.name,
            queue=job.queue,
            payload=job.payload,
            status=JobStatus.QUEUED,
            run_at=run_at,
            interval=job.interval,
            attempts=0,
            max_attempts=job.max_attempts,
            tags=job.tags,
            priority=job.priority,
            created_at=now,
            updated_at=now,
        )
        session.add(next_job)
        await session.flush()

        session.add(JobEventLog(
            job_id=next_job.id,
            event_type=JobEvent.ENQUEUED,
            timestamp=now,
            meta={"queue": job.queue, "run_at": run_at.isoformat(), "recurring_from": job.id}
        ))
        JOBS_ENQUEUED.labels(queue=job.queue, name=job.name).inc()

    await session.flush()
    return job, next_job
