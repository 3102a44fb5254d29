from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job, JobEventLog
from jobrunner.domain.states import JobStatus, JobEvent
from jobrunner.metrics import REAPER_RECOVERED_JOBS, JOB_FAILURES

async def requeue_expired_jobs(session: AsyncSession, now: datetime, limit: int = 100) -> int:
    """
    Finds processing jobs whose lease expired and reverts them to QUEUED.
    The delivery already counted as an attempt, so exhausted jobs go to FAILED.
    Returns number of jobs recovered.
    """
    stmt = select(Job).where(
        Job.status == JobStatus.PROCESSING,
        Job.lease_expires_at < now
    ).limit(limit).with_for_update(skip_locked=True)

    result = await session.execute(stmt)
    expired = result.scalars().all()

    if not expired:
        return 0

    for job in expired:
        previous_worker = job.worker_id
        job.last_error = "Lease expired (worker crash?)"
        job.lease_expires_at = None
        job.updated_at = now

        if job.attempts >= job.max_attempts:
            job.status = JobStatus.FAILED
            event_type = JobEvent.DEAD_LETTERED
            JOB_FAILURES.labels(queue=job.queue, type="final").inc()
        else:
            # Worker crashed; make it claimable right away
            job.status = JobStatus.QUEUED
            job.run_at = now
            event_type = JobEvent.RECLAIMED

        session.add(JobEventLog(
            job_id=job.id,
            event_type=event_type,
            timestamp=now,
            meta={"reason": "lease_expired", "worker_id": previous_worker, "attempts": job.attempts}
        ))

    REAPER_RECOVERED_JOBS.inc(len(expired))

    await session.flush()
    return len(expired)

async def requeue_stalled_jobs(session: AsyncSession, now: datetime, older_than: timedelta) -> int:
    """
    Operator reset: every processing job untouched for `older_than` goes back
    to QUEUED regardless of its lease.
    """
    stmt = select(Job).where(
        Job.status == JobStatus.PROCESSING,
        Job.updated_at <= now - older_than
    ).with_for_update(skip_locked=True)

    jobs = (await session.execute(stmt)).scalars().all()
    for job in jobs:
        job.status = JobStatus.QUEUED
        job.run_at = now
        job.lease_expires_at = None
        job.updated_at = now
        session.add(JobEventLog(
            job_id=job.id,
            event_type=JobEvent.RECLAIMED,
            timestamp=now,
            meta={"reason": "operator_requeue", "worker_id": job.worker_id}
        ))

    await session.flush()
    return len(jobs)
