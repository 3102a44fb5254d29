from datetime import datetime, timedelta
from typing import Optional, Sequence
import logging

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job, JobEventLog
from jobrunner.domain.states import JobStatus, JobEvent
from jobrunner.metrics import JOBS_CLAIMED, JOB_START_DELAY

logger = logging.getLogger(__name__)

async def claim_job(
    session: AsyncSession,
    queues: Sequence[str],
    worker_id: str,
    lease_seconds: int,
    now: datetime,
    skip_locked: bool = True,
    tags: Sequence[str] = (),
) -> Optional[Job]:
    """
    Claims the most urgent eligible job across `queues` for `worker_id`:
    highest priority first, then oldest run_at. A claimer without `tags`
    only sees untagged jobs; one with tags only sees jobs carrying at least
    one of them.

    Must run inside the caller's transaction. With `skip_locked` the row is
    selected FOR UPDATE SKIP LOCKED so concurrent claimers never see the same
    row; without it the caller must already serialize claims (lock table).
    The attempt counter is bumped here so a crash mid-job still counts.
    """
    stmt = _build_job_query(queues, now, skip_locked, tags)
    job = (await session.execute(stmt)).scalar_one_or_none()

    if not job:
        return None

    job.status = JobStatus.PROCESSING
    job.attempts += 1
    job.worker_id = worker_id
    job.lease_expires_at = now + timedelta(seconds=lease_seconds)
    job.updated_at = now

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CLAIMED,
        timestamp=now,
        meta={
            "worker_id": worker_id,
            "attempt": job.attempts,
            "lease_expires_at": job.lease_expires_at.isoformat(),
        }
    ))

    JOBS_CLAIMED.labels(queue=job.queue).inc()
    delay = (now - job.run_at).total_seconds()
    if delay >= 0:
        JOB_START_DELAY.observe(delay)

    await session.flush()
    logger.debug("Claimed job %s (%s) attempt %d", job.id, job.name, job.attempts)
    return job

def _build_job_query(queues, now, skip_locked, tags=()):
    stmt = select(Job).where(
        Job.status == JobStatus.QUEUED,
        Job.run_at <= now,
        Job.queue.in_(list(queues)),
        _tag_filter(tags)
    ).order_by(
        Job.priority.desc(),
        Job.run_at.asc(),
        Job.created_at.asc()
    ).limit(1)
    if skip_locked:
        stmt = stmt.with_for_update(skip_locked=True)
    return stmt

def _tag_filter(tags):
    if not tags:
        return Job.tags.is_(None)
    return or_(*[Job.tags.contains(f",{tag},", autoescape=True) for tag in tags])
