from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job, JobEventLog
from jobrunner.domain.states import JobStatus, JobEvent
from jobrunner.domain.retry import calculate_next_run
from jobrunner.domain.errors import JobNotFoundError, InvalidJobStateError
from jobrunner.metrics import JOB_FAILURES

async def fail_job(
    session: AsyncSession,
    job_id: str,
    error: str,
    now: datetime,
    permanent: bool = False,
    worker_id: Optional[str] = None,
    base_delay_seconds: float = 10,
    max_delay_seconds: float = 3600,
) -> Job:
    """
    Records a failed delivery.
    Back to QUEUED with a backoff run_at while attempts remain, otherwise
    FAILED (dead letter). Permanent errors skip the retry.
    """
    job = await session.get(Job, job_id, with_for_update=True)

    if not job:
        raise JobNotFoundError(job_id)

    if job.status != JobStatus.PROCESSING:
        raise InvalidJobStateError(job.status, JobStatus.FAILED)

    if worker_id and job.worker_id and job.worker_id != worker_id:
        raise InvalidJobStateError(f"{job.status} (owned by {job.worker_id})", JobStatus.FAILED)

    job.last_error = error
    job.lease_expires_at = None
    job.updated_at = now

    next_event: JobEvent

    if permanent or job.attempts >= job.max_attempts:
        job.status = JobStatus.FAILED
        JOB_FAILURES.labels(queue=job.queue, type="final").inc()
        next_event = JobEvent.DEAD_LETTERED
    else:
        job.status = JobStatus.QUEUED
        job.run_at = calculate_next_run(
            job.attempts,
            now,
            base_delay_seconds=base_delay_seconds,
            max_delay_seconds=max_delay_seconds,
        )
        JOB_FAILURES.labels(queue=job.queue, type="retryable").inc()
        next_event = JobEvent.RETRIED

    session.add(JobEventLog(
        job_id=job.id,
        event_type=next_event,
        timestamp=now,
        meta={
            "error": error,
            "attempts": job.attempts,
            "max": job.max_attempts,
            "permanent": permanent,
            "worker_id": job.worker_id,
        }
    ))

    await session.flush()
    return job
