from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job
from jobrunner.domain.states import JobStatus

async def get_jobs(
    session: AsyncSession,
    statuses: Optional[Sequence[JobStatus]] = None,
    created_before: Optional[datetime] = None,
    queue: Optional[str] = None,
) -> list[Job]:
    stmt = select(Job).order_by(Job.run_at.asc(), Job.created_at.asc())
    if statuses:
        stmt = stmt.where(Job.status.in_(list(statuses)))
    if created_before is not None:
        stmt = stmt.where(Job.created_at <= created_before)
    if queue is not None:
        stmt = stmt.where(Job.queue == queue)
    return list((await session.execute(stmt)).scalars().all())

async def cancel_jobs_by_name(session: AsyncSession, name: str, now: datetime) -> int:
    """Cancels queued jobs with the given name. Running jobs are left alone."""
    stmt = update(Job).where(
        Job.name == name,
        Job.status == JobStatus.QUEUED
    ).values(
        status=JobStatus.CANCELLED,
        updated_at=now
    ).execution_options(synchronize_session=False)
    result = await session.execute(stmt)
    return result.rowcount or 0

async def delete_jobs(
    session: AsyncSession,
    queue: Optional[str] = None,
    statuses: Optional[Sequence[JobStatus]] = None,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """Deletes jobs matching every given filter; no filter deletes everything."""
    stmt = delete(Job)
    if queue is not None:
        stmt = stmt.where(Job.queue == queue)
    if statuses:
        stmt = stmt.where(Job.status.in_(list(statuses)))
    if older_than is not None:
        stmt = stmt.where(Job.created_at <= now - older_than)
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount or 0
