from datetime import datetime, timedelta
from typing import Sequence

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import Job
from jobrunner.domain.states import JobStatus

async def heartbeat(
    session: AsyncSession,
    job_ids: Sequence[str],
    worker_id: str,
    now: datetime,
    extend_seconds: int = 300
) -> int:
    """
    Pushes the lease of still-processing jobs owned by `worker_id` to
    now + extend_seconds. Returns how many leases were renewed; jobs that
    were reclaimed meanwhile are not touched.
    """
    if not job_ids:
        return 0

    stmt = update(Job).where(
        Job.id.in_(list(job_ids)),
        Job.status == JobStatus.PROCESSING,
        Job.worker_id == worker_id
    ).values(
        lease_expires_at=now + timedelta(seconds=extend_seconds)
    ).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    return result.rowcount or 0
