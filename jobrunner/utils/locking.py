from datetime import datetime, timedelta

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from jobrunner.db.models import QueueLock

# The lock table holds exactly one row with this id.
QUEUE_LOCK_ID = 1

async def ensure_queue_lock_row(session: AsyncSession) -> None:
    existing = await session.get(QueueLock, QUEUE_LOCK_ID)
    if existing is None:
        session.add(QueueLock(id=QUEUE_LOCK_ID, is_locked=False))
        await session.flush()

async def try_acquire_queue_lock(
    session: AsyncSession,
    owner: str,
    now: datetime,
    timeout_seconds: int,
) -> bool:
    """
    Attempts to take the queue lock row for `owner`.
    Returns True if acquired, False otherwise.

    A lock whose locked_at is older than `timeout_seconds` is treated as
    abandoned by a crashed poller and taken over.
    """
    stale_before = now - timedelta(seconds=timeout_seconds)
    stmt = update(QueueLock).where(
        QueueLock.id == QUEUE_LOCK_ID,
        or_(
            QueueLock.is_locked.is_(False),
            QueueLock.locked_at < stale_before,
        )
    ).values(
        is_locked=True,
        locked_at=now,
        locked_by=owner
    ).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    return result.rowcount == 1

async def release_queue_lock(session: AsyncSession, owner: str) -> bool:
    """Releases the lock if `owner` still holds it."""
    stmt = update(QueueLock).where(
        QueueLock.id == QUEUE_LOCK_ID,
        QueueLock.locked_by == owner
    ).values(
        is_locked=False,
        locked_at=None,
        locked_by=None
    ).execution_options(synchronize_session=False)

    result = await session.execute(stmt)
    return result.rowcount == 1

async def get_queue_lock(session: AsyncSession) -> QueueLock | None:
    return (await session.execute(select(QueueLock).where(QueueLock.id == QUEUE_LOCK_ID))).scalar_one_or_none()
