from datetime import datetime
from typing import Optional, Any
from uuid import uuid4

from sqlalchemy import Boolean, BigInteger, String, Integer, DateTime, ForeignKey, Index, Text, JSON, CheckConstraint, and_
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from jobrunner.db.session import Base
from jobrunner.domain.models import Job as JobDomain, decode_tags, interval_from_ms
from jobrunner.domain.states import ACTIVE_STATUSES, JobStatus, JobEvent
from jobrunner.utils.clock import utcnow

# JSONB on Postgres, plain JSON text elsewhere
JsonType = JSON().with_variant(JSONB(), "postgresql")

def _new_id() -> str:
    return str(uuid4())

class Job(Base):
    __tablename__ = "jobrunner_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    queue: Mapped[str] = mapped_column(String, nullable=False, default="default")

    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, index=True)
    payload: Mapped[Any] = mapped_column(JsonType, nullable=True)

    # Scheduling fields
    run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    interval: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)  # milliseconds

    # Retry logic
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Routing
    tags: Mapped[Optional[str]] = mapped_column(String, nullable=True)  # ",a,b," or NULL
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lease
    worker_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    events: Mapped[list["JobEventLog"]] = relationship(
        "JobEventLog", back_populates="job", cascade="all, delete-orphan", passive_deletes=True
    )

    __table_args__ = (
        # Claim query: status=queued, queue in (...), run_at <= now order by priority, run_at
        Index("ix_jobrunner_jobs_poll", "status", "queue", "run_at"),
        Index("ix_jobrunner_jobs_name", "name", "status"),
    )

    def to_domain(self) -> JobDomain:
        return JobDomain(
            id=self.id,
            name=self.name,
            queue=self.queue,
            payload=self.payload,
            status=JobStatus(self.status),
            run_at=self.run_at,
            interval=interval_from_ms(self.interval),
            attempts=self.attempts,
            max_attempts=self.max_attempts,
            tags=decode_tags(self.tags),
            priority=self.priority,
            last_error=self.last_error,
            worker_id=self.worker_id,
            lease_expires_at=self.lease_expires_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

# At most one live instance per recurring job. Checked by the database so
# concurrent producers cannot both insert.
_live_recurring = and_(Job.interval.is_not(None), Job.status.in_([str(s) for s in ACTIVE_STATUSES]))
Index(
    "ux_jobrunner_jobs_recurring",
    Job.name,
    Job.queue,
    Job.interval,
    unique=True,
    postgresql_where=_live_recurring,
    sqlite_where=_live_recurring,
)

class JobEventLog(Base):
    __tablename__ = "jobrunner_job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), ForeignKey("jobrunner_jobs.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Context (e.g. worker_id, error message, attempt number)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["Job"] = relationship("Job", back_populates="events")

class QueueLock(Base):
    """Singleton row serializing claims on engines without SKIP LOCKED."""
    __tablename__ = "jobrunner_queue_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    locked_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_jobrunner_queue_lock_singleton"),
    )
