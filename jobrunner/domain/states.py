from enum import StrEnum, auto

class JobStatus(StrEnum):
    QUEUED = auto()           # Waiting for run_at, claimable
    PROCESSING = auto()       # Claimed by a processor
    COMPLETED = auto()        # Handler succeeded
    FAILED = auto()           # Dead letter, no more retries
    CANCELLED = auto()        # Operator cancelled before it ran

class JobEvent(StrEnum):
    ENQUEUED = auto()
    CLAIMED = auto()
    COMPLETED = auto()
    FAILED = auto()
    RETRIED = auto()
    DEAD_LETTERED = auto()
    RECLAIMED = auto()
    CANCELLED = auto()

class WorkerMode(StrEnum):
    BACKGROUND_QUEUE = auto()     # perform_later enqueues onto the backend
    FOREGROUND_BLOCKING = auto()  # perform_later runs the handler inline
    BACKGROUND_ASYNC = auto()     # perform_later spawns an in-process task

# Statuses a job can still leave on its own.
ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)
