from .app import JobRunner
from .backends.base import DEFAULT_QUEUES, QueueBackend, get_queues
from .domain.models import Job
from .domain.states import JobStatus, WorkerMode
from .processor import Processor
from .registry import BackgroundWorker, WorkerRegistry
from .scheduler.config import SchedulerConfig
from .scheduler.service import Scheduler
from .settings import Settings
from .tasks import Task, TaskContext, TaskRegistry

__all__ = [
    "BackgroundWorker",
    "DEFAULT_QUEUES",
    "Job",
    "JobRunner",
    "JobStatus",
    "Processor",
    "QueueBackend",
    "Scheduler",
    "SchedulerConfig",
    "Settings",
    "Task",
    "TaskContext",
    "TaskRegistry",
    "WorkerMode",
    "WorkerRegistry",
    "get_queues",
]
