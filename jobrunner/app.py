import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Optional, Sequence, Union

from pydantic_core import PydanticSerializationError, to_jsonable_python

from jobrunner.backends.base import DEFAULT_QUEUE, QueueBackend, get_queues
from jobrunner.backends.factory import create_backend
from jobrunner.domain.errors import ConfigurationError, SerializationError
from jobrunner.domain.states import WorkerMode
from jobrunner.log import setup_logging
from jobrunner.metrics import render_metrics
from jobrunner.processor import Processor
from jobrunner.registry import BackgroundWorker, WorkerRegistration, WorkerRegistry
from jobrunner.scheduler.config import ScheduledJob, SchedulerConfig
from jobrunner.scheduler.service import Scheduler
from jobrunner.settings import Settings, get_settings
from jobrunner.tasks import Task, TaskRegistry
from jobrunner.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

def serialize_payload(payload: Any) -> Any:
    """Turns models, dataclasses and plain values into JSON-ready data."""
    try:
        return to_jsonable_python(payload)
    except PydanticSerializationError as e:
        raise SerializationError(f"payload is not JSON serializable: {e}") from e

class JobRunner:
    """
    Entry point for host applications: owns the registries and the backend
    and starts processors and schedulers on them.

        runner = JobRunner(settings)
        runner.register_worker(SendWelcome)
        async with runner:
            await runner.enqueue("mailer", "SendWelcome", {"user_id": 1})
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        backend: Optional[QueueBackend] = None,
        clock: Optional[Clock] = None,
        workers: Optional[WorkerRegistry] = None,
        tasks: Optional[TaskRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.backend = backend or create_backend(self.settings, clock=self.clock)
        self.workers = workers or WorkerRegistry()
        self.tasks = tasks or TaskRegistry()
        self.processor: Optional[Processor] = None
        self.scheduler: Optional[Scheduler] = None
        self._detached: set[asyncio.Task] = set()

    @property
    def queues(self) -> list[str]:
        return get_queues(self.settings.QUEUES)

    # Registration

    def register(
        self,
        name: str,
        handler: Callable[[Any], Any],
        queue: Optional[str] = None,
        max_attempts: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        priority: int = 0,
    ) -> WorkerRegistration:
        return self.workers.register(name, handler, queue=queue, max_attempts=max_attempts, tags=tags, priority=priority)

    def register_worker(self, worker: Union[type[BackgroundWorker], BackgroundWorker]) -> WorkerRegistration:
        return self.workers.register_worker(worker)

    def register_task(self, task: Task, name: Optional[str] = None) -> None:
        self.tasks.register(task, name)

    # Lifecycle

    async def setup(self) -> None:
        await self.backend.setup()
        if self.settings.DANGEROUSLY_FLUSH:
            removed = await self.backend.clear_all()
            logger.warning("DANGEROUSLY_FLUSH set: removed %d job(s) from the queue", removed)

    async def close(self) -> None:
        if self._detached:
            await asyncio.gather(*list(self._detached), return_exceptions=True)
        await self.backend.close()

    async def __aenter__(self) -> "JobRunner":
        await self.setup()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # Producing

    async def enqueue(
        self,
        queue: Optional[str],
        name: str,
        payload: Any = None,
        *,
        run_at: Optional[datetime] = None,
        delay: Optional[timedelta] = None,
        interval: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        priority: Optional[int] = None,
    ) -> str:
        """
        Enqueues job `name`. `queue=None` uses the worker's own queue or
        "default"; unset `max_attempts`, `tags` and `priority` also come from
        the registration. Unknown names raise UnknownJobError before touching
        the backend.
        """
        registration = self.workers.get(name)
        data = serialize_payload(payload)

        if run_at is None and delay is not None:
            run_at = self.clock.now() + delay

        job_id = await self.backend.enqueue(
            queue or registration.queue or DEFAULT_QUEUE,
            name,
            data,
            run_at=run_at,
            interval=interval,
            max_attempts=max_attempts if max_attempts is not None else registration.max_attempts,
            tags=tags if tags is not None else registration.tags,
            priority=priority if priority is not None else registration.priority,
        )
        logger.debug("Enqueued %s as %s", name, job_id)
        return job_id

    async def perform_later(self, worker: Union[str, type[BackgroundWorker], BackgroundWorker], args: Any = None) -> Optional[str]:
        """Runs a job according to WORKER_MODE. Returns the job id when queued."""
        name = worker if isinstance(worker, str) else worker.class_name()
        mode = self.settings.WORKER_MODE

        if mode == WorkerMode.BACKGROUND_QUEUE:
            return await self.enqueue(None, name, args)

        handler = self.workers.handler_for(name)
        data = serialize_payload(args)
        if mode == WorkerMode.FOREGROUND_BLOCKING:
            await handler(data)
            return None

        task = asyncio.create_task(self._run_detached(name, handler, data))
        self._detached.add(task)
        task.add_done_callback(self._detached.discard)
        return None

    async def _run_detached(self, name, handler, data):
        try:
            await handler(data)
        except Exception as e:
            logger.error("Background job %s failed: %s", name, e, exc_info=True)

    # Consuming

    def build_processor(
        self,
        queues: Optional[Sequence[str]] = None,
        concurrency: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        **kwargs,
    ) -> Processor:
        # An explicit queue list is served as given; otherwise defaults plus settings
        return Processor(
            self.backend,
            self.workers,
            queues=list(dict.fromkeys(queues)) if queues else self.queues,
            concurrency=concurrency or self.settings.NUM_WORKERS,
            poll_interval=self.settings.POLL_INTERVAL_SECONDS,
            shutdown_timeout=self.settings.SHUTDOWN_TIMEOUT_SECONDS,
            reaper_interval=self.settings.REAPER_INTERVAL_SECONDS,
            clock=self.clock,
            tags=tags if tags is not None else self.settings.WORKER_TAGS,
            **kwargs,
        )

    async def run_processor(
        self,
        queues: Optional[Sequence[str]] = None,
        concurrency: Optional[int] = None,
        install_signal_handlers: bool = True,
        tags: Optional[Sequence[str]] = None,
    ) -> None:
        """
        Runs a Processor until stop() or SIGINT/SIGTERM. Without `queues` it
        serves the default queues plus QUEUES from settings; without `tags`
        it uses WORKER_TAGS.
        """
        setup_logging(self.settings.LOG_LEVEL)
        self.processor = self.build_processor(queues, concurrency, tags, install_signal_handlers=install_signal_handlers)
        await self.processor.run()

    def build_scheduler(
        self,
        config: Union[SchedulerConfig, str, Path, None] = None,
        name: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> Scheduler:
        if config is None:
            config = self.settings.SCHEDULER_CONFIG
            if config is None:
                raise ConfigurationError("no scheduler config given and SCHEDULER_CONFIG is not set")
        if not isinstance(config, SchedulerConfig):
            config = SchedulerConfig.from_file(config)

        scheduler = Scheduler(
            config,
            tasks=self.tasks,
            workers=self.workers,
            enqueue=lambda job_name, payload: self.enqueue(None, job_name, payload),
            environment=self.settings.ENVIRONMENT,
            clock=self.clock,
        )
        if name is not None or tag is not None:
            scheduler = scheduler.by_spec(name=name, tag=tag)
        return scheduler

    async def run_scheduler(
        self,
        config: Union[SchedulerConfig, str, Path, None] = None,
        name: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> None:
        setup_logging(self.settings.LOG_LEVEL)
        self.scheduler = self.build_scheduler(config, name=name, tag=tag)
        logger.info("Scheduler jobs:\n%s", self.scheduler)
        await self.scheduler.run()

    def stop(self) -> None:
        if self.processor is not None:
            self.processor.stop()
        if self.scheduler is not None:
            self.scheduler.stop()

    # Operator surface

    def list_workers(self) -> list[str]:
        return self.workers.list()

    def list_tasks(self) -> list[tuple[str, str]]:
        return self.tasks.describe()

    def list_scheduled(
        self, config: Union[SchedulerConfig, str, Path, None] = None, tag: Optional[str] = None
    ) -> list[tuple[str, ScheduledJob]]:
        scheduler = self.build_scheduler(config, tag=tag)
        return sorted(scheduler.jobs.items())

    async def trigger_scheduled(
        self,
        config: Union[SchedulerConfig, str, Path, None] = None,
        name: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> dict[str, bool]:
        """Runs matching scheduled entries once, now, and reports success per entry."""
        scheduler = self.build_scheduler(config, name=name, tag=tag)
        tasks = {job_name: scheduler.dispatch(job_name) for job_name in sorted(scheduler.jobs)}
        return {job_name: await task for job_name, task in tasks.items()}

    async def clear(self, queue: str) -> int:
        return await self.backend.clear(queue)

    async def ping(self) -> None:
        await self.backend.ping()

    def metrics(self) -> tuple[bytes, str]:
        return render_metrics()
