import asyncio
import copy
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

from jobrunner.domain.errors import SchedulerEmptyError, TaskNotFoundError
from jobrunner.registry import WorkerRegistry
from jobrunner.scheduler.config import ScheduledJob, SchedulerConfig
from jobrunner.scheduler.dispatcher import Dispatcher, Enqueue
from jobrunner.scheduler.ticker import CronSchedule, ONE_SECOND, floor_to_second, next_tick
from jobrunner.tasks import TaskRegistry, parse_run
from jobrunner.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

class Scheduler:
    """
    Fires scheduled entries on a one second tick.

    Entries are validated up front: malformed cron expressions and names that
    resolve to neither a task nor a worker fail construction. Each match runs
    on its own asyncio task so a slow entry never holds up the next tick.

    Running two schedulers on the same config fires every entry twice; there
    is no leader election.
    """

    def __init__(
        self,
        config: SchedulerConfig,
        tasks: Optional[TaskRegistry] = None,
        workers: Optional[WorkerRegistry] = None,
        enqueue: Optional[Enqueue] = None,
        environment: str = "development",
        clock: Optional[Clock] = None,
    ):
        if not config.jobs:
            raise SchedulerEmptyError()

        self.config = config
        self.clock = clock or SystemClock()
        self.dispatcher = Dispatcher(
            tasks or TaskRegistry(),
            workers=workers,
            enqueue=enqueue,
            environment=environment,
            default_output=config.output,
        )

        self.jobs: dict[str, ScheduledJob] = {}
        self._schedules: dict[str, CronSchedule] = {}
        for name, job in config.jobs.items():
            if not self.dispatcher.resolves(job):
                raise TaskNotFoundError(parse_run(job.run)[0])
            self._schedules[name] = CronSchedule(job.cron)
            self.jobs[name] = job

        self._running = False
        self._stop_event = asyncio.Event()
        self._executions: set[asyncio.Task] = set()

    @classmethod
    def from_file(cls, path: Union[str, Path], **kwargs) -> "Scheduler":
        return cls(SchedulerConfig.from_file(path), **kwargs)

    def by_spec(self, name: Optional[str] = None, tag: Optional[str] = None) -> "Scheduler":
        """Copy restricted to one job name, or to the jobs carrying `tag`."""
        if name is not None:
            keep = [name] if name in self.jobs else []
        elif tag is not None:
            keep = [n for n, job in self.jobs.items() if tag in job.tags]
        else:
            keep = list(self.jobs)

        filtered = copy.copy(self)
        filtered.jobs = {n: self.jobs[n] for n in keep}
        filtered._schedules = {n: self._schedules[n] for n in keep}
        filtered._stop_event = asyncio.Event()
        filtered._executions = set()
        return filtered

    def __str__(self) -> str:
        lines = [f"{'#':<6} {'job_name':<15} {'cron':<18} {'tags':<18} run"]
        for index, name in enumerate(sorted(self.jobs), start=1):
            job = self.jobs[name]
            tags = ", ".join(job.tags) if job.tags else "-"
            lines.append(f"{index:<6} {name:<15} {job.cron:<18} {tags:<18} {job.run!r}")
        return "\n".join(lines) + "\n"

    def due(self, tick: datetime) -> list[str]:
        return [name for name, schedule in self._schedules.items() if schedule.matches(tick)]

    def dispatch(self, name: str) -> asyncio.Task:
        task = asyncio.create_task(self.dispatcher.execute(name, self.jobs[name]), name=f"scheduled-{name}")
        self._executions.add(task)
        task.add_done_callback(self._executions.discard)
        return task

    def tick(self, now: datetime) -> list[str]:
        names = self.due(now)
        for name in names:
            self.dispatch(name)
        return names

    def fire_on_start(self) -> list[str]:
        names = [name for name, job in self.jobs.items() if job.run_on_start]
        for name in names:
            logger.info("Running %s on start", name)
            self.dispatch(name)
        return names

    async def run(self):
        if not self.jobs:
            logger.warning("No scheduled jobs match, scheduler not started")
            return

        self._running = True
        self._stop_event.clear()
        logger.info("Scheduler started with %d job(s)", len(self.jobs))

        try:
            self.fire_on_start()
            upcoming = next_tick(self.clock.now())
            while self._running:
                delay = (upcoming - self.clock.now()).total_seconds()
                if delay > 0 and await self._sleep_or_stop(delay):
                    break

                self.tick(upcoming)

                upcoming += ONE_SECOND
                now = self.clock.now()
                if now - upcoming > ONE_SECOND:
                    logger.warning("Scheduler fell behind by %s, skipping missed ticks", now - upcoming)
                    upcoming = floor_to_second(now)
        finally:
            self._running = False
            await self.wait_idle()
            logger.info("Scheduler stopped")

    def stop(self):
        self._running = False
        self._stop_event.set()

    async def wait_idle(self):
        """Waits for every execution started so far."""
        if self._executions:
            await asyncio.gather(*list(self._executions), return_exceptions=True)

    async def _sleep_or_stop(self, seconds: float) -> bool:
        sleeper = asyncio.create_task(self.clock.sleep(seconds))
        stopper = asyncio.create_task(self._stop_event.wait())
        done, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return stopper in done
