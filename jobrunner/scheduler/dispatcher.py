import asyncio
import logging
import os
import sys
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional

from jobrunner.domain.errors import TaskNotFoundError
from jobrunner.metrics import SCHEDULER_RUNS
from jobrunner.registry import WorkerRegistry
from jobrunner.scheduler.config import Output, OutputKind, ScheduledJob
from jobrunner.tasks import TaskRegistry, parse_run

logger = logging.getLogger(__name__)

# Called with (job name, payload) to put a registered job on the queue.
Enqueue = Callable[[str, Any], Awaitable[Any]]

ENV_VAR = "JOBRUNNER_ENV"

@contextmanager
def open_output(output: Output) -> Iterator[Optional[Any]]:
    """Yields a writable stream for `output`, or None for the process stdout."""
    if output.kind == OutputKind.STDOUT:
        yield None
    elif output.kind == OutputKind.SILENT:
        with open(os.devnull, "w") as sink:
            yield sink
    else:
        with open(output.path, "a", encoding="utf-8") as sink:
            yield sink

class Dispatcher:
    """Runs one scheduled entry: a shell command, a task, or an enqueued job."""

    def __init__(
        self,
        tasks: TaskRegistry,
        workers: Optional[WorkerRegistry] = None,
        enqueue: Optional[Enqueue] = None,
        environment: str = "development",
        default_output: Optional[Output] = None,
    ):
        self.tasks = tasks
        self.workers = workers
        self.enqueue = enqueue
        self.environment = environment
        self.default_output = default_output or Output()

    def resolves(self, job: ScheduledJob) -> bool:
        if job.shell:
            return True
        name, _ = parse_run(job.run)
        if name in self.tasks:
            return True
        return self.workers is not None and name in self.workers

    async def execute(self, job_name: str, job: ScheduledJob) -> bool:
        output = job.output or self.default_output
        logger.info("Executing scheduled job %s: %s (output=%s)", job_name, job.run, output)
        try:
            with open_output(output) as stream:
                if job.shell:
                    ok = await self._run_shell(job_name, job.run, stream)
                else:
                    await self._run_named(job.run, stream)
                    ok = True
        except Exception as e:
            logger.error("Scheduled job %s failed: %s", job_name, e, exc_info=True)
            ok = False

        SCHEDULER_RUNS.labels(job=job_name, result="success" if ok else "error").inc()
        return ok

    async def _run_shell(self, job_name: str, command: str, stream) -> bool:
        stdout = stream if stream is not None else None
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=stdout,
            stderr=stdout,
            env={**os.environ, ENV_VAR: self.environment},
        )
        code = await proc.wait()
        if code != 0:
            logger.warning("Scheduled job %s exited with status %d", job_name, code)
            return False
        return True

    async def _run_named(self, run: str, stream) -> None:
        name, vars = parse_run(run)
        if name in self.tasks:
            await self.tasks.run(name, vars, out=stream or sys.stdout)
            return
        if self.workers is not None and name in self.workers and self.enqueue is not None:
            job_id = await self.enqueue(name, vars)
            logger.info("Scheduled job enqueued %s as %s", name, job_id)
            return
        raise TaskNotFoundError(name)
