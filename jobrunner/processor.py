import asyncio
import logging
import signal
import time
from typing import Optional, Sequence

from jobrunner.backends.base import QueueBackend, get_queues
from jobrunner.domain.errors import BackendError, PermanentJobError, UnknownJobError
from jobrunner.domain.models import Job, normalize_tags
from jobrunner.metrics import JOB_DURATION, JOBS_INFLIGHT
from jobrunner.registry import WorkerRegistry
from jobrunner.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

SHUTDOWN_ERROR = "Processor shut down before the job finished"

def describe_error(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"

class Processor:
    """
    Pulls jobs from a backend and runs them through the registry.

    `concurrency` slot loops each claim one job at a time, so at most that
    many handlers run at once. With `tags` it claims only jobs carrying one
    of them, otherwise only untagged jobs. A heartbeat loop keeps the leases
    of running jobs alive and a reaper loop returns jobs abandoned by dead
    processes.
    """

    def __init__(
        self,
        backend: QueueBackend,
        registry: WorkerRegistry,
        queues: Optional[Sequence[str]] = None,
        concurrency: int = 2,
        poll_interval: float = 1.0,
        shutdown_timeout: float = 30.0,
        reaper_interval: Optional[float] = 10.0,
        heartbeat_interval: Optional[float] = None,
        clock: Optional[Clock] = None,
        install_signal_handlers: bool = False,
        tags: Optional[Sequence[str]] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.backend = backend
        self.registry = registry
        self.queues = list(queues) if queues else get_queues()
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.shutdown_timeout = shutdown_timeout
        self.reaper_interval = reaper_interval
        self.heartbeat_interval = heartbeat_interval or max(backend.lease_timeout / 3, 1.0)
        self.clock = clock or backend.clock or SystemClock()
        self.install_signal_handlers = install_signal_handlers
        self.tags = normalize_tags(tags)

        self.running = False
        self._shutdown_event = asyncio.Event()
        self._maintenance_stop = asyncio.Event()
        self._inflight: set[str] = set()

    @property
    def inflight(self) -> frozenset[str]:
        return frozenset(self._inflight)

    async def run(self):
        self.registry.freeze()
        self.running = True
        self._shutdown_event.clear()
        self._maintenance_stop.clear()

        if self.install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(sig, self.stop)
                except NotImplementedError:
                    # Windows support
                    pass

        logger.info(
            "Processor %s started (queues=%s, tags=%s, concurrency=%d)",
            self.backend.worker_id, ",".join(self.queues), ",".join(self.tags) or "-", self.concurrency,
        )

        slots = [
            asyncio.create_task(self._slot_loop(i), name=f"jobrunner-slot-{i}")
            for i in range(self.concurrency)
        ]
        maintenance = [asyncio.create_task(self._heartbeat_loop(), name="jobrunner-heartbeat")]
        if self.reaper_interval:
            maintenance.append(asyncio.create_task(self._reaper_loop(), name="jobrunner-reaper"))

        try:
            await self._shutdown_event.wait()
        finally:
            self.running = False
            self._shutdown_event.set()
            await self._drain(slots)
            self._maintenance_stop.set()
            for task in maintenance:
                task.cancel()
            await asyncio.gather(*maintenance, return_exceptions=True)
            logger.info("Processor %s stopped", self.backend.worker_id)

    def stop(self):
        logger.info("Shutdown signal received")
        self.running = False
        self._shutdown_event.set()

    async def run_once(self) -> Optional[Job]:
        """Claims and processes at most one job. Returns the claimed job."""
        self.registry.freeze()
        job = await self.backend.claim(self.queues, self.tags)
        if job is not None:
            await self.process_job(job)
        return job

    async def _drain(self, slots):
        # Slots finish their current job and exit; stragglers are cancelled.
        done, pending = await asyncio.wait(slots, timeout=self.shutdown_timeout)
        if pending:
            logger.warning(
                "%d job(s) still running after %.1fs, cancelling: %s",
                len(self._inflight), self.shutdown_timeout, ", ".join(sorted(self._inflight)),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def _slot_loop(self, slot: int):
        while self.running:
            try:
                job = await self.backend.claim(self.queues, self.tags)
            except BackendError as e:
                logger.warning("Claim failed on slot %d: %s", slot, e)
                await self._sleep_or_stop(self.poll_interval)
                continue
            except Exception as e:
                logger.error("Error in processor slot %d: %s", slot, e, exc_info=True)
                await self._sleep_or_stop(self.poll_interval)
                continue

            if job is None:
                await self._wait_for_work()
                continue

            await self.process_job(job)

    async def process_job(self, job: Job):
        logger.info("Processing job %s (%s) attempt %d/%d", job.id, job.name, job.attempts, job.max_attempts)
        self._inflight.add(job.id)
        JOBS_INFLIGHT.inc()
        started = time.monotonic()

        try:
            try:
                handler = self.registry.handler_for(job.name)
            except UnknownJobError as e:
                logger.error("Job %s: no handler registered for %s", job.id, job.name)
                await self._fail(job, str(e), permanent=True)
                return

            try:
                await handler(job.payload)
            except asyncio.CancelledError:
                await asyncio.shield(self._fail(job, SHUTDOWN_ERROR, retry=False))
                raise
            except PermanentJobError as e:
                logger.error("Job %s failed permanently: %s", job.id, describe_error(e))
                await self._fail(job, describe_error(e), permanent=True)
            except Exception as e:
                logger.error("Job %s failed: %s", job.id, describe_error(e), exc_info=True)
                await self._fail(job, describe_error(e))
            else:
                await self._ack(job)
        finally:
            JOB_DURATION.labels(name=job.name).observe(time.monotonic() - started)
            JOBS_INFLIGHT.dec()
            self._inflight.discard(job.id)

    async def _ack(self, job: Job):
        if await self._record(job, self.backend.ack) is not None:
            logger.info("Job %s completed successfully", job.id)

    async def _fail(self, job: Job, error: str, permanent: bool = False, retry: bool = True):
        status = await self._record(job, self.backend.fail, error, permanent=permanent, retry=retry)
        if status is not None:
            logger.info("Job %s marked %s", job.id, status)

    async def _record(self, job: Job, operation, *args, retry: bool = True, **kwargs):
        """
        Reports the outcome of a job to the backend.

        Transient backend errors are retried every `poll_interval` while the
        heartbeat keeps the lease alive, so a finished job is never handed
        out again just because the store was briefly unreachable. Returns
        None when the outcome could not be recorded.
        """
        while True:
            try:
                return await operation(job.id, *args, **kwargs) or True
            except BackendError as e:
                if not retry:
                    logger.error("Could not record outcome of job %s: %s", job.id, describe_error(e))
                    return None
                logger.warning("Could not record outcome of job %s, retrying: %s", job.id, describe_error(e))
                if await self._sleep_or_stop(self.poll_interval, self._maintenance_stop):
                    logger.error("Gave up recording outcome of job %s", job.id)
                    return None
            except Exception as e:
                logger.error("Failed to record outcome of job %s: %s", job.id, describe_error(e))
                return None

    async def _wait_for_work(self):
        waiter = asyncio.create_task(self.backend.wait_for_job(self.queues, self.poll_interval))
        stopper = asyncio.create_task(self._shutdown_event.wait())
        done, pending = await asyncio.wait({waiter, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        if waiter in done and waiter.exception() is not None:
            logger.warning("Waiting for jobs failed: %s", waiter.exception())
            await self._sleep_or_stop(self.poll_interval)

    async def _sleep_or_stop(self, seconds: float, event: Optional[asyncio.Event] = None) -> bool:
        """Sleeps on the clock unless `event` fires first. Returns True when it fired."""
        event = event or self._shutdown_event
        if event.is_set():
            return True
        sleeper = asyncio.create_task(self.clock.sleep(seconds))
        stopper = asyncio.create_task(event.wait())
        done, pending = await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return stopper in done

    async def _heartbeat_loop(self):
        while not self._maintenance_stop.is_set():
            if await self._sleep_or_stop(self.heartbeat_interval, self._maintenance_stop):
                break
            if not self._inflight:
                continue
            try:
                renewed = await self.backend.heartbeat(sorted(self._inflight))
                logger.debug("Renewed %d lease(s)", renewed)
            except Exception as e:
                logger.warning("Heartbeat failed: %s", describe_error(e))

    async def _reaper_loop(self):
        while not self._maintenance_stop.is_set():
            try:
                recovered = await self.backend.requeue_expired()
                if recovered:
                    logger.warning("Recovered %d job(s) with expired leases", recovered)
            except Exception as e:
                logger.error("Error in reaper: %s", describe_error(e), exc_info=True)
            if await self._sleep_or_stop(self.reaper_interval, self._maintenance_stop):
                break
