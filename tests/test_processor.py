import asyncio

import pytest
from pydantic import BaseModel

from jobrunner.backends.sql import SqliteQueueBackend
from jobrunner.domain.errors import BackendError, PermanentJobError, RegistryFrozenError
from jobrunner.domain.states import JobStatus
from jobrunner.processor import SHUTDOWN_ERROR, Processor
from jobrunner.registry import BackgroundWorker, WorkerRegistry

class Greeting(BaseModel):
    name: str

@pytest.fixture
async def live_backend(tmp_path):
    """SQLite backend on the real clock, for tests that run the processor loop."""
    backend = SqliteQueueBackend(f"sqlite+aiosqlite:///{tmp_path / 'live.db'}", lease_timeout=30, retry_base_delay=0)
    await backend.setup()
    yield backend
    await backend.close()

def make_processor(backend, registry, **kwargs):
    options = dict(concurrency=2, poll_interval=0.01, shutdown_timeout=2.0, reaper_interval=0.05)
    options.update(kwargs)
    return Processor(backend, registry, **options)

async def wait_until(predicate, timeout=5.0):
    async def poll():
        while not await predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)

def job_status(backend, job_id):
    async def check(status):
        job = await backend.get_job(job_id)
        return job is not None and job.status == status
    return check

async def test_run_once_completes_job(live_backend, registry):
    seen = []

    async def handler(payload):
        seen.append(payload)

    registry.register("Echo", handler)
    job_id = await live_backend.enqueue("default", "Echo", {"n": 1})

    job = await make_processor(live_backend, registry).run_once()

    assert job.id == job_id
    assert seen == [{"n": 1}]
    assert (await live_backend.get_job(job_id)).status == JobStatus.COMPLETED

async def test_run_once_with_empty_queue(live_backend, registry):
    assert await make_processor(live_backend, registry).run_once() is None

async def test_failing_job_runs_exactly_max_attempts(live_backend, registry):
    calls = []

    async def handler(payload):
        calls.append(payload)
        raise RuntimeError("boom")

    registry.register("Flaky", handler)
    job_id = await live_backend.enqueue("default", "Flaky", {}, max_attempts=3)
    processor = make_processor(live_backend, registry)

    while await processor.run_once() is not None:
        pass

    job = await live_backend.get_job(job_id)
    assert len(calls) == 3
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.last_error == "RuntimeError: boom"

async def test_unknown_job_is_dead_lettered(live_backend, registry):
    job_id = await live_backend.enqueue("default", "Missing", {})

    await make_processor(live_backend, registry).run_once()

    job = await live_backend.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert "Missing" in job.last_error

async def test_permanent_error_is_not_retried(live_backend, registry):
    async def handler(payload):
        raise PermanentJobError("account closed")

    registry.register("Charge", handler)
    job_id = await live_backend.enqueue("default", "Charge", {}, max_attempts=5)

    await make_processor(live_backend, registry).run_once()

    job = await live_backend.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.last_error == "PermanentJobError: account closed"

async def test_payload_not_matching_worker_args_is_dead_lettered(live_backend, registry):
    class Greet(BackgroundWorker[Greeting]):
        async def perform(self, args: Greeting) -> None:
            raise AssertionError("should not run")

    registry.register_worker(Greet)
    job_id = await live_backend.enqueue("default", "Greet", {"wrong": "shape"}, max_attempts=5)

    await make_processor(live_backend, registry).run_once()

    job = await live_backend.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.last_error.startswith("SerializationError")

async def test_sync_handlers_are_supported(live_backend, registry):
    seen = []
    registry.register("Blocking", seen.append)
    await live_backend.enqueue("default", "Blocking", [1, 2])

    await make_processor(live_backend, registry).run_once()

    assert seen == [[1, 2]]

async def test_registry_is_frozen_once_processing_starts(live_backend, registry):
    await make_processor(live_backend, registry).run_once()

    with pytest.raises(RegistryFrozenError):
        registry.register("Late", lambda payload: None)

async def test_run_processes_jobs_until_stopped(live_backend, registry):
    done = []

    async def handler(payload):
        done.append(payload["n"])

    registry.register("Count", handler)
    for n in range(5):
        await live_backend.enqueue("default", "Count", {"n": n})
    await live_backend.enqueue("mailer", "Count", {"n": 5})

    processor = make_processor(live_backend, registry)
    runner = asyncio.create_task(processor.run())

    async def all_done():
        return len(done) == 6
    await wait_until(all_done)
    processor.stop()
    await asyncio.wait_for(runner, 5)

    assert sorted(done) == [0, 1, 2, 3, 4, 5]
    assert await live_backend.get_jobs(status=[JobStatus.QUEUED]) == []

async def test_concurrency_bounds_running_handlers(live_backend, registry):
    running = 0
    peak = 0
    finished = []

    async def handler(payload):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.05)
        running -= 1
        finished.append(payload["n"])

    registry.register("Slow", handler)
    for n in range(6):
        await live_backend.enqueue("default", "Slow", {"n": n})

    processor = make_processor(live_backend, registry, concurrency=2)
    runner = asyncio.create_task(processor.run())

    async def all_done():
        return len(finished) == 6
    await wait_until(all_done)
    processor.stop()
    await asyncio.wait_for(runner, 5)

    assert peak <= 2

async def test_graceful_shutdown_lets_running_job_finish(live_backend, registry):
    started = asyncio.Event()

    async def handler(payload):
        started.set()
        await asyncio.sleep(0.2)

    registry.register("Slow", handler)
    job_id = await live_backend.enqueue("default", "Slow", {})

    processor = make_processor(live_backend, registry, shutdown_timeout=5.0)
    runner = asyncio.create_task(processor.run())
    await asyncio.wait_for(started.wait(), 5)

    processor.stop()
    await asyncio.wait_for(runner, 5)

    assert (await live_backend.get_job(job_id)).status == JobStatus.COMPLETED
    assert processor.inflight == frozenset()

async def test_shutdown_timeout_cancels_and_requeues_job(live_backend, registry):
    started = asyncio.Event()

    async def handler(payload):
        started.set()
        await asyncio.sleep(60)

    registry.register("Stuck", handler)
    job_id = await live_backend.enqueue("default", "Stuck", {})

    processor = make_processor(live_backend, registry, shutdown_timeout=0.1)
    runner = asyncio.create_task(processor.run())
    await asyncio.wait_for(started.wait(), 5)

    processor.stop()
    await asyncio.wait_for(runner, 5)

    job = await live_backend.get_job(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.last_error == SHUTDOWN_ERROR
    assert job.attempts == 1

async def test_reaper_recovers_abandoned_job(live_backend, registry):
    done = []

    async def handler(payload):
        done.append(payload)

    registry.register("Orphan", handler)
    job_id = await live_backend.enqueue("default", "Orphan", {"ok": True})

    # A crashed process claimed it with a lease that has already run out
    crashed = SqliteQueueBackend(engine=live_backend.engine, lease_timeout=-1, worker_id="crashed")
    assert (await crashed.claim(["default"])).id == job_id

    processor = make_processor(live_backend, registry)
    runner = asyncio.create_task(processor.run())
    await wait_until(lambda: job_status(live_backend, job_id)(JobStatus.COMPLETED))
    processor.stop()
    await asyncio.wait_for(runner, 5)

    assert done == [{"ok": True}]
    assert (await live_backend.get_job(job_id)).attempts == 2

async def test_concurrency_must_be_positive(live_backend, registry):
    with pytest.raises(ValueError):
        Processor(live_backend, registry, concurrency=0)

async def test_default_queues_are_served(live_backend):
    processor = Processor(live_backend, WorkerRegistry())

    assert processor.queues == ["default", "mailer"]

def flaky(monkeypatch, backend, method, failures=1):
    """Makes `backend.<method>` raise BackendError for the first `failures` calls."""
    original = getattr(backend, method)
    calls = []

    async def wrapper(*args, **kwargs):
        calls.append(args)
        if len(calls) <= failures:
            raise BackendError("OperationalError: connection dropped")
        return await original(*args, **kwargs)

    monkeypatch.setattr(backend, method, wrapper)
    return calls

async def test_ack_is_retried_after_transient_backend_error(sqlite_backend, registry, clock, monkeypatch):
    registry.register("Echo", lambda payload: None)
    job_id = await sqlite_backend.enqueue("default", "Echo", {}, max_attempts=1)
    calls = flaky(monkeypatch, sqlite_backend, "ack")

    await Processor(sqlite_backend, registry, poll_interval=1.0).run_once()

    assert len(calls) == 2
    assert clock.sleeps == [1.0]

    # Nothing is left for the reaper to dead-letter
    clock.advance(sqlite_backend.lease_timeout + 1)
    assert await sqlite_backend.requeue_expired() == 0
    job = await sqlite_backend.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.last_error is None

async def test_fail_is_retried_after_transient_backend_error(sqlite_backend, registry, monkeypatch):
    async def handler(payload):
        raise PermanentJobError("bad input")

    registry.register("Broken", handler)
    job_id = await sqlite_backend.enqueue("default", "Broken", {})
    calls = flaky(monkeypatch, sqlite_backend, "fail", failures=2)

    await Processor(sqlite_backend, registry).run_once()

    assert len(calls) == 3
    job = await sqlite_backend.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.last_error == "PermanentJobError: bad input"

async def test_processor_only_claims_jobs_matching_its_tags(live_backend, registry):
    registry.register("Render", lambda payload: None)
    plain = await live_backend.enqueue("default", "Render", {})
    gpu = await live_backend.enqueue("default", "Render", {}, tags=["gpu"])

    tagged = make_processor(live_backend, registry, tags=["gpu", "gpu"])
    assert tagged.tags == ("gpu",)
    assert (await tagged.run_once()).id == gpu
    assert await tagged.run_once() is None

    assert (await make_processor(live_backend, registry).run_once()).id == plain
    assert (await live_backend.get_job(gpu)).status == JobStatus.COMPLETED
