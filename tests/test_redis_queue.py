from datetime import timedelta

import pytest

from jobrunner.backends import redis as redis_backend
from tests._helpers.backends import make_backend

@pytest.fixture
async def redis_queue(tmp_path, clock):
    backend = await make_backend("fakeredis", tmp_path, clock, max_attempts=10)
    yield backend
    await backend.clear_all()
    await backend.close()

async def signal_length(backend, queue="default"):
    return await backend.redis.llen(backend._signal_key(queue))

async def test_every_signal_push_is_trimmed(redis_queue, clock, monkeypatch):
    monkeypatch.setattr(redis_backend, "SIGNAL_BACKLOG", 2)

    for _ in range(3):
        await redis_queue.enqueue("default", "A", {})
    assert await signal_length(redis_queue) == 2

    # Immediate retries push from the fail script
    for _ in range(3):
        job = await redis_queue.claim(["default"])
        await redis_queue.fail(job.id, "RuntimeError: boom")
    assert await signal_length(redis_queue) == 2

    # Reclaimed leases push from the reap script
    for _ in range(3):
        await redis_queue.claim(["default"])
    clock.advance(redis_queue.lease_timeout + 1)
    assert await redis_queue.requeue_expired() == 3
    assert await signal_length(redis_queue) == 2

    # Operator requeue pushes from a pipeline
    for _ in range(3):
        await redis_queue.claim(["default"])
    clock.advance(60)
    assert await redis_queue.requeue(timedelta(seconds=30)) == 3
    assert await signal_length(redis_queue) == 2

async def test_tags_and_priority_stored_in_job_hash(redis_queue):
    job_id = await redis_queue.enqueue("default", "A", {}, tags=["b", "a"], priority=4)

    data = await redis_queue.redis.hgetall(redis_queue._job_key(job_id))

    assert data["tags"] == ",a,b,"
    assert data["priority"] == "4"

async def test_stale_queue_entries_are_dropped_on_claim(redis_queue):
    job_id = await redis_queue.enqueue("default", "A", {})
    await redis_queue.redis.hset(redis_queue._job_key(job_id), "status", "cancelled")

    assert await redis_queue.claim(["default"]) is None
    assert await redis_queue.redis.zcard(redis_queue._queue_key("default")) == 0
