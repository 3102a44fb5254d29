import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Optional, Sequence
from uuid import uuid4

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError, TimeoutError as RedisTimeoutError

from jobrunner.backends.base import QueueBackend
from jobrunner.domain.errors import BackendError, InvalidJobStateError, JobNotFoundError
from jobrunner.domain.models import Job, decode_tags, encode_tags, interval_from_ms, interval_to_ms, normalize_tags
from jobrunner.domain.retry import calculate_next_run
from jobrunner.domain.states import JobStatus
from jobrunner.metrics import (
    JOBS_CLAIMED,
    JOBS_COMPLETED,
    JOBS_ENQUEUED,
    JOB_FAILURES,
    JOB_START_DELAY,
    REAPER_RECOVERED_JOBS,
)

logger = logging.getLogger(__name__)

# Wake-up tokens kept per queue when nobody is blocked on it.
SIGNAL_BACKLOG = 1000
# Due jobs inspected per queue on each claim when looking for a tag match.
CLAIM_WINDOW = 200
LEASE_EXPIRED_ERROR = "Lease expired (worker crash?)"

# KEYS: job hash, queue sorted set, signal list, [recurring key]
# ARGV: prefix, job id, run_at score, due ('1'|'0'), signal backlog, job hash field/value pairs...
ENQUEUE_SCRIPT = """
if KEYS[4] then
  local live = redis.call('GET', KEYS[4])
  if live then
    local status = redis.call('HGET', ARGV[1] .. ':job:' .. live, 'status')
    if status == 'queued' or status == 'processing' then return live end
  end
  redis.call('SET', KEYS[4], ARGV[2])
end
redis.call('HSET', KEYS[1], unpack(ARGV, 6))
redis.call('ZADD', KEYS[2], ARGV[3], ARGV[2])
if ARGV[4] == '1' then
  redis.call('RPUSH', KEYS[3], '1')
  redis.call('LTRIM', KEYS[3], -tonumber(ARGV[5]), -1)
end
return ARGV[2]
"""

# KEYS: queue sorted sets
# ARGV: prefix, now score, lease deadline score, now iso, lease iso, worker id, window, worker tags...
CLAIM_SCRIPT = """
local function eligible(tags)
  if #ARGV < 8 then return not tags or tags == '' end
  if not tags or tags == '' then return false end
  for i = 8, #ARGV do
    if string.find(tags, ',' .. ARGV[i] .. ',', 1, true) then return true end
  end
  return false
end

local best, best_key, best_priority, best_score
for _, key in ipairs(KEYS) do
  local due = redis.call('ZRANGEBYSCORE', key, '-inf', ARGV[2], 'WITHSCORES', 'LIMIT', 0, tonumber(ARGV[7]))
  for i = 1, #due, 2 do
    local id, score = due[i], tonumber(due[i + 1])
    local fields = redis.call('HMGET', ARGV[1] .. ':job:' .. id, 'status', 'tags', 'priority')
    if fields[1] ~= 'queued' then
      redis.call('ZREM', key, id)
    elseif eligible(fields[2]) then
      local priority = tonumber(fields[3]) or 0
      if not best or priority > best_priority or (priority == best_priority and score < best_score) then
        best, best_key, best_priority, best_score = id, key, priority, score
      end
    end
  end
end
if not best then return false end

local job_key = ARGV[1] .. ':job:' .. best
redis.call('ZREM', best_key, best)
redis.call('HSET', job_key, 'status', 'processing', 'updated_at', ARGV[4],
  'worker_id', ARGV[6], 'lease_expires_at', ARGV[5])
redis.call('HINCRBY', job_key, 'attempts', 1)
redis.call('ZADD', ARGV[1] .. ':processing', ARGV[3], best)
return best
"""

# KEYS: processing set, job hash
# ARGV: job id, worker id, now iso, then for recurring jobs: next job key, next id,
#       next score, next queue key, recurring key, next job hash field/value pairs...
ACK_SCRIPT = """
if redis.call('ZSCORE', KEYS[1], ARGV[1]) == false then return 0 end
if redis.call('HGET', KEYS[2], 'worker_id') ~= ARGV[2] then return -1 end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[2], 'status', 'completed', 'updated_at', ARGV[3], 'lease_expires_at', '')
if #ARGV > 3 then
  redis.call('HSET', ARGV[4], unpack(ARGV, 9))
  redis.call('ZADD', ARGV[7], ARGV[6], ARGV[5])
  redis.call('SET', ARGV[8], ARGV[5])
end
return 1
"""

# KEYS: processing set, job hash, queue sorted set, signal list
# ARGV: job id, worker id, new status, now iso, error, run_at iso, run_at score, due ('1'|'0'), signal backlog
FAIL_SCRIPT = """
if redis.call('ZSCORE', KEYS[1], ARGV[1]) == false then return 0 end
if redis.call('HGET', KEYS[2], 'worker_id') ~= ARGV[2] then return -1 end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HSET', KEYS[2], 'status', ARGV[3], 'updated_at', ARGV[4], 'last_error', ARGV[5],
  'lease_expires_at', '')
if ARGV[3] == 'queued' then
  redis.call('HSET', KEYS[2], 'run_at', ARGV[6])
  redis.call('ZADD', KEYS[3], ARGV[7], ARGV[1])
  if ARGV[8] == '1' then
    redis.call('RPUSH', KEYS[4], '1')
    redis.call('LTRIM', KEYS[4], -tonumber(ARGV[9]), -1)
  end
end
return 1
"""

# KEYS: processing set
# ARGV: prefix, now score, now iso, limit, error, signal backlog
REAP_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[2], 'LIMIT', 0, tonumber(ARGV[4]))
local recovered = 0
for _, id in ipairs(ids) do
  redis.call('ZREM', KEYS[1], id)
  local job_key = ARGV[1] .. ':job:' .. id
  local fields = redis.call('HMGET', job_key, 'attempts', 'max_attempts', 'queue')
  if fields[3] then
    recovered = recovered + 1
    if tonumber(fields[1]) >= tonumber(fields[2]) then
      redis.call('HSET', job_key, 'status', 'failed', 'last_error', ARGV[5],
        'updated_at', ARGV[3], 'lease_expires_at', '')
    else
      redis.call('HSET', job_key, 'status', 'queued', 'last_error', ARGV[5],
        'run_at', ARGV[3], 'updated_at', ARGV[3], 'lease_expires_at', '')
      redis.call('ZADD', ARGV[1] .. ':queue:' .. fields[3], ARGV[2], id)
      local signal = ARGV[1] .. ':signal:' .. fields[3]
      redis.call('RPUSH', signal, '1')
      redis.call('LTRIM', signal, -tonumber(ARGV[6]), -1)
    end
  end
end
return recovered
"""

# KEYS: processing set
# ARGV: prefix, worker id, lease score, lease iso, job ids...
HEARTBEAT_SCRIPT = """
local renewed = 0
for i = 5, #ARGV do
  local id = ARGV[i]
  if redis.call('ZSCORE', KEYS[1], id) ~= false and
     redis.call('HGET', ARGV[1] .. ':job:' .. id, 'worker_id') == ARGV[2] then
    redis.call('ZADD', KEYS[1], ARGV[3], id)
    redis.call('HSET', ARGV[1] .. ':job:' .. id, 'lease_expires_at', ARGV[4])
    renewed = renewed + 1
  end
end
return renewed
"""

def _score(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()

def _iso(value: Optional[datetime]) -> str:
    return value.isoformat() if value is not None else ""

def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None

class RedisQueueBackend(QueueBackend):
    """
    Push queue on Redis.

    Layout under `prefix`:
      job:<id>         hash with the job record
      queue:<name>     sorted set of queued ids scored by run_at
      processing       sorted set of claimed ids scored by lease deadline
      signal:<name>    list of wake-up tokens; idle pollers block on it
      recurring:<...>  id of the live instance of a recurring job

    Claims run as a Lua script so the broker hands each job to exactly one
    poller. A tagged claim only looks at the first CLAIM_WINDOW due jobs of
    each queue. Enqueue is a script too, so a recurring job has one live
    instance even with concurrent producers.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Optional[redis.Redis] = None,
        prefix: str = "jobrunner",
        **kwargs,
    ):
        super().__init__(**kwargs)
        if client is None:
            if url is None:
                raise ValueError("either url or client is required")
            client = redis.Redis.from_url(url, decode_responses=True)
        self.redis = client
        self.prefix = prefix.strip(":")
        self._enqueue = self.redis.register_script(ENQUEUE_SCRIPT)
        self._claim = self.redis.register_script(CLAIM_SCRIPT)
        self._ack = self.redis.register_script(ACK_SCRIPT)
        self._fail = self.redis.register_script(FAIL_SCRIPT)
        self._reap = self.redis.register_script(REAP_SCRIPT)
        self._heartbeat = self.redis.register_script(HEARTBEAT_SCRIPT)

    # Keys

    def _job_key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def _queue_key(self, queue: str) -> str:
        return f"{self.prefix}:queue:{queue}"

    def _signal_key(self, queue: str) -> str:
        return f"{self.prefix}:signal:{queue}"

    def _processing_key(self) -> str:
        return f"{self.prefix}:processing"

    def _recurring_key(self, queue: str, name: str, interval_ms: int) -> str:
        return f"{self.prefix}:recurring:{queue}:{name}:{interval_ms}"

    @asynccontextmanager
    async def _errors(self) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            raise BackendError(f"{type(e).__name__}: {e}") from e

    # Serialization

    def _to_hash(self, job: Job) -> dict[str, str]:
        interval_ms = interval_to_ms(job.interval)
        return {
            "id": job.id,
            "name": job.name,
            "queue": job.queue,
            "payload": json.dumps(job.payload),
            "status": str(job.status),
            "run_at": _iso(job.run_at),
            "interval_ms": str(interval_ms) if interval_ms is not None else "",
            "attempts": str(job.attempts),
            "max_attempts": str(job.max_attempts),
            "tags": encode_tags(job.tags) or "",
            "priority": str(job.priority),
            "last_error": job.last_error or "",
            "worker_id": job.worker_id or "",
            "lease_expires_at": _iso(job.lease_expires_at),
            "created_at": _iso(job.created_at),
            "updated_at": _iso(job.updated_at),
        }

    def _from_hash(self, data: dict[str, str]) -> Job:
        interval_ms = data.get("interval_ms")
        return Job(
            id=data["id"],
            name=data["name"],
            queue=data["queue"],
            payload=json.loads(data["payload"]) if data.get("payload") else None,
            status=JobStatus(data["status"]),
            run_at=_parse_dt(data["run_at"]),
            interval=interval_from_ms(int(interval_ms)) if interval_ms else None,
            attempts=int(data.get("attempts") or 0),
            max_attempts=int(data.get("max_attempts") or self.max_attempts),
            tags=decode_tags(data.get("tags")),
            priority=int(data.get("priority") or 0),
            last_error=data.get("last_error") or None,
            worker_id=data.get("worker_id") or None,
            lease_expires_at=_parse_dt(data.get("lease_expires_at")),
            created_at=_parse_dt(data["created_at"]),
            updated_at=_parse_dt(data["updated_at"]),
        )

    async def _load(self, job_id: str) -> Optional[Job]:
        data = await self.redis.hgetall(self._job_key(job_id))
        return self._from_hash(data) if data else None

    async def _scan_jobs(self) -> AsyncIterator[Job]:
        # Operator helpers walk the keyspace; fine for tooling, not for hot paths.
        async for key in self.redis.scan_iter(match=f"{self.prefix}:job:*"):
            data = await self.redis.hgetall(key)
            if data:
                yield self._from_hash(data)

    # Core protocol

    async def enqueue(
        self,
        queue: str,
        name: str,
        payload: Any,
        run_at: Optional[datetime] = None,
        interval: Optional[timedelta] = None,
        max_attempts: Optional[int] = None,
        tags: Optional[Sequence[str]] = None,
        priority: int = 0,
    ) -> str:
        now = self.clock.now()
        run_at = run_at or now
        interval_ms = interval_to_ms(interval)

        job = Job(
            id=str(uuid4()),
            name=name,
            queue=queue,
            payload=payload,
            status=JobStatus.QUEUED,
            run_at=run_at,
            interval=interval,
            max_attempts=self._max_attempts(max_attempts),
            tags=normalize_tags(tags),
            priority=priority,
            created_at=now,
            updated_at=now,
        )
        keys = [self._job_key(job.id), self._queue_key(queue), self._signal_key(queue)]
        if interval_ms is not None:
            keys.append(self._recurring_key(queue, name, interval_ms))
        fields = [part for pair in self._to_hash(job).items() for part in pair]

        # The recurring check and the insert run as one script
        async with self._errors():
            job_id = await self._enqueue(
                keys=keys,
                args=[self.prefix, job.id, _score(run_at), "1" if run_at <= now else "0", SIGNAL_BACKLOG, *fields],
            )

        if job_id != job.id:
            logger.debug("Recurring job %s already live as %s", name, job_id)
            return job_id
        JOBS_ENQUEUED.labels(queue=queue, name=name).inc()
        return job.id

    async def claim(self, queues: Sequence[str], tags: Optional[Sequence[str]] = None) -> Optional[Job]:
        now = self.clock.now()
        lease = now + timedelta(seconds=self.lease_timeout)
        async with self._errors():
            job_id = await self._claim(
                keys=[self._queue_key(q) for q in queues],
                args=[
                    self.prefix, _score(now), _score(lease), _iso(now), _iso(lease), self.worker_id,
                    CLAIM_WINDOW, *normalize_tags(tags),
                ],
            )
            if not job_id:
                return None
            job = await self._load(job_id)

        JOBS_CLAIMED.labels(queue=job.queue).inc()
        delay = (now - job.run_at).total_seconds()
        if delay >= 0:
            JOB_START_DELAY.observe(delay)
        return job

    async def wait_for_job(self, queues: Sequence[str], timeout: float) -> None:
        # Blocking pop: the broker wakes one waiting poller per pushed token.
        async with self._errors():
            await self.redis.blpop([self._signal_key(q) for q in queues], timeout=timeout)

    async def ack(self, job_id: str) -> None:
        now = self.clock.now()
        async with self._errors():
            job = await self._load(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            args = [job_id, self.worker_id, _iso(now)]
            interval_ms = interval_to_ms(job.interval)
            if interval_ms is not None:
                next_job = Job(
                    id=str(uuid4()),
                    name=job.name,
                    queue=job.queue,
                    payload=job.payload,
                    status=JobStatus.QUEUED,
                    run_at=now + job.interval,
                    interval=job.interval,
                    max_attempts=job.max_attempts,
                    tags=job.tags,
                    priority=job.priority,
                    created_at=now,
                    updated_at=now,
                )
                fields = [part for pair in self._to_hash(next_job).items() for part in pair]
                args = [
                    job_id, self.worker_id, _iso(now),
                    self._job_key(next_job.id), next_job.id, _score(next_job.run_at), self._queue_key(job.queue),
                    self._recurring_key(job.queue, job.name, interval_ms),
                    *fields,
                ]

            result = await self._ack(keys=[self._processing_key(), self._job_key(job_id)], args=args)

        if result == 0:
            raise InvalidJobStateError(job.status, JobStatus.COMPLETED)
        if result == -1:
            raise InvalidJobStateError(f"{job.status} (owned by {job.worker_id})", JobStatus.COMPLETED)

        JOBS_COMPLETED.labels(queue=job.queue, name=job.name).inc()
        if interval_ms is not None:
            JOBS_ENQUEUED.labels(queue=job.queue, name=job.name).inc()
            logger.info("Recurring job %s re-enqueued as %s", job_id, next_job.id)

    async def fail(self, job_id: str, error: str, permanent: bool = False) -> JobStatus:
        now = self.clock.now()
        async with self._errors():
            job = await self._load(job_id)
            if job is None:
                raise JobNotFoundError(job_id)

            if permanent or job.attempts_exhausted:
                status = JobStatus.FAILED
                run_at = job.run_at
            else:
                status = JobStatus.QUEUED
                run_at = calculate_next_run(
                    job.attempts,
                    now,
                    base_delay_seconds=self.retry_base_delay,
                    max_delay_seconds=self.retry_max_delay,
                )

            result = await self._fail(
                keys=[
                    self._processing_key(),
                    self._job_key(job_id),
                    self._queue_key(job.queue),
                    self._signal_key(job.queue),
                ],
                args=[
                    job_id, self.worker_id, str(status), _iso(now), error,
                    _iso(run_at), _score(run_at), "1" if run_at <= now else "0", SIGNAL_BACKLOG,
                ],
            )

        if result == 0:
            raise InvalidJobStateError(job.status, JobStatus.FAILED)
        if result == -1:
            raise InvalidJobStateError(f"{job.status} (owned by {job.worker_id})", JobStatus.FAILED)

        JOB_FAILURES.labels(queue=job.queue, type="final" if status == JobStatus.FAILED else "retryable").inc()
        return status

    async def clear(self, queue: str) -> int:
        async with self._errors():
            doomed = [job async for job in self._scan_jobs() if job.queue == queue]
            async with self.redis.pipeline(transaction=True) as pipe:
                for job in doomed:
                    pipe.delete(self._job_key(job.id))
                    pipe.zrem(self._processing_key(), job.id)
                pipe.delete(self._queue_key(queue), self._signal_key(queue))
                await pipe.execute()
        return len(doomed)

    async def ping(self) -> None:
        async with self._errors():
            await self.redis.ping()

    async def close(self) -> None:
        await self.redis.aclose()

    # Leases

    async def heartbeat(self, job_ids: Sequence[str]) -> int:
        if not job_ids:
            return 0
        lease = self.clock.now() + timedelta(seconds=self.lease_timeout)
        async with self._errors():
            return int(await self._heartbeat(
                keys=[self._processing_key()],
                args=[self.prefix, self.worker_id, _score(lease), _iso(lease), *job_ids],
            ))

    async def requeue_expired(self, limit: int = 100) -> int:
        now = self.clock.now()
        async with self._errors():
            count = int(await self._reap(
                keys=[self._processing_key()],
                args=[self.prefix, _score(now), _iso(now), limit, LEASE_EXPIRED_ERROR, SIGNAL_BACKLOG],
            ))
        if count:
            REAPER_RECOVERED_JOBS.inc(count)
        return count

    # Operator helpers

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._errors():
            return await self._load(job_id)

    async def get_jobs(
        self,
        status: Optional[Sequence[JobStatus]] = None,
        older_than: Optional[timedelta] = None,
        queue: Optional[str] = None,
    ) -> list[Job]:
        cutoff = self.clock.now() - older_than if older_than is not None else None
        async with self._errors():
            jobs = [
                job async for job in self._scan_jobs()
                if (not status or job.status in status)
                and (cutoff is None or job.created_at <= cutoff)
                and (queue is None or job.queue == queue)
            ]
        return sorted(jobs, key=lambda j: (j.run_at, j.created_at))

    async def cancel_jobs(self, name: str) -> int:
        now = self.clock.now()
        count = 0
        async with self._errors():
            for job in await self.get_jobs(status=[JobStatus.QUEUED]):
                if job.name != name:
                    continue
                # ZREM decides the race against a concurrent claim
                if await self.redis.zrem(self._queue_key(job.queue), job.id):
                    await self.redis.hset(
                        self._job_key(job.id),
                        mapping={"status": str(JobStatus.CANCELLED), "updated_at": _iso(now)},
                    )
                    count += 1
        return count

    async def _delete(self, jobs: Sequence[Job]) -> int:
        async with self.redis.pipeline(transaction=True) as pipe:
            for job in jobs:
                pipe.delete(self._job_key(job.id))
                pipe.zrem(self._queue_key(job.queue), job.id)
                pipe.zrem(self._processing_key(), job.id)
            await pipe.execute()
        return len(jobs)

    async def clear_all(self) -> int:
        async with self._errors():
            jobs = [job async for job in self._scan_jobs()]
            keys = [key async for key in self.redis.scan_iter(match=f"{self.prefix}:*")]
            if keys:
                await self.redis.delete(*keys)
        return len(jobs)

    async def clear_by_status(self, statuses: Sequence[JobStatus]) -> int:
        async with self._errors():
            return await self._delete(await self.get_jobs(status=statuses))

    async def clear_jobs_older_than(
        self, age: timedelta, statuses: Optional[Sequence[JobStatus]] = None
    ) -> int:
        async with self._errors():
            return await self._delete(await self.get_jobs(status=statuses, older_than=age))

    async def requeue(self, older_than: timedelta) -> int:
        now = self.clock.now()
        cutoff = now - older_than
        count = 0
        async with self._errors():
            for job in await self.get_jobs(status=[JobStatus.PROCESSING]):
                if job.updated_at > cutoff:
                    continue
                if await self.redis.zrem(self._processing_key(), job.id):
                    async with self.redis.pipeline(transaction=True) as pipe:
                        pipe.hset(self._job_key(job.id), mapping={
                            "status": str(JobStatus.QUEUED),
                            "run_at": _iso(now),
                            "updated_at": _iso(now),
                            "lease_expires_at": "",
                        })
                        pipe.zadd(self._queue_key(job.queue), {job.id: _score(now)})
                        pipe.rpush(self._signal_key(job.queue), "1")
                        pipe.ltrim(self._signal_key(job.queue), -SIGNAL_BACKLOG, -1)
                        await pipe.execute()
                    count += 1
        return count
