import os
from uuid import uuid4

import fakeredis
import pytest

from jobrunner.backends.redis import RedisQueueBackend
from jobrunner.backends.sql import PostgresQueueBackend, SqliteQueueBackend
from jobrunner.domain.errors import BackendError

# Live Redis and Postgres runs happen only when these point at a disposable
# server. The "fakeredis" run executes the Redis scripts in process.
POSTGRES_URI_ENV = "JOBRUNNER_TEST_POSTGRES_URI"
REDIS_URL_ENV = "JOBRUNNER_TEST_REDIS_URL"

def sqlite_uri(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}"

async def make_backend(kind: str, tmp_path, clock, **kwargs):
    options = dict(clock=clock, lease_timeout=60, max_attempts=3, retry_base_delay=0)
    options.update(kwargs)

    if kind == "sqlite":
        backend = SqliteQueueBackend(sqlite_uri(tmp_path), lock_timeout=30, **options)
    elif kind == "postgres":
        uri = os.environ.get(POSTGRES_URI_ENV)
        if not uri:
            pytest.skip(f"{POSTGRES_URI_ENV} not set")
        backend = PostgresQueueBackend(uri, **options)
    elif kind == "fakeredis":
        client = fakeredis.FakeAsyncRedis(decode_responses=True)
        backend = RedisQueueBackend(client=client, prefix=f"jobrunner-test-{uuid4().hex[:8]}", **options)
    else:
        url = os.environ.get(REDIS_URL_ENV)
        if not url:
            pytest.skip(f"{REDIS_URL_ENV} not set")
        backend = RedisQueueBackend(url, prefix=f"jobrunner-test-{uuid4().hex[:8]}", **options)

    try:
        await backend.setup()
        await backend.ping()
    except BackendError as e:
        await backend.close()
        pytest.skip(f"{kind} backend unavailable: {e}")
    await backend.clear_all()
    return backend
