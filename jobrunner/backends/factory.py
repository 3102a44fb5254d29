from typing import Optional

from jobrunner.backends.base import QueueBackend
from jobrunner.settings import Settings
from jobrunner.utils.clock import Clock

def create_backend(settings: Settings, clock: Optional[Clock] = None) -> QueueBackend:
    """Picks the backend from the QUEUE_URI scheme."""
    common = dict(
        lease_timeout=settings.DEFAULT_LEASE_TIMEOUT_SECONDS,
        max_attempts=settings.MAX_ATTEMPTS,
        retry_base_delay=settings.RETRY_BASE_DELAY_SECONDS,
        retry_max_delay=settings.RETRY_MAX_DELAY_SECONDS,
        clock=clock,
    )

    kind = settings.backend_kind
    if kind == "redis":
        from jobrunner.backends.redis import RedisQueueBackend
        return RedisQueueBackend(settings.QUEUE_URI, prefix=settings.REDIS_KEY_PREFIX, **common)

    from jobrunner.backends.sql import PostgresQueueBackend, SqliteQueueBackend
    if kind == "postgres":
        return PostgresQueueBackend(settings.sqlalchemy_uri, echo=settings.ECHO_SQL, **common)
    return SqliteQueueBackend(
        settings.sqlalchemy_uri,
        echo=settings.ECHO_SQL,
        lock_timeout=settings.LOCK_TIMEOUT_SECONDS,
        **common,
    )
