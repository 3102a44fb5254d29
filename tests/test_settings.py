import logging

import pytest
from pydantic import ValidationError

from jobrunner.backends.base import get_queues
from jobrunner.backends.factory import create_backend
from jobrunner.backends.redis import RedisQueueBackend
from jobrunner.backends.sql import PostgresQueueBackend, SqliteQueueBackend
from jobrunner.domain.states import WorkerMode
from jobrunner.log import setup_logging
from jobrunner.settings import Settings

def test_default_queues():
    assert get_queues() == ["default", "mailer"]
    assert get_queues([]) == ["default", "mailer"]

def test_configured_queues_are_merged_after_defaults():
    assert get_queues(["foo", "bar"]) == ["default", "mailer", "foo", "bar"]

def test_merged_queues_have_no_duplicates():
    assert get_queues(["mailer", "foo", "foo", "default"]) == ["default", "mailer", "foo"]

def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("JOBRUNNER_QUEUE_URI", raising=False)
    settings = Settings(_env_file=None)

    assert settings.QUEUE_URI == "sqlite+aiosqlite:///jobrunner.db"
    assert settings.backend_kind == "sqlite"
    assert settings.QUEUES == []
    assert settings.MAX_ATTEMPTS == 3
    assert settings.WORKER_MODE == WorkerMode.BACKGROUND_QUEUE
    assert settings.DANGEROUSLY_FLUSH is False

def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("JOBRUNNER_QUEUE_URI", "redis://localhost:6379/2")
    monkeypatch.setenv("JOBRUNNER_QUEUES", '["reports", "billing"]')
    monkeypatch.setenv("JOBRUNNER_NUM_WORKERS", "8")
    monkeypatch.setenv("JOBRUNNER_WORKER_MODE", "foreground_blocking")

    settings = Settings(_env_file=None)

    assert settings.backend_kind == "redis"
    assert settings.QUEUES == ["reports", "billing"]
    assert settings.NUM_WORKERS == 8
    assert settings.WORKER_MODE == WorkerMode.FOREGROUND_BLOCKING

@pytest.mark.parametrize(
    "uri, kind, sqlalchemy_uri",
    [
        ("postgres://u:p@db/jobs", "postgres", "postgresql+asyncpg://u:p@db/jobs"),
        ("postgresql://u:p@db/jobs", "postgres", "postgresql+asyncpg://u:p@db/jobs"),
        ("sqlite:///tmp/q.db", "sqlite", "sqlite+aiosqlite:///tmp/q.db"),
        ("rediss://cache:6380/0", "redis", "rediss://cache:6380/0"),
    ],
)
def test_backend_kind_from_uri(uri, kind, sqlalchemy_uri):
    settings = Settings(_env_file=None, QUEUE_URI=uri)

    assert settings.backend_kind == kind
    assert settings.sqlalchemy_uri == sqlalchemy_uri

@pytest.mark.parametrize(
    "overrides",
    [
        {"QUEUE_URI": "mysql://db/jobs"},
        {"QUEUE_URI": "not a uri"},
        {"MAX_ATTEMPTS": 0},
        {"NUM_WORKERS": -1},
        {"POLL_INTERVAL_SECONDS": 0},
        {"LOG_LEVEL": "CHATTY"},
    ],
)
def test_invalid_settings_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(_env_file=None, **overrides)

async def test_factory_picks_backend_from_uri(tmp_path):
    sqlite = create_backend(Settings(_env_file=None, QUEUE_URI=f"sqlite:///{tmp_path / 'q.db'}", LOCK_TIMEOUT_SECONDS=12))
    postgres = create_backend(Settings(_env_file=None, QUEUE_URI="postgresql://u:p@localhost/jobs"))
    redis = create_backend(Settings(_env_file=None, QUEUE_URI="redis://localhost:6379/0", REDIS_KEY_PREFIX="app"))

    try:
        assert isinstance(sqlite, SqliteQueueBackend)
        assert sqlite.lock_timeout == 12
        assert isinstance(postgres, PostgresQueueBackend)
        assert isinstance(redis, RedisQueueBackend)
        assert redis.prefix == "app"
    finally:
        await sqlite.close()
        await postgres.close()
        await redis.close()

def test_setup_logging_installs_one_handler():
    root = logging.getLogger()
    before = list(root.handlers)
    level = root.level
    try:
        setup_logging("debug")
        setup_logging("warning")

        added = [h for h in root.handlers if h not in before]
        assert len(added) <= 1
        assert root.level == logging.WARNING
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
        root.setLevel(level)
