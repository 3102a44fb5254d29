from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from jobrunner.domain.states import WorkerMode

REDIS_SCHEMES = ("redis", "rediss", "unix")
POSTGRES_SCHEMES = ("postgresql", "postgresql+asyncpg", "postgres")
SQLITE_SCHEMES = ("sqlite", "sqlite+aiosqlite")

class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="JOBRUNNER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    PROJECT_NAME: str = "jobrunner"
    ENVIRONMENT: str = Field(default="development", description="Exported to scheduled shell jobs as JOBRUNNER_ENV")
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Queue
    QUEUE_URI: str = Field(default="sqlite+aiosqlite:///jobrunner.db", description="Backend connection URI")
    QUEUES: list[str] = Field(default_factory=list, description="Extra queues, merged with the defaults")
    POLL_INTERVAL_SECONDS: float = 1.0
    DEFAULT_LEASE_TIMEOUT_SECONDS: int = 300
    LOCK_TIMEOUT_SECONDS: int = 30
    MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY_SECONDS: float = 10
    RETRY_MAX_DELAY_SECONDS: float = 3600
    DANGEROUSLY_FLUSH: bool = False
    REDIS_KEY_PREFIX: str = "jobrunner"
    ECHO_SQL: bool = False

    # Processor
    WORKER_MODE: WorkerMode = WorkerMode.BACKGROUND_QUEUE
    NUM_WORKERS: int = 2
    WORKER_TAGS: list[str] = Field(default_factory=list, description="Processors only claim jobs carrying one of these tags")
    SHUTDOWN_TIMEOUT_SECONDS: float = 30.0
    REAPER_INTERVAL_SECONDS: float = 10.0

    # Scheduler
    SCHEDULER_CONFIG: Optional[str] = Field(default=None, description="Path to the scheduler YAML file")

    @field_validator(
        "POLL_INTERVAL_SECONDS",
        "DEFAULT_LEASE_TIMEOUT_SECONDS",
        "LOCK_TIMEOUT_SECONDS",
        "MAX_ATTEMPTS",
        "NUM_WORKERS",
        "REAPER_INTERVAL_SECONDS",
    )
    @classmethod
    def _positive(cls, value):
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator("QUEUE_URI")
    @classmethod
    def _known_scheme(cls, value: str) -> str:
        scheme = value.split("://", 1)[0].lower() if "://" in value else ""
        if scheme not in REDIS_SCHEMES + POSTGRES_SCHEMES + SQLITE_SCHEMES:
            raise ValueError(f"unsupported queue backend URI scheme '{scheme}'")
        return value

    @property
    def backend_kind(self) -> str:
        scheme = self.QUEUE_URI.split("://", 1)[0].lower()
        if scheme in REDIS_SCHEMES:
            return "redis"
        if scheme in POSTGRES_SCHEMES:
            return "postgres"
        return "sqlite"

    @property
    def sqlalchemy_uri(self) -> str:
        """QUEUE_URI with the async driver filled in."""
        scheme, rest = self.QUEUE_URI.split("://", 1)
        if self.backend_kind == "postgres":
            return f"postgresql+asyncpg://{rest}"
        if self.backend_kind == "sqlite":
            return f"sqlite+aiosqlite://{rest}"
        return self.QUEUE_URI

@lru_cache
def get_settings() -> Settings:
    return Settings()
