from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Any, Union

from jobrunner.domain.states import JobStatus
from jobrunner.utils.clock import utcnow

@dataclass
class Job:
    id: str
    name: str
    queue: str
    payload: Any
    status: JobStatus

    run_at: datetime
    interval: Optional[timedelta] = None
    attempts: int = 0
    max_attempts: int = 3

    # Routing: tagged jobs go only to processors sharing a tag; higher priority is claimed first
    tags: tuple[str, ...] = ()
    priority: int = 0

    last_error: Optional[str] = None
    worker_id: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def attempts_exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

def interval_to_ms(interval: Optional[timedelta]) -> Optional[int]:
    if interval is None:
        return None
    return int(interval.total_seconds() * 1000)

def interval_from_ms(value: Optional[int]) -> Optional[timedelta]:
    if value is None:
        return None
    return timedelta(milliseconds=int(value))

def normalize_tags(tags: Union[str, Iterable[str], None]) -> tuple[str, ...]:
    """Sorted, de-duplicated tags. A tag is any non-empty string without commas."""
    if not tags:
        return ()
    if isinstance(tags, str):
        tags = [tags]
    cleaned = set()
    for tag in tags:
        tag = tag.strip() if isinstance(tag, str) else tag
        if not isinstance(tag, str) or not tag or "," in tag:
            raise ValueError(f"invalid job tag: {tag!r}")
        cleaned.add(tag)
    return tuple(sorted(cleaned))

# Stored as ",a,b," so a single substring test matches one whole tag
def encode_tags(tags: Iterable[str]) -> Optional[str]:
    tags = normalize_tags(tags)
    return f",{','.join(tags)}," if tags else None

def decode_tags(value: Optional[str]) -> tuple[str, ...]:
    return tuple(tag for tag in (value or "").split(",") if tag)
