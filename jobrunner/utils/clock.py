import asyncio
from datetime import datetime, timezone
from typing import Protocol

def utcnow() -> datetime:
    # Stored timestamps are naive UTC so SQLite and Postgres compare them the same way.
    return datetime.now(timezone.utc).replace(tzinfo=None)

class Clock(Protocol):
    def now(self) -> datetime: ...

    async def sleep(self, seconds: float) -> None: ...

class SystemClock:
    def now(self) -> datetime:
        return utcnow()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
