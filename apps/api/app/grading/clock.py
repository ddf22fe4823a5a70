from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    async def sleep(self, seconds: float) -> None:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float, factor: float = 2.0) -> float:
    """Delay before retrying after the given (1-based) failed attempt."""
    if attempt < 1 or base_seconds <= 0:
        return 0.0
    return min(max_seconds, base_seconds * (factor ** (attempt - 1)))
