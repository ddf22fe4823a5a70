from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

from redis.asyncio import Redis
from redis.exceptions import LockError

from app.grading.errors import GradingError
from app.grading.records import Visibility
from app.observability import get_logger, log_event

logger = get_logger("infomark.grading.locks")


class RunLockBusy(GradingError):
    """Another process holds the execution lock for this (submission, visibility)."""


class RunLocks(Protocol):
    def hold(self, submission_id: int, visibility: Visibility) -> AbstractAsyncContextManager[None]:
        ...


class LocalRunLocks:
    """Per-key asyncio locks for pools living in a single process."""

    def __init__(self) -> None:
        self._locks: dict[tuple[int, Visibility], asyncio.Lock] = {}
        self._users: defaultdict[tuple[int, Visibility], int] = defaultdict(int)

    def is_held(self, submission_id: int, visibility: Visibility) -> bool:
        lock = self._locks.get((submission_id, visibility))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, submission_id: int, visibility: Visibility) -> AsyncIterator[None]:
        key = (submission_id, visibility)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)


class RedisRunLocks:
    """Redis-backed locks so several worker processes can share the grading load."""

    def __init__(
        self,
        conn: Redis,
        ttl_seconds: float,
        blocking_timeout: float = 5.0,
        prefix: str = "grading:run-lock",
    ) -> None:
        self.conn = conn
        self.ttl_seconds = ttl_seconds
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, submission_id: int, visibility: Visibility) -> AsyncIterator[None]:
        name = f"{self.prefix}:{submission_id}:{visibility.value}"
        lock = self.conn.lock(name, timeout=self.ttl_seconds, blocking_timeout=self.blocking_timeout)
        if not await lock.acquire():
            raise RunLockBusy(f"run lock {name} is held elsewhere")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as exc:
                # ttl expired while the run was still going
                log_event(logger, "grading.lock_release_failed", lock=name, error=str(exc))
