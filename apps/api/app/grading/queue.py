from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass

from app.grading.clock import Clock, SystemClock
from app.grading.errors import Backpressure
from app.grading.records import (
    CompletionEvent,
    EnqueueOutcome,
    EventKind,
    RunRecord,
    SubmissionRef,
    Visibility,
)
from app.grading.stores import RunRecordStore
from app.observability import get_logger, log_event

logger = get_logger("infomark.grading.queue")


@dataclass
class QueueEntry:
    submission: SubmissionRef
    visibility: Visibility
    record: RunRecord
    sequence: int
    private_first: bool = False
    abandoned: bool = False
    abandon_reason: str | None = None

    @property
    def key(self) -> tuple[int, Visibility]:
        return self.submission.id, self.visibility

    @property
    def generation(self) -> int:
        return self.submission.generation

    def abandon(self, reason: str) -> None:
        self.abandoned = True
        self.abandon_reason = reason


class GradingQueue:
    """Bounded, deduplicating admission queue shared by one worker pool.

    At most one entry per (submission, visibility) is pending and at most one
    is running. A pending or running entry of an older submission generation
    is superseded by a newer enqueue instead of deduplicating it.
    """

    def __init__(
        self,
        run_records: RunRecordStore,
        events: asyncio.Queue,
        *,
        capacity: int,
        admission_timeout: float = 0.5,
        private_first: bool = False,
        retry_after: float = 1.0,
        clock: Clock | None = None,
    ) -> None:
        self.run_records = run_records
        self.events = events
        self.capacity = max(int(capacity), 1)
        self.admission_timeout = admission_timeout
        self.private_first = private_first
        self.retry_after = retry_after
        self.clock = clock or SystemClock()
        self._lock = asyncio.Lock()
        self._available = asyncio.Condition(self._lock)
        self._pending: list[QueueEntry] = []
        self._running: dict[tuple[int, Visibility], QueueEntry] = {}
        self._sequence = itertools.count(1)
        self._closed = False

    @property
    def depth(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> int:
        return len(self._running)

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> dict[str, object]:
        return {
            "depth": self.depth,
            "running": self.running,
            "capacity": self.capacity,
            "closed": self._closed,
        }

    def _find_pending(self, key: tuple[int, Visibility]) -> QueueEntry | None:
        for entry in self._pending:
            if entry.key == key:
                return entry
        return None

    def holds(self, submission_id: int) -> bool:
        """True while a live entry of the submission is pending or running in this process."""
        entries = itertools.chain(self._pending, self._running.values())
        return any(entry.submission.id == submission_id and not entry.abandoned for entry in entries)

    def prefers_private(self, submission: SubmissionRef) -> bool:
        return submission.private_first or self.private_first

    async def enqueue(self, submission: SubmissionRef, visibility: Visibility) -> EnqueueOutcome:
        if self._closed:
            raise Backpressure("grading queue is shutting down", retry_after=self.retry_after)
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=self.admission_timeout)
        except asyncio.TimeoutError as exc:
            raise Backpressure("grading queue admission timed out", retry_after=self.retry_after) from exc
        try:
            return await self._admit(submission, visibility)
        finally:
            self._lock.release()

    async def _admit(self, submission: SubmissionRef, visibility: Visibility) -> EnqueueOutcome:
        if self._closed:
            raise Backpressure("grading queue is shutting down", retry_after=self.retry_after)

        key = (submission.id, visibility)
        pending = self._find_pending(key)
        running = self._running.get(key)
        for active in (pending, running):
            if active is not None and not active.abandoned and active.generation >= submission.generation:
                log_event(
                    logger,
                    "grading.enqueue_deduped",
                    submission_id=submission.id,
                    visibility=visibility.value,
                    generation=submission.generation,
                    attempt=active.record.attempt,
                )
                return EnqueueOutcome.DEDUPED

        if pending is None and len(self._pending) >= self.capacity:
            log_event(logger, "grading.backpressure", submission_id=submission.id, depth=len(self._pending))
            raise Backpressure(retry_after=self.retry_after)

        now = self.clock.now()
        reason = f"superseded by generation {submission.generation}"
        if pending is not None:
            self._pending.remove(pending)
            pending.abandon(reason)
            await self.run_records.abandon(pending.record, now, reason)
        if running is not None and not running.abandoned:
            # the worker owning it records the ABANDONED transition when the run returns
            running.abandon(reason)

        record = await self.run_records.create_pending(submission.id, visibility, submission.generation, now)
        entry = QueueEntry(
            submission=submission,
            visibility=visibility,
            record=record,
            sequence=next(self._sequence),
            private_first=self.prefers_private(submission),
        )
        self._pending.append(entry)
        self.events.put_nowait(
            CompletionEvent(
                kind=EventKind.QUEUED,
                submission_id=submission.id,
                visibility=visibility,
                attempt=record.attempt,
                generation=submission.generation,
            )
        )
        self._available.notify()
        log_event(
            logger,
            "grading.enqueued",
            submission_id=submission.id,
            visibility=visibility.value,
            generation=submission.generation,
            attempt=record.attempt,
            depth=len(self._pending),
        )
        return EnqueueOutcome.ACCEPTED

    def _next_eligible(self) -> QueueEntry | None:
        for entry in self._pending:
            if entry.key in self._running:
                continue
            preferred = Visibility.PRIVATE if entry.private_first else Visibility.PUBLIC
            if entry.visibility != preferred:
                sibling = self._find_pending((entry.submission.id, preferred))
                if sibling is not None and sibling.key not in self._running:
                    return sibling
            return entry
        return None

    async def claim(self) -> QueueEntry | None:
        """Wait for the next runnable entry; ``None`` once the queue is closed."""
        async with self._available:
            while True:
                if self._closed:
                    return None
                entry = self._next_eligible()
                if entry is not None:
                    self._pending.remove(entry)
                    self._running[entry.key] = entry
                    return entry
                await self._available.wait()

    async def release(self, entry: QueueEntry) -> None:
        async with self._available:
            if self._running.get(entry.key) is entry:
                del self._running[entry.key]
            self._available.notify_all()

    async def close(self) -> list[QueueEntry]:
        async with self._available:
            self._closed = True
            dropped = list(self._pending)
            self._pending.clear()
            self._available.notify_all()

        now = self.clock.now()
        for entry in dropped:
            entry.abandon("grading service shut down")
            await self.run_records.abandon(entry.record, now, "grading service shut down")
        if dropped:
            log_event(logger, "grading.queue_closed", dropped=len(dropped))
        return dropped
