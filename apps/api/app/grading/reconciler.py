from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Awaitable, Callable

from app.grading.clock import Clock, SystemClock
from app.grading.errors import Backpressure, ValidationFault
from app.grading.records import ExecutionState, Grade, MissingGrade, MissingReason, SubmissionRef
from app.grading.stores import GradeStore, RunRecordStore, SubmissionStore
from app.observability import get_logger, log_event

logger = get_logger("infomark.grading.reconciler")

Enqueuer = Callable[[int], Awaitable[object]]
InFlight = Callable[[int], bool]

# ERRORED grades exhausted their retries; they are reported, a manual enqueue re-runs them
REDRIVE_REASONS = frozenset({MissingReason.NO_GRADE, MissingReason.STALE})


def _aware(value: datetime | None) -> datetime | None:
    # sqlite hands back naive timestamps
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def classify_grade(grade: Grade | None, cutoff: datetime) -> MissingReason | None:
    if grade is None:
        return MissingReason.NO_GRADE
    updated_at = _aware(grade.updated_at or grade.created_at)
    is_old = updated_at is None or updated_at < cutoff
    if not grade.is_terminal:
        return MissingReason.STALE if is_old else None
    if grade.private.execution_state == ExecutionState.ERRORED and is_old:
        return MissingReason.ERRORED
    return None


class MissingGradeReconciler:
    """Finds submissions of a course without a usable grade and optionally re-drives them."""

    def __init__(
        self,
        submissions: SubmissionStore,
        grades: GradeStore,
        run_records: RunRecordStore,
        enqueue: Enqueuer,
        *,
        stale_seconds: int,
        auto_enqueue: bool = True,
        in_flight: InFlight | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.submissions = submissions
        self.grades = grades
        self.run_records = run_records
        self.enqueue = enqueue
        self.stale_seconds = stale_seconds
        self.auto_enqueue = auto_enqueue
        self.in_flight = in_flight
        self.clock = clock or SystemClock()

    async def scan(self, course_id: int, auto_enqueue: bool | None = None) -> AsyncIterator[MissingGrade]:
        redrive = self.auto_enqueue if auto_enqueue is None else auto_enqueue
        now = self.clock.now()
        cutoff = now - timedelta(seconds=max(int(self.stale_seconds), 0))
        found = 0

        async for submission in self.submissions.list_course_submissions(course_id):
            grade = await self.grades.get(submission.id)
            reason = classify_grade(grade, cutoff)
            if reason is None:
                continue

            found += 1
            if redrive and reason in REDRIVE_REASONS:
                await self._redrive(submission, reason, cutoff, now)
            yield MissingGrade(
                course_id=submission.course_id if submission.course_id is not None else course_id,
                sheet_id=submission.sheet_id,
                task_id=submission.task_id,
                user_id=submission.user_id,
                submission_id=submission.id,
                reason=reason,
                grade=grade,
            )

        log_event(logger, "grading.scan_completed", course_id=course_id, missing=found, auto_enqueue=redrive)

    async def _redrive(self, submission: SubmissionRef, reason: MissingReason, cutoff: datetime, now: datetime) -> None:
        if reason == MissingReason.STALE and self.in_flight is not None and self.in_flight(submission.id):
            # still queued or running here; its worker closes the records
            log_event(logger, "grading.stale_in_flight", submission_id=submission.id)
        elif reason == MissingReason.STALE:
            abandoned = await self.run_records.abandon_stale(submission.id, cutoff, now)
            if abandoned:
                log_event(logger, "grading.stale_runs_abandoned", submission_id=submission.id, count=abandoned)
        try:
            await self.enqueue(submission.id)
        except Backpressure as exc:
            log_event(
                logger,
                "grading.redrive_deferred",
                level=logging.WARNING,
                submission_id=submission.id,
                reason=reason.value,
                error=str(exc),
            )
        except ValidationFault as exc:
            log_event(
                logger,
                "grading.redrive_rejected",
                level=logging.WARNING,
                submission_id=submission.id,
                error=str(exc),
            )

    async def scan_all(self) -> int:
        total = 0
        for course_id in await self.submissions.list_course_ids():
            async for _ in self.scan(course_id):
                total += 1
        return total

    async def run_periodic(self, interval_seconds: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                missing = await self.scan_all()
                log_event(logger, "grading.reconcile_pass", missing=missing)
            except Exception:
                logger.exception("grading.reconcile_failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
