from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import AsyncIterator

from app.grading.clock import Clock, SystemClock
from app.grading.errors import ConflictFault, PointsOutOfRange, StaleAttempt, ValidationFault
from app.grading.records import (
    CompletionEvent,
    EventKind,
    ExecutionState,
    Grade,
    RunState,
    SubmissionRef,
    Track,
    Visibility,
    event_rank,
    execution_state_for,
    phase_rank,
    suite_status_for,
)
from app.grading.stores import GradeStore, SubmissionStore
from app.observability import get_logger, log_event

logger = get_logger("infomark.grading.aggregator")


def scored_points(state: ExecutionState, points: int | None, max_points: int) -> int:
    if state not in (ExecutionState.PASSED, ExecutionState.FAILED):
        return 0
    value = max(int(points or 0), 0)
    if max_points > 0:
        value = min(value, max_points)
    return value


def fold_event(grade: Grade, event: CompletionEvent) -> tuple[Grade | None, ConflictFault | None]:
    """Fold one track event into the grade.

    Returns ``(None, None)`` for events that are older than, or duplicates of,
    what the track already shows. Only a finished private run touches points,
    and never while a tutor override is present.
    """
    track = grade.track(event.visibility)
    if event.attempt < track.attempt:
        return None, None
    if event.attempt == track.attempt and event_rank(event.kind) <= phase_rank(track.execution_state):
        return None, None

    if event.kind == EventKind.QUEUED:
        # previous status/log stay visible until the new attempt finishes
        new_track = replace(track, execution_state=ExecutionState.QUEUED, attempt=event.attempt)
    elif event.kind == EventKind.STARTED:
        new_track = replace(track, execution_state=ExecutionState.RUNNING, attempt=event.attempt)
    else:
        state = execution_state_for(event.run_state or RunState.ERRORED)
        new_track = Track(
            execution_state=state,
            test_status=suite_status_for(state),
            test_log=event.log,
            attempt=event.attempt,
        )

    updated = grade.with_track(event.visibility, new_track)
    updated = replace(updated, generation=max(grade.generation, event.generation))

    if event.kind != EventKind.FINISHED or event.visibility != Visibility.PRIVATE:
        return updated, None

    automated = scored_points(new_track.execution_state, event.points, grade.max_points)
    updated = replace(updated, automated_points=automated)
    if not grade.has_override:
        return replace(updated, acquired_points=automated), None

    conflict = ConflictFault(
        f"private attempt {event.attempt} scored {automated}/{grade.max_points} "
        f"({new_track.execution_state.value}) while tutor {grade.tutor_id} "
        f"set {grade.acquired_points}"
    )
    return replace(updated, conflict=True, conflict_detail=str(conflict)), conflict


class GradeAggregator:
    """Single writer of grades; consumes completion events from the workers."""

    def __init__(
        self,
        grades: GradeStore,
        submissions: SubmissionStore,
        events: asyncio.Queue,
        *,
        clock: Clock | None = None,
    ) -> None:
        self.grades = grades
        self.submissions = submissions
        self.events = events
        self.clock = clock or SystemClock()
        self.applied = 0
        self.discarded = 0
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_users: defaultdict[int, int] = defaultdict(int)
        self._task: asyncio.Task | None = None

    @asynccontextmanager
    async def _locked(self, submission_id: int) -> AsyncIterator[None]:
        lock = self._locks.setdefault(submission_id, asyncio.Lock())
        self._lock_users[submission_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[submission_id] -= 1
            if self._lock_users[submission_id] <= 0:
                self._lock_users.pop(submission_id, None)
                self._locks.pop(submission_id, None)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._consume(), name="grade-aggregator")

    async def stop(self) -> None:
        if self._task is None:
            return
        await self.events.put(None)
        await self._task
        self._task = None

    async def flush(self) -> None:
        """Wait until every event published so far has been applied."""
        await self.events.join()

    async def _consume(self) -> None:
        while True:
            event = await self.events.get()
            try:
                if event is None:
                    return
                await self.apply(event)
            except Exception:
                logger.exception(
                    "grading.event_failed",
                    extra={"extra_data": {"submission_id": event.submission_id, "kind": event.kind.value}},
                )
            finally:
                self.events.task_done()

    async def _check_generation(self, event: CompletionEvent) -> None:
        latest = await self.submissions.get_latest_version(event.submission_id)
        if latest is not None and event.generation < latest:
            raise StaleAttempt(
                f"generation {event.generation} superseded by {latest} "
                f"({event.visibility.value} attempt {event.attempt})"
            )

    async def apply(self, event: CompletionEvent) -> Grade | None:
        async with self._locked(event.submission_id):
            try:
                await self._check_generation(event)
            except StaleAttempt as exc:
                self.discarded += 1
                log_event(
                    logger,
                    "grading.stale_attempt_discarded",
                    submission_id=event.submission_id,
                    visibility=event.visibility.value,
                    kind=event.kind.value,
                    detail=str(exc),
                )
                return None

            grade = await self.grades.get(event.submission_id)
            if grade is None:
                log_event(
                    logger,
                    "grading.event_without_grade",
                    level=logging.WARNING,
                    submission_id=event.submission_id,
                    kind=event.kind.value,
                )
                return None

            updated, conflict = fold_event(grade, event)
            if updated is None:
                self.discarded += 1
                return grade

            saved = await self.grades.upsert(replace(updated, updated_at=self.clock.now()))
            self.applied += 1
            if conflict is not None:
                log_event(
                    logger,
                    "grading.conflict_flagged",
                    level=logging.WARNING,
                    submission_id=event.submission_id,
                    tutor_id=grade.tutor_id,
                    detail=str(conflict),
                )
            if event.kind == EventKind.FINISHED:
                log_event(
                    logger,
                    "grading.track_finished",
                    submission_id=event.submission_id,
                    visibility=event.visibility.value,
                    attempt=event.attempt,
                    state=saved.track(event.visibility).execution_state.value,
                    acquired_points=saved.acquired_points,
                    overall=saved.overall_state.value,
                )
            return saved

    async def ensure_grade(self, submission: SubmissionRef, max_points: int) -> Grade:
        async with self._locked(submission.id):
            grade = await self.grades.get(submission.id)
            if grade is not None:
                if grade.max_points != max_points and max_points > 0:
                    grade = await self.grades.upsert(replace(grade, max_points=max_points))
                return grade
            now = self.clock.now()
            return await self.grades.upsert(
                Grade(
                    submission_id=submission.id,
                    user_id=submission.user_id,
                    max_points=max_points,
                    generation=submission.generation,
                    created_at=now,
                    updated_at=now,
                )
            )

    async def _require(self, submission_id: int) -> Grade:
        grade = await self.grades.get(submission_id)
        if grade is None:
            raise ValidationFault(f"no grade for submission {submission_id}")
        return grade

    async def apply_override(self, submission_id: int, tutor_id: int, points: int, feedback: str | None = None) -> Grade:
        async with self._locked(submission_id):
            grade = await self._require(submission_id)
            if points < 0 or (grade.max_points > 0 and points > grade.max_points):
                raise PointsOutOfRange(f"points must be between 0 and {grade.max_points}")
            updated = replace(
                grade,
                tutor_id=tutor_id,
                acquired_points=points,
                feedback=grade.feedback if feedback is None else feedback,
                conflict=False,
                conflict_detail=None,
                updated_at=self.clock.now(),
            )
            log_event(logger, "grading.override_applied", submission_id=submission_id, tutor_id=tutor_id, points=points)
            return await self.grades.upsert(updated)

    async def clear_override(self, submission_id: int) -> Grade:
        async with self._locked(submission_id):
            grade = await self._require(submission_id)
            automated = scored_points(grade.private.execution_state, grade.automated_points, grade.max_points)
            updated = replace(
                grade,
                tutor_id=None,
                acquired_points=automated,
                conflict=False,
                conflict_detail=None,
                updated_at=self.clock.now(),
            )
            log_event(logger, "grading.override_cleared", submission_id=submission_id, acquired_points=automated)
            return await self.grades.upsert(updated)

    async def resolve_conflict(self, submission_id: int) -> Grade:
        async with self._locked(submission_id):
            grade = await self._require(submission_id)
            if not grade.conflict:
                return grade
            log_event(logger, "grading.conflict_resolved", submission_id=submission_id, tutor_id=grade.tutor_id)
            return await self.grades.upsert(
                replace(grade, conflict=False, conflict_detail=None, updated_at=self.clock.now())
            )
