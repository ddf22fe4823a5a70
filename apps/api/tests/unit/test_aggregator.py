from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from pathlib import Path

import pytest

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from app.grading.aggregator import GradeAggregator, fold_event, scored_points
from app.grading.errors import PointsOutOfRange, ValidationFault
from app.grading.records import (
    CompletionEvent,
    EventKind,
    ExecutionState,
    Grade,
    OverallState,
    RunState,
    TestStatus,
    Track,
    Visibility,
)
from grading_fakes import FakeClock, InMemoryGradeStore, InMemorySubmissionStore, make_submission


def _event(kind: EventKind, visibility: Visibility = Visibility.PRIVATE, attempt: int = 1, generation: int = 1, **fields: object) -> CompletionEvent:
    return CompletionEvent(
        kind=kind,
        submission_id=1,
        visibility=visibility,
        attempt=attempt,
        generation=generation,
        **fields,
    )


def _grade(**fields: object) -> Grade:
    return Grade(submission_id=1, user_id=100, max_points=10, generation=1, **fields)


def test_scored_points_clamps_and_zeroes_errors() -> None:
    assert scored_points(ExecutionState.PASSED, 14, 10) == 10
    assert scored_points(ExecutionState.FAILED, -3, 10) == 0
    assert scored_points(ExecutionState.FAILED, 6, 10) == 6
    assert scored_points(ExecutionState.ERRORED, 9, 10) == 0


def test_track_walks_queued_running_finished() -> None:
    grade = _grade()
    grade, _ = fold_event(grade, _event(EventKind.QUEUED, Visibility.PUBLIC))
    assert grade.public.execution_state == ExecutionState.QUEUED
    assert grade.overall_state == OverallState.IN_PROGRESS

    grade, _ = fold_event(grade, _event(EventKind.STARTED, Visibility.PUBLIC))
    grade, _ = fold_event(
        grade, _event(EventKind.FINISHED, Visibility.PUBLIC, run_state=RunState.SUCCEEDED, log="ok", points=10)
    )
    assert grade.public == Track(ExecutionState.PASSED, TestStatus.PASSED, "ok", 1)
    assert grade.acquired_points == 0


def test_duplicate_and_older_events_are_ignored() -> None:
    grade = _grade(private=Track(ExecutionState.RUNNING, TestStatus.UNKNOWN, "", 2))

    assert fold_event(grade, _event(EventKind.STARTED, attempt=2)) == (None, None)
    assert fold_event(grade, _event(EventKind.QUEUED, attempt=2)) == (None, None)
    assert fold_event(grade, _event(EventKind.FINISHED, attempt=1, run_state=RunState.SUCCEEDED, points=10)) == (None, None)


def test_new_attempt_keeps_previous_status_and_log_until_it_finishes() -> None:
    grade = _grade(
        private=Track(ExecutionState.FAILED, TestStatus.FAILED, "6/10", 1),
        acquired_points=6,
        automated_points=6,
    )
    queued, _ = fold_event(grade, _event(EventKind.QUEUED, attempt=2))

    assert queued.private.execution_state == ExecutionState.QUEUED
    assert queued.private.test_status == TestStatus.FAILED
    assert queued.private.test_log == "6/10"
    assert queued.acquired_points == 6


def test_private_finish_sets_points_clamped_to_max() -> None:
    grade, conflict = fold_event(_grade(), _event(EventKind.FINISHED, run_state=RunState.FAILED, points=42, log="x"))

    assert conflict is None
    assert grade.acquired_points == 10
    assert grade.automated_points == 10
    assert grade.private.test_status == TestStatus.FAILED


def test_private_error_awards_zero() -> None:
    grade = _grade(acquired_points=7, automated_points=7)
    grade, _ = fold_event(grade, _event(EventKind.FINISHED, attempt=1, run_state=RunState.ERRORED, points=7))

    assert grade.private.execution_state == ExecutionState.ERRORED
    assert grade.private.test_status == TestStatus.UNKNOWN
    assert grade.acquired_points == 0


def test_public_results_never_touch_points() -> None:
    grade = _grade(acquired_points=6, automated_points=6)
    grade, _ = fold_event(grade, _event(EventKind.FINISHED, Visibility.PUBLIC, run_state=RunState.FAILED, points=0))

    assert grade.acquired_points == 6
    assert grade.public.execution_state == ExecutionState.FAILED


def test_override_turns_private_finish_into_conflict() -> None:
    grade = _grade(tutor_id=9, acquired_points=8, feedback="nice")
    updated, conflict = fold_event(grade, _event(EventKind.FINISHED, run_state=RunState.SUCCEEDED, points=10, log="all green"))

    assert conflict is not None
    assert updated.acquired_points == 8
    assert updated.feedback == "nice"
    assert updated.automated_points == 10
    assert updated.conflict is True
    assert "tutor 9" in (updated.conflict_detail or "")
    assert updated.private.test_log == "all green"


def test_apply_discards_events_of_superseded_generation() -> None:
    async def scenario() -> None:
        grades = InMemoryGradeStore()
        submissions = InMemorySubmissionStore([make_submission(1, generation=2)])
        aggregator = GradeAggregator(grades, submissions, asyncio.Queue(), clock=FakeClock())
        await aggregator.ensure_grade(submissions.rows[1], 10)

        stale = await aggregator.apply(_event(EventKind.FINISHED, generation=1, run_state=RunState.SUCCEEDED, points=10))
        fresh = await aggregator.apply(_event(EventKind.FINISHED, generation=2, run_state=RunState.SUCCEEDED, points=10))

        assert stale is None
        assert aggregator.discarded == 1
        assert fresh.acquired_points == 10
        assert fresh.generation == 2

    asyncio.run(scenario())


def test_consumer_applies_events_from_channel() -> None:
    async def scenario() -> None:
        grades = InMemoryGradeStore()
        submissions = InMemorySubmissionStore([make_submission(1)])
        events: asyncio.Queue = asyncio.Queue()
        aggregator = GradeAggregator(grades, submissions, events, clock=FakeClock())
        await aggregator.ensure_grade(submissions.rows[1], 10)

        aggregator.start()
        events.put_nowait(_event(EventKind.QUEUED, Visibility.PUBLIC))
        events.put_nowait(_event(EventKind.QUEUED))
        await aggregator.flush()
        await aggregator.stop()

        grade = grades.rows[1]
        assert grade.public.execution_state == ExecutionState.QUEUED
        assert grade.private.execution_state == ExecutionState.QUEUED
        assert aggregator.applied == 2

    asyncio.run(scenario())


def test_override_validation_and_conflict_resolution() -> None:
    async def scenario() -> None:
        grades = InMemoryGradeStore()
        submissions = InMemorySubmissionStore([make_submission(1)])
        aggregator = GradeAggregator(grades, submissions, asyncio.Queue(), clock=FakeClock())

        with pytest.raises(ValidationFault):
            await aggregator.apply_override(1, tutor_id=9, points=3)

        await aggregator.ensure_grade(submissions.rows[1], 10)
        with pytest.raises(PointsOutOfRange):
            await aggregator.apply_override(1, tutor_id=9, points=11)

        grades.rows[1] = replace(grades.rows[1], conflict=True, conflict_detail="x", tutor_id=9, acquired_points=4)
        resolved = await aggregator.resolve_conflict(1)
        assert resolved.conflict is False
        assert resolved.acquired_points == 4
        assert resolved.tutor_id == 9

    asyncio.run(scenario())
