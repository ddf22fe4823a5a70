from __future__ import annotations

import asyncio
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from app.grading.errors import Backpressure
from app.grading.reconciler import MissingGradeReconciler, classify_grade
from app.grading.records import ExecutionState, Grade, MissingReason, RunState, TestStatus, Track, Visibility
from grading_fakes import (
    EPOCH,
    FakeClock,
    InMemoryGradeStore,
    InMemoryRunRecordStore,
    InMemorySubmissionStore,
    make_submission,
)

DONE = Track(ExecutionState.PASSED, TestStatus.PASSED, "ok", 1)
BROKEN = Track(ExecutionState.ERRORED, TestStatus.UNKNOWN, "execution error", 3)


def _grade(submission_id: int, *, public: Track = DONE, private: Track = DONE, age_seconds: int = 0) -> Grade:
    stamp = EPOCH - timedelta(seconds=age_seconds)
    return Grade(
        submission_id=submission_id,
        user_id=100,
        max_points=10,
        public=public,
        private=private,
        created_at=stamp,
        updated_at=stamp,
    )


def test_classify_grade() -> None:
    cutoff = EPOCH - timedelta(seconds=300)
    running = Track(ExecutionState.RUNNING, TestStatus.UNKNOWN, "", 1)

    assert classify_grade(None, cutoff) == MissingReason.NO_GRADE
    assert classify_grade(_grade(1), cutoff) is None
    assert classify_grade(_grade(1, private=running), cutoff) is None
    assert classify_grade(_grade(1, private=running, age_seconds=301), cutoff) == MissingReason.STALE
    assert classify_grade(_grade(1, private=BROKEN), cutoff) is None
    assert classify_grade(_grade(1, private=BROKEN, age_seconds=301), cutoff) == MissingReason.ERRORED
    assert classify_grade(_grade(1, public=BROKEN, age_seconds=301), cutoff) is None


def test_classify_grade_accepts_naive_timestamps() -> None:
    cutoff = EPOCH - timedelta(seconds=300)
    naive = _grade(1, private=Track(ExecutionState.QUEUED), age_seconds=600)
    naive = replace(naive, updated_at=naive.updated_at.replace(tzinfo=None))

    assert classify_grade(naive, cutoff) == MissingReason.STALE


def _reconciler(enqueue, *, auto_enqueue: bool = True, in_flight=None):
    submissions = InMemorySubmissionStore(
        [
            make_submission(1),
            make_submission(2),
            make_submission(3),
            make_submission(4),
            make_submission(5, course_id=99),
        ]
    )
    grades = InMemoryGradeStore()
    grades.rows[2] = _grade(2)
    grades.rows[3] = _grade(3, private=Track(ExecutionState.RUNNING, TestStatus.UNKNOWN, "", 1), age_seconds=900)
    grades.rows[4] = _grade(4, private=BROKEN, age_seconds=900)
    records = InMemoryRunRecordStore()
    reconciler = MissingGradeReconciler(
        submissions,
        grades,
        records,
        enqueue,
        stale_seconds=300,
        auto_enqueue=auto_enqueue,
        in_flight=in_flight,
        clock=FakeClock(),
    )
    return reconciler, records


def test_scan_reports_missing_stale_and_errored_and_redrives_missing_and_stale() -> None:
    async def scenario() -> None:
        enqueued: list[int] = []

        async def enqueue(submission_id: int) -> None:
            enqueued.append(submission_id)

        reconciler, records = _reconciler(enqueue)
        stuck = await records.create_pending(3, Visibility.PRIVATE, 1, EPOCH - timedelta(seconds=900))
        await records.mark_running(stuck, EPOCH - timedelta(seconds=900))

        found = [m async for m in reconciler.scan(3)]

        assert [(m.submission_id, m.reason) for m in found] == [
            (1, MissingReason.NO_GRADE),
            (3, MissingReason.STALE),
            (4, MissingReason.ERRORED),
        ]
        assert found[0].grade is None
        assert found[1].course_id == 3
        assert found[1].sheet_id == 11
        assert enqueued == [1, 3]
        assert records.states(3, Visibility.PRIVATE) == [RunState.ABANDONED]

    asyncio.run(scenario())


def test_scan_without_auto_enqueue_only_reports() -> None:
    async def scenario() -> None:
        enqueued: list[int] = []

        async def enqueue(submission_id: int) -> None:
            enqueued.append(submission_id)

        reconciler, _ = _reconciler(enqueue, auto_enqueue=False)
        found = [m.submission_id async for m in reconciler.scan(3)]
        forced = [m.submission_id async for m in reconciler.scan(3, auto_enqueue=True)]

        assert found == [1, 3, 4]
        assert forced == [1, 3, 4]
        assert enqueued == [1, 3]

    asyncio.run(scenario())


def test_backpressure_during_scan_still_reports_findings() -> None:
    async def scenario() -> None:
        async def enqueue(submission_id: int) -> None:
            raise Backpressure(retry_after=2.0)

        reconciler, _ = _reconciler(enqueue)
        found = [m.submission_id async for m in reconciler.scan(3)]

        assert found == [1, 3, 4]

    asyncio.run(scenario())


def test_scan_all_covers_every_course_and_periodic_loop_stops() -> None:
    async def scenario() -> None:
        async def enqueue(submission_id: int) -> None:
            return None

        reconciler, _ = _reconciler(enqueue)
        assert await reconciler.scan_all() == 4

        stop = asyncio.Event()
        loop_task = asyncio.create_task(reconciler.run_periodic(60, stop))
        await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(loop_task, timeout=1)

    asyncio.run(scenario())


def test_errored_grade_is_reported_on_every_scan_but_never_requeued() -> None:
    async def scenario() -> None:
        enqueued: list[int] = []

        async def enqueue(submission_id: int) -> None:
            enqueued.append(submission_id)

        reconciler, _ = _reconciler(enqueue)
        rounds = []
        for _ in range(4):
            rounds.append([(m.submission_id, m.reason) async for m in reconciler.scan(3) if m.submission_id == 4])

        assert rounds == [[(4, MissingReason.ERRORED)]] * 4
        assert 4 not in enqueued

    asyncio.run(scenario())


def test_stale_submission_still_held_by_the_queue_keeps_its_records() -> None:
    async def scenario() -> None:
        enqueued: list[int] = []

        async def enqueue(submission_id: int) -> None:
            enqueued.append(submission_id)

        reconciler, records = _reconciler(enqueue, in_flight=lambda submission_id: submission_id == 3)
        queued = await records.create_pending(3, Visibility.PRIVATE, 1, EPOCH - timedelta(seconds=900))

        found = [(m.submission_id, m.reason) async for m in reconciler.scan(3)]

        assert (3, MissingReason.STALE) in found
        assert records.states(3, Visibility.PRIVATE) == [RunState.PENDING]
        assert enqueued == [1, 3]
        running = await records.mark_running(queued, EPOCH)
        assert running.state == RunState.RUNNING

    asyncio.run(scenario())
