from __future__ import annotations

import asyncio
import itertools
import sys
import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

API_DIR = Path(__file__).resolve().parents[2]
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

from app.config import grading_settings
from app.grading.errors import RunRecordClosed
from app.grading.records import (
    ACTIVE_RUN_STATES,
    Grade,
    RunRecord,
    RunState,
    SubmissionRef,
    TestSuite,
    TestSuites,
    Visibility,
)
from app.grading.sandbox import SandboxLimits, SandboxResult
from app.grading.service import GradingService

EPOCH = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = EPOCH) -> None:
        self.current = start
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)
        await asyncio.sleep(0)


class InMemorySubmissionStore:
    def __init__(self, submissions: list[SubmissionRef] | None = None) -> None:
        self.rows: dict[int, SubmissionRef] = {s.id: s for s in submissions or []}

    def add(self, submission: SubmissionRef) -> SubmissionRef:
        self.rows[submission.id] = submission
        return submission

    def resubmit(self, submission_id: int, code_text: str) -> SubmissionRef:
        current = self.rows[submission_id]
        updated = replace(current, code_text=code_text, generation=current.generation + 1)
        self.rows[submission_id] = updated
        return updated

    async def get_submission(self, submission_id: int) -> SubmissionRef | None:
        return self.rows.get(submission_id)

    async def get_latest_version(self, submission_id: int) -> int | None:
        row = self.rows.get(submission_id)
        return row.generation if row is not None else None

    async def list_course_submissions(self, course_id: int):
        for submission_id in sorted(self.rows):
            row = self.rows[submission_id]
            if row.course_id == course_id:
                yield row

    async def list_course_ids(self) -> list[int]:
        return sorted({row.course_id for row in self.rows.values() if row.course_id is not None})


class InMemorySuiteStore:
    def __init__(self, suites: dict[int, TestSuites] | None = None) -> None:
        self.suites = dict(suites or {})

    async def get_suites(self, task_id: int) -> TestSuites | None:
        return self.suites.get(task_id)


class InMemoryGradeStore:
    def __init__(self) -> None:
        self.rows: dict[int, Grade] = {}
        self._ids = itertools.count(1)
        self.writes = 0

    async def get(self, submission_id: int) -> Grade | None:
        return self.rows.get(submission_id)

    async def upsert(self, grade: Grade) -> Grade:
        if grade.id is None:
            existing = self.rows.get(grade.submission_id)
            grade = replace(grade, id=existing.id if existing is not None else next(self._ids))
        self.rows[grade.submission_id] = grade
        self.writes += 1
        return grade


class InMemoryRunRecordStore:
    def __init__(self) -> None:
        self.rows: dict[int, RunRecord] = {}
        self._ids = itertools.count(1)

    async def create_pending(
        self, submission_id: int, visibility: Visibility, generation: int, created_at: datetime
    ) -> RunRecord:
        attempts = [r.attempt for r in self.rows.values() if r.key == (submission_id, visibility)]
        record = RunRecord(
            submission_id=submission_id,
            visibility=visibility,
            attempt=max(attempts, default=0) + 1,
            generation=generation,
            id=next(self._ids),
            created_at=created_at,
        )
        self.rows[record.id] = record
        return replace(record)

    def _save(self, record: RunRecord, **fields: object) -> RunRecord:
        updated = replace(self.rows[record.id], **fields)
        self.rows[record.id] = updated
        return replace(updated)

    def _transition(self, record: RunRecord, **fields: object) -> RunRecord:
        if self.rows[record.id].state not in ACTIVE_RUN_STATES:
            raise RunRecordClosed(f"run record {record.id} is no longer active")
        return self._save(record, **fields)

    async def mark_running(self, record: RunRecord, started_at: datetime) -> RunRecord:
        return self._transition(record, state=RunState.RUNNING, started_at=started_at)

    async def finish(
        self,
        record: RunRecord,
        state: RunState,
        finished_at: datetime,
        *,
        log: str = "",
        exit_status: int | None = None,
        points_awarded: int | None = None,
        error: str | None = None,
    ) -> RunRecord:
        return self._transition(
            record,
            state=state,
            finished_at=finished_at,
            log=log,
            exit_status=exit_status,
            points_awarded=points_awarded,
            error=error,
        )

    async def abandon(self, record: RunRecord, finished_at: datetime, reason: str) -> RunRecord:
        if self.rows[record.id].state not in ACTIVE_RUN_STATES:
            return replace(self.rows[record.id])
        return self._save(record, state=RunState.ABANDONED, finished_at=finished_at, error=reason)

    async def abandon_stale(self, submission_id: int, cutoff: datetime, finished_at: datetime) -> int:
        count = 0
        for record in list(self.rows.values()):
            if record.submission_id != submission_id or record.state not in ACTIVE_RUN_STATES:
                continue
            if (record.started_at or record.created_at) < cutoff:
                self._save(record, state=RunState.ABANDONED, finished_at=finished_at, error="stale")
                count += 1
        return count

    async def list_for_submission(self, submission_id: int) -> list[RunRecord]:
        return [replace(r) for r in self.rows.values() if r.submission_id == submission_id]

    def states(self, submission_id: int, visibility: Visibility) -> list[RunState]:
        return [r.state for r in self.rows.values() if r.key == (submission_id, visibility)]


def passing(total: int = 3, score: int = 10) -> SandboxResult:
    return SandboxResult(exit_status=0, log=f"passed {total}/{total}", score=score, passed=total, total=total)


def failing(passed: int, total: int, score: int) -> SandboxResult:
    return SandboxResult(exit_status=1, log=f"passed {passed}/{total}", score=score, passed=passed, total=total)


class ScriptedSandbox:
    """Plays back per-track outcomes; an outcome is a result or an exception to raise."""

    def __init__(self, default: SandboxResult | None = None) -> None:
        self.default = default or passing()
        self.scripts: dict[tuple[int, Visibility], list[object]] = {}
        self.calls: list[tuple[str, Visibility]] = []
        self.cancelled: list[str] = []
        self.gate: threading.Event | None = None
        self._lock = threading.Lock()

    def script(self, submission_id: int, visibility: Visibility, *outcomes: object) -> None:
        self.scripts[(submission_id, visibility)] = list(outcomes)

    def cancel(self, run_name: str) -> None:
        with self._lock:
            self.cancelled.append(run_name)

    def run(self, code_text: str, suite: TestSuite, limits: SandboxLimits, *, run_name: str | None = None) -> SandboxResult:
        if self.gate is not None:
            self.gate.wait(timeout=5)
        submission_id = int(code_text.rsplit("#", 1)[-1]) if "#" in code_text else 0
        with self._lock:
            self.calls.append((code_text, suite.visibility))
            queue = self.scripts.get((submission_id, suite.visibility))
            outcome = queue.pop(0) if queue else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def make_submission(submission_id: int = 1, *, task_id: int = 7, course_id: int = 3, user_id: int = 100, generation: int = 1, private_first: bool = False) -> SubmissionRef:
    # sandbox scripts are keyed by the id embedded in the code
    return SubmissionRef(
        id=submission_id,
        user_id=user_id,
        task_id=task_id,
        code_text=f"print('solution') #{submission_id}",
        generation=generation,
        sheet_id=11,
        course_id=course_id,
        private_first=private_first,
    )


def make_suites(task_id: int = 7, max_points: int = 10) -> TestSuites:
    def suite(visibility: Visibility, target: str) -> TestSuite:
        return TestSuite(
            visibility=visibility,
            task_id=task_id,
            bundle_key=f"tasks/{task_id}/bundle.zip",
            bundle_sha256=None,
            test_target=target,
            max_points=max_points,
        )

    return TestSuites(public=suite(Visibility.PUBLIC, "tests/public"), private=suite(Visibility.PRIVATE, "tests/hidden"))


class Harness:
    """A service wired to in-memory collaborators."""

    def __init__(
        self,
        *,
        submissions: list[SubmissionRef] | None = None,
        clock: FakeClock | None = None,
        grades: InMemoryGradeStore | None = None,
        run_records: InMemoryRunRecordStore | None = None,
        **settings: object,
    ) -> None:
        defaults: dict[str, object] = {
            "worker_count": 2,
            "queue_capacity": 50,
            "admission_timeout_seconds": 0.5,
            "max_attempts": 3,
            "backoff_seconds": 1.0,
            "backoff_max_seconds": 8.0,
            "stale_seconds": 300,
            "private_first": False,
            "reconcile_auto_enqueue": False,
        }
        defaults.update(settings)
        self.clock = clock or FakeClock()
        self.submissions = InMemorySubmissionStore(submissions or [make_submission()])
        self.suites = InMemorySuiteStore({7: make_suites()})
        self.grades = grades or InMemoryGradeStore()
        self.run_records = run_records or InMemoryRunRecordStore()
        self.sandbox = ScriptedSandbox()
        self.service = GradingService(
            submissions=self.submissions,
            suites=self.suites,
            grades=self.grades,
            run_records=self.run_records,
            sandbox=self.sandbox,
            settings=grading_settings(**defaults),
            clock=self.clock,
        )

    async def run_to_idle(self) -> None:
        await asyncio.wait_for(self.service.wait_idle(), timeout=10)
