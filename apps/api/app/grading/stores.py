from __future__ import annotations

from datetime import datetime
from typing import AsyncIterator, Protocol

from app.grading.records import Grade, RunRecord, RunState, SubmissionRef, TestSuites, Visibility


class SubmissionStore(Protocol):
    async def get_submission(self, submission_id: int) -> SubmissionRef | None:
        ...

    async def get_latest_version(self, submission_id: int) -> int | None:
        ...

    def list_course_submissions(self, course_id: int) -> AsyncIterator[SubmissionRef]:
        ...

    async def list_course_ids(self) -> list[int]:
        ...


class TestSuiteStore(Protocol):
    __test__ = False

    async def get_suites(self, task_id: int) -> TestSuites | None:
        ...


class GradeStore(Protocol):
    async def get(self, submission_id: int) -> Grade | None:
        ...

    async def upsert(self, grade: Grade) -> Grade:
        ...


class RunRecordStore(Protocol):
    async def create_pending(
        self, submission_id: int, visibility: Visibility, generation: int, created_at: datetime
    ) -> RunRecord:
        ...

    async def mark_running(self, record: RunRecord, started_at: datetime) -> RunRecord:
        ...

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
        ...

    async def abandon(self, record: RunRecord, finished_at: datetime, reason: str) -> RunRecord:
        ...

    async def abandon_stale(self, submission_id: int, cutoff: datetime, finished_at: datetime) -> int:
        ...

    async def list_for_submission(self, submission_id: int) -> list[RunRecord]:
        ...
