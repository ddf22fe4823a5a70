from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app import models
from app.grading.errors import RunRecordClosed
from app.grading.records import (
    ACTIVE_RUN_STATES,
    ExecutionState,
    Grade,
    RunRecord,
    RunState,
    SubmissionRef,
    TestStatus,
    TestSuite,
    TestSuites,
    Track,
    Visibility,
)

SessionFactory = async_sessionmaker[AsyncSession]

# concurrent processes may race for the same attempt number
ATTEMPT_INSERT_RETRIES = 3


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _submission_select():
    return (
        select(models.Submission, models.Sheet.id, models.Sheet.course_id, models.Course.private_first)
        .join(models.Task, models.Task.id == models.Submission.task_id)
        .join(models.Sheet, models.Sheet.id == models.Task.sheet_id)
        .join(models.Course, models.Course.id == models.Sheet.course_id)
    )


def _submission_ref(row: models.Submission, sheet_id: int, course_id: int, private_first: bool) -> SubmissionRef:
    return SubmissionRef(
        id=row.id,
        user_id=row.user_id,
        task_id=row.task_id,
        code_text=row.code_text,
        generation=row.generation,
        sheet_id=sheet_id,
        course_id=course_id,
        private_first=bool(private_first),
    )


def _track(row: models.Grade, prefix: str) -> Track:
    return Track(
        execution_state=ExecutionState(getattr(row, f"{prefix}_execution_state")),
        test_status=TestStatus(getattr(row, f"{prefix}_test_status")),
        test_log=getattr(row, f"{prefix}_test_log") or "",
        attempt=getattr(row, f"{prefix}_attempt"),
    )


def grade_from_row(row: models.Grade) -> Grade:
    return Grade(
        submission_id=row.submission_id,
        user_id=row.user_id,
        max_points=row.max_points,
        generation=row.generation,
        public=_track(row, "public"),
        private=_track(row, "private"),
        acquired_points=row.acquired_points,
        automated_points=row.automated_points,
        feedback=row.feedback or "",
        tutor_id=row.tutor_id,
        conflict=row.conflict,
        conflict_detail=row.conflict_detail,
        id=row.id,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _copy_grade(row: models.Grade, grade: Grade) -> None:
    row.user_id = grade.user_id
    row.max_points = grade.max_points
    row.generation = grade.generation
    for visibility in Visibility:
        track = grade.track(visibility)
        setattr(row, f"{visibility.value}_execution_state", track.execution_state.value)
        setattr(row, f"{visibility.value}_test_status", track.test_status.value)
        setattr(row, f"{visibility.value}_test_log", track.test_log)
        setattr(row, f"{visibility.value}_attempt", track.attempt)
    row.acquired_points = grade.acquired_points
    row.automated_points = grade.automated_points
    row.feedback = grade.feedback
    row.tutor_id = grade.tutor_id
    row.conflict = grade.conflict
    row.conflict_detail = grade.conflict_detail
    if grade.created_at is not None:
        row.created_at = grade.created_at
    if grade.updated_at is not None:
        row.updated_at = grade.updated_at


def run_record_from_row(row: models.RunRecord) -> RunRecord:
    return RunRecord(
        submission_id=row.submission_id,
        visibility=Visibility(row.visibility),
        attempt=row.attempt,
        generation=row.generation,
        state=RunState(row.state),
        id=row.id,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        finished_at=_aware(row.finished_at),
        log=row.log or "",
        exit_status=row.exit_status,
        points_awarded=row.points_awarded,
        error=row.error,
    )


class SqlSubmissionStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def get_submission(self, submission_id: int) -> SubmissionRef | None:
        async with self.session_factory() as session:
            row = (await session.execute(_submission_select().where(models.Submission.id == submission_id))).first()
        if row is None:
            return None
        return _submission_ref(*row)

    async def get_latest_version(self, submission_id: int) -> int | None:
        async with self.session_factory() as session:
            return await session.scalar(
                select(models.Submission.generation).where(models.Submission.id == submission_id)
            )

    async def list_course_submissions(self, course_id: int) -> AsyncIterator[SubmissionRef]:
        # materialize first so no session stays open while callers enqueue
        async with self.session_factory() as session:
            rows = (
                await session.execute(
                    _submission_select()
                    .where(models.Sheet.course_id == course_id)
                    .order_by(models.Submission.id.asc())
                )
            ).all()
        for row in rows:
            yield _submission_ref(*row)

    async def list_course_ids(self) -> list[int]:
        async with self.session_factory() as session:
            return list((await session.scalars(select(models.Course.id).order_by(models.Course.id.asc()))).all())


class SqlTestSuiteStore:
    __test__ = False

    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def get_suites(self, task_id: int) -> TestSuites | None:
        async with self.session_factory() as session:
            task = await session.get(models.Task, task_id)
        if task is None:
            return None

        def suite(visibility: Visibility, target: str) -> TestSuite:
            return TestSuite(
                visibility=visibility,
                task_id=task.id,
                bundle_key=task.bundle_key,
                bundle_sha256=task.bundle_sha256,
                test_target=target,
                max_points=task.max_points,
            )

        return TestSuites(
            public=suite(Visibility.PUBLIC, task.public_test_target),
            private=suite(Visibility.PRIVATE, task.private_test_target),
        )


class SqlGradeStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def get(self, submission_id: int) -> Grade | None:
        async with self.session_factory() as session:
            row = await session.scalar(select(models.Grade).where(models.Grade.submission_id == submission_id))
        return grade_from_row(row) if row is not None else None

    async def upsert(self, grade: Grade) -> Grade:
        async with self.session_factory() as session:
            row = await session.scalar(select(models.Grade).where(models.Grade.submission_id == grade.submission_id))
            if row is None:
                row = models.Grade(submission_id=grade.submission_id)
                session.add(row)
            _copy_grade(row, grade)
            await session.commit()
            await session.refresh(row)
            return grade_from_row(row)


class SqlRunRecordStore:
    def __init__(self, session_factory: SessionFactory) -> None:
        self.session_factory = session_factory

    async def create_pending(
        self, submission_id: int, visibility: Visibility, generation: int, created_at: datetime
    ) -> RunRecord:
        for remaining in range(ATTEMPT_INSERT_RETRIES, 0, -1):
            async with self.session_factory() as session:
                latest = await session.scalar(
                    select(func.max(models.RunRecord.attempt)).where(
                        models.RunRecord.submission_id == submission_id,
                        models.RunRecord.visibility == visibility.value,
                    )
                )
                row = models.RunRecord(
                    submission_id=submission_id,
                    visibility=visibility.value,
                    attempt=(latest or 0) + 1,
                    generation=generation,
                    state=RunState.PENDING.value,
                    created_at=created_at,
                    log="",
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    if remaining == 1:
                        raise
                    continue
                await session.refresh(row)
                return run_record_from_row(row)
        raise RuntimeError("unreachable")

    async def _transition(self, record: RunRecord, **fields: object) -> RunRecord:
        # only PENDING/RUNNING rows move; a terminal row is never reopened
        active = [state.value for state in ACTIVE_RUN_STATES]
        async with self.session_factory() as session:
            result = await session.execute(
                update(models.RunRecord)
                .where(models.RunRecord.id == record.id, models.RunRecord.state.in_(active))
                .values(**fields)
            )
            if result.rowcount == 0:
                await session.rollback()
                raise RunRecordClosed(f"run record {record.id} is no longer active")
            await session.commit()
            row = await session.get(models.RunRecord, record.id)
            return run_record_from_row(row)

    async def mark_running(self, record: RunRecord, started_at: datetime) -> RunRecord:
        return await self._transition(record, state=RunState.RUNNING.value, started_at=started_at)

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
        return await self._transition(
            record,
            state=state.value,
            finished_at=finished_at,
            log=log,
            exit_status=exit_status,
            points_awarded=points_awarded,
            error=error,
        )

    async def abandon(self, record: RunRecord, finished_at: datetime, reason: str) -> RunRecord:
        try:
            return await self._transition(
                record, state=RunState.ABANDONED.value, finished_at=finished_at, error=reason
            )
        except RunRecordClosed:
            async with self.session_factory() as session:
                row = await session.get(models.RunRecord, record.id)
            if row is None:
                raise
            return run_record_from_row(row)

    async def abandon_stale(self, submission_id: int, cutoff: datetime, finished_at: datetime) -> int:
        active = [state.value for state in ACTIVE_RUN_STATES]
        async with self.session_factory() as session:
            rows = (
                await session.scalars(
                    select(models.RunRecord).where(
                        models.RunRecord.submission_id == submission_id,
                        models.RunRecord.state.in_(active),
                    )
                )
            ).all()
            count = 0
            for row in rows:
                since = _aware(row.started_at or row.created_at)
                if since is not None and since >= cutoff:
                    continue
                row.state = RunState.ABANDONED.value
                row.finished_at = finished_at
                row.error = "stale run abandoned by reconciler"
                count += 1
            await session.commit()
        return count

    async def list_for_submission(self, submission_id: int) -> list[RunRecord]:
        async with self.session_factory() as session:
            rows = (
                await session.scalars(
                    select(models.RunRecord)
                    .where(models.RunRecord.submission_id == submission_id)
                    .order_by(models.RunRecord.id.asc())
                )
            ).all()
        return [run_record_from_row(row) for row in rows]
