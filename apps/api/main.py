from __future__ import annotations

import math
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, NoReturn
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import ALLOWED_ORIGINS, APP_ENV
from app.db import check_db_connection, get_async_session, init_models
from app.deps import TUTOR_ROLES, get_current_user, get_grading_service, require_admin, require_tutor
from app.grading.errors import Backpressure, GradingError, PointsOutOfRange, ValidationFault
from app.grading.records import EnqueueResult, Grade, MissingGrade, RunRecord
from app.grading.service import GradingService
from app.models import Submission, User
from app.observability import get_logger, log_event
from app.redis_client import check_redis_connection
from app.runtime import build_grading_service
from app.schemas import (
    EnqueueResponse,
    GradeResponse,
    GradingSummaryResponse,
    MissingGradeResponse,
    ResubmitRequest,
    RunRecordResponse,
    TutorOverrideRequest,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if APP_ENV in {"development", "dev", "local"}:
        await init_models()
    service = build_grading_service()
    service.start()
    app.state.grading_service = service
    try:
        yield
    finally:
        app.state.grading_service = None
        await service.shutdown()


app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.middleware("http")
async def add_request_id_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.monotonic()
    response = None

    try:
        response = await call_next(request)
        return response
    finally:
        duration_ms = int((time.monotonic() - started_at) * 1000)
        if response is not None:
            response.headers["X-Request-ID"] = request_id
            status_code = response.status_code
        else:
            status_code = 500
        log_event(
            logger,
            "request.completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=status_code,
            duration_ms=duration_ms,
            client=(request.client.host if request.client else "unknown"),
        )


def _raise_for_grading_error(exc: GradingError) -> NoReturn:
    if isinstance(exc, Backpressure):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Grading queue is busy. Please try again shortly.",
            headers={"Retry-After": str(max(math.ceil(exc.retry_after), 1))},
        ) from exc
    if isinstance(exc, PointsOutOfRange):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, ValidationFault):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc


def _is_tutor(user: User) -> bool:
    return user.role in TUTOR_ROLES


def _to_grade_response(grade: Grade) -> GradeResponse:
    return GradeResponse(
        id=grade.id,
        submission_id=grade.submission_id,
        user_id=grade.user_id,
        public_execution_state=grade.public.execution_state.value,
        private_execution_state=grade.private.execution_state.value,
        public_test_status=grade.public.test_status.value,
        private_test_status=grade.private.test_status.value,
        public_test_log=grade.public.test_log,
        private_test_log=grade.private.test_log,
        public_attempt=grade.public.attempt,
        private_attempt=grade.private.attempt,
        acquired_points=grade.acquired_points,
        automated_points=grade.automated_points,
        max_points=grade.max_points,
        feedback=grade.feedback,
        tutor_id=grade.tutor_id,
        generation=grade.generation,
        overall_state=grade.overall_state.value,
        conflict=grade.conflict,
        conflict_detail=grade.conflict_detail,
        created_at=grade.created_at,
        updated_at=grade.updated_at,
    )


def _to_missing_grade_response(missing: MissingGrade) -> MissingGradeResponse:
    return MissingGradeResponse(
        grade=_to_grade_response(missing.grade) if missing.grade is not None else None,
        course_id=missing.course_id,
        sheet_id=missing.sheet_id,
        task_id=missing.task_id,
        user_id=missing.user_id,
        submission_id=missing.submission_id,
        reason=missing.reason.value,
    )


def _to_run_record_response(record: RunRecord) -> RunRecordResponse:
    return RunRecordResponse(
        id=record.id,
        submission_id=record.submission_id,
        visibility=record.visibility.value,
        attempt=record.attempt,
        generation=record.generation,
        state=record.state.value,
        created_at=record.created_at,
        started_at=record.started_at,
        finished_at=record.finished_at,
        log=record.log,
        exit_status=record.exit_status,
        points_awarded=record.points_awarded,
        error=record.error,
    )


def _to_enqueue_response(result: EnqueueResult) -> EnqueueResponse:
    return EnqueueResponse(
        submission_id=result.submission_id,
        generation=result.generation,
        accepted=result.accepted,
        outcomes={visibility.value: outcome.value for visibility, outcome in result.outcomes.items()},
    )


async def _load_owned_submission(session: AsyncSession, submission_id: int, user: User) -> Submission:
    submission = await session.scalar(select(Submission).where(Submission.id == submission_id))
    if submission is None or (submission.user_id != user.id and not _is_tutor(user)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return submission


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/health/db")
async def health_db() -> JSONResponse:
    ok = await check_db_connection()
    if ok:
        return JSONResponse(content={"db": "ok"}, status_code=status.HTTP_200_OK)
    return JSONResponse(content={"db": "error"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.get("/health/redis")
async def health_redis() -> JSONResponse:
    ok = await check_redis_connection()
    if ok:
        return JSONResponse(content={"redis": "ok"}, status_code=status.HTTP_200_OK)
    return JSONResponse(content={"redis": "error"}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)


@app.post(
    "/submissions/{submission_id}/grading",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_submission_grading(
    submission_id: int,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> EnqueueResponse:
    await _load_owned_submission(session, submission_id, user)
    try:
        result = await service.enqueue_grading(submission_id)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    return _to_enqueue_response(result)


@app.put(
    "/submissions/{submission_id}/code",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def resubmit_submission_code(
    submission_id: int,
    payload: ResubmitRequest,
    user: Annotated[User, Depends(get_current_user)],
    session: Annotated[AsyncSession, Depends(get_async_session)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> EnqueueResponse:
    submission = await _load_owned_submission(session, submission_id, user)
    submission.code_text = payload.code_text
    submission.generation = submission.generation + 1
    await session.commit()
    log_event(logger, "submission.code_replaced", submission_id=submission_id, generation=submission.generation)

    try:
        result = await service.enqueue_grading(submission_id)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    return _to_enqueue_response(result)


@app.get("/submissions/{submission_id}/grade", response_model=GradeResponse)
async def get_submission_grade(
    submission_id: int,
    user: Annotated[User, Depends(get_current_user)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> GradeResponse:
    try:
        grade = await service.get_grade(submission_id)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    if grade.user_id != user.id and not _is_tutor(user):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Submission not found")
    return _to_grade_response(grade)


@app.get("/submissions/{submission_id}/runs", response_model=list[RunRecordResponse])
async def list_submission_runs(
    submission_id: int,
    _: Annotated[User, Depends(require_tutor)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> list[RunRecordResponse]:
    try:
        records = await service.list_runs(submission_id)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    return [_to_run_record_response(record) for record in records]


@app.get("/courses/{course_id}/missing-grades", response_model=list[MissingGradeResponse])
async def list_missing_grades(
    course_id: int,
    _: Annotated[User, Depends(require_tutor)],
    service: Annotated[GradingService, Depends(get_grading_service)],
    auto_enqueue: Annotated[bool | None, Query()] = None,
) -> list[MissingGradeResponse]:
    return [
        _to_missing_grade_response(missing)
        async for missing in service.scan_missing_grades(course_id, auto_enqueue=auto_enqueue)
    ]


@app.put("/submissions/{submission_id}/grade/override", response_model=GradeResponse)
async def override_submission_grade(
    submission_id: int,
    payload: TutorOverrideRequest,
    tutor: Annotated[User, Depends(require_tutor)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> GradeResponse:
    try:
        grade = await service.apply_override(submission_id, tutor.id, payload.acquired_points, payload.feedback)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    return _to_grade_response(grade)


@app.delete("/submissions/{submission_id}/grade/override", response_model=GradeResponse)
async def clear_submission_grade_override(
    submission_id: int,
    _: Annotated[User, Depends(require_tutor)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> GradeResponse:
    try:
        grade = await service.clear_override(submission_id)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    return _to_grade_response(grade)


@app.post("/submissions/{submission_id}/grade/conflict/resolve", response_model=GradeResponse)
async def resolve_submission_grade_conflict(
    submission_id: int,
    _: Annotated[User, Depends(require_tutor)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> GradeResponse:
    try:
        grade = await service.resolve_conflict(submission_id)
    except GradingError as exc:
        _raise_for_grading_error(exc)
    return _to_grade_response(grade)


@app.get("/admin/grading/summary", response_model=GradingSummaryResponse)
async def admin_grading_summary(
    _: Annotated[User, Depends(require_admin)],
    service: Annotated[GradingService, Depends(get_grading_service)],
) -> GradingSummaryResponse:
    summary = service.summary()
    return GradingSummaryResponse(
        generated_at=datetime.now(timezone.utc),
        started=bool(summary["started"]),
        workers=int(summary["workers"]),
        busy_workers=int(summary["busy_workers"]),
        queue=dict(summary["queue"]),
        pending_events=int(summary["pending_events"]),
        events_applied=int(summary["events_applied"]),
        events_discarded=int(summary["events_discarded"]),
        health={
            "db": "ok" if await check_db_connection() else "error",
            "redis": "ok" if await check_redis_connection() else "error",
        },
    )
