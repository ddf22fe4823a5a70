from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class GradeResponse(BaseModel):
    id: int | None = None
    submission_id: int
    user_id: int
    public_execution_state: str
    private_execution_state: str
    public_test_status: str
    private_test_status: str
    public_test_log: str
    private_test_log: str
    public_attempt: int
    private_attempt: int
    acquired_points: int
    automated_points: int | None = None
    max_points: int
    feedback: str
    tutor_id: int | None = None
    generation: int
    overall_state: str
    conflict: bool = False
    conflict_detail: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class MissingGradeResponse(BaseModel):
    grade: GradeResponse | None = None
    course_id: int | None = None
    sheet_id: int | None = None
    task_id: int
    user_id: int
    submission_id: int
    reason: str


class EnqueueResponse(BaseModel):
    submission_id: int
    generation: int
    accepted: bool
    outcomes: dict[str, str]


class RunRecordResponse(BaseModel):
    id: int | None = None
    submission_id: int
    visibility: str
    attempt: int
    generation: int
    state: str
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    log: str
    exit_status: int | None = None
    points_awarded: int | None = None
    error: str | None = None


class TutorOverrideRequest(BaseModel):
    acquired_points: int = Field(ge=0)
    feedback: str | None = Field(default=None, max_length=10000)


class ResubmitRequest(BaseModel):
    code_text: str = Field(min_length=1, max_length=200_000)


class GradingSummaryResponse(BaseModel):
    generated_at: datetime
    started: bool
    workers: int
    busy_workers: int
    queue: dict[str, object]
    pending_events: int
    events_applied: int
    events_discarded: int
    health: dict[str, str]
