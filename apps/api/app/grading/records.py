from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum


class Visibility(StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"


class RunState(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    ERRORED = "ERRORED"
    ABANDONED = "ABANDONED"


class ExecutionState(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    PASSED = "PASSED"
    FAILED = "FAILED"
    ERRORED = "ERRORED"


class TestStatus(StrEnum):
    __test__ = False

    UNKNOWN = "UNKNOWN"
    PASSED = "PASSED"
    FAILED = "FAILED"


class OverallState(StrEnum):
    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    TERMINAL = "TERMINAL"


class EventKind(StrEnum):
    QUEUED = "QUEUED"
    STARTED = "STARTED"
    FINISHED = "FINISHED"


class EnqueueOutcome(StrEnum):
    ACCEPTED = "accepted"
    DEDUPED = "deduped"


class MissingReason(StrEnum):
    NO_GRADE = "NO_GRADE"
    STALE = "STALE"
    ERRORED = "ERRORED"


ACTIVE_RUN_STATES = frozenset({RunState.PENDING, RunState.RUNNING})
TERMINAL_RUN_STATES = frozenset({RunState.SUCCEEDED, RunState.FAILED, RunState.ERRORED, RunState.ABANDONED})
TERMINAL_EXECUTION_STATES = frozenset({ExecutionState.PASSED, ExecutionState.FAILED, ExecutionState.ERRORED})

_PHASE_RANK = {
    ExecutionState.NOT_STARTED: 0,
    ExecutionState.QUEUED: 1,
    ExecutionState.RUNNING: 2,
    ExecutionState.PASSED: 3,
    ExecutionState.FAILED: 3,
    ExecutionState.ERRORED: 3,
}

_EVENT_RANK = {
    EventKind.QUEUED: 1,
    EventKind.STARTED: 2,
    EventKind.FINISHED: 3,
}


def phase_rank(state: ExecutionState) -> int:
    return _PHASE_RANK[state]


def event_rank(kind: EventKind) -> int:
    return _EVENT_RANK[kind]


def execution_state_for(run_state: RunState) -> ExecutionState:
    if run_state == RunState.SUCCEEDED:
        return ExecutionState.PASSED
    if run_state == RunState.FAILED:
        return ExecutionState.FAILED
    if run_state == RunState.RUNNING:
        return ExecutionState.RUNNING
    if run_state == RunState.PENDING:
        return ExecutionState.QUEUED
    return ExecutionState.ERRORED


def suite_status_for(state: ExecutionState) -> TestStatus:
    if state == ExecutionState.PASSED:
        return TestStatus.PASSED
    if state == ExecutionState.FAILED:
        return TestStatus.FAILED
    return TestStatus.UNKNOWN


@dataclass(frozen=True)
class SubmissionRef:
    id: int
    user_id: int
    task_id: int
    code_text: str
    generation: int = 1
    sheet_id: int | None = None
    course_id: int | None = None
    private_first: bool = False


@dataclass(frozen=True)
class TestSuite:
    __test__ = False

    visibility: Visibility
    task_id: int
    bundle_key: str | None
    bundle_sha256: str | None
    test_target: str
    max_points: int


@dataclass(frozen=True)
class TestSuites:
    __test__ = False

    public: TestSuite
    private: TestSuite

    def for_visibility(self, visibility: Visibility) -> TestSuite:
        return self.public if visibility == Visibility.PUBLIC else self.private


@dataclass
class RunRecord:
    submission_id: int
    visibility: Visibility
    attempt: int
    generation: int
    state: RunState = RunState.PENDING
    id: int | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    log: str = ""
    exit_status: int | None = None
    points_awarded: int | None = None
    error: str | None = None

    @property
    def key(self) -> tuple[int, Visibility]:
        return self.submission_id, self.visibility

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES


@dataclass(frozen=True)
class CompletionEvent:
    kind: EventKind
    submission_id: int
    visibility: Visibility
    attempt: int
    generation: int
    run_state: RunState | None = None
    log: str = ""
    points: int | None = None
    exit_status: int | None = None


@dataclass(frozen=True)
class Track:
    execution_state: ExecutionState = ExecutionState.NOT_STARTED
    test_status: TestStatus = TestStatus.UNKNOWN
    test_log: str = ""
    attempt: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.execution_state in TERMINAL_EXECUTION_STATES


@dataclass(frozen=True)
class Grade:
    """Aggregate of the public and private tracks of one submission."""

    submission_id: int
    user_id: int
    max_points: int = 0
    generation: int = 0
    public: Track = field(default_factory=Track)
    private: Track = field(default_factory=Track)
    acquired_points: int = 0
    automated_points: int | None = None
    feedback: str = ""
    tutor_id: int | None = None
    conflict: bool = False
    conflict_detail: str | None = None
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def track(self, visibility: Visibility) -> Track:
        return self.public if visibility == Visibility.PUBLIC else self.private

    def with_track(self, visibility: Visibility, track: Track) -> Grade:
        return replace(self, **{visibility.value: track})

    @property
    def has_override(self) -> bool:
        return self.tutor_id is not None

    @property
    def overall_state(self) -> OverallState:
        if self.public.is_terminal and self.private.is_terminal:
            return OverallState.TERMINAL
        if (
            self.public.execution_state == ExecutionState.NOT_STARTED
            and self.private.execution_state == ExecutionState.NOT_STARTED
        ):
            return OverallState.NOT_STARTED
        return OverallState.IN_PROGRESS

    @property
    def is_terminal(self) -> bool:
        return self.overall_state == OverallState.TERMINAL


@dataclass(frozen=True)
class MissingGrade:
    course_id: int | None
    sheet_id: int | None
    task_id: int
    user_id: int
    submission_id: int
    reason: MissingReason
    grade: Grade | None = None


@dataclass(frozen=True)
class EnqueueResult:
    submission_id: int
    generation: int
    outcomes: dict[Visibility, EnqueueOutcome]

    @property
    def accepted(self) -> bool:
        return any(outcome == EnqueueOutcome.ACCEPTED for outcome in self.outcomes.values())
