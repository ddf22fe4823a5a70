from __future__ import annotations


class GradingError(Exception):
    """Base class for every fault raised by the grading pipeline."""


class ValidationFault(GradingError):
    """Malformed request (unknown submission, missing grade); rejected before queueing."""


class PointsOutOfRange(ValidationFault):
    """Tutor points outside 0..max_points."""


class Backpressure(GradingError):
    """The grading queue cannot admit the request right now; the caller retries later."""

    def __init__(self, message: str = "grading queue is full", retry_after: float = 1.0) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class SandboxFault(GradingError):
    """Infrastructure error while executing a suite (not a test failure)."""

    def __init__(self, message: str, *, retryable: bool = True, exit_status: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.exit_status = exit_status


class SandboxTimeout(SandboxFault):
    def __init__(self, message: str = "sandbox wall-clock limit exceeded") -> None:
        super().__init__(message, retryable=True)


class RunRecordClosed(GradingError):
    """The run record already reached a terminal state and refuses further transitions."""


class ConflictFault(GradingError):
    """An automated result collided with a tutor override; recorded, not applied."""


class StaleAttempt(GradingError):
    """A completion belongs to an older submission generation and is discarded."""
