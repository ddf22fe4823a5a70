from __future__ import annotations

import asyncio
from typing import AsyncIterator

from app.config import GradingSettings
from app.grading.aggregator import GradeAggregator
from app.grading.clock import Clock, SystemClock
from app.grading.errors import ValidationFault
from app.grading.locks import RunLocks
from app.grading.pool import WorkerPool, visibility_order
from app.grading.queue import GradingQueue
from app.grading.reconciler import MissingGradeReconciler
from app.grading.records import EnqueueOutcome, EnqueueResult, Grade, MissingGrade, RunRecord, Visibility
from app.grading.sandbox import ExecutionSandbox, SandboxLimits
from app.grading.stores import GradeStore, RunRecordStore, SubmissionStore, TestSuiteStore
from app.observability import get_logger, log_event

logger = get_logger("infomark.grading.service")


class GradingService:
    """Lifecycle-scoped grading pipeline: queue, worker pool, aggregator and reconciler.

    Construct one per process, ``start()`` it inside the running event loop and
    ``shutdown()`` it on exit; shutdown lets in-flight runs finish and applies
    their results before returning.
    """

    def __init__(
        self,
        *,
        submissions: SubmissionStore,
        suites: TestSuiteStore,
        grades: GradeStore,
        run_records: RunRecordStore,
        sandbox: ExecutionSandbox,
        settings: GradingSettings | None = None,
        limits: SandboxLimits | None = None,
        locks: RunLocks | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or GradingSettings()
        self.submissions = submissions
        self.suites = suites
        self.grades = grades
        self.run_records = run_records
        self.clock = clock or SystemClock()
        self.events: asyncio.Queue = asyncio.Queue()

        self.queue = GradingQueue(
            run_records,
            self.events,
            capacity=self.settings.queue_capacity,
            admission_timeout=self.settings.admission_timeout_seconds,
            private_first=self.settings.private_first,
            retry_after=max(self.settings.backoff_seconds, 1.0),
            clock=self.clock,
        )
        self.aggregator = GradeAggregator(grades, submissions, self.events, clock=self.clock)
        self.pool = WorkerPool(
            self.queue,
            sandbox,
            submissions,
            suites,
            run_records,
            self.events,
            worker_count=self.settings.worker_count,
            limits=limits
            or SandboxLimits(
                timeout_seconds=self.settings.run_timeout_seconds,
                max_log_bytes=self.settings.max_log_bytes,
            ),
            max_attempts=self.settings.max_attempts,
            backoff_seconds=self.settings.backoff_seconds,
            backoff_max_seconds=self.settings.backoff_max_seconds,
            locks=locks,
            clock=self.clock,
        )
        self.reconciler = MissingGradeReconciler(
            submissions,
            grades,
            run_records,
            self.enqueue_grading,
            stale_seconds=self.settings.stale_seconds,
            auto_enqueue=self.settings.reconcile_auto_enqueue,
            in_flight=self.queue.holds,
            clock=self.clock,
        )
        self._started = False
        self._reconcile_stop = asyncio.Event()
        self._reconcile_task: asyncio.Task | None = None

    @property
    def started(self) -> bool:
        return self._started

    def start(self, *, reconcile_interval: float | None = None) -> None:
        if self._started:
            return
        self.aggregator.start()
        self.pool.start()
        if reconcile_interval and reconcile_interval > 0:
            self._reconcile_stop.clear()
            self._reconcile_task = asyncio.create_task(
                self.reconciler.run_periodic(reconcile_interval, self._reconcile_stop), name="grading-reconciler"
            )
        self._started = True
        log_event(logger, "grading.service_started", workers=self.pool.worker_count, capacity=self.queue.capacity)

    async def shutdown(self) -> None:
        if not self._started:
            return
        if self._reconcile_task is not None:
            self._reconcile_stop.set()
            await self._reconcile_task
            self._reconcile_task = None
        dropped = await self.queue.close()
        await self.pool.drain()
        await self.aggregator.stop()
        self._started = False
        log_event(logger, "grading.service_stopped", dropped_pending=len(dropped))

    async def wait_idle(self, poll_interval: float = 0.01) -> None:
        """Block until nothing is queued, running or waiting to be aggregated."""
        while True:
            await self.aggregator.flush()
            if self.queue.depth == 0 and self.queue.running == 0 and self.events.empty():
                return
            await asyncio.sleep(poll_interval)

    async def enqueue_grading(self, submission_id: int) -> EnqueueResult:
        submission = await self.submissions.get_submission(submission_id)
        if submission is None:
            raise ValidationFault(f"unknown submission {submission_id}")

        suites = await self.suites.get_suites(submission.task_id)
        max_points = suites.private.max_points if suites is not None else 0
        await self.aggregator.ensure_grade(submission, max_points)

        outcomes: dict[Visibility, EnqueueOutcome] = {}
        for visibility in visibility_order(self.queue.prefers_private(submission)):
            outcomes[visibility] = await self.queue.enqueue(submission, visibility)

        log_event(
            logger,
            "grading.enqueue_requested",
            submission_id=submission_id,
            generation=submission.generation,
            outcomes={visibility.value: outcome.value for visibility, outcome in outcomes.items()},
        )
        return EnqueueResult(submission_id=submission_id, generation=submission.generation, outcomes=outcomes)

    async def get_grade(self, submission_id: int) -> Grade:
        grade = await self.grades.get(submission_id)
        if grade is not None:
            return grade
        if await self.submissions.get_submission(submission_id) is None:
            raise ValidationFault(f"unknown submission {submission_id}")
        raise ValidationFault(f"submission {submission_id} has not been queued for grading")

    def scan_missing_grades(self, course_id: int, auto_enqueue: bool | None = None) -> AsyncIterator[MissingGrade]:
        return self.reconciler.scan(course_id, auto_enqueue=auto_enqueue)

    async def list_runs(self, submission_id: int) -> list[RunRecord]:
        if await self.submissions.get_submission(submission_id) is None:
            raise ValidationFault(f"unknown submission {submission_id}")
        return await self.run_records.list_for_submission(submission_id)

    async def apply_override(self, submission_id: int, tutor_id: int, points: int, feedback: str | None = None) -> Grade:
        return await self.aggregator.apply_override(submission_id, tutor_id, points, feedback)

    async def clear_override(self, submission_id: int) -> Grade:
        return await self.aggregator.clear_override(submission_id)

    async def resolve_conflict(self, submission_id: int) -> Grade:
        return await self.aggregator.resolve_conflict(submission_id)

    def summary(self) -> dict[str, object]:
        return {
            "started": self._started,
            "workers": self.pool.worker_count,
            "busy_workers": self.pool.busy,
            "queue": self.queue.snapshot(),
            "pending_events": self.events.qsize(),
            "events_applied": self.aggregator.applied,
            "events_discarded": self.aggregator.discarded,
        }
