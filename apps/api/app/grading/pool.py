from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from app.grading.clock import Clock, SystemClock, backoff_delay
from app.grading.errors import RunRecordClosed, SandboxFault, SandboxTimeout
from app.grading.locks import LocalRunLocks, RunLockBusy, RunLocks
from app.grading.queue import GradingQueue, QueueEntry
from app.grading.records import CompletionEvent, EventKind, RunRecord, RunState, TestSuite, Visibility
from app.grading.sandbox import ExecutionSandbox, SandboxLimits, SandboxResult
from app.grading.stores import RunRecordStore, SubmissionStore, TestSuiteStore
from app.observability import get_logger, log_event

logger = get_logger("infomark.grading.pool")

# extra wall-clock allowance on top of the sandbox's own timeout
TIMEOUT_GRACE_SECONDS = 5.0


def classify_result(result: SandboxResult) -> RunState:
    if result.resource_limit_exceeded:
        return RunState.ERRORED
    if result.exit_status == 0 and result.total > 0 and result.passed == result.total:
        return RunState.SUCCEEDED
    return RunState.FAILED


class WorkerPool:
    """``worker_count`` interchangeable workers draining one :class:`GradingQueue`."""

    def __init__(
        self,
        queue: GradingQueue,
        sandbox: ExecutionSandbox,
        submissions: SubmissionStore,
        suites: TestSuiteStore,
        run_records: RunRecordStore,
        events: asyncio.Queue,
        *,
        worker_count: int,
        limits: SandboxLimits | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        backoff_max_seconds: float = 60.0,
        timeout_grace_seconds: float = TIMEOUT_GRACE_SECONDS,
        locks: RunLocks | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.queue = queue
        self.sandbox = sandbox
        self.submissions = submissions
        self.suites = suites
        self.run_records = run_records
        self.events = events
        self.worker_count = max(int(worker_count), 1)
        self.limits = limits or SandboxLimits()
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.timeout_grace_seconds = timeout_grace_seconds
        self.locks = locks or LocalRunLocks()
        self.clock = clock or SystemClock()
        self._tasks: list[asyncio.Task] = []
        self._busy = 0

    @property
    def busy(self) -> int:
        return self._busy

    def start(self) -> None:
        if self._tasks:
            return
        for index in range(self.worker_count):
            self._tasks.append(asyncio.create_task(self._worker_loop(index), name=f"grading-worker-{index}"))
        log_event(logger, "grading.pool_started", workers=self.worker_count)

    async def drain(self) -> None:
        """Wait for in-flight runs after the queue was closed."""
        if not self._tasks:
            return
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        log_event(logger, "grading.pool_drained")

    async def _worker_loop(self, index: int) -> None:
        while True:
            entry = await self.queue.claim()
            if entry is None:
                return
            self._busy += 1
            try:
                await self.process(entry)
            except Exception:
                logger.exception(
                    "grading.worker_crashed",
                    extra={"extra_data": {"worker": index, "submission_id": entry.submission.id}},
                )
            finally:
                self._busy -= 1
                await self.queue.release(entry)

    def _publish(self, kind: EventKind, record: RunRecord, **fields: object) -> None:
        self.events.put_nowait(
            CompletionEvent(
                kind=kind,
                submission_id=record.submission_id,
                visibility=record.visibility,
                attempt=record.attempt,
                generation=record.generation,
                **fields,
            )
        )

    async def _abandon(self, entry: QueueEntry, record: RunRecord) -> None:
        reason = entry.abandon_reason or "abandoned"
        await self.run_records.abandon(record, self.clock.now(), reason)
        log_event(
            logger,
            "grading.run_abandoned",
            submission_id=record.submission_id,
            visibility=record.visibility.value,
            attempt=record.attempt,
            reason=reason,
        )

    async def _finish(
        self,
        record: RunRecord,
        state: RunState,
        *,
        log: str,
        exit_status: int | None,
        points: int | None,
        error: str | None = None,
        record_log: str | None = None,
    ) -> None:
        record = await self.run_records.finish(
            record,
            state,
            self.clock.now(),
            log=log if record_log is None else record_log,
            exit_status=exit_status,
            points_awarded=points,
            error=error,
        )
        self._publish(EventKind.FINISHED, record, run_state=state, log=log, points=points, exit_status=exit_status)
        log_event(
            logger,
            "grading.run_finished",
            submission_id=record.submission_id,
            visibility=record.visibility.value,
            attempt=record.attempt,
            state=state.value,
            points=points,
        )

    async def process(self, entry: QueueEntry) -> None:
        try:
            async with self.locks.hold(entry.submission.id, entry.visibility):
                await self._run_entry(entry)
        except RunLockBusy as exc:
            entry.abandon(str(exc))
            await self._abandon(entry, entry.record)
        except RunRecordClosed as exc:
            # closed elsewhere (stale scan, other process); the reconciler re-drives the track
            entry.abandon(str(exc))
            log_event(
                logger,
                "grading.run_record_closed",
                level=logging.WARNING,
                submission_id=entry.submission.id,
                visibility=entry.visibility.value,
                error=str(exc),
            )

    async def _execute(self, code_text: str, suite: TestSuite, run_name: str) -> SandboxResult:
        """Run the sandbox in a thread; on timeout kill it and wait until the thread returns."""
        task = asyncio.ensure_future(
            asyncio.to_thread(self.sandbox.run, code_text, suite, self.limits, run_name=run_name)
        )
        task.add_done_callback(_consume_outcome)
        try:
            return await asyncio.wait_for(
                asyncio.shield(task), timeout=self.limits.timeout_seconds + self.timeout_grace_seconds
            )
        except asyncio.TimeoutError:
            pass

        await asyncio.to_thread(self.sandbox.cancel, run_name)
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.timeout_grace_seconds)
        except asyncio.TimeoutError:
            # still executing; a retry now would run the same track twice
            raise SandboxFault(f"sandbox run {run_name} did not stop after cancel", retryable=False) from None
        except SandboxFault:
            pass
        raise SandboxTimeout(f"sandbox run {run_name} exceeded {self.limits.timeout_seconds}s")

    async def _run_entry(self, entry: QueueEntry) -> None:
        record = entry.record
        if entry.abandoned:
            await self._abandon(entry, record)
            return

        submission = await self.submissions.get_submission(entry.submission.id)
        if submission is None or submission.generation != entry.generation:
            entry.abandon("submission changed before the run started")
            await self._abandon(entry, record)
            return

        suites = await self.suites.get_suites(submission.task_id)
        if suites is None:
            record = await self.run_records.mark_running(record, self.clock.now())
            self._publish(EventKind.STARTED, record)
            message = f"no test suites configured for task {submission.task_id}"
            await self._finish(record, RunState.ERRORED, log=message, exit_status=None, points=0, error=message)
            return
        suite = suites.for_visibility(entry.visibility)

        tries = 0
        while True:
            tries += 1
            record = await self.run_records.mark_running(record, self.clock.now())
            self._publish(EventKind.STARTED, record)

            run_name = f"grade-{record.submission_id}-{record.visibility.value}-{record.attempt}-{uuid4().hex[:8]}"
            try:
                result = await self._execute(submission.code_text, suite, run_name)
            except SandboxFault as fault:
                if entry.abandoned:
                    await self._abandon(entry, record)
                    return
                if fault.retryable and tries < self.max_attempts:
                    await self.run_records.finish(
                        record,
                        RunState.ERRORED,
                        self.clock.now(),
                        log=str(fault),
                        exit_status=fault.exit_status,
                        error=f"{type(fault).__name__}: {fault} (retrying)",
                    )
                    delay = backoff_delay(tries, self.backoff_seconds, self.backoff_max_seconds)
                    log_event(
                        logger,
                        "grading.transient_failure",
                        level=logging.WARNING,
                        submission_id=record.submission_id,
                        visibility=record.visibility.value,
                        attempt=record.attempt,
                        tries=tries,
                        max_attempts=self.max_attempts,
                        retry_in=delay,
                        error=str(fault),
                    )
                    await self.clock.sleep(delay)
                    if entry.abandoned:
                        return
                    record = await self.run_records.create_pending(
                        record.submission_id, record.visibility, record.generation, self.clock.now()
                    )
                    continue

                await self._finish(
                    record,
                    RunState.ERRORED,
                    log=f"execution error: {fault}",
                    exit_status=fault.exit_status,
                    points=0,
                    error=f"{type(fault).__name__}: {fault}",
                )
                return

            if entry.abandoned:
                await self._abandon(entry, record)
                return

            state = classify_result(result)
            points = result.score if state != RunState.ERRORED else 0
            await self._finish(
                record,
                state,
                log=result.log,
                exit_status=result.exit_status,
                points=points,
                record_log=f"{result.log}\n\n{result.detail}" if result.detail else None,
            )
            return


def _consume_outcome(task: asyncio.Future) -> None:
    # a thread that outlived its timeout still finishes; mark its outcome as retrieved
    if not task.cancelled():
        task.exception()


def visibility_order(private_first: bool) -> tuple[Visibility, Visibility]:
    if private_first:
        return Visibility.PRIVATE, Visibility.PUBLIC
    return Visibility.PUBLIC, Visibility.PRIVATE
