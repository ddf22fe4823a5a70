from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import (
    GRADER_CPU_LIMIT,
    GRADER_MEMORY_LIMIT,
    GRADER_PIDS_LIMIT,
    GRADING_LOCK_BACKEND,
    GradingSettings,
)
from app.db import AsyncSessionLocal
from app.grading.locks import LocalRunLocks, RedisRunLocks, RunLocks
from app.grading.pool import TIMEOUT_GRACE_SECONDS
from app.grading.sandbox import DockerSandbox, SandboxLimits
from app.grading.service import GradingService
from app.grading.sql_stores import SqlGradeStore, SqlRunRecordStore, SqlSubmissionStore, SqlTestSuiteStore
from app.observability import get_logger, log_event
from app.storage import get_storage

logger = get_logger("infomark.runtime")


def build_run_locks(settings: GradingSettings, backend: str = GRADING_LOCK_BACKEND) -> RunLocks:
    if backend == "redis":
        from app.redis_client import redis_conn

        # a lock must outlive every retry of one entry
        per_try = settings.run_timeout_seconds + TIMEOUT_GRACE_SECONDS + settings.backoff_max_seconds
        return RedisRunLocks(redis_conn, ttl_seconds=per_try * settings.max_attempts)
    if backend != "local":
        log_event(logger, "grading.unknown_lock_backend", backend=backend)
    return LocalRunLocks()


def build_grading_service(
    session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
    settings: GradingSettings | None = None,
) -> GradingService:
    settings = settings or GradingSettings()
    return GradingService(
        submissions=SqlSubmissionStore(session_factory),
        suites=SqlTestSuiteStore(session_factory),
        grades=SqlGradeStore(session_factory),
        run_records=SqlRunRecordStore(session_factory),
        sandbox=DockerSandbox(get_storage()),
        settings=settings,
        limits=SandboxLimits(
            timeout_seconds=settings.run_timeout_seconds,
            memory=GRADER_MEMORY_LIMIT,
            cpus=GRADER_CPU_LIMIT,
            pids_limit=GRADER_PIDS_LIMIT,
            max_log_bytes=settings.max_log_bytes,
        ),
        locks=build_run_locks(settings),
    )
