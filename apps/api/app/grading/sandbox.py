from __future__ import annotations

import hashlib
import io
import json
import os
import shutil
import stat
import subprocess
import tempfile
import time
from dataclasses import dataclass, replace
from os.path import commonpath
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4
from zipfile import BadZipFile, ZipFile

import yaml

from app.config import (
    BUNDLE_MAX_ENTRIES,
    BUNDLE_MAX_UNCOMPRESSED_BYTES,
    GRADER_CPU_LIMIT,
    GRADER_IMAGE,
    GRADER_MEMORY_LIMIT,
    GRADER_PIDS_LIMIT,
    GRADER_TIMEOUT_SECONDS,
    MAX_LOG_BYTES,
)
from app.grading.errors import SandboxFault, SandboxTimeout
from app.grading.records import TestSuite, Visibility
from app.observability import get_logger, log_event
from app.storage.base import BundleStorage

logger = get_logger("infomark.grading.sandbox")

# docker reports SIGKILL (OOM killer, pids limit) as 128 + 9
RESOURCE_LIMIT_EXIT_CODES = frozenset({137})
FAILURE_MESSAGE_LIMIT = 500


@dataclass(frozen=True)
class SandboxLimits:
    timeout_seconds: int = GRADER_TIMEOUT_SECONDS
    memory: str = GRADER_MEMORY_LIMIT
    cpus: str = GRADER_CPU_LIMIT
    pids_limit: int = GRADER_PIDS_LIMIT
    max_log_bytes: int = MAX_LOG_BYTES


@dataclass(frozen=True)
class SandboxResult:
    exit_status: int
    log: str
    score: int
    passed: int
    total: int
    resource_limit_exceeded: bool = False
    duration_ms: int = 0
    # raw runner output of private suites; stored on the run record only
    detail: str = ""


class ExecutionSandbox(Protocol):
    def run(self, code_text: str, suite: TestSuite, limits: SandboxLimits, *, run_name: str | None = None) -> SandboxResult:
        ...

    def cancel(self, run_name: str) -> None:
        ...


def truncate_output(text: str, limit: int = MAX_LOG_BYTES) -> str:
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= limit:
        return text
    clipped = encoded[:limit].decode("utf-8", errors="ignore")
    return f"{clipped}\n...<truncated>"


def _strip_hidden_lines(text: str) -> str:
    lines = text.splitlines()
    visible = [line for line in lines if "hidden" not in line.lower()]
    return "\n".join(visible)


def safe_extract_zip_bytes(zip_bytes: bytes, destination: Path) -> None:
    destination = destination.resolve()
    destination.mkdir(parents=True, exist_ok=True)

    with ZipFile(io.BytesIO(zip_bytes)) as zf:
        members = zf.infolist()
        if len(members) > BUNDLE_MAX_ENTRIES:
            raise ValueError("bundle has too many files")

        total_uncompressed = 0
        for member in members:
            total_uncompressed += int(member.file_size)
            if total_uncompressed > BUNDLE_MAX_UNCOMPRESSED_BYTES:
                raise ValueError("bundle uncompressed size is too large")

            mode = (member.external_attr >> 16) & 0o777777
            if stat.S_ISLNK(mode):
                raise ValueError(f"symlink entry is not allowed: {member.filename}")

        for member in members:
            member_name = member.filename
            if not member_name:
                continue

            target = (destination / member_name).resolve()
            if commonpath([str(target), str(destination)]) != str(destination):
                raise ValueError(f"Zip path traversal detected: {member_name}")

            if member.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(member, "r") as src, open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)


def load_rubric(workdir: Path, max_timeout: int) -> tuple[dict[str, int], int]:
    rubric_path = workdir / "rubric.yaml"
    if not rubric_path.exists():
        return {}, max_timeout

    data = yaml.safe_load(rubric_path.read_text(encoding="utf-8")) or {}
    weights_raw = data.get("weights", {})
    weights: dict[str, int] = {}
    if isinstance(weights_raw, dict):
        for nodeid, value in weights_raw.items():
            try:
                weights[str(nodeid)] = int(value)
            except (TypeError, ValueError):
                continue

    timeout_raw = data.get("time_limit_seconds", max_timeout)
    try:
        timeout = int(timeout_raw)
    except (TypeError, ValueError):
        timeout = max_timeout

    timeout = max(1, min(timeout, max_timeout))
    return weights, timeout


def _failure_message(test: dict[str, Any]) -> str:
    longrepr = test.get("longrepr")
    if not longrepr:
        for phase in ("call", "setup", "teardown"):
            details = test.get(phase)
            if isinstance(details, dict) and details.get("longrepr"):
                longrepr = details["longrepr"]
                break
    return truncate_output(str(longrepr or ""), FAILURE_MESSAGE_LIMIT)


def score_suite_report(
    report: dict[str, Any],
    suite: TestSuite,
    weights: dict[str, int],
    exit_code: int,
    stdout: str = "",
    stderr: str = "",
    max_log_bytes: int = MAX_LOG_BYTES,
) -> SandboxResult:
    """Weighted score and student-facing log for one suite's pytest json report.

    Private suites only report counts; failing case names and assertion
    messages stay out of the log.
    """
    tests = [t for t in report.get("tests", []) if isinstance(t, dict)]

    total_weight = 0
    passed_weight = 0
    for test in tests:
        weight = max(int(weights.get(str(test.get("nodeid", "")), 1)), 0)
        total_weight += weight
        if test.get("outcome") == "passed":
            passed_weight += weight

    if total_weight <= 0:
        score = 0
    else:
        score = round(suite.max_points * (passed_weight / total_weight))

    passed = sum(1 for t in tests if t.get("outcome") == "passed")
    lines = [
        f"[{suite.visibility.value}] passed {passed}/{len(tests)} tests, "
        f"score {score}/{suite.max_points}, exit={exit_code}"
    ]
    failed = [t for t in tests if t.get("outcome") != "passed"]
    if suite.visibility == Visibility.PUBLIC:
        for test in failed:
            lines.append(f"{str(test.get('outcome', 'failed')).upper()} {test.get('nodeid')}: {_failure_message(test)}")
    elif failed:
        lines.append(f"failed: {len(failed)}")

    merged_output = f"[stdout]\n{stdout}\n\n[stderr]\n{stderr}".strip()
    if suite.visibility == Visibility.PRIVATE:
        return SandboxResult(
            exit_status=exit_code,
            log=truncate_output("\n".join(lines), max_log_bytes),
            score=score,
            passed=passed,
            total=len(tests),
            detail=truncate_output(merged_output, max_log_bytes),
        )
    log = truncate_output("\n".join(lines) + "\n\n" + merged_output, max_log_bytes)
    return SandboxResult(
        exit_status=exit_code,
        log=log,
        score=score,
        passed=passed,
        total=len(tests),
    )


def _resolve_docker_bin() -> str | None:
    docker_bin = os.getenv("DOCKER_BIN") or shutil.which("docker")
    if docker_bin:
        return docker_bin
    for candidate in ("/usr/bin/docker", "/usr/local/bin/docker"):
        if Path(candidate).exists():
            return candidate
    return None


class DockerSandbox:
    """Runs one suite of a task bundle against a solution in a locked-down container."""

    def __init__(self, storage: BundleStorage, image: str = GRADER_IMAGE) -> None:
        self.storage = storage
        self.image = image

    def _docker_command(self, docker_bin: str, workdir: Path, container_name: str, suite: TestSuite, limits: SandboxLimits) -> list[str]:
        return [
            docker_bin,
            "run",
            "--rm",
            "--name",
            container_name,
            "--network",
            "none",
            "--read-only",
            "--security-opt",
            "no-new-privileges=true",
            "--cap-drop",
            "ALL",
            "--pids-limit",
            str(limits.pids_limit),
            "--cpus",
            limits.cpus,
            "--memory",
            limits.memory,
            "--tmpfs",
            "/tmp:rw,noexec,nosuid,size=64m",
            "-e",
            "PYTHONDONTWRITEBYTECODE=1",
            "-e",
            "PYTHONPATH=/work",
            "-v",
            f"{workdir.resolve()}:/work:rw",
            self.image,
            "sh",
            "-lc",
            f"cd /work && pytest -q -p no:cacheprovider --json-report --json-report-file=/work/report.json {suite.test_target}",
        ]

    def _kill_container(self, docker_bin: str, container_name: str) -> None:
        try:
            subprocess.run(
                [docker_bin, "rm", "-f", container_name],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=10,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            log_event(logger, "sandbox.kill_failed", container=container_name, error=str(exc))

    def cancel(self, run_name: str) -> None:
        docker_bin = _resolve_docker_bin()
        if docker_bin:
            self._kill_container(docker_bin, run_name)

    def run(self, code_text: str, suite: TestSuite, limits: SandboxLimits, *, run_name: str | None = None) -> SandboxResult:
        if not suite.bundle_key:
            raise SandboxFault(f"test bundle not configured for task {suite.task_id}", retryable=False)

        try:
            bundle_bytes = self.storage.read_bundle(suite.bundle_key)
        except (OSError, ValueError) as exc:
            raise SandboxFault(f"bundle read failed: {exc}") from exc

        if suite.bundle_sha256:
            digest = hashlib.sha256(bundle_bytes).hexdigest()
            if digest != suite.bundle_sha256:
                raise SandboxFault("bundle sha256 mismatch", retryable=False)

        with tempfile.TemporaryDirectory(prefix=f"task-{suite.task_id}-{suite.visibility.value}-") as tmp_dir:
            workdir = Path(tmp_dir)
            try:
                workdir.chmod(0o777)
            except OSError:
                # Best-effort permission widening for container mounts on CI runners.
                pass

            try:
                safe_extract_zip_bytes(bundle_bytes, workdir)
            except (ValueError, BadZipFile) as exc:
                raise SandboxFault(f"bundle extract failed: {exc}", retryable=False) from exc

            starter_dir = workdir / "starter"
            if starter_dir.is_dir():
                for src in starter_dir.rglob("*"):
                    if src.is_dir():
                        continue
                    dst = workdir / src.relative_to(starter_dir)
                    dst.parent.mkdir(parents=True, exist_ok=True)
                    shutil.copy2(src, dst)

            (workdir / "solution.py").write_text(code_text, encoding="utf-8")

            if not (workdir / suite.test_target).exists():
                raise SandboxFault(f"bundle missing test target: {suite.test_target}", retryable=False)

            weights, timeout_seconds = load_rubric(workdir, limits.timeout_seconds)

            docker_bin = _resolve_docker_bin()
            if not docker_bin:
                raise SandboxFault("docker binary not found")

            container_name = run_name or f"grade-{suite.visibility.value}-{uuid4().hex[:12]}"
            cmd = self._docker_command(docker_bin, workdir, container_name, suite, limits)
            log_event(logger, "sandbox.run", container=container_name, task_id=suite.task_id, target=suite.test_target)
            started_at = time.monotonic()

            try:
                completed = subprocess.run(
                    cmd,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    timeout=timeout_seconds,
                    check=False,
                )
            except subprocess.TimeoutExpired as exc:
                self._kill_container(docker_bin, container_name)
                raise SandboxTimeout(f"suite exceeded {timeout_seconds}s wall-clock limit") from exc
            except OSError as exc:
                raise SandboxFault(f"docker run failed: {exc}") from exc

            duration_ms = int((time.monotonic() - started_at) * 1000)
            stdout = truncate_output(_strip_hidden_lines((completed.stdout or "").strip()), limits.max_log_bytes)
            stderr = truncate_output(_strip_hidden_lines((completed.stderr or "").strip()), limits.max_log_bytes)

            private = suite.visibility == Visibility.PRIVATE
            if completed.returncode in RESOURCE_LIMIT_EXIT_CODES:
                headline = (
                    f"[{suite.visibility.value}] killed: resource limit exceeded "
                    f"(memory={limits.memory}, pids={limits.pids_limit})"
                )
                return SandboxResult(
                    exit_status=completed.returncode,
                    log=headline if private else truncate_output(f"{headline}\n\n[stderr]\n{stderr}", limits.max_log_bytes),
                    score=0,
                    passed=0,
                    total=0,
                    resource_limit_exceeded=True,
                    duration_ms=duration_ms,
                    detail=stderr if private else "",
                )

            report_path = workdir / "report.json"
            if not report_path.exists():
                message = f"no test report produced: exit={completed.returncode}"
                raise SandboxFault(
                    message if private else f"{message} stderr={stderr}",
                    exit_status=completed.returncode,
                )

            try:
                report = json.loads(report_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                raise SandboxFault(f"failed to parse report: {exc}", exit_status=completed.returncode) from exc

            result = score_suite_report(
                report,
                suite,
                weights,
                completed.returncode,
                stdout=stdout,
                stderr=stderr,
                max_log_bytes=limits.max_log_bytes,
            )
            return replace(result, duration_ms=duration_ms)
