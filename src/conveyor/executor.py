"""Executor pool — runs one job run end to end.

For each job the pool:

1. Waits for a free worker slot (bounded by ``worker_limit``).
2. Prepares a fresh workspace and restores dependency artifacts and cache.
3. Runs ``before_script + script`` through the container runtime, retrying
   infrastructure errors with exponential backoff.
4. Stores the trace, declared artifact paths and reports, extracts coverage,
   and saves the cache.
5. Classifies the result as a :class:`JobOutcome`.

Cancellation propagates as ``asyncio.CancelledError``; the runtime kills
the running container on the way out.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import shutil
import tarfile
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from conveyor.artifacts import ArtifactStore, artifact_key
from conveyor.config import CachePolicy, compile_coverage, expand_variables
from conveyor.errors import ArtifactNotFound, InfrastructureError, JobTimeoutError
from conveyor.models import (
    ArtifactKind,
    FailureReason,
    JobOutcome,
    JobRun,
    JobRunStatus,
    PipelineRun,
    RuntimeResult,
)
from conveyor.runtime import CONTAINER_WORKDIR, ContainerRuntime

if TYPE_CHECKING:
    from conveyor.pipeline.graph import JobSpec

logger = logging.getLogger(__name__)

ARCHIVE = "archive"
TRACE = "trace"
COVERAGE_REPORTS = frozenset({"coverage_report", "cobertura"})

StartCallback = Callable[[], Awaitable[None]]


class JobExecutor(Protocol):
    """What the scheduler needs from an executor."""

    async def execute(
        self,
        pipeline: PipelineRun,
        run: JobRun,
        job: JobSpec,
        on_start: StartCallback,
    ) -> JobOutcome:
        """Run the job. Calls ``on_start`` once it holds a worker slot."""
        ...


class ExecutorPool:
    """Bounded pool of job executions over one container runtime."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        store: ArtifactStore,
        *,
        workspace_root: Path,
        worker_limit: int = 4,
        default_timeout: float | None = 3600,
        max_infra_retries: int = 2,
        retry_backoff: float = 1.0,
        keep_workspaces: bool = False,
    ):
        self.runtime = runtime
        self.store = store
        self.workspace_root = workspace_root
        self.worker_limit = worker_limit
        self.default_timeout = default_timeout
        self.max_infra_retries = max_infra_retries
        self.retry_backoff = retry_backoff
        self.keep_workspaces = keep_workspaces
        self._slots = asyncio.Semaphore(worker_limit)

    async def execute(
        self,
        pipeline: PipelineRun,
        run: JobRun,
        job: JobSpec,
        on_start: StartCallback,
    ) -> JobOutcome:
        async with self._slots:
            await on_start()
            workspace = self.workspace_root / pipeline.pipeline_id / job.name
            try:
                return await self._run_job(pipeline, job, workspace)
            finally:
                if not self.keep_workspaces:
                    await asyncio.to_thread(shutil.rmtree, workspace, True)

    async def _run_job(self, pipeline: PipelineRun, job: JobSpec, workspace: Path) -> JobOutcome:
        await asyncio.to_thread(_reset_dir, workspace)
        await self._restore_artifacts(pipeline, job, workspace)
        await self._restore_cache(job, workspace)

        env = self._job_env(pipeline, job)
        timeout = job.timeout_seconds or self.default_timeout
        expiry = job.artifacts.expiry() if job.artifacts else None

        try:
            result, attempts = await self._run_with_retries(job, workspace, env, timeout)
        except InfrastructureError as exc:
            logger.error("Job '%s' could not acquire an environment: %s", job.name, exc)
            trace = await self._store_trace(pipeline, job, f"ERROR: {exc}\n", expiry)
            return JobOutcome(
                status=JobRunStatus.FAILED,
                failure_reason=FailureReason.INFRASTRUCTURE,
                error_message=str(exc),
                attempts=self.max_infra_retries + 1,
                artifacts=[trace],
            )
        except JobTimeoutError as exc:
            logger.warning("Job '%s' timed out: %s", job.name, exc)
            trace = await self._store_trace(pipeline, job, f"ERROR: {exc}\n", expiry)
            return JobOutcome(
                status=JobRunStatus.FAILED,
                failure_reason=FailureReason.TIMEOUT,
                error_message=str(exc),
                artifacts=[trace],
            )

        output = result.stdout + result.stderr
        produced = [await self._store_trace(pipeline, job, output, expiry)]
        success = result.exit_code == 0

        if success:
            archive = await self._store_paths(pipeline, job, workspace, expiry)
            if archive:
                produced.append(archive)
        produced.extend(await self._store_reports(pipeline, job, workspace, expiry))

        if success:
            await self._save_cache(job, workspace)

        return JobOutcome(
            status=JobRunStatus.SUCCESS if success else JobRunStatus.FAILED,
            exit_code=result.exit_code,
            failure_reason=None if success else FailureReason.SCRIPT_FAILURE,
            error_message=None if success else f"Script exited with code {result.exit_code}",
            attempts=attempts,
            coverage=extract_coverage(job.coverage, output),
            artifacts=produced,
        )

    async def _run_with_retries(
        self,
        job: JobSpec,
        workspace: Path,
        env: dict[str, str],
        timeout: float | None,
    ) -> tuple[RuntimeResult, int]:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await self.runtime.run(
                    job.image,
                    job.full_script,
                    {str(workspace): CONTAINER_WORKDIR},
                    timeout,
                    env=env,
                    services=job.services,
                )
                return result, attempt
            except InfrastructureError as exc:
                if attempt > self.max_infra_retries:
                    raise
                wait = self.retry_backoff * 2 ** (attempt - 1)
                logger.warning(
                    "Job '%s' infrastructure error (attempt %d/%d): %s; retrying in %.1fs",
                    job.name,
                    attempt,
                    self.max_infra_retries + 1,
                    exc,
                    wait,
                )
                await asyncio.sleep(wait)

    def _job_env(self, pipeline: PipelineRun, job: JobSpec) -> dict[str, str]:
        predefined = {
            **pipeline.context.all_variables(),
            "CI_PIPELINE_ID": pipeline.pipeline_id,
            "CI_PROJECT_NAME": pipeline.project,
            "CI_PROJECT_DIR": CONTAINER_WORKDIR,
            "CI_JOB_NAME": job.name,
            "CI_JOB_STAGE": job.stage,
        }
        if job.environment:
            predefined["CI_ENVIRONMENT_NAME"] = job.environment.name
            if job.environment.url:
                predefined["CI_ENVIRONMENT_URL"] = job.environment.url
        expanded = {k: expand_variables(v, predefined) for k, v in job.variables.items()}
        return {**expanded, **predefined}

    # ── Artifacts ────────────────────────────────────────────────────────────

    async def _restore_artifacts(self, pipeline: PipelineRun, job: JobSpec, workspace: Path) -> None:
        for source in job.artifact_sources:
            key = artifact_key(pipeline.pipeline_id, source, ARCHIVE)
            try:
                blob = await self.store.get(key)
            except ArtifactNotFound:
                logger.debug("Job '%s': no artifacts from '%s'", job.name, source)
                continue
            await asyncio.to_thread(_unpack, blob, workspace)
            logger.debug("Job '%s': restored artifacts from '%s'", job.name, source)

    async def _store_trace(
        self, pipeline: PipelineRun, job: JobSpec, output: str, expiry
    ) -> str:
        key = artifact_key(pipeline.pipeline_id, job.name, TRACE)
        await self.store.put(
            key,
            output.encode(),
            expiry,
            kind=ArtifactKind.TRACE,
            pipeline_id=pipeline.pipeline_id,
            job_name=job.name,
            name=TRACE,
        )
        return key

    async def _store_paths(
        self, pipeline: PipelineRun, job: JobSpec, workspace: Path, expiry
    ) -> str | None:
        if not job.artifacts or not job.artifacts.paths:
            return None
        blob = await asyncio.to_thread(_pack, workspace, job.artifacts.paths)
        if blob is None:
            logger.warning("Job '%s': no files matched artifact paths %s", job.name, job.artifacts.paths)
            return None
        key = artifact_key(pipeline.pipeline_id, job.name, ARCHIVE)
        await self.store.put(
            key,
            blob,
            expiry,
            kind=ArtifactKind.GENERIC,
            pipeline_id=pipeline.pipeline_id,
            job_name=job.name,
            name=ARCHIVE,
        )
        return key

    async def _store_reports(
        self, pipeline: PipelineRun, job: JobSpec, workspace: Path, expiry
    ) -> list[str]:
        if not job.artifacts:
            return []
        keys: list[str] = []
        for report, patterns in job.artifacts.reports.items():
            blob = await asyncio.to_thread(_pack, workspace, patterns)
            if blob is None:
                logger.warning("Job '%s': %s report not found (%s)", job.name, report, patterns)
                continue
            name = f"report-{report}"
            key = artifact_key(pipeline.pipeline_id, job.name, name)
            await self.store.put(
                key,
                blob,
                expiry,
                kind=ArtifactKind.COVERAGE if report in COVERAGE_REPORTS else ArtifactKind.REPORT,
                pipeline_id=pipeline.pipeline_id,
                job_name=job.name,
                name=name,
            )
            keys.append(key)
        return keys

    # ── Cache ────────────────────────────────────────────────────────────────

    async def _restore_cache(self, job: JobSpec, workspace: Path) -> None:
        if not job.cache or not job.cache.paths or job.cache.policy == CachePolicy.PUSH:
            return
        files = await self.store.get_cache(job.cache.key)
        if files:
            await asyncio.to_thread(_write_files, workspace, files)
            logger.debug("Job '%s': restored %d cached files", job.name, len(files))

    async def _save_cache(self, job: JobSpec, workspace: Path) -> None:
        if not job.cache or not job.cache.paths or job.cache.policy == CachePolicy.PULL:
            return
        files = await asyncio.to_thread(_read_files, workspace, job.cache.paths)
        if not files and not job.cache.reset:
            return
        await self.store.put_cache(job.cache.key, files, reset=job.cache.reset)


# ── Helpers ──────────────────────────────────────────────────────────────────

_NUMBER = re.compile(r"\d+(?:\.\d+)?")


def extract_coverage(pattern: str | None, output: str) -> float | None:
    """Last coverage percentage in ``output`` matched by ``pattern``."""
    if not pattern:
        return None
    value = None
    for match in compile_coverage(pattern).finditer(output):
        text = match.group(1) if match.groups() else match.group(0)
        number = _NUMBER.search(text or "")
        if number:
            value = float(number.group())
    return value


def _reset_dir(path: Path) -> None:
    shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def _matches(workspace: Path, patterns: list[str]) -> list[Path]:
    found: dict[Path, None] = {}
    for pattern in patterns:
        pattern = pattern.rstrip("/") or "."
        for path in sorted(workspace.glob(pattern)):
            found[path] = None
    return list(found)


def _pack(workspace: Path, patterns: list[str]) -> bytes | None:
    """Tar+gzip everything matching ``patterns``; None when nothing matched."""
    paths = _matches(workspace, patterns)
    if not paths:
        return None
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for path in paths:
            tar.add(path, arcname=str(path.relative_to(workspace)))
    return buf.getvalue()


def _unpack(blob: bytes, workspace: Path) -> None:
    with tarfile.open(fileobj=io.BytesIO(blob), mode="r:gz") as tar:
        tar.extractall(workspace, filter="data")


def _read_files(workspace: Path, patterns: list[str]) -> dict[str, bytes]:
    files: dict[str, bytes] = {}
    for path in _matches(workspace, patterns):
        candidates = sorted(path.rglob("*")) if path.is_dir() else [path]
        for candidate in candidates:
            if candidate.is_file():
                files[candidate.relative_to(workspace).as_posix()] = candidate.read_bytes()
    return files


def _write_files(workspace: Path, files: dict[str, bytes]) -> None:
    root = workspace.resolve()
    for rel, content in files.items():
        target = (workspace / rel).resolve()
        if root not in target.parents:
            logger.warning("Skipping cache entry outside workspace: %s", rel)
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)
