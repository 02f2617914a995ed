"""Tests for the executor pool: retries, timeouts, artifacts, cache, coverage."""

import asyncio
from pathlib import Path
from unittest.mock import AsyncMock

import aiosqlite
import pytest
import pytest_asyncio

from conveyor.artifacts import ArtifactStore, artifact_key
from conveyor.errors import ArtifactNotFound, InfrastructureError, JobTimeoutError
from conveyor.executor import ExecutorPool, extract_coverage
from conveyor.models import (
    ArtifactKind,
    FailureReason,
    JobRun,
    JobRunStatus,
    PipelineRun,
    RuleContext,
    RuntimeResult,
)
from conveyor.pipeline.graph import JobSpec
from conveyor.runtime import CONTAINER_WORKDIR

PIPELINE_ID = "pl-test"


class FakeRuntime:
    """Records calls; ``handler(workspace, env)`` decides each result."""

    def __init__(self, handler=None, *, infra_failures: int = 0):
        self.handler = handler
        self.infra_failures = infra_failures
        self.calls: list[dict] = []

    async def run(self, image, script, mounts, timeout, *, env=None, services=()):
        self.calls.append(
            {"image": image, "script": list(script), "mounts": dict(mounts), "timeout": timeout, "env": dict(env or {})}
        )
        if self.infra_failures:
            self.infra_failures -= 1
            raise InfrastructureError("Cannot connect to the Docker daemon")
        workspace = Path(next(iter(mounts)))
        if self.handler:
            return await self.handler(workspace, env or {})
        return RuntimeResult(exit_code=0, stdout="ok\n")


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    conn = await aiosqlite.connect(str(tmp_path / "test.db"))
    conn.row_factory = aiosqlite.Row
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def store(db):
    s = ArtifactStore(db)
    await s.initialize()
    return s


@pytest.fixture
def pipeline():
    return PipelineRun(
        pipeline_id=PIPELINE_ID,
        project="demo",
        context=RuleContext(commit_sha="0123456789abcdef", branch="main"),
    )


def make_spec(**overrides) -> JobSpec:
    data = {
        "name": "build",
        "stage": "build",
        "stage_index": 1,
        "image": "alpine:3.19",
        "script": ["make"],
    }
    data.update(overrides)
    return JobSpec(**data)


def make_run(spec: JobSpec) -> JobRun:
    return JobRun(pipeline_id=PIPELINE_ID, job_name=spec.name, stage=spec.stage)


def make_pool(runtime, store, tmp_path, **overrides) -> ExecutorPool:
    kwargs = {"workspace_root": tmp_path / "workspaces", "retry_backoff": 0}
    kwargs.update(overrides)
    return ExecutorPool(runtime, store, **kwargs)


async def run_job(pool, pipeline, spec):
    on_start = AsyncMock()
    outcome = await pool.execute(pipeline, make_run(spec), spec, on_start)
    on_start.assert_awaited_once()
    return outcome


# ── Tests ────────────────────────────────────────────────────────────────────


class TestOutcomes:
    @pytest.mark.asyncio
    async def test_success(self, store, pipeline, tmp_path):
        runtime = FakeRuntime()
        pool = make_pool(runtime, store, tmp_path)
        spec = make_spec(before_script=["apk add make"])

        outcome = await run_job(pool, pipeline, spec)

        assert outcome.status == JobRunStatus.SUCCESS
        assert outcome.exit_code == 0
        assert outcome.failure_reason is None
        assert outcome.attempts == 1
        trace_key = artifact_key(PIPELINE_ID, "build", "trace")
        assert outcome.artifacts == [trace_key]
        assert await store.get(trace_key) == b"ok\n"
        assert runtime.calls[0]["script"] == ["apk add make", "make"]
        assert runtime.calls[0]["image"] == "alpine:3.19"

    @pytest.mark.asyncio
    async def test_script_failure(self, store, pipeline, tmp_path):
        async def handler(workspace, env):
            (workspace / "dist").mkdir()
            (workspace / "dist" / "app").write_text("half-built")
            return RuntimeResult(exit_code=3, stdout="compiling\n", stderr="error: boom\n")

        pool = make_pool(FakeRuntime(handler), store, tmp_path)
        spec = make_spec(artifacts={"paths": ["dist/"]})

        outcome = await run_job(pool, pipeline, spec)

        assert outcome.status == JobRunStatus.FAILED
        assert outcome.exit_code == 3
        assert outcome.failure_reason == FailureReason.SCRIPT_FAILURE
        assert await store.get(artifact_key(PIPELINE_ID, "build", "trace")) == b"compiling\nerror: boom\n"
        assert not await store.exists(artifact_key(PIPELINE_ID, "build", "archive"))

    @pytest.mark.asyncio
    async def test_timeout(self, store, pipeline, tmp_path):
        async def handler(workspace, env):
            raise JobTimeoutError("Script exceeded timeout of 5s")

        runtime = FakeRuntime(handler)
        pool = make_pool(runtime, store, tmp_path)
        outcome = await run_job(pool, pipeline, make_spec(timeout_seconds=5))

        assert outcome.status == JobRunStatus.FAILED
        assert outcome.failure_reason == FailureReason.TIMEOUT
        assert runtime.calls[0]["timeout"] == 5
        trace = await store.get(artifact_key(PIPELINE_ID, "build", "trace"))
        assert b"timeout" in trace

    @pytest.mark.asyncio
    async def test_default_timeout(self, store, pipeline, tmp_path):
        runtime = FakeRuntime()
        pool = make_pool(runtime, store, tmp_path, default_timeout=120)
        await run_job(pool, pipeline, make_spec())
        assert runtime.calls[0]["timeout"] == 120


class TestInfrastructureRetries:
    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, store, pipeline, tmp_path):
        runtime = FakeRuntime(infra_failures=1)
        pool = make_pool(runtime, store, tmp_path, max_infra_retries=2)

        outcome = await run_job(pool, pipeline, make_spec())

        assert outcome.status == JobRunStatus.SUCCESS
        assert outcome.attempts == 2
        assert len(runtime.calls) == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, store, pipeline, tmp_path):
        runtime = FakeRuntime(infra_failures=10)
        pool = make_pool(runtime, store, tmp_path, max_infra_retries=2)

        outcome = await run_job(pool, pipeline, make_spec())

        assert outcome.status == JobRunStatus.FAILED
        assert outcome.failure_reason == FailureReason.INFRASTRUCTURE
        assert outcome.attempts == 3
        assert len(runtime.calls) == 3
        assert "Docker daemon" in outcome.error_message

    @pytest.mark.asyncio
    async def test_no_retries(self, store, pipeline, tmp_path):
        runtime = FakeRuntime(infra_failures=1)
        pool = make_pool(runtime, store, tmp_path, max_infra_retries=0)
        outcome = await run_job(pool, pipeline, make_spec())
        assert outcome.failure_reason == FailureReason.INFRASTRUCTURE
        assert len(runtime.calls) == 1


class TestEnvironment:
    @pytest.mark.asyncio
    async def test_predefined_and_job_variables(self, store, pipeline, tmp_path):
        runtime = FakeRuntime()
        pool = make_pool(runtime, store, tmp_path)
        spec = make_spec(
            variables={"IMAGE_TAG": "$CI_COMMIT_REF_NAME-$CI_COMMIT_SHORT_SHA"},
            environment={"name": "staging", "url": "https://staging.example.com"},
        )

        await run_job(pool, pipeline, spec)

        env = runtime.calls[0]["env"]
        assert env["IMAGE_TAG"] == "main-01234567"
        assert env["CI_PIPELINE_ID"] == PIPELINE_ID
        assert env["CI_PROJECT_NAME"] == "demo"
        assert env["CI_PROJECT_DIR"] == CONTAINER_WORKDIR
        assert env["CI_JOB_NAME"] == "build"
        assert env["CI_JOB_STAGE"] == "build"
        assert env["CI_COMMIT_BRANCH"] == "main"
        assert env["CI_ENVIRONMENT_NAME"] == "staging"
        assert env["CI_ENVIRONMENT_URL"] == "https://staging.example.com"

    @pytest.mark.asyncio
    async def test_workspace_is_mounted_and_removed(self, store, pipeline, tmp_path):
        runtime = FakeRuntime()
        pool = make_pool(runtime, store, tmp_path)
        await run_job(pool, pipeline, make_spec())

        (host_path, container_path), = runtime.calls[0]["mounts"].items()
        assert container_path == CONTAINER_WORKDIR
        assert host_path == str(tmp_path / "workspaces" / PIPELINE_ID / "build")
        assert not Path(host_path).exists()

    @pytest.mark.asyncio
    async def test_keep_workspaces(self, store, pipeline, tmp_path):
        pool = make_pool(FakeRuntime(), store, tmp_path, keep_workspaces=True)
        await run_job(pool, pipeline, make_spec())
        assert (tmp_path / "workspaces" / PIPELINE_ID / "build").is_dir()


class TestArtifacts:
    @pytest.mark.asyncio
    async def test_artifacts_flow_downstream(self, store, pipeline, tmp_path):
        async def build(workspace, env):
            (workspace / "dist").mkdir()
            (workspace / "dist" / "app.js").write_text("console.log(1)")
            return RuntimeResult(exit_code=0)

        seen: dict[str, str] = {}

        async def deploy(workspace, env):
            seen["app"] = (workspace / "dist" / "app.js").read_text()
            return RuntimeResult(exit_code=0)

        build_spec = make_spec(artifacts={"paths": ["dist/"], "expire_in": "1 week"})
        outcome = await run_job(make_pool(FakeRuntime(build), store, tmp_path), pipeline, build_spec)
        archive_key = artifact_key(PIPELINE_ID, "build", "archive")
        assert archive_key in outcome.artifacts
        assert (await store.get_metadata(archive_key)).expires_at is not None

        deploy_spec = make_spec(name="deploy", stage="deploy", stage_index=3, artifact_sources=("build",))
        await run_job(make_pool(FakeRuntime(deploy), store, tmp_path), pipeline, deploy_spec)
        assert seen["app"] == "console.log(1)"

    @pytest.mark.asyncio
    async def test_missing_upstream_artifacts_are_skipped(self, store, pipeline, tmp_path):
        pool = make_pool(FakeRuntime(), store, tmp_path)
        spec = make_spec(name="deploy", artifact_sources=("lint",))
        outcome = await run_job(pool, pipeline, spec)
        assert outcome.status == JobRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_unmatched_paths_produce_no_archive(self, store, pipeline, tmp_path):
        pool = make_pool(FakeRuntime(), store, tmp_path)
        outcome = await run_job(pool, pipeline, make_spec(artifacts={"paths": ["dist/"]}))
        with pytest.raises(ArtifactNotFound):
            await store.get(artifact_key(PIPELINE_ID, "build", "archive"))
        assert len(outcome.artifacts) == 1

    @pytest.mark.asyncio
    async def test_reports_are_kept_on_failure(self, store, pipeline, tmp_path):
        async def handler(workspace, env):
            (workspace / "junit.xml").write_text("<testsuite failures='1'/>")
            (workspace / "coverage").mkdir()
            (workspace / "coverage" / "cobertura.xml").write_text("<coverage/>")
            return RuntimeResult(exit_code=1, stdout="1 failed\n")

        pool = make_pool(FakeRuntime(handler), store, tmp_path)
        spec = make_spec(
            name="unit",
            artifacts={
                "reports": {
                    "junit": "junit.xml",
                    "coverage_report": {"coverage_format": "cobertura", "path": "coverage/cobertura.xml"},
                }
            },
        )
        outcome = await run_job(pool, pipeline, spec)

        assert outcome.status == JobRunStatus.FAILED
        junit = await store.get_metadata(artifact_key(PIPELINE_ID, "unit", "report-junit"))
        coverage = await store.get_metadata(artifact_key(PIPELINE_ID, "unit", "report-coverage_report"))
        assert junit.kind == ArtifactKind.REPORT
        assert coverage.kind == ArtifactKind.COVERAGE


class TestCache:
    @pytest.mark.asyncio
    async def test_cache_saved_and_restored(self, store, pipeline, tmp_path):
        async def install(workspace, env):
            (workspace / "node_modules").mkdir(exist_ok=True)
            (workspace / "node_modules" / "left-pad.js").write_text("v1")
            return RuntimeResult(exit_code=0)

        seen: list[bool] = []

        async def reuse(workspace, env):
            seen.append((workspace / "node_modules" / "left-pad.js").exists())
            return RuntimeResult(exit_code=0)

        cache = {"key": "deps", "paths": ["node_modules/"]}
        await run_job(make_pool(FakeRuntime(install), store, tmp_path), pipeline, make_spec(cache=cache))
        assert await store.get_cache("deps") == {"node_modules/left-pad.js": b"v1"}

        await run_job(make_pool(FakeRuntime(reuse), store, tmp_path), pipeline, make_spec(name="test", cache=cache))
        assert seen == [True]

    @pytest.mark.asyncio
    async def test_cache_not_saved_on_failure(self, store, pipeline, tmp_path):
        async def handler(workspace, env):
            (workspace / "vendor").mkdir()
            (workspace / "vendor" / "lib").write_text("partial")
            return RuntimeResult(exit_code=1)

        pool = make_pool(FakeRuntime(handler), store, tmp_path)
        await run_job(pool, pipeline, make_spec(cache={"key": "deps", "paths": ["vendor/"]}))
        assert await store.get_cache("deps") == {}

    @pytest.mark.asyncio
    async def test_pull_policy_does_not_save(self, store, pipeline, tmp_path):
        async def handler(workspace, env):
            (workspace / "vendor").mkdir(exist_ok=True)
            (workspace / "vendor" / "new").write_text("x")
            return RuntimeResult(exit_code=0)

        await store.put_cache("deps", {"vendor/old": b"o"})
        pool = make_pool(FakeRuntime(handler), store, tmp_path)
        spec = make_spec(cache={"key": "deps", "paths": ["vendor/"], "policy": "pull"})
        await run_job(pool, pipeline, spec)
        assert await store.get_cache("deps") == {"vendor/old": b"o"}

    @pytest.mark.asyncio
    async def test_push_policy_does_not_restore(self, store, pipeline, tmp_path):
        seen: list[bool] = []

        async def handler(workspace, env):
            seen.append((workspace / "vendor" / "old").exists())
            return RuntimeResult(exit_code=0)

        await store.put_cache("deps", {"vendor/old": b"o"})
        pool = make_pool(FakeRuntime(handler), store, tmp_path)
        spec = make_spec(cache={"key": "deps", "paths": ["vendor/"], "policy": "push"})
        await run_job(pool, pipeline, spec)
        assert seen == [False]


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_worker_limit(self, store, pipeline, tmp_path):
        active = 0
        peak = 0

        async def handler(workspace, env):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.05)
            active -= 1
            return RuntimeResult(exit_code=0)

        pool = make_pool(FakeRuntime(handler), store, tmp_path, worker_limit=2)
        specs = [make_spec(name=f"job-{i}") for i in range(5)]
        outcomes = await asyncio.gather(*(run_job(pool, pipeline, s) for s in specs))

        assert all(o.status == JobRunStatus.SUCCESS for o in outcomes)
        assert peak == 2


class TestCoverage:
    @pytest.mark.asyncio
    async def test_coverage_from_output(self, store, pipeline, tmp_path):
        async def handler(workspace, env):
            return RuntimeResult(exit_code=0, stdout="Lines : 80.0%\nLines : 87.5%\n")

        pool = make_pool(FakeRuntime(handler), store, tmp_path)
        outcome = await run_job(pool, pipeline, make_spec(coverage=r"/Lines\s*:\s*(\d+\.?\d*)%/"))
        assert outcome.coverage == 87.5

    def test_pattern_without_group(self):
        assert extract_coverage(r"/Coverage: \d+%/", "Coverage: 90%") == 90.0

    def test_no_match(self):
        assert extract_coverage(r"/Lines: (\d+)%/", "no coverage here") is None

    def test_no_pattern(self):
        assert extract_coverage(None, "Lines: 50%") is None
