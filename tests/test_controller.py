"""Tests for the pipeline controller: end-to-end runs over a scripted executor."""

from __future__ import annotations

import aiosqlite
import pytest
import pytest_asyncio

from conveyor.errors import ConveyorError, NotificationError, UnknownJobError, ValidationError
from conveyor.models import (
    FailureReason,
    JobRunStatus,
    PipelineStatus,
    RuleContext,
)
from conveyor.pipeline import PipelineController, RunRegistry


class RecordingNotifier:
    def __init__(self):
        self.calls: list[tuple[PipelineStatus, dict]] = []

    async def send(self, status, metadata):
        self.calls.append((status, metadata))


class BrokenNotifier:
    async def send(self, status, metadata):
        raise NotificationError("webhook returned 502")


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db(tmp_path):
    async with aiosqlite.connect(str(tmp_path / "test_controller.db")) as conn:
        conn.row_factory = aiosqlite.Row
        yield conn


@pytest_asyncio.fixture
async def registry(db):
    reg = RunRegistry(db)
    await reg.initialize()
    return reg


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_controller(executor, registry, notifier):
    def _make(config, context=None, **kwargs) -> PipelineController:
        kwargs.setdefault("registry", registry)
        kwargs.setdefault("notifiers", [notifier])
        return PipelineController(
            config,
            context or RuleContext(commit_sha="9e8d7c6b5a4f", branch="main"),
            executor,
            project="shop",
            **kwargs,
        )

    return _make


def three_stage_jobs(**deploy) -> dict:
    return {
        "compile": {"stage": "build"},
        "unit": {"stage": "test"},
        "ship": {"stage": "deploy", **deploy},
    }


# ── Runs ─────────────────────────────────────────────────────────────────────


class TestPipelineRuns:
    @pytest.mark.asyncio
    async def test_allowed_failure_still_closes_stage(
        self, make_config, make_controller, executor, registry, notifier
    ):
        config = make_config(
            {
                "compile": {"stage": "build"},
                "t1": {"stage": "test", "allow_failure": True},
                "t2": {"stage": "test"},
                "ship": {"stage": "deploy"},
            }
        )
        executor.fail("t1")
        controller = make_controller(config)

        status = await controller.run()

        assert status == PipelineStatus.SUCCESS
        assert controller.runs["t1"].status == JobRunStatus.FAILED
        assert controller.runs["ship"].status == JobRunStatus.SUCCESS
        assert controller.scheduler.stage_closed("test")

        stored = await registry.get_pipeline_run(controller.pipeline_id)
        assert stored.status == PipelineStatus.SUCCESS
        assert stored.stages == ["build", "test", "deploy"]
        assert stored.finished_at is not None
        assert [s for s, _ in notifier.calls] == [PipelineStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_failed_build_skips_tests(
        self, make_config, make_controller, executor, registry, notifier
    ):
        config = make_config(
            {
                "compile": {"stage": "build"},
                "unit": {"stage": "test"},
                "integration": {"stage": "test"},
            },
            stages=("build", "test"),
        )
        executor.fail("compile")
        controller = make_controller(config)

        status = await controller.run()

        assert status == PipelineStatus.FAILED
        assert controller.pipeline.error_message == "Failed jobs: compile"
        for name in ("unit", "integration"):
            assert controller.runs[name].status == JobRunStatus.SKIPPED
            assert controller.runs[name].failure_reason == FailureReason.UPSTREAM_FAILED

        stored_jobs = {j.job_name: j.status for j in await registry.get_job_runs(controller.pipeline_id)}
        assert stored_jobs == {
            "compile": JobRunStatus.FAILED,
            "unit": JobRunStatus.SKIPPED,
            "integration": JobRunStatus.SKIPPED,
        }
        status_sent, metadata = notifier.calls[0]
        assert status_sent == PipelineStatus.FAILED
        assert metadata["failed_jobs"] == ["compile"]

    @pytest.mark.asyncio
    async def test_manual_deploy_waits_for_play(self, make_config, make_controller, executor):
        config = make_config(three_stage_jobs(when="manual", only=["main"]))
        controller = make_controller(config)

        status = await controller.run()

        assert status == PipelineStatus.SUCCESS
        assert controller.runs["ship"].status == JobRunStatus.MANUAL
        assert "ship" not in executor.started

        await controller.play("ship")
        status = await controller.run()

        assert status == PipelineStatus.SUCCESS
        assert controller.runs["ship"].status == JobRunStatus.SUCCESS
        assert executor.started[-1] == "ship"

    @pytest.mark.asyncio
    async def test_blocking_manual_gate(self, make_config, make_controller, registry, notifier):
        config = make_config(three_stage_jobs(when="manual", allow_failure=False))
        controller = make_controller(config)

        status = await controller.run()

        assert status == PipelineStatus.MANUAL
        assert not status.is_terminal
        assert notifier.calls == []
        assert (await registry.get_pipeline_run(controller.pipeline_id)).status == PipelineStatus.MANUAL

        await controller.play("ship")
        assert controller.status == PipelineStatus.RUNNING
        status = await controller.run()

        assert status == PipelineStatus.SUCCESS
        assert [s for s, _ in notifier.calls] == [PipelineStatus.SUCCESS]

    @pytest.mark.asyncio
    async def test_rules_exclude_jobs(self, make_config, make_controller, executor):
        config = make_config(three_stage_jobs(only=["main"]))
        controller = make_controller(config, RuleContext(branch="feature/login"))

        status = await controller.run()

        assert status == PipelineStatus.SUCCESS
        assert set(controller.runs) == {"compile", "unit"}
        assert not controller.decisions["ship"].included

    @pytest.mark.asyncio
    async def test_background_run(self, make_config, make_controller, executor):
        controller = make_controller(make_config(three_stage_jobs()))
        await controller.prepare()

        task = controller.ensure_running()
        assert controller.ensure_running() is task
        assert await controller.wait() == PipelineStatus.SUCCESS


# ── Validation ───────────────────────────────────────────────────────────────


class TestValidation:
    @pytest.mark.asyncio
    async def test_invalid_graph_fails_pipeline(self, make_config, make_controller, registry, executor):
        config = make_config({"unit": {"stage": "test", "needs": ["compile"]}})
        controller = make_controller(config)

        with pytest.raises(UnknownJobError):
            await controller.prepare()

        stored = await registry.get_pipeline_run(controller.pipeline_id)
        assert stored.status == PipelineStatus.FAILED
        assert "compile" in stored.error_message
        assert executor.started == []

    @pytest.mark.asyncio
    async def test_no_included_jobs(self, make_config, make_controller):
        config = make_config({"ship": {"stage": "deploy", "only": ["main"]}})
        controller = make_controller(config, RuleContext(branch="dev"))

        with pytest.raises(ValidationError, match="No jobs"):
            await controller.run()
        assert controller.status == PipelineStatus.FAILED

    @pytest.mark.asyncio
    async def test_definition_snapshot_is_stored(self, make_config, make_controller, registry):
        controller = make_controller(make_config(three_stage_jobs()))
        await controller.prepare()
        stored = await registry.get_pipeline_run(controller.pipeline_id)
        assert '"compile"' in stored.definition_snapshot
        assert stored.stages == ["build", "test", "deploy"]
        assert stored.context.branch == "main"


# ── Cancel ───────────────────────────────────────────────────────────────────


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_pipeline(
        self, make_config, make_controller, executor, notifier, registry, wait_until
    ):
        executor.block("compile")
        controller = make_controller(make_config(three_stage_jobs()))
        await controller.prepare()
        controller.ensure_running()
        await wait_until(lambda: executor.active == 1)

        await controller.cancel()
        status = await controller.wait()

        assert status == PipelineStatus.CANCELED
        assert all(r.status == JobRunStatus.CANCELED for r in controller.runs.values())
        assert [s for s, _ in notifier.calls] == [PipelineStatus.CANCELED]
        stored = await registry.get_pipeline_run(controller.pipeline_id)
        assert stored.status == PipelineStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_before_prepare(self, make_config, executor):
        controller = PipelineController(
            make_config(three_stage_jobs()), RuleContext(branch="main"), executor
        )
        assert await controller.cancel() == PipelineStatus.CANCELED
        assert await controller.run() == PipelineStatus.CANCELED
        assert executor.started == []

    @pytest.mark.asyncio
    async def test_cancel_finished_pipeline_keeps_status(
        self, make_config, make_controller, notifier
    ):
        controller = make_controller(make_config(three_stage_jobs(when="manual")))
        assert await controller.run() == PipelineStatus.SUCCESS

        status = await controller.cancel()

        assert status == PipelineStatus.SUCCESS
        assert controller.runs["ship"].status == JobRunStatus.CANCELED
        assert controller.runs["compile"].status == JobRunStatus.SUCCESS
        assert len(notifier.calls) == 1

    @pytest.mark.asyncio
    async def test_play_after_cancel(self, make_config, make_controller):
        controller = make_controller(make_config(three_stage_jobs(when="manual", allow_failure=False)))
        await controller.run()
        await controller.cancel()
        with pytest.raises(ConveyorError):
            await controller.play("ship")

    @pytest.mark.asyncio
    async def test_play_before_prepare(self, make_config, make_controller):
        controller = make_controller(make_config(three_stage_jobs(when="manual")))
        with pytest.raises(ConveyorError, match="not been prepared"):
            await controller.play("ship")


# ── Notifications ────────────────────────────────────────────────────────────


class TestNotifications:
    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_change_status(
        self, make_config, make_controller, notifier
    ):
        controller = make_controller(
            make_config(three_stage_jobs()), notifiers=[BrokenNotifier(), notifier]
        )
        status = await controller.run()

        assert status == PipelineStatus.SUCCESS
        assert len(notifier.calls) == 1

    @pytest.mark.asyncio
    async def test_metadata(self, make_config, make_controller, notifier):
        controller = make_controller(make_config(three_stage_jobs()))
        await controller.run()

        _, metadata = notifier.calls[0]
        assert metadata["pipeline_id"] == controller.pipeline_id
        assert metadata["project"] == "shop"
        assert metadata["ref"] == "main"
        assert metadata["commit_sha"] == "9e8d7c6b5a4f"
        assert metadata["source"] == "push"
        assert metadata["status"] == "success"
        assert metadata["failed_jobs"] == []
        assert metadata["jobs"] == {"compile": "success", "unit": "success", "ship": "success"}
        assert metadata["duration_seconds"] >= 0
