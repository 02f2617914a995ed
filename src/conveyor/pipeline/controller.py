"""Pipeline controller — ties rules, graph, scheduler and notifications together.

Key exports:
    PipelineController — one instance per pipeline run, with prepare(), run(),
        play() and cancel().
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from conveyor.config import PipelineConfig
from conveyor.errors import ConveyorError, ValidationError
from conveyor.models import (
    JobRun,
    JobRunStatus,
    PipelineRun,
    PipelineStatus,
    RuleContext,
    utcnow,
)
from conveyor.notify import Notifier
from conveyor.pipeline.graph import JobGraph, build_graph
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.rules import RuleDecision, evaluate_pipeline
from conveyor.pipeline.scheduler import Scheduler

if TYPE_CHECKING:
    from conveyor.executor import JobExecutor

logger = logging.getLogger(__name__)


def new_pipeline_id() -> str:
    return f"pl-{uuid.uuid4().hex[:12]}"


class PipelineController:
    """Owns the lifecycle of one pipeline run.

    Usage:
        controller = PipelineController(config, context, executor, registry=registry)
        status = await controller.run()
        if status == PipelineStatus.MANUAL:
            await controller.play("deploy-production")
            status = await controller.run()
    """

    def __init__(
        self,
        config: PipelineConfig,
        context: RuleContext,
        executor: JobExecutor,
        *,
        registry: RunRegistry | None = None,
        notifiers: Sequence[Notifier] = (),
        project: str = "",
        pipeline_id: str | None = None,
        default_image: str = "alpine:latest",
    ):
        self.config = config
        self.context = context
        self.executor = executor
        self._registry = registry
        self._notifiers = list(notifiers)
        self._default_image = default_image

        self.pipeline = PipelineRun(
            pipeline_id=pipeline_id or new_pipeline_id(),
            project=project,
            context=context,
            definition_snapshot=config.model_dump_json(by_alias=True),
            created_at=utcnow(),
        )
        self.decisions: dict[str, RuleDecision] = {}
        self.graph: JobGraph | None = None
        self.runs: dict[str, JobRun] = {}
        self.scheduler: Scheduler | None = None

        self._cancel_requested = False
        self._task: asyncio.Task | None = None

    @property
    def pipeline_id(self) -> str:
        return self.pipeline.pipeline_id

    @property
    def status(self) -> PipelineStatus:
        return self.pipeline.status

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def prepare(self) -> PipelineRun:
        """Evaluate rules, build the graph and create one JobRun per job.

        Raises:
            ValidationError: The graph is invalid. The pipeline is recorded
                as failed and never starts.
        """
        if self._registry:
            await self._registry.create_pipeline_run(self.pipeline)

        self.decisions = evaluate_pipeline(self.config, self.context)
        try:
            self.graph = build_graph(
                self.config, self.decisions, default_image=self._default_image
            )
            if not len(self.graph):
                raise ValidationError("No jobs are included for this trigger")
        except ValidationError as e:
            self.pipeline.status = PipelineStatus.FAILED
            self.pipeline.error_message = str(e)
            self.pipeline.finished_at = utcnow()
            await self._save_pipeline()
            logger.error("Pipeline %s is invalid: %s", self.pipeline_id, e)
            raise

        self.pipeline.stages = list(self.graph.stages)
        for job in self.graph.topological_order():
            run = JobRun(
                pipeline_id=self.pipeline_id,
                job_name=job.name,
                stage=job.stage,
                allow_failure=job.allow_failure,
            )
            self.runs[job.name] = run
            await self._save_job(run)
        await self._save_pipeline()

        self.scheduler = Scheduler(
            self.graph,
            self.pipeline,
            self.runs,
            self.executor,
            on_change=self._save_job,
        )
        logger.info(
            "Prepared pipeline %s for %s (%d jobs, stages: %s)",
            self.pipeline_id,
            self.context.ref_name or self.context.commit_sha[:8],
            len(self.runs),
            ", ".join(self.pipeline.stages),
        )
        return self.pipeline

    async def run(self) -> PipelineStatus:
        """Drive the pipeline until it drains. Returns the aggregated status.

        Call again after :meth:`play` to continue a drained pipeline.
        """
        if self.scheduler is None:
            await self.prepare()
        assert self.scheduler is not None

        if self.pipeline.status == PipelineStatus.CANCELED:
            return self.pipeline.status

        self.pipeline.status = PipelineStatus.RUNNING
        self.pipeline.finished_at = None
        if self.pipeline.started_at is None:
            self.pipeline.started_at = utcnow()
        await self._save_pipeline()
        logger.info("Pipeline %s running", self.pipeline_id)

        while True:
            await self.scheduler.run()
            status = await self._settle()
            # A job played while the loop was draining is picked up here.
            if not self.scheduler.dispatchable():
                return status

    def ensure_running(self) -> asyncio.Task:
        """Drive the pipeline in a background task unless one is active."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"pipeline:{self.pipeline_id}")
        return self._task

    async def wait(self) -> PipelineStatus:
        """Wait for the background task started by :meth:`ensure_running`."""
        if self._task is not None:
            await self._task
        return self.pipeline.status

    async def play(self, job_name: str) -> JobRun:
        """Release a manual job. A drained pipeline needs another :meth:`run`."""
        if self.scheduler is None:
            raise ConveyorError(f"Pipeline {self.pipeline_id} has not been prepared")
        if self.pipeline.status == PipelineStatus.CANCELED:
            raise ConveyorError(f"Pipeline {self.pipeline_id} was canceled")
        run = await self.scheduler.play(job_name)
        if self.pipeline.status == PipelineStatus.MANUAL:
            self.pipeline.status = PipelineStatus.RUNNING
            await self._save_pipeline()
        return run

    async def cancel(self) -> PipelineStatus:
        """Cancel all non-terminal jobs.

        A pipeline already in a terminal status keeps it; only leftover
        manual jobs are canceled.
        """
        if not self.pipeline.status.is_terminal:
            self._cancel_requested = True

        if self.scheduler is None:
            if self._cancel_requested:
                self.pipeline.status = PipelineStatus.CANCELED
                self.pipeline.finished_at = utcnow()
                await self._save_pipeline()
            return self.pipeline.status

        await self.scheduler.cancel()
        if self.scheduler.driving:
            # The running loop settles the status once its tasks are gone.
            return self.pipeline.status
        return await self._settle()

    # ── Status ───────────────────────────────────────────────────────────────

    def aggregate_status(self) -> PipelineStatus:
        """Pipeline status implied by the current job runs."""
        if self._cancel_requested:
            return PipelineStatus.CANCELED
        runs = list(self.runs.values())
        if any(r.status == JobRunStatus.FAILED and not r.allow_failure for r in runs):
            return PipelineStatus.FAILED
        if any(r.status == JobRunStatus.MANUAL and not r.allow_failure for r in runs):
            return PipelineStatus.MANUAL
        if any(
            not r.status.is_terminal and r.status != JobRunStatus.MANUAL for r in runs
        ):
            return PipelineStatus.RUNNING
        return PipelineStatus.SUCCESS

    async def _settle(self) -> PipelineStatus:
        previous = self.pipeline.status
        status = self.aggregate_status()
        self.pipeline.status = status

        if status == PipelineStatus.FAILED:
            failed = self.failed_jobs()
            self.pipeline.error_message = f"Failed jobs: {', '.join(failed)}"
        if status.is_terminal:
            self.pipeline.finished_at = self.pipeline.finished_at or utcnow()
        await self._save_pipeline()

        if status == PipelineStatus.MANUAL:
            waiting = self.scheduler.blocking_manual_jobs() if self.scheduler else []
            logger.info(
                "Pipeline %s blocked on manual jobs: %s", self.pipeline_id, ", ".join(waiting)
            )
        elif status.is_terminal:
            log = logger.info if status == PipelineStatus.SUCCESS else logger.warning
            log("Pipeline %s finished: %s", self.pipeline_id, status.value)
            if not previous.is_terminal:
                await self._notify(status)
        return status

    def failed_jobs(self) -> list[str]:
        return [
            name
            for name, run in self.runs.items()
            if run.status == JobRunStatus.FAILED and not run.allow_failure
        ]

    def metadata(self) -> dict[str, Any]:
        """Notification payload describing this pipeline run."""
        return {
            "pipeline_id": self.pipeline_id,
            "project": self.pipeline.project,
            "ref": self.context.ref_name,
            "commit_sha": self.context.commit_sha,
            "source": self.context.source.value,
            "status": self.pipeline.status.value,
            "duration_seconds": self.pipeline.duration_seconds,
            "failed_jobs": self.failed_jobs(),
            "jobs": {name: run.status.value for name, run in self.runs.items()},
        }

    async def _notify(self, status: PipelineStatus) -> None:
        metadata = self.metadata()
        for notifier in self._notifiers:
            try:
                await notifier.send(status, metadata)
            except Exception:
                logger.exception(
                    "Notifier %s failed for pipeline %s", type(notifier).__name__, self.pipeline_id
                )

    # ── Persistence ──────────────────────────────────────────────────────────

    async def _save_pipeline(self) -> None:
        if self._registry:
            await self._registry.update_pipeline_run(self.pipeline)

    async def _save_job(self, run: JobRun) -> None:
        if self._registry:
            await self._registry.save_job_run(run)
