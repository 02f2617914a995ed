"""Scheduler — walks the job graph and dispatches runnable jobs.

A job becomes eligible once every upstream job run is settled in a way that
lets it proceed:

- ``success``
- ``failed`` with ``allow_failure``
- ``manual-wait`` with ``allow_failure`` (a non-blocking manual job)

An upstream that failed without ``allow_failure``, or was skipped or
canceled, skips the job instead. ``when: always`` jobs run as soon as every
upstream is settled, whatever the outcome.

Manual jobs move to ``manual-wait`` when eligible and stay there until
:meth:`Scheduler.play`. The scheduler never waits for them: :meth:`run`
returns once nothing is running and nothing can be dispatched.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from conveyor.config import WhenPolicy
from conveyor.errors import ConveyorError
from conveyor.models import (
    FailureReason,
    JobOutcome,
    JobRun,
    JobRunStatus,
    PipelineRun,
    utcnow,
)
from conveyor.pipeline.graph import JobGraph, JobSpec

if TYPE_CHECKING:
    from conveyor.executor import JobExecutor

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[JobRun], Awaitable[None]]

# Verdicts of the upstream check
_WAIT = "wait"
_READY = "ready"
_SKIP = "skip"


class Scheduler:
    """Drives the job runs of one pipeline through the graph.

    Usage:
        scheduler = Scheduler(graph, pipeline, runs, executor, on_change=save)
        await scheduler.run()          # returns when drained
        await scheduler.play("deploy") # releases a manual job
        await scheduler.run()          # continue
    """

    def __init__(
        self,
        graph: JobGraph,
        pipeline: PipelineRun,
        runs: dict[str, JobRun],
        executor: JobExecutor,
        *,
        on_change: ChangeCallback | None = None,
    ):
        self.graph = graph
        self.pipeline = pipeline
        self.runs = runs
        self.executor = executor
        self._on_change = on_change

        self._tasks: dict[str, asyncio.Task] = {}
        self._wakeup = asyncio.Event()
        self._driving = False

    @property
    def driving(self) -> bool:
        return self._driving

    # ── Main loop ────────────────────────────────────────────────────────────

    async def run(self) -> None:
        """Dispatch jobs until nothing is running and nothing is dispatchable."""
        if self._driving:
            raise RuntimeError("Scheduler is already running")
        self._driving = True
        try:
            while True:
                self._wakeup.clear()
                await self._advance()
                if not self._tasks:
                    break

                waiter = asyncio.create_task(self._wakeup.wait())
                try:
                    await asyncio.wait(
                        {*self._tasks.values(), waiter},
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    waiter.cancel()
        finally:
            self._driving = False
        logger.debug("Scheduler drained for pipeline %s", self.pipeline.pipeline_id)

    async def _advance(self) -> None:
        """Settle pending jobs in topological order.

        One pass suffices: every upstream run is visited before its
        downstream ones, so skips and manual waits propagate in the same pass.
        """
        for name in self.graph.order:
            run = self.runs[name]
            if run.status == JobRunStatus.ELIGIBLE and name not in self._tasks:
                self._dispatch(name)
                continue
            if run.status != JobRunStatus.PENDING:
                continue

            job = self.graph.jobs[name]
            verdict = self._check_upstream(job)
            if verdict == _WAIT:
                continue
            if verdict == _SKIP:
                run.status = JobRunStatus.SKIPPED
                run.failure_reason = FailureReason.UPSTREAM_FAILED
                run.finished_at = utcnow()
                logger.info("Job '%s' skipped: an upstream job did not succeed", name)
                await self._changed(run)
            elif job.manual:
                run.status = JobRunStatus.MANUAL
                logger.info("Job '%s' is waiting for a manual trigger", name)
                await self._changed(run)
            else:
                run.status = JobRunStatus.ELIGIBLE
                await self._changed(run)
                self._dispatch(name)

    def _check_upstream(self, job: JobSpec) -> str:
        blocked = False
        for up in job.upstream:
            upstream = self.runs[up]
            status = upstream.status
            if status == JobRunStatus.SUCCESS:
                continue
            if status in (JobRunStatus.FAILED, JobRunStatus.MANUAL) and upstream.allow_failure:
                continue
            if status in (JobRunStatus.FAILED, JobRunStatus.SKIPPED, JobRunStatus.CANCELED):
                blocked = True
                continue
            return _WAIT
        if blocked and job.when != WhenPolicy.ALWAYS:
            return _SKIP
        return _READY

    # ── Dispatch ─────────────────────────────────────────────────────────────

    def _dispatch(self, name: str) -> None:
        task = asyncio.create_task(self._execute(name), name=f"job:{name}")
        self._tasks[name] = task

    async def _execute(self, name: str) -> None:
        run = self.runs[name]
        job = self.graph.jobs[name]

        async def on_start() -> None:
            run.status = JobRunStatus.RUNNING
            run.started_at = utcnow()
            run.attempts += 1
            logger.info("Job '%s' started (stage %s)", name, job.stage)
            await self._changed(run)

        try:
            try:
                outcome = await self.executor.execute(self.pipeline, run, job, on_start)
            except asyncio.CancelledError:
                self._mark_canceled(run)
                logger.info("Job '%s' canceled", name)
                await asyncio.shield(self._changed(run))
                raise
            except Exception as exc:
                logger.exception("Job '%s' crashed in the executor", name)
                outcome = JobOutcome(
                    status=JobRunStatus.FAILED,
                    failure_reason=FailureReason.INFRASTRUCTURE,
                    error_message=str(exc),
                )
            self._apply(run, outcome)
            await self._changed(run)
        finally:
            self._tasks.pop(name, None)
            self._wakeup.set()

    def _apply(self, run: JobRun, outcome: JobOutcome) -> None:
        run.status = outcome.status
        run.exit_code = outcome.exit_code
        run.failure_reason = outcome.failure_reason
        run.error_message = outcome.error_message
        run.attempts = max(run.attempts, outcome.attempts)
        run.coverage = outcome.coverage
        run.artifacts = list(outcome.artifacts)
        run.finished_at = utcnow()
        if run.started_at is None:
            run.started_at = run.finished_at

        if outcome.status == JobRunStatus.SUCCESS:
            logger.info("Job '%s' succeeded", run.job_name)
        elif run.allow_failure:
            logger.warning(
                "Job '%s' failed (%s), allowed to fail", run.job_name, run.failure_reason
            )
        else:
            logger.error("Job '%s' failed: %s", run.job_name, run.error_message)

    # ── External signals ─────────────────────────────────────────────────────

    async def play(self, name: str) -> JobRun:
        """Release a job waiting in ``manual-wait``.

        The job is dispatched by the running loop, or by the next
        :meth:`run` if the scheduler has drained.
        """
        run = self.runs.get(name)
        if run is None:
            raise ConveyorError(f"Unknown job '{name}'")
        if run.status != JobRunStatus.MANUAL:
            raise ConveyorError(
                f"Job '{name}' is not waiting for a manual trigger ({run.status.value})"
            )
        run.status = JobRunStatus.ELIGIBLE
        logger.info("Job '%s' played", name)
        await self._changed(run)
        self._wakeup.set()
        return run

    async def cancel(self) -> int:
        """Cancel every non-terminal job run. Returns how many were canceled.

        Terminal job runs are left untouched.
        """
        canceled = 0
        for name in self.graph.order:
            run = self.runs[name]
            if name in self._tasks:
                continue
            if run.status in (JobRunStatus.PENDING, JobRunStatus.ELIGIBLE, JobRunStatus.MANUAL):
                self._mark_canceled(run)
                canceled += 1
                await self._changed(run)

        tasks = dict(self._tasks)
        for task in tasks.values():
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        for name in tasks:
            # A task canceled before it started never ran its handler.
            self._tasks.pop(name, None)
            run = self.runs[name]
            if not run.status.is_terminal:
                self._mark_canceled(run)
                await self._changed(run)
        canceled += len(tasks)

        self._wakeup.set()
        logger.info("Canceled %d jobs in pipeline %s", canceled, self.pipeline.pipeline_id)
        return canceled

    @staticmethod
    def _mark_canceled(run: JobRun) -> None:
        run.status = JobRunStatus.CANCELED
        run.failure_reason = FailureReason.CANCELED
        run.finished_at = utcnow()

    # ── Queries ──────────────────────────────────────────────────────────────

    def stage_closed(self, stage: str) -> bool:
        """Every job of the stage is settled and every required job succeeded."""
        for job in self.graph.jobs_in_stage(stage):
            run = self.runs[job.name]
            if run.status == JobRunStatus.MANUAL and run.allow_failure:
                continue
            if not run.status.is_terminal:
                return False
            if run.status != JobRunStatus.SUCCESS and not run.allow_failure:
                return False
        return True

    def dispatchable(self) -> bool:
        """Some job is eligible but has no task yet."""
        return any(
            run.status == JobRunStatus.ELIGIBLE and name not in self._tasks
            for name, run in self.runs.items()
        )

    def blocking_manual_jobs(self) -> list[str]:
        return [
            name
            for name in self.graph.order
            if self.runs[name].status == JobRunStatus.MANUAL and not self.runs[name].allow_failure
        ]

    async def _changed(self, run: JobRun) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(run)
        except Exception:
            logger.exception("Failed to record state of job '%s'", run.job_name)
