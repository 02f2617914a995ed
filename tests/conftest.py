"""Shared fixtures: a scripted executor and pipeline builders."""

from __future__ import annotations

import asyncio

import pytest

from conveyor.config import PipelineConfig, parse_pipeline
from conveyor.models import FailureReason, JobOutcome, JobRunStatus


class FakeExecutor:
    """Scripted stand-in for the executor pool.

    Jobs succeed unless told otherwise. ``block(name)`` holds a job in
    ``running`` until the returned event is set.
    """

    def __init__(self):
        self.outcomes: dict[str, JobOutcome | Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.started: list[str] = []
        self.finished: list[str] = []
        self.active = 0
        self.peak = 0

    def fail(
        self,
        name: str,
        reason: FailureReason = FailureReason.SCRIPT_FAILURE,
        exit_code: int | None = 1,
    ) -> None:
        self.outcomes[name] = JobOutcome(
            status=JobRunStatus.FAILED,
            exit_code=exit_code,
            failure_reason=reason,
            error_message=f"{name} failed",
        )

    def crash(self, name: str, exc: Exception) -> None:
        self.outcomes[name] = exc

    def block(self, name: str) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates[name] = gate
        return gate

    async def execute(self, pipeline, run, job, on_start):
        await on_start()
        self.started.append(job.name)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            gate = self.gates.get(job.name)
            if gate is not None:
                await gate.wait()
            else:
                await asyncio.sleep(0)
            outcome = self.outcomes.get(job.name)
            if isinstance(outcome, Exception):
                raise outcome
            self.finished.append(job.name)
            return outcome or JobOutcome(status=JobRunStatus.SUCCESS, exit_code=0)
        finally:
            self.active -= 1


async def _wait_until(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds (fails the test after a timeout)."""
    return _wait_until


@pytest.fixture
def make_config():
    """Build a PipelineConfig from ``{job: overrides}`` with default scripts."""

    def _make(jobs: dict, stages=("build", "test", "deploy"), **extra) -> PipelineConfig:
        raw = {"stages": list(stages), **extra}
        for name, job in jobs.items():
            raw[name] = {"script": [f"echo {name}"], **job}
        return parse_pipeline(raw)

    return _make
