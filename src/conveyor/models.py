"""Runtime models — trigger context, pipeline runs, job runs, artifacts.

Key exports:
    RuleContext — immutable trigger metadata, one per pipeline
    PipelineRun, PipelineStatus — pipeline-level state
    JobRun, JobRunStatus, FailureReason — per-job execution state
    Artifact, ArtifactKind — stored blob metadata
    RuntimeResult, JobOutcome — executor results
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enums ────────────────────────────────────────────────────────────────────


class PipelineSource(str, Enum):
    """What triggered a pipeline (``CI_PIPELINE_SOURCE``)."""

    PUSH = "push"
    MERGE_REQUEST = "merge_request_event"
    SCHEDULE = "schedule"
    WEB = "web"
    API = "api"
    TRIGGER = "trigger"


class PipelineStatus(str, Enum):
    """Pipeline lifecycle states.

    ``manual`` means the run is blocked on a manual gate that does not allow
    failure; it is not terminal.
    """

    CREATED = "created"
    RUNNING = "running"
    MANUAL = "manual"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStatus.SUCCESS, PipelineStatus.FAILED, PipelineStatus.CANCELED)


class JobRunStatus(str, Enum):
    """Job run lifecycle states."""

    PENDING = "pending"
    ELIGIBLE = "eligible"
    RUNNING = "running"
    MANUAL = "manual-wait"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset(
    {
        JobRunStatus.SUCCESS,
        JobRunStatus.FAILED,
        JobRunStatus.SKIPPED,
        JobRunStatus.CANCELED,
    }
)


class FailureReason(str, Enum):
    SCRIPT_FAILURE = "script_failure"
    TIMEOUT = "timeout"
    INFRASTRUCTURE = "infrastructure"
    CANCELED = "canceled"
    UPSTREAM_FAILED = "upstream_failed"


class ArtifactKind(str, Enum):
    GENERIC = "generic"
    REPORT = "report"
    COVERAGE = "coverage"
    TRACE = "trace"


# ── Trigger context ──────────────────────────────────────────────────────────


class RuleContext(BaseModel):
    """Trigger metadata for one pipeline. Read-only input to rule evaluation.

    ``changed_paths`` is None when the change set is unknown (scheduled
    pipelines, new branches); change predicates then match.
    """

    commit_sha: str = ""
    branch: str | None = None
    tag: str | None = None
    source: PipelineSource = PipelineSource.PUSH
    schedule: bool = False
    changed_paths: tuple[str, ...] | None = None
    variables: dict[str, str] = {}

    model_config = {"frozen": True}

    @property
    def ref_name(self) -> str:
        return self.tag or self.branch or ""

    @property
    def is_scheduled(self) -> bool:
        return self.schedule or self.source == PipelineSource.SCHEDULE

    def predefined_variables(self) -> dict[str, str]:
        """The ``CI_*`` variables visible to rule expressions and scripts."""
        predefined = {
            "CI": "true",
            "CI_COMMIT_SHA": self.commit_sha,
            "CI_COMMIT_SHORT_SHA": self.commit_sha[:8],
            "CI_COMMIT_REF_NAME": self.ref_name,
            "CI_PIPELINE_SOURCE": PipelineSource.SCHEDULE.value
            if self.is_scheduled
            else self.source.value,
        }
        if self.tag:
            predefined["CI_COMMIT_TAG"] = self.tag
        elif self.branch and self.source != PipelineSource.MERGE_REQUEST:
            predefined["CI_COMMIT_BRANCH"] = self.branch
        if self.source == PipelineSource.MERGE_REQUEST and self.branch:
            predefined["CI_MERGE_REQUEST_SOURCE_BRANCH_NAME"] = self.branch
        return predefined

    def all_variables(self) -> dict[str, str]:
        """Pipeline variables overlaid by predefined ones."""
        return {**self.variables, **self.predefined_variables()}


# ── Runtime state ────────────────────────────────────────────────────────────


class PipelineRun(BaseModel):
    """Runtime state of a pipeline execution."""

    pipeline_id: str
    project: str = ""
    context: RuleContext = Field(default_factory=RuleContext)
    stages: list[str] = []
    definition_snapshot: str = "{}"

    status: PipelineStatus = PipelineStatus.CREATED

    created_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    error_message: str | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class JobRun(BaseModel):
    """Runtime state of one job within one pipeline run."""

    pipeline_id: str
    job_name: str
    stage: str
    status: JobRunStatus = JobRunStatus.PENDING
    allow_failure: bool = False

    exit_code: int | None = None
    failure_reason: FailureReason | None = None
    error_message: str | None = None
    attempts: int = 0
    coverage: float | None = None
    artifacts: list[str] = []

    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None


class Artifact(BaseModel):
    """Metadata of a stored blob. The bytes live in the store."""

    key: str
    pipeline_id: str | None = None
    job_name: str | None = None
    name: str = ""
    kind: ArtifactKind = ArtifactKind.GENERIC
    size: int = 0
    sha256: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at


# ── Execution results ────────────────────────────────────────────────────────


class RuntimeResult(BaseModel):
    """What the container runtime reports for one script run."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""


class JobOutcome(BaseModel):
    """Terminal classification of one job execution."""

    status: JobRunStatus
    exit_code: int | None = None
    failure_reason: FailureReason | None = None
    error_message: str | None = None
    attempts: int = 1
    coverage: float | None = None
    artifacts: list[str] = []
