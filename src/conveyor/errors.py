"""Exception hierarchy for Conveyor.

Validation errors abort pipeline construction. Everything else is scoped to
the job run that raised it and surfaces in the pipeline's final status.
"""

from __future__ import annotations


class ConveyorError(Exception):
    """Base class for all Conveyor errors."""


# ── Validation (fatal, pipeline never starts) ────────────────────────────────


class ValidationError(ConveyorError):
    """The pipeline definition or job graph is malformed."""


class CycleError(ValidationError):
    """The job dependency graph contains a cycle."""

    def __init__(self, jobs: list[str]):
        self.jobs = jobs
        super().__init__(f"Dependency cycle between jobs: {', '.join(jobs)}")


class UnknownJobError(ValidationError):
    """A job references a job that does not exist or was excluded by rules."""

    def __init__(self, job: str, reference: str, field: str = "needs"):
        self.job = job
        self.reference = reference
        self.field = field
        super().__init__(f"Job '{job}' references unknown job '{reference}' in '{field}'")


# ── Rules ────────────────────────────────────────────────────────────────────


class RuleEvaluationError(ConveyorError):
    """A rule predicate could not be parsed or evaluated."""


# ── Execution ────────────────────────────────────────────────────────────────


class ExecutionFailure(ConveyorError):
    """A job's script failed.

    ``cause`` tags why: ``script_failure``, ``timeout``, ``infrastructure``.
    """

    cause = "script_failure"

    def __init__(self, message: str, *, exit_code: int | None = None, cause: str | None = None):
        super().__init__(message)
        self.exit_code = exit_code
        if cause:
            self.cause = cause


class JobTimeoutError(ExecutionFailure):
    """A job exceeded its timeout."""

    cause = "timeout"


class InfrastructureError(ConveyorError):
    """The executor could not acquire an execution environment."""


# ── Collaborators ────────────────────────────────────────────────────────────


class NotificationError(ConveyorError):
    """A notification could not be delivered. Never fatal."""


class ArtifactNotFound(ConveyorError, KeyError):
    """No live artifact or cache entry exists for the key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Artifact not found: {key}")

    def __str__(self) -> str:
        return f"Artifact not found: {self.key}"


class ArtifactExistsError(ConveyorError):
    """Artifacts are immutable once written."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Artifact already exists: {key}")
