"""Run registry — SQLite persistence for pipeline runs and job runs.

Key exports:
    RunRegistry — CRUD for pipeline_runs and job_runs.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime

import aiosqlite

from conveyor.models import (
    FailureReason,
    JobRun,
    JobRunStatus,
    PipelineRun,
    PipelineStatus,
    RuleContext,
)

logger = logging.getLogger(__name__)


class RunRegistry:
    """SQLite-backed persistence of pipeline and job run state.

    Takes an already-open aiosqlite connection (shared with the artifact store).
    Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all run tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Pipeline Run CRUD ────────────────────────────────────────────────────

    async def create_pipeline_run(self, run: PipelineRun) -> None:
        """Insert a new pipeline run."""
        await self._db.execute(
            """
            INSERT INTO pipeline_runs (
                pipeline_id, project, context, stages, definition_snapshot,
                status, created_at, started_at, finished_at, error_message
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.pipeline_id,
                run.project,
                run.context.model_dump_json(),
                json.dumps(run.stages),
                run.definition_snapshot,
                run.status.value,
                _dt_to_str(run.created_at),
                _dt_to_str(run.started_at),
                _dt_to_str(run.finished_at),
                run.error_message,
            ),
        )
        await self._db.commit()

    async def get_pipeline_run(self, pipeline_id: str) -> PipelineRun | None:
        """Fetch a pipeline run by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE pipeline_id = ?", (pipeline_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_pipeline_run(row)

    async def list_pipeline_runs(
        self,
        *,
        status: PipelineStatus | None = None,
        project: str | None = None,
        limit: int = 50,
    ) -> list[PipelineRun]:
        """Most recent pipeline runs first, optionally filtered."""
        clauses: list[str] = []
        params: list = []
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if project:
            clauses.append("project = ?")
            params.append(project)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM pipeline_runs {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def get_active_pipeline_runs(self) -> list[PipelineRun]:
        """Pipeline runs that have not reached a terminal status."""
        cursor = await self._db.execute(
            "SELECT * FROM pipeline_runs WHERE status IN (?, ?, ?) ORDER BY created_at",
            (
                PipelineStatus.CREATED.value,
                PipelineStatus.RUNNING.value,
                PipelineStatus.MANUAL.value,
            ),
        )
        rows = await cursor.fetchall()
        return [_row_to_pipeline_run(r) for r in rows]

    async def update_pipeline_run(self, run: PipelineRun) -> None:
        """Update a pipeline run's mutable fields."""
        await self._db.execute(
            """
            UPDATE pipeline_runs SET
                status = ?, stages = ?, started_at = ?, finished_at = ?, error_message = ?
            WHERE pipeline_id = ?
            """,
            (
                run.status.value,
                json.dumps(run.stages),
                _dt_to_str(run.started_at),
                _dt_to_str(run.finished_at),
                run.error_message,
                run.pipeline_id,
            ),
        )
        await self._db.commit()

    async def delete_pipeline_run(self, pipeline_id: str) -> None:
        """Delete a pipeline run and its job runs."""
        await self._db.execute("DELETE FROM job_runs WHERE pipeline_id = ?", (pipeline_id,))
        await self._db.execute("DELETE FROM pipeline_runs WHERE pipeline_id = ?", (pipeline_id,))
        await self._db.commit()

    # ── Job Run CRUD ─────────────────────────────────────────────────────────

    async def save_job_run(self, run: JobRun) -> None:
        """Insert or update a job run."""
        await self._db.execute(
            """
            INSERT INTO job_runs (
                pipeline_id, job_name, stage, status, allow_failure,
                exit_code, failure_reason, error_message, attempts,
                coverage, artifacts, started_at, finished_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(pipeline_id, job_name) DO UPDATE SET
                status = excluded.status,
                allow_failure = excluded.allow_failure,
                exit_code = excluded.exit_code,
                failure_reason = excluded.failure_reason,
                error_message = excluded.error_message,
                attempts = excluded.attempts,
                coverage = excluded.coverage,
                artifacts = excluded.artifacts,
                started_at = excluded.started_at,
                finished_at = excluded.finished_at
            """,
            (
                run.pipeline_id,
                run.job_name,
                run.stage,
                run.status.value,
                int(run.allow_failure),
                run.exit_code,
                run.failure_reason.value if run.failure_reason else None,
                run.error_message,
                run.attempts,
                run.coverage,
                json.dumps(run.artifacts),
                _dt_to_str(run.started_at),
                _dt_to_str(run.finished_at),
            ),
        )
        await self._db.commit()

    async def get_job_run(self, pipeline_id: str, job_name: str) -> JobRun | None:
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE pipeline_id = ? AND job_name = ?",
            (pipeline_id, job_name),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return _row_to_job_run(row)

    async def get_job_runs(self, pipeline_id: str) -> list[JobRun]:
        """All job runs of a pipeline in insertion order."""
        cursor = await self._db.execute(
            "SELECT * FROM job_runs WHERE pipeline_id = ? ORDER BY rowid",
            (pipeline_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_job_run(r) for r in rows]


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    pipeline_id TEXT PRIMARY KEY,
    project TEXT NOT NULL DEFAULT '',
    context TEXT NOT NULL DEFAULT '{}',
    stages TEXT NOT NULL DEFAULT '[]',
    definition_snapshot TEXT NOT NULL DEFAULT '{}',

    status TEXT NOT NULL DEFAULT 'created',

    created_at TEXT,
    started_at TEXT,
    finished_at TEXT,

    error_message TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_status ON pipeline_runs(status);

CREATE TABLE IF NOT EXISTS job_runs (
    pipeline_id TEXT NOT NULL REFERENCES pipeline_runs(pipeline_id),
    job_name TEXT NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    allow_failure INTEGER NOT NULL DEFAULT 0,

    exit_code INTEGER,
    failure_reason TEXT,
    error_message TEXT,
    attempts INTEGER NOT NULL DEFAULT 0,
    coverage REAL,
    artifacts TEXT NOT NULL DEFAULT '[]',

    started_at TEXT,
    finished_at TEXT,

    PRIMARY KEY(pipeline_id, job_name)
);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_pipeline_run(row: aiosqlite.Row) -> PipelineRun:
    """Convert a database row to a PipelineRun model."""
    return PipelineRun(
        pipeline_id=row["pipeline_id"],
        project=row["project"],
        context=RuleContext.model_validate_json(row["context"]),
        stages=json.loads(row["stages"]),
        definition_snapshot=row["definition_snapshot"],
        status=PipelineStatus(row["status"]),
        created_at=_str_to_dt(row["created_at"]),
        started_at=_str_to_dt(row["started_at"]),
        finished_at=_str_to_dt(row["finished_at"]),
        error_message=row["error_message"],
    )


def _row_to_job_run(row: aiosqlite.Row) -> JobRun:
    """Convert a database row to a JobRun model."""
    return JobRun(
        pipeline_id=row["pipeline_id"],
        job_name=row["job_name"],
        stage=row["stage"],
        status=JobRunStatus(row["status"]),
        allow_failure=bool(row["allow_failure"]),
        exit_code=row["exit_code"],
        failure_reason=FailureReason(row["failure_reason"]) if row["failure_reason"] else None,
        error_message=row["error_message"],
        attempts=row["attempts"] or 0,
        coverage=row["coverage"],
        artifacts=json.loads(row["artifacts"] or "[]"),
        started_at=_str_to_dt(row["started_at"]),
        finished_at=_str_to_dt(row["finished_at"]),
    )
