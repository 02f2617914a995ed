"""Pipeline API — trigger, inspect, play and cancel pipelines.

Endpoints:
    - POST /pipelines - Trigger a pipeline for a commit/ref
    - GET /pipelines - Recent pipelines
    - GET /pipelines/{pipeline_id} - Pipeline with its job runs
    - GET /pipelines/{pipeline_id}/artifacts - Live artifacts of a pipeline
    - GET /pipelines/{pipeline_id}/jobs/{job_name}/trace - Job output
    - POST /pipelines/{pipeline_id}/jobs/{job_name}/play - Release a manual job
    - POST /pipelines/{pipeline_id}/cancel - Cancel a pipeline
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from conveyor.artifacts import artifact_key
from conveyor.errors import ArtifactNotFound, ConveyorError, ValidationError
from conveyor.executor import TRACE
from conveyor.models import PipelineSource, PipelineStatus, RuleContext

if TYPE_CHECKING:
    from conveyor.pipeline import PipelineController
    from conveyor.server import ConveyorServer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pipelines", tags=["pipelines"])

# Module-level reference (configured at startup)
_server: "ConveyorServer | None" = None


def configure(server: "ConveyorServer") -> None:
    """Configure the pipeline router with the running server."""
    global _server
    _server = server
    logger.info("Pipeline API configured")


class TriggerRequest(BaseModel):
    """Trigger metadata for a new pipeline."""

    commit_sha: str = ""
    branch: str | None = None
    tag: str | None = None
    source: PipelineSource = PipelineSource.API
    schedule: bool = False
    changed_paths: list[str] | None = None
    variables: dict[str, str] = {}

    def to_context(self) -> RuleContext:
        return RuleContext(
            commit_sha=self.commit_sha,
            branch=self.branch,
            tag=self.tag,
            source=self.source,
            schedule=self.schedule,
            changed_paths=tuple(self.changed_paths) if self.changed_paths is not None else None,
            variables=self.variables,
        )


def _require_server() -> "ConveyorServer":
    if _server is None or _server.registry is None:
        raise HTTPException(status_code=503, detail="Server not started")
    return _server


def _live_controller(pipeline_id: str) -> "PipelineController":
    controller = _require_server().get_controller(pipeline_id)
    if controller is None:
        raise HTTPException(status_code=404, detail=f"No live pipeline {pipeline_id}")
    return controller


@router.post("", status_code=201)
async def trigger_pipeline(request: TriggerRequest):
    """Evaluate rules, build the job graph and start the pipeline."""
    server = _require_server()
    try:
        controller = await server.trigger(request.to_context())
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except FileNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {
        "pipeline_id": controller.pipeline_id,
        "status": controller.status.value,
        "stages": controller.pipeline.stages,
        "jobs": {name: run.status.value for name, run in controller.runs.items()},
    }


@router.get("")
async def list_pipelines(
    status: PipelineStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
):
    """Most recent pipelines first."""
    server = _require_server()
    runs = await server.registry.list_pipeline_runs(status=status, limit=limit)
    return {"pipelines": [r.model_dump(mode="json", exclude={"definition_snapshot"}) for r in runs]}


@router.get("/{pipeline_id}")
async def get_pipeline(pipeline_id: str):
    """Pipeline state with all of its job runs."""
    server = _require_server()
    run = await server.registry.get_pipeline_run(pipeline_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Pipeline {pipeline_id} not found")
    jobs = await server.registry.get_job_runs(pipeline_id)
    return {
        **run.model_dump(mode="json", exclude={"definition_snapshot"}),
        "duration_seconds": run.duration_seconds,
        "jobs": [j.model_dump(mode="json") for j in jobs],
    }


@router.get("/{pipeline_id}/artifacts")
async def list_artifacts(pipeline_id: str, job: str | None = Query(default=None)):
    server = _require_server()
    artifacts = await server.store.list_artifacts(pipeline_id, job_name=job)
    return {"artifacts": [a.model_dump(mode="json") for a in artifacts]}


@router.get("/{pipeline_id}/jobs/{job_name}/trace", response_class=PlainTextResponse)
async def get_trace(pipeline_id: str, job_name: str):
    server = _require_server()
    try:
        blob = await server.store.get(artifact_key(pipeline_id, job_name, TRACE))
    except ArtifactNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return PlainTextResponse(blob.decode(errors="replace"))


@router.post("/{pipeline_id}/jobs/{job_name}/play")
async def play_job(pipeline_id: str, job_name: str):
    """Release a job waiting for a manual trigger."""
    controller = _live_controller(pipeline_id)
    try:
        run = await controller.play(job_name)
    except ConveyorError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    _require_server().resume(controller)
    return {"pipeline_id": pipeline_id, "job": run.model_dump(mode="json")}


@router.post("/{pipeline_id}/cancel")
async def cancel_pipeline(pipeline_id: str):
    controller = _live_controller(pipeline_id)
    status = await controller.cancel()
    _require_server().release(pipeline_id)
    return {"pipeline_id": pipeline_id, "status": status.value}
