"""Conveyor Server — FastAPI application that ties all components together.

Startup sequence:
1. Load engine settings (``.conveyor.yaml`` + ``CONVEYOR_*`` environment)
2. Open the SQLite database; initialize run registry and artifact store
3. Mark pipelines left active by a previous process as failed
4. Build the container runtime, executor pool and notifiers
5. Start the artifact expiry loop

Shutdown:
1. Cancel live pipelines
2. Stop the expiry loop
3. Close the database
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite
from fastapi import FastAPI

from conveyor.api import configure as configure_api
from conveyor.api import router as api_router
from conveyor.artifacts import ArtifactStore
from conveyor.config import (
    EngineSettings,
    PipelineConfig,
    load_pipeline_config,
    load_settings,
)
from conveyor.executor import ExecutorPool
from conveyor.models import JobRunStatus, PipelineStatus, RuleContext, utcnow
from conveyor.notify import LoggingNotifier, Notifier, WebhookNotifier
from conveyor.pipeline import PipelineController, RunRegistry
from conveyor.runtime import ContainerRuntime, create_runtime

logger = logging.getLogger(__name__)

SETTINGS_FILE = ".conveyor.yaml"


class ConveyorServer:
    """Encapsulates all server components and lifecycle."""

    def __init__(
        self,
        repo_root: Path | None = None,
        *,
        settings: EngineSettings | None = None,
        runtime: ContainerRuntime | None = None,
    ):
        self.repo_root = repo_root or Path.cwd()
        self.settings = settings
        self.runtime = runtime

        # Components (initialized in start())
        self.db: aiosqlite.Connection | None = None
        self.registry: RunRegistry | None = None
        self.store: ArtifactStore | None = None
        self.executor: ExecutorPool | None = None
        self.notifiers: list[Notifier] = []

        # Live controllers by pipeline id
        self.controllers: dict[str, PipelineController] = {}
        self._gc_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Initialize all components and start background loops."""
        logger.info("Conveyor server starting (repo=%s)", self.repo_root)

        # 1. Settings
        if self.settings is None:
            self.settings = load_settings(self.repo_root / SETTINGS_FILE)

        # 2. Database
        data_dir = self._resolve(self.settings.data_dir)
        data_dir.mkdir(parents=True, exist_ok=True)
        db_path = str(data_dir / "conveyor.db")
        logger.info("Database path: %s", db_path)
        self.db = await aiosqlite.connect(db_path)
        self.db.row_factory = aiosqlite.Row
        self.registry = RunRegistry(self.db)
        await self.registry.initialize()
        self.store = ArtifactStore(self.db)
        await self.store.initialize()

        # 3. Recovery
        await self._recover_pipelines()

        # 4. Execution
        if self.runtime is None:
            self.runtime = create_runtime(self.settings.runtime)
        self.executor = ExecutorPool(
            self.runtime,
            self.store,
            workspace_root=self._resolve(str(self.settings.workspace_path())),
            worker_limit=self.settings.worker_limit,
            default_timeout=self.settings.default_timeout_seconds(),
            max_infra_retries=self.settings.max_infra_retries,
            retry_backoff=self.settings.infra_retry_backoff,
        )
        self.notifiers = [LoggingNotifier()]
        self.notifiers.extend(WebhookNotifier(url) for url in self.settings.notify_webhook_urls)

        # 5. Background loops
        self._gc_task = asyncio.create_task(self._artifact_gc_loop())

        configure_api(self)
        logger.info(
            "Conveyor server started (runtime=%s, workers=%d, notifiers=%d)",
            self.settings.runtime,
            self.settings.worker_limit,
            len(self.notifiers),
        )

    async def stop(self) -> None:
        """Graceful shutdown."""
        logger.info("Conveyor server shutting down")

        for controller in list(self.controllers.values()):
            if not controller.status.is_terminal:
                await controller.cancel()
                await controller.wait()

        if self._gc_task:
            self._gc_task.cancel()
            try:
                await self._gc_task
            except asyncio.CancelledError:
                pass
            self._gc_task = None

        if self.db:
            await self.db.close()
            self.db = None
        logger.info("Conveyor server stopped")

    # ── Pipelines ────────────────────────────────────────────────────────────

    def load_pipeline(self) -> PipelineConfig:
        """Parse the pipeline file of the served repository."""
        assert self.settings is not None
        return load_pipeline_config(self.repo_root / self.settings.pipeline_file)

    async def trigger(
        self, context: RuleContext, *, config: PipelineConfig | None = None
    ) -> PipelineController:
        """Create a pipeline for ``context`` and start driving it.

        Raises:
            ValidationError: The pipeline definition or job graph is invalid.
        """
        if self.executor is None or self.settings is None:
            raise RuntimeError("Server not started")
        controller = PipelineController(
            config or self.load_pipeline(),
            context,
            self.executor,
            registry=self.registry,
            notifiers=self.notifiers,
            project=self.settings.project_name or self.repo_root.name,
            default_image=self.settings.default_image,
        )
        await controller.prepare()
        self.controllers[controller.pipeline_id] = controller
        self.resume(controller)
        return controller

    def resume(self, controller: PipelineController) -> None:
        """Drive ``controller`` in the background and forget it once it settles."""
        task = controller.ensure_running()
        task.add_done_callback(lambda _: self.release(controller.pipeline_id))

    def release(self, pipeline_id: str) -> None:
        """Drop a controller that has nothing left to play or cancel."""
        controller = self.controllers.get(pipeline_id)
        if controller is None or not controller.status.is_terminal:
            return
        if any(run.status == JobRunStatus.MANUAL for run in controller.runs.values()):
            return
        del self.controllers[pipeline_id]
        logger.debug("Released settled pipeline %s", pipeline_id)

    def get_controller(self, pipeline_id: str) -> PipelineController | None:
        return self.controllers.get(pipeline_id)

    async def _recover_pipelines(self) -> None:
        """Runs cannot survive a restart; mark leftovers as failed."""
        assert self.registry is not None
        stale = await self.registry.get_active_pipeline_runs()
        if stale:
            logger.warning(
                "Found %d pipelines from a previous run — marking FAILED", len(stale)
            )
        for run in stale:
            run.status = PipelineStatus.FAILED
            run.finished_at = utcnow()
            run.error_message = "Server restarted while the pipeline was active"
            await self.registry.update_pipeline_run(run)

    async def _artifact_gc_loop(self) -> None:
        assert self.settings is not None and self.store is not None
        while True:
            try:
                await self.store.invalidate_expired()
            except Exception:
                logger.exception("Artifact expiry sweep failed")
            await asyncio.sleep(self.settings.artifact_gc_interval)

    def _resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.repo_root / p


# ── FastAPI App ──────────────────────────────────────────────────────────────

_server = ConveyorServer()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan — startup and shutdown."""
    await _server.start()
    yield
    await _server.stop()


def create_app(
    repo_root: Path | None = None,
    *,
    settings: EngineSettings | None = None,
    runtime: ContainerRuntime | None = None,
) -> FastAPI:
    """Create the FastAPI application."""
    global _server
    _server = ConveyorServer(repo_root, settings=settings, runtime=runtime)

    app = FastAPI(
        title="Conveyor",
        version="0.1.0",
        description="Minimal CI pipeline orchestration engine",
        lifespan=lifespan,
    )
    app.include_router(api_router)

    @app.get("/health")
    async def health():
        """Health check endpoint with pipeline counts."""
        live = [c for c in _server.controllers.values() if not c.status.is_terminal]
        return {
            "status": "ok",
            "runtime": _server.settings.runtime if _server.settings else None,
            "live_pipelines": len(live),
            "tracked_pipelines": len(_server.controllers),
        }

    return app
