"""Conveyor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from conveyor.errors import ConveyorError, ValidationError
from conveyor.models import JobRunStatus, PipelineSource, PipelineStatus, RuleContext

logger = logging.getLogger("conveyor")

_EXIT_CODES = {
    PipelineStatus.SUCCESS: 0,
    PipelineStatus.FAILED: 1,
    PipelineStatus.CANCELED: 1,
    PipelineStatus.MANUAL: 2,
}


def _parse_variables(pairs: list[str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {pair!r}")
        variables[key] = value
    return variables


def _build_context(args) -> RuleContext:
    source = PipelineSource(args.source)
    return RuleContext(
        commit_sha=args.sha or "",
        branch=args.branch,
        tag=args.tag,
        source=source,
        schedule=args.schedule,
        changed_paths=tuple(args.changed) if args.changed is not None else None,
        variables=_parse_variables(args.var),
    )


def _pipeline_path(args) -> Path:
    if args.file:
        return args.file
    from conveyor.config import load_settings
    from conveyor.server import SETTINGS_FILE

    settings = load_settings(args.repo_root / SETTINGS_FILE)
    return args.repo_root / settings.pipeline_file


# ── validate / plan ──────────────────────────────────────────────────────────


def _validate(args) -> int:
    from conveyor.config import load_pipeline_config
    from conveyor.pipeline import build_graph

    path = _pipeline_path(args)
    try:
        config = load_pipeline_config(path)
        graph = build_graph(config)
    except (ValidationError, FileNotFoundError) as e:
        print(f"Invalid: {e}", file=sys.stderr)
        return 1
    print(f"{path}: OK ({len(graph)} jobs, stages: {', '.join(graph.stages)})")
    return 0


def _plan(args) -> int:
    from conveyor.config import load_pipeline_config
    from conveyor.pipeline import build_graph, evaluate_pipeline

    path = _pipeline_path(args)
    context = _build_context(args)
    try:
        config = load_pipeline_config(path)
        decisions = evaluate_pipeline(config, context)
        graph = build_graph(config, decisions)
    except (ValidationError, FileNotFoundError) as e:
        print(f"Invalid: {e}", file=sys.stderr)
        return 1

    print(f"Pipeline for {context.ref_name or '(no ref)'} ({context.source.value})")
    for stage in graph.stages:
        print(f"  {stage}:")
        for job in graph.jobs_in_stage(stage):
            flags = []
            if job.manual:
                flags.append("manual")
            if job.allow_failure:
                flags.append("allow_failure")
            if job.uses_needs:
                flags.append(f"needs: {', '.join(job.upstream) or '-'}")
            suffix = f"  [{'; '.join(flags)}]" if flags else ""
            print(f"    - {job.name}{suffix}")
    excluded = sorted(name for name, d in decisions.items() if not d.included)
    if excluded:
        print(f"  excluded: {', '.join(excluded)}")
    return 0


# ── run ──────────────────────────────────────────────────────────────────────


async def _run_pipeline(args) -> int:
    import aiosqlite

    from conveyor.artifacts import ArtifactStore
    from conveyor.config import load_pipeline_config, load_settings
    from conveyor.executor import ExecutorPool
    from conveyor.notify import LoggingNotifier, WebhookNotifier
    from conveyor.pipeline import PipelineController, RunRegistry
    from conveyor.runtime import create_runtime
    from conveyor.server import SETTINGS_FILE

    settings = load_settings(args.repo_root / SETTINGS_FILE)
    if args.runtime:
        settings.runtime = args.runtime
    config = load_pipeline_config(args.file or args.repo_root / settings.pipeline_file)

    data_dir = Path(settings.data_dir)
    if not data_dir.is_absolute():
        data_dir = args.repo_root / data_dir
    data_dir.mkdir(parents=True, exist_ok=True)
    workspace = settings.workspace_path()
    if not workspace.is_absolute():
        workspace = args.repo_root / workspace

    async with aiosqlite.connect(str(data_dir / "conveyor.db")) as db:
        db.row_factory = aiosqlite.Row
        registry = RunRegistry(db)
        await registry.initialize()
        store = ArtifactStore(db)
        await store.initialize()

        executor = ExecutorPool(
            create_runtime(settings.runtime),
            store,
            workspace_root=workspace,
            worker_limit=settings.worker_limit,
            default_timeout=settings.default_timeout_seconds(),
            max_infra_retries=settings.max_infra_retries,
            retry_backoff=settings.infra_retry_backoff,
        )
        notifiers = [LoggingNotifier()]
        notifiers.extend(WebhookNotifier(url) for url in settings.notify_webhook_urls)

        controller = PipelineController(
            config,
            _build_context(args),
            executor,
            registry=registry,
            notifiers=notifiers,
            project=settings.project_name or args.repo_root.resolve().name,
            default_image=settings.default_image,
        )
        status = await controller.run()

        to_play = list(args.play)
        while to_play:
            waiting = [
                name
                for name in to_play
                if name in controller.runs and controller.runs[name].status == JobRunStatus.MANUAL
            ]
            if not waiting:
                break
            for name in waiting:
                await controller.play(name)
                to_play.remove(name)
            status = await controller.run()

        print(f"Pipeline {controller.pipeline_id}: {status.value}")
        for name, run in controller.runs.items():
            detail = f" ({run.failure_reason.value})" if run.failure_reason else ""
            coverage = f" coverage={run.coverage:.2f}%" if run.coverage is not None else ""
            print(f"  {run.stage:<12} {name:<32} {run.status.value}{detail}{coverage}")
        return _EXIT_CODES.get(status, 1)


def _run(args) -> int:
    try:
        return asyncio.run(_run_pipeline(args))
    except (ValidationError, FileNotFoundError) as e:
        print(f"Invalid: {e}", file=sys.stderr)
        return 1


# ── cleanup-images ───────────────────────────────────────────────────────────


async def _cleanup_images(args) -> int:
    from conveyor.cleanup import HttpImageRegistry, prune_images

    token = args.token or os.environ.get("CONVEYOR_REGISTRY_TOKEN")
    registry = HttpImageRegistry(args.api_url, token)
    try:
        deleted = await prune_images(registry, args.project, keep=args.keep, dry_run=args.dry_run)
    finally:
        await registry.close()
    verb = "Would delete" if args.dry_run else "Deleted"
    for image in deleted:
        print(f"{verb} {image.location or f'{image.repository}:{image.tag}'}")
    print(f"{verb} {len(deleted)} images")
    return 0


# ── serve ────────────────────────────────────────────────────────────────────


def _serve(args) -> int:
    import uvicorn

    from conveyor.server import create_app

    app = create_app(repo_root=args.repo_root)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level.lower())
    return 0


def _add_context_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--branch", help="Branch the pipeline runs for")
    parser.add_argument("--tag", help="Tag the pipeline runs for")
    parser.add_argument("--sha", help="Commit SHA")
    parser.add_argument(
        "--source",
        default=PipelineSource.PUSH.value,
        choices=[s.value for s in PipelineSource],
        help="Pipeline source (default: push)",
    )
    parser.add_argument("--schedule", action="store_true", help="Scheduled pipeline")
    parser.add_argument(
        "--changed",
        nargs="*",
        help="Changed paths (omit to treat the change set as unknown)",
    )
    parser.add_argument(
        "--var",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Pipeline variable (repeatable)",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="conveyor", description="Conveyor CI pipeline engine")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Path to the repository root (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser("validate", help="Validate the pipeline file")
    validate_parser.add_argument("--file", type=Path, help="Pipeline file to validate")

    plan_parser = subparsers.add_parser("plan", help="Show which jobs a trigger would run")
    plan_parser.add_argument("--file", type=Path, help="Pipeline file")
    _add_context_arguments(plan_parser)

    run_parser = subparsers.add_parser("run", help="Run a pipeline locally")
    run_parser.add_argument("--file", type=Path, help="Pipeline file")
    run_parser.add_argument("--runtime", choices=["docker", "shell"], help="Container runtime")
    run_parser.add_argument(
        "--play",
        action="append",
        default=[],
        metavar="JOB",
        help="Manual job to play once it is waiting (repeatable)",
    )
    _add_context_arguments(run_parser)

    serve_parser = subparsers.add_parser("serve", help="Start the Conveyor API server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")

    cleanup_parser = subparsers.add_parser(
        "cleanup-images", help="Delete all but the newest images in the container registry"
    )
    cleanup_parser.add_argument("--api-url", required=True, help="Registry API base URL")
    cleanup_parser.add_argument("--project", required=True, help="Project id or path")
    cleanup_parser.add_argument("--token", help="API token (default: $CONVEYOR_REGISTRY_TOKEN)")
    cleanup_parser.add_argument("--keep", type=int, default=10, help="Images to keep (default: 10)")
    cleanup_parser.add_argument("--dry-run", action="store_true", help="Only list what would go")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        if args.command == "validate":
            return _validate(args)
        if args.command == "plan":
            return _plan(args)
        if args.command == "run":
            return _run(args)
        if args.command == "cleanup-images":
            return asyncio.run(_cleanup_images(args))
        return _serve(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
    except ConveyorError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
