"""Container runtimes — where job scripts actually execute.

The engine only needs ``run(image, script, mounts, timeout) → RuntimeResult``.
Two implementations:

- :class:`DockerRuntime` shells out to the ``docker`` CLI. Services become
  sidecar containers on a per-job network, reachable by their alias.
- :class:`ShellRuntime` runs the script with ``sh`` on the host inside the
  workspace directory. The image is ignored. Meant for local runs and tests.

Both raise :class:`InfrastructureError` when the environment cannot be
acquired and :class:`JobTimeoutError` when the script overruns.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from collections.abc import Mapping, Sequence
from typing import Protocol

from conveyor.config import ServiceConfig
from conveyor.errors import InfrastructureError, JobTimeoutError
from conveyor.models import RuntimeResult

logger = logging.getLogger(__name__)

# ``docker run`` exits 125 when the daemon fails before the container starts
# (unknown image, bad flags, daemon unreachable).
DOCKER_RUN_FAILURE = 125

CONTAINER_WORKDIR = "/builds/project"


class ContainerRuntime(Protocol):
    """Executes one job script in an isolated environment."""

    async def run(
        self,
        image: str,
        script: Sequence[str],
        mounts: Mapping[str, str],
        timeout: float | None,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[ServiceConfig] = (),
    ) -> RuntimeResult:
        """Run ``script`` in ``image`` with host→container ``mounts``."""
        ...


def render_script(script: Sequence[str]) -> str:
    """Join script lines into one shell program that stops at the first failure."""
    return "set -e\n" + "\n".join(script) + "\n"


async def _run_process(
    *args: str,
    timeout: float | None = None,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    on_timeout: str | None = None,
) -> tuple[int, str, str]:
    """Run a command without blocking the event loop.

    Returns (returncode, stdout, stderr). Kills the process on timeout or
    cancellation; ``on_timeout`` names a container to ``docker kill`` as well.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as exc:
        raise InfrastructureError(f"Cannot start {args[0]}: {exc}") from exc

    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except (asyncio.TimeoutError, asyncio.CancelledError) as exc:
        await _kill(proc, on_timeout)
        if isinstance(exc, asyncio.TimeoutError):
            raise JobTimeoutError(f"Script exceeded timeout of {timeout:.0f}s") from exc
        raise
    return (
        proc.returncode if proc.returncode is not None else -1,
        (stdout_bytes or b"").decode(errors="replace"),
        (stderr_bytes or b"").decode(errors="replace"),
    )


async def _kill(proc: asyncio.subprocess.Process, container: str | None) -> None:
    if container:
        killer = await asyncio.create_subprocess_exec(
            "docker",
            "kill",
            container,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        await killer.wait()
    if proc.returncode is None:
        proc.kill()
    await proc.wait()


class DockerRuntime:
    """Runs scripts in containers through the docker CLI."""

    def __init__(self, docker: str = "docker", *, pull_policy: str = "missing"):
        self.docker = docker
        self.pull_policy = pull_policy

    async def run(
        self,
        image: str,
        script: Sequence[str],
        mounts: Mapping[str, str],
        timeout: float | None,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[ServiceConfig] = (),
    ) -> RuntimeResult:
        name = f"conveyor-{uuid.uuid4().hex[:12]}"
        network = f"{name}-net" if services else None
        started: list[str] = []
        try:
            if network:
                await self._docker_checked("network", "create", network)
                for service in services:
                    started.append(await self._start_service(service, network, env or {}))

            args = [
                "run",
                "--rm",
                "--name",
                name,
                f"--pull={self.pull_policy}",
                "--workdir",
                CONTAINER_WORKDIR,
                "--entrypoint",
                "",
            ]
            if network:
                args += ["--network", network]
            for host_path, container_path in mounts.items():
                args += ["--volume", f"{os.path.abspath(host_path)}:{container_path}"]
            for key, value in (env or {}).items():
                args += ["--env", f"{key}={value}"]
            args += [image, "sh", "-c", render_script(script)]

            logger.debug("docker run %s (image=%s)", name, image)
            code, stdout, stderr = await _run_process(
                self.docker, *args, timeout=timeout, on_timeout=name
            )
            if code == DOCKER_RUN_FAILURE:
                raise InfrastructureError(f"docker run failed for {image}: {stderr.strip()[:500]}")
            return RuntimeResult(exit_code=code, stdout=stdout, stderr=stderr)
        finally:
            await self._teardown(started, network)

    async def _start_service(
        self, service: ServiceConfig, network: str, env: Mapping[str, str]
    ) -> str:
        container = f"{network}-{service.hostname}"
        args = [
            "run",
            "--detach",
            "--rm",
            "--name",
            container,
            "--network",
            network,
            "--network-alias",
            service.hostname,
        ]
        for key, value in env.items():
            args += ["--env", f"{key}={value}"]
        args.append(service.name)
        await self._docker_checked(*args)
        logger.debug("Started service %s as %s", service.name, service.hostname)
        return container

    async def _docker_checked(self, *args: str) -> str:
        code, stdout, stderr = await _run_process(self.docker, *args, timeout=300)
        if code != 0:
            raise InfrastructureError(f"docker {args[0]} failed: {stderr.strip()[:500]}")
        return stdout

    async def _teardown(self, containers: list[str], network: str | None) -> None:
        for container in containers:
            try:
                await _run_process(self.docker, "rm", "--force", container, timeout=60)
            except Exception:
                logger.warning("Failed to remove service container %s", container, exc_info=True)
        if network:
            try:
                await _run_process(self.docker, "network", "rm", network, timeout=60)
            except Exception:
                logger.warning("Failed to remove network %s", network, exc_info=True)


class ShellRuntime:
    """Runs scripts with the host shell in the first mounted directory."""

    def __init__(self, shell: str = "sh", *, inherit_env: bool = True):
        self.shell = shell
        self.inherit_env = inherit_env

    async def run(
        self,
        image: str,
        script: Sequence[str],
        mounts: Mapping[str, str],
        timeout: float | None,
        *,
        env: Mapping[str, str] | None = None,
        services: Sequence[ServiceConfig] = (),
    ) -> RuntimeResult:
        if services:
            logger.warning(
                "Shell runtime ignores services: %s", ", ".join(s.name for s in services)
            )
        cwd = next(iter(mounts), None)
        if cwd is not None and not os.path.isdir(cwd):
            raise InfrastructureError(f"Workspace does not exist: {cwd}")

        base = dict(os.environ) if self.inherit_env else {"PATH": os.environ.get("PATH", "")}
        code, stdout, stderr = await _run_process(
            self.shell,
            "-c",
            render_script(script),
            timeout=timeout,
            cwd=cwd,
            env={**base, **(env or {}), **({"CI_PROJECT_DIR": cwd} if cwd else {})},
        )
        return RuntimeResult(exit_code=code, stdout=stdout, stderr=stderr)


def create_runtime(kind: str) -> ContainerRuntime:
    """Runtime by name: ``docker`` or ``shell``."""
    if kind == "docker":
        return DockerRuntime()
    if kind == "shell":
        return ShellRuntime()
    raise ValueError(f"Unknown runtime: {kind!r}")
