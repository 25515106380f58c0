"""
Container runtime backed by the docker CLI.

This module provides the small set of docker operations the reconciler and
backup scheduler need: listing and inspecting containers, creating managed
containers from their declarative config, start/stop/remove, compose
up/stop/ps, and running short-lived worker containers with a deadline.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime

from envm_common.errors import (
    ContainerRuntimeError,
    RuntimeUnavailableError,
    WorkerTimeoutError,
)
from envm_common.models import ContainerConfig

logger = logging.getLogger(__name__)

MANAGED_LABEL = "env-manager.managed"
ID_LABEL = "env-manager.id"

_UNAVAILABLE_MARKERS = (
    "Cannot connect to the Docker daemon",
    "error during connect",
    "Is the docker daemon running",
)


@dataclass
class RuntimeContainer:
    """
    A container as the docker daemon sees it.

    status is docker's State.Status: created, running, exited, paused,
    restarting, removing or dead.
    """

    container_id: str
    name: str
    status: str
    labels: dict[str, str] = field(default_factory=dict)
    exit_code: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self.status == "running"

    @property
    def is_managed(self) -> bool:
        return self.labels.get(MANAGED_LABEL) == "true"

    @property
    def managed_id(self) -> str | None:
        return self.labels.get(ID_LABEL) if self.is_managed else None


@dataclass
class WorkerMount:
    """A mount for a worker container: a named volume or a host directory."""

    source: str
    target: str
    read_only: bool = False
    volume: bool = True  # False for bind mounts

    def to_arg(self) -> str:
        kind = "volume" if self.volume else "bind"
        arg = f"type={kind},source={self.source},target={self.target}"
        if self.read_only:
            arg += ",readonly"
        return arg


def _parse_docker_time(value: str | None) -> datetime | None:
    # Docker reports "0001-01-01T00:00:00Z" for never
    if not value or value.startswith("0001-"):
        return None
    try:
        # Nanosecond precision does not fit datetime; trim to microseconds
        value = value.replace("Z", "+00:00")
        if "." in value:
            head, _, tail = value.partition(".")
            width = len(tail) - len(tail.lstrip("0123456789"))
            value = f"{head}.{tail[:width][:6]}{tail[width:]}"
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def parse_inspect_entry(entry: dict) -> RuntimeContainer:
    """Convert one element of `docker inspect` output."""
    state = entry.get("State") or {}
    config = entry.get("Config") or {}
    return RuntimeContainer(
        container_id=entry["Id"],
        name=str(entry.get("Name", "")).lstrip("/"),
        status=str(state.get("Status", "")).lower(),
        labels=dict(config.get("Labels") or {}),
        exit_code=state.get("ExitCode"),
        started_at=_parse_docker_time(state.get("StartedAt")),
        finished_at=_parse_docker_time(state.get("FinishedAt")),
    )


def build_create_args(config: ContainerConfig, network: str | None = None) -> list[str]:
    """
    Build `docker create` arguments for a managed container.

    Args:
        config: Declarative container config
        network: Optional docker network to attach

    Returns:
        Argument list starting with "create"
    """
    settings = config.config
    args = ["create", "--name", config.name]

    labels = dict(settings.labels)
    labels[MANAGED_LABEL] = "true"
    labels[ID_LABEL] = config.id
    for key, value in labels.items():
        args += ["--label", f"{key}={value}"]

    for key, value in settings.env.items():
        args += ["--env", f"{key}={value}"]

    for port in settings.ports:
        args += ["--publish", f"{port.host}:{port.container}/{port.protocol or 'tcp'}"]

    for mount in settings.volumes:
        if mount.name:
            mount_arg = f"type=volume,source={mount.name},target={mount.container_path}"
        elif mount.host_path:
            mount_arg = f"type=bind,source={mount.host_path},target={mount.container_path}"
        else:
            mount_arg = f"type=volume,target={mount.container_path}"
        if mount.read_only:
            mount_arg += ",readonly"
        args += ["--mount", mount_arg]

    if settings.resources.memory:
        args += ["--memory", settings.resources.memory]
    if settings.resources.cpu:
        args += ["--cpus", settings.resources.cpu]
    if settings.restart:
        args += ["--restart", settings.restart]
    if settings.working_dir:
        args += ["--workdir", settings.working_dir]
    if network:
        args += ["--network", network]

    # docker create takes a single entrypoint executable; the rest of the
    # entrypoint list becomes leading command arguments
    command = list(settings.command)
    if settings.entrypoint:
        args += ["--entrypoint", settings.entrypoint[0]]
        command = list(settings.entrypoint[1:]) + command

    args.append(settings.image)
    args += command
    return args


class ContainerRuntime:
    """
    Async facade over the docker CLI.

    Every call spawns `docker` with asyncio.create_subprocess_exec and blocks
    the calling coroutine until the command finishes.
    """

    def __init__(self, docker_binary: str = "docker"):
        """
        Initialize the runtime.

        Args:
            docker_binary: Path or name of the docker CLI
        """
        self.docker_binary = docker_binary

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """
        Run a docker command.

        Returns:
            Tuple of (returncode, stdout, stderr)

        Raises:
            RuntimeUnavailableError: If docker is not installed or the daemon is down
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self.docker_binary,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RuntimeUnavailableError(
                f"docker binary not found: {self.docker_binary}"
            ) from e

        stdout, stderr = await process.communicate()
        error = stderr.decode(errors="replace")
        if process.returncode != 0 and any(m in error for m in _UNAVAILABLE_MARKERS):
            raise RuntimeUnavailableError(error.strip())
        return process.returncode or 0, stdout.decode(errors="replace"), error

    async def _check(self, action: str, *args: str) -> str:
        returncode, stdout, stderr = await self._run(*args)
        if returncode != 0:
            raise ContainerRuntimeError(f"Failed to {action}: {stderr.strip()}")
        return stdout

    async def list_containers(self, all: bool = True) -> list[RuntimeContainer]:
        """
        List containers with full inspect data.

        Args:
            all: Include stopped containers

        Raises:
            RuntimeUnavailableError: If the daemon cannot be reached
        """
        args = ["ps", "--quiet", "--no-trunc"]
        if all:
            args.append("--all")
        returncode, stdout, stderr = await self._run(*args)
        if returncode != 0:
            raise RuntimeUnavailableError(f"Failed to list containers: {stderr.strip()}")

        ids = [line.strip() for line in stdout.splitlines() if line.strip()]
        if not ids:
            return []

        # A container can disappear between ps and inspect; inspect still
        # prints the ones it found and exits non-zero
        _, stdout, stderr = await self._run("inspect", *ids)
        try:
            entries = json.loads(stdout) if stdout.strip() else []
        except json.JSONDecodeError as e:
            raise ContainerRuntimeError(f"Failed to parse container list: {e}") from e
        return [parse_inspect_entry(entry) for entry in entries]

    async def inspect(self, ref: str) -> RuntimeContainer | None:
        """
        Inspect one container by ID or name.

        Returns:
            RuntimeContainer if it exists, None otherwise
        """
        returncode, stdout, _ = await self._run("inspect", "--type", "container", ref)
        if returncode != 0:
            return None
        try:
            entries = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ContainerRuntimeError(f"Failed to parse container info: {e}") from e
        if not entries:
            return None
        return parse_inspect_entry(entries[0])

    async def create(self, config: ContainerConfig, network: str | None = None) -> str:
        """
        Create (but do not start) a managed container.

        Returns:
            The docker container ID
        """
        stdout = await self._check(
            f"create container {config.name}", *build_create_args(config, network)
        )
        container_id = stdout.strip().splitlines()[-1] if stdout.strip() else ""
        logger.info(f"Created container {config.name} ({container_id[:12]})")
        return container_id

    async def start(self, ref: str) -> None:
        await self._check(f"start container {ref}", "start", ref)

    async def stop(self, ref: str, timeout: int = 10) -> None:
        await self._check(f"stop container {ref}", "stop", "--time", str(timeout), ref)

    async def remove(self, ref: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("--force")
        args.append(ref)
        returncode, _, stderr = await self._run(*args)
        if returncode != 0 and "No such container" not in stderr:
            raise ContainerRuntimeError(f"Failed to remove container {ref}: {stderr.strip()}")

    # ------------------------------------------------------------------
    # Compose
    # ------------------------------------------------------------------

    def _compose_args(self, project: str, compose_file: str, env_file: str | None = None) -> list[str]:
        args = ["compose", "--project-name", project, "--file", compose_file]
        if env_file:
            args += ["--env-file", env_file]
        return args

    async def compose_up(self, project: str, compose_file: str, env_file: str | None = None) -> None:
        await self._check(
            f"bring up compose project {project}",
            *self._compose_args(project, compose_file, env_file),
            "up",
            "--detach",
        )

    async def compose_stop(self, project: str, compose_file: str) -> None:
        await self._check(
            f"stop compose project {project}",
            *self._compose_args(project, compose_file),
            "stop",
        )

    async def compose_down(self, project: str, compose_file: str) -> None:
        """Stop and remove the containers and networks of a compose project."""
        await self._check(
            f"take down compose project {project}",
            *self._compose_args(project, compose_file),
            "down",
        )

    async def compose_ps(self, project: str, compose_file: str) -> list[RuntimeContainer]:
        """List the containers of a compose project (running and stopped)."""
        stdout = await self._check(
            f"list compose project {project}",
            *self._compose_args(project, compose_file),
            "ps",
            "--all",
            "--format",
            "json",
        )
        text = stdout.strip()
        if not text:
            return []

        # Older compose releases print a JSON array, newer ones one object per line
        try:
            if text.startswith("["):
                rows = json.loads(text)
            else:
                rows = [json.loads(line) for line in text.splitlines() if line.strip()]
        except json.JSONDecodeError as e:
            raise ContainerRuntimeError(f"Failed to parse compose ps output: {e}") from e

        return [
            RuntimeContainer(
                container_id=row.get("ID", ""),
                name=row.get("Name", ""),
                status=str(row.get("State", "")).lower(),
                exit_code=row.get("ExitCode"),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Volumes
    # ------------------------------------------------------------------

    async def create_volume(
        self,
        name: str,
        driver: str = "local",
        driver_opts: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Create a named docker volume labelled as managed.

        Creating a volume that already exists is a no-op in docker.
        """
        args = ["volume", "create", "--driver", driver or "local"]
        for key, value in sorted((driver_opts or {}).items()):
            args += ["--opt", f"{key}={value}"]
        volume_labels = {**(labels or {}), MANAGED_LABEL: "true"}
        for key, value in sorted(volume_labels.items()):
            args += ["--label", f"{key}={value}"]
        args.append(name)
        await self._check(f"create volume {name}", *args)

    async def remove_volume(self, name: str, force: bool = False) -> None:
        """Remove a named volume; a missing volume is ignored."""
        args = ["volume", "rm"]
        if force:
            args.append("--force")
        args.append(name)
        returncode, _, stderr = await self._run(*args)
        if returncode != 0 and "no such volume" not in stderr.lower():
            raise ContainerRuntimeError(f"Failed to remove volume {name}: {stderr.strip()}")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def run_worker(
        self,
        image: str,
        command: list[str],
        mounts: list[WorkerMount],
        timeout: float | None = None,
    ) -> int:
        """
        Run a short-lived worker container to completion.

        The worker is always force-removed afterwards.

        Args:
            image: Worker image
            command: Command to execute
            mounts: Volume and bind mounts
            timeout: Seconds to wait for the worker; None waits forever

        Returns:
            The worker's exit code

        Raises:
            ContainerRuntimeError: If the worker cannot be created or started
            WorkerTimeoutError: If the worker outlives its deadline
        """
        args = ["create", "--label", f"{MANAGED_LABEL}.worker=true"]
        for mount in mounts:
            args += ["--mount", mount.to_arg()]
        args.append(image)
        args += command

        stdout = await self._check("create worker container", *args)
        worker_id = stdout.strip().splitlines()[-1]
        logger.debug(f"Created worker {worker_id[:12]} ({image})")

        try:
            await self.start(worker_id)
            try:
                returncode, stdout, stderr = await asyncio.wait_for(
                    self._run("wait", worker_id), timeout=timeout
                )
            except asyncio.TimeoutError:
                raise WorkerTimeoutError(
                    f"Worker {worker_id[:12]} did not finish within {timeout}s"
                ) from None
            if returncode != 0:
                raise ContainerRuntimeError(
                    f"Failed to wait for worker {worker_id[:12]}: {stderr.strip()}"
                )
            try:
                return int(stdout.strip().splitlines()[-1])
            except (IndexError, ValueError) as e:
                raise ContainerRuntimeError(
                    f"Unexpected wait output for worker {worker_id[:12]}: {stdout!r}"
                ) from e
        finally:
            try:
                await self.remove(worker_id, force=True)
            except ContainerRuntimeError as e:
                logger.warning(f"Failed to remove worker {worker_id[:12]}: {e}")
