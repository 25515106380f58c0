"""
Shared fixtures: a temporary config store and an in-memory docker runtime.
"""

from dataclasses import replace

import pytest

from envm_common.errors import ContainerRuntimeError, RuntimeUnavailableError
from envm_common.models import (
    RUNNING,
    ContainerConfig,
    ContainerSettings,
    EntityKind,
)
from envm_controller.container_runtime import ID_LABEL, MANAGED_LABEL, RuntimeContainer
from envm_persistence.desired_state import DesiredStateTracker
from envm_persistence.yaml_store import YAMLConfigStore


class FakeRuntime:
    """
    In-memory stand-in for ContainerRuntime.

    Containers live in a dict keyed by docker ID. Failures are injected per
    operation and container name through fail_on.
    """

    def __init__(self):
        self.containers: dict[str, RuntimeContainer] = {}
        self.compose: dict[str, list[RuntimeContainer]] = {}
        self.volumes: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_on: dict[str, set[str]] = {}
        self.unavailable = False
        self.worker_handler = None
        self.workers: list[dict] = []
        self._next_id = 0

    def _new_id(self) -> str:
        self._next_id += 1
        return f"{self._next_id:064x}"

    def add_container(
        self,
        name: str,
        status: str = "running",
        entity_id: str | None = None,
        labels: dict[str, str] | None = None,
    ) -> RuntimeContainer:
        labels = dict(labels or {})
        if entity_id is not None:
            labels[MANAGED_LABEL] = "true"
            labels[ID_LABEL] = entity_id
        container = RuntimeContainer(
            container_id=self._new_id(), name=name, status=status, labels=labels
        )
        self.containers[container.container_id] = container
        return container

    def by_name(self, name: str) -> RuntimeContainer | None:
        for container in self.containers.values():
            if container.name == name:
                return container
        return None

    def _resolve(self, ref: str) -> RuntimeContainer:
        container = self.containers.get(ref) or self.by_name(ref)
        if container is None:
            raise ContainerRuntimeError(f"No such container: {ref}")
        return container

    def _maybe_fail(self, op: str, name: str) -> None:
        if self.unavailable:
            raise RuntimeUnavailableError("Cannot connect to the Docker daemon")
        if name in self.fail_on.get(op, set()):
            raise ContainerRuntimeError(f"{op} {name} failed")

    async def list_containers(self, all: bool = True) -> list[RuntimeContainer]:
        if self.unavailable:
            raise RuntimeUnavailableError("Cannot connect to the Docker daemon")
        return [
            replace(c, labels=dict(c.labels))
            for c in self.containers.values()
            if all or c.is_running
        ]

    async def inspect(self, ref: str) -> RuntimeContainer | None:
        if self.unavailable:
            raise RuntimeUnavailableError("Cannot connect to the Docker daemon")
        container = self.containers.get(ref) or self.by_name(ref)
        return replace(container, labels=dict(container.labels)) if container else None

    async def create(self, config: ContainerConfig, network: str | None = None) -> str:
        self.calls.append(("create", config.name))
        self._maybe_fail("create", config.name)
        if self.by_name(config.name) is not None:
            raise ContainerRuntimeError(f"Conflict: name {config.name} is already in use")
        container = self.add_container(config.name, status="created", entity_id=config.id)
        return container.container_id

    async def start(self, ref: str) -> None:
        container = self._resolve(ref)
        self.calls.append(("start", container.name))
        self._maybe_fail("start", container.name)
        container.status = "running"

    async def stop(self, ref: str, timeout: int = 10) -> None:
        container = self._resolve(ref)
        self.calls.append(("stop", container.name))
        self._maybe_fail("stop", container.name)
        container.status = "exited"

    async def remove(self, ref: str, force: bool = False) -> None:
        container = self.containers.get(ref) or self.by_name(ref)
        self.calls.append(("remove", ref))
        if container is not None:
            del self.containers[container.container_id]

    async def compose_ps(self, project: str, compose_file: str) -> list[RuntimeContainer]:
        self._maybe_fail("compose_ps", project)
        return [replace(c) for c in self.compose.get(project, [])]

    async def compose_up(self, project: str, compose_file: str, env_file: str | None = None) -> None:
        self.calls.append(("compose_up", project))
        self._maybe_fail("compose_up", project)
        services = self.compose.setdefault(project, [])
        if not services:
            services.append(
                RuntimeContainer(container_id=self._new_id(), name=f"{project}-web-1", status="running")
            )
        for service in services:
            service.status = "running"

    async def compose_stop(self, project: str, compose_file: str) -> None:
        self.calls.append(("compose_stop", project))
        self._maybe_fail("compose_stop", project)
        for service in self.compose.get(project, []):
            service.status = "exited"

    async def compose_down(self, project: str, compose_file: str) -> None:
        self.calls.append(("compose_down", project))
        self._maybe_fail("compose_down", project)
        self.compose.pop(project, None)

    async def create_volume(self, name, driver="local", driver_opts=None, labels=None) -> None:
        self.calls.append(("create_volume", name))
        self._maybe_fail("create_volume", name)
        self.volumes[name] = {"driver": driver, "driver_opts": dict(driver_opts or {})}

    async def remove_volume(self, name: str, force: bool = False) -> None:
        self.calls.append(("remove_volume", name))
        self._maybe_fail("remove_volume", name)
        self.volumes.pop(name, None)

    async def run_worker(self, image, command, mounts, timeout=None) -> int:
        self.workers.append(
            {"image": image, "command": list(command), "mounts": list(mounts), "timeout": timeout}
        )
        if self.worker_handler is None:
            return 0
        return await self.worker_handler(image, command, mounts, timeout)


@pytest.fixture
def data_dir(tmp_path):
    """Empty data directory."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def store(data_dir):
    return YAMLConfigStore(data_dir)


@pytest.fixture
def tracker(store):
    return DesiredStateTracker(store)


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def add_container_config(store):
    """Factory saving a container config to the store."""

    def _add(entity_id: str, name: str, image: str = "nginx:latest", desired_state: str = RUNNING):
        config = ContainerConfig(
            id=entity_id,
            name=name,
            config=ContainerSettings(image=image),
            desired_state=desired_state,
        )
        store.save(EntityKind.CONTAINERS, config)
        return config

    return _add
