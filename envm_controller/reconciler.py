"""
Reconciler driving the container runtime toward the desired state.

This module implements a controller that compares the desired state (the
desired-state document plus entity configs in the config store) with the
actual state (docker containers) and takes corrective actions when they
diverge. It runs at startup, on every sync trigger and, optionally, on a
fixed interval.

A broken entity never blocks the rest of the fleet: per-entity failures are
collected into the ReconcileReport and the pass moves on.
"""

import asyncio
import logging

from envm_common.errors import ContainerRuntimeError, NotFoundError, StoreIOError
from envm_common.models import (
    RUNNING,
    STOPPED,
    ComposeProject,
    ContainerConfig,
    EntityError,
    EntityKind,
    EntityState,
    ReconcileReport,
)
from envm_common.store import ConfigStore

from .container_runtime import ContainerRuntime, RuntimeContainer

logger = logging.getLogger(__name__)


class Reconciler:
    """
    Converges docker containers and compose projects to their desired state.

    Running two passes concurrently is safe: both converge to the same
    result, the second one just repeats work.
    """

    def __init__(
        self,
        store: ConfigStore,
        runtime: ContainerRuntime | None = None,
        network: str | None = None,
        reconcile_interval: float = 0.0,
    ):
        """
        Initialize the reconciler.

        Args:
            store: Config store with entity configs and the desired-state document
            runtime: Container runtime for docker operations
            network: Docker network new containers are attached to
            reconcile_interval: Seconds between periodic passes; 0 disables the loop
        """
        self.store = store
        self.runtime = runtime or ContainerRuntime()
        self.network = network or None
        self.reconcile_interval = reconcile_interval

        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> ReconcileReport | None:
        """
        Run the startup pass and, if an interval is set, the periodic loop.

        Returns:
            The startup report, or None if the startup pass failed
        """
        if self._running:
            logger.warning("Reconciler already running")
            return None

        self._running = True
        if self.reconcile_interval > 0:
            self._task = asyncio.create_task(self._run_loop())
            logger.info(
                f"Reconciler started (interval {self.reconcile_interval}s)"
            )
        else:
            logger.info("Reconciler started (periodic reconciliation disabled)")

        try:
            return await self.reconcile_once()
        except Exception as e:
            logger.error(f"Startup reconciliation failed: {e}", exc_info=True)
            return None

    async def stop(self) -> None:
        """Stop the periodic loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Reconciler stopped")

    async def _run_loop(self) -> None:
        """Periodic reconciliation loop."""
        while self._running:
            await asyncio.sleep(self.reconcile_interval)
            try:
                await self.reconcile_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)

    async def reconcile_once(self) -> ReconcileReport:
        """
        Perform one reconciliation pass.

        Returns:
            Report of actions taken and per-entity errors

        Raises:
            RuntimeUnavailableError: If docker cannot be reached to list containers
            StoreIOError: If the desired-state document cannot be read
        """
        report = ReconcileReport()

        # 1. Desired state from the config store
        desired = self.store.load_desired_state()
        if desired.is_empty():
            logger.debug("Reconciliation: desired state is empty, nothing to do")
            return report

        # 2. Actual state from docker
        containers = await self.runtime.list_containers(all=True)
        by_name = {c.name: c for c in containers}
        logger.debug(
            f"Reconciliation: {len(desired.containers)} containers and "
            f"{len(desired.compose_projects)} compose projects desired, "
            f"{len(containers)} containers in docker"
        )

        # 3. Reconcile each entity independently
        for entity_id, state in desired.containers.items():
            try:
                await self._reconcile_container(entity_id, state, by_name, report)
            except Exception as e:
                logger.error(f"Error reconciling container {entity_id}: {e}", exc_info=True)
                report.errors.append(EntityError(entity_id, "inspect_failed", str(e)))

        for project_name, state in desired.compose_projects.items():
            try:
                await self._reconcile_compose(project_name, state, report)
            except Exception as e:
                logger.error(f"Error reconciling compose project {project_name}: {e}", exc_info=True)
                report.errors.append(EntityError(project_name, "compose_failed", str(e)))

        if report.errors:
            logger.warning(
                f"Reconciliation finished with {len(report.errors)} error(s): "
                + ", ".join(f"{e.entity_id} ({e.kind})" for e in report.errors)
            )
        else:
            logger.info(
                f"Reconciliation finished: created={len(report.created)} "
                f"started={len(report.started)} stopped={len(report.stopped)}"
            )
        return report

    def _load_config(self, kind: EntityKind, entity_id: str, report: ReconcileReport):
        """Load an entity config, recording an error if it is missing or broken."""
        try:
            return self.store.load(kind, entity_id)
        except NotFoundError:
            logger.warning(
                f"Desired state references {kind.value}/{entity_id} but no config exists, skipping"
            )
            report.errors.append(
                EntityError(entity_id, "orphan", f"No {kind.value} config for {entity_id}")
            )
        except StoreIOError as e:
            logger.warning(f"Failed to load {kind.value}/{entity_id}: {e}")
            report.errors.append(EntityError(entity_id, "invalid_config", str(e)))
        return None

    async def _reconcile_container(
        self,
        entity_id: str,
        state: EntityState,
        by_name: dict[str, RuntimeContainer],
        report: ReconcileReport,
    ) -> None:
        config = self._load_config(EntityKind.CONTAINERS, entity_id, report)
        if config is None:
            return
        assert isinstance(config, ContainerConfig)

        container = by_name.get(config.name)

        if container is None:
            if state.desired_state != RUNNING:
                report.unchanged.append(entity_id)
                return
            await self._create_and_start(config, report)
            return

        # Never touch a container we did not create for this entity
        if container.managed_id != entity_id:
            message = (
                f"Container name {config.name} is taken by "
                f"{'entity ' + container.managed_id if container.managed_id else 'an unmanaged container'}"
            )
            logger.error(f"Skipping {entity_id}: {message}")
            report.errors.append(EntityError(entity_id, "name_conflict", message))
            return

        # Refresh status; the listing may be stale by now
        live = await self.runtime.inspect(container.container_id) or container

        if live.is_running and state.desired_state == STOPPED:
            logger.info(f"Stopping container {config.name}")
            try:
                await self.runtime.stop(live.container_id)
            except ContainerRuntimeError as e:
                logger.error(f"Failed to stop container {config.name}: {e}")
                report.errors.append(EntityError(entity_id, "stop_failed", str(e)))
                return
            report.stopped.append(entity_id)
        elif not live.is_running and state.desired_state == RUNNING:
            logger.info(f"Starting container {config.name}")
            try:
                await self.runtime.start(live.container_id)
            except ContainerRuntimeError as e:
                logger.error(f"Failed to start container {config.name}: {e}")
                report.errors.append(EntityError(entity_id, "start_failed", str(e)))
                return
            report.started.append(entity_id)
        else:
            report.unchanged.append(entity_id)

    async def _create_and_start(self, config: ContainerConfig, report: ReconcileReport) -> None:
        logger.info(f"Creating container {config.name}")
        try:
            container_id = await self.runtime.create(config, network=self.network)
        except ContainerRuntimeError as e:
            logger.error(f"Failed to create container {config.name}: {e}")
            report.errors.append(EntityError(config.id, "create_failed", str(e)))
            return
        report.created.append(config.id)

        # A failed start leaves the created container in place
        try:
            await self.runtime.start(container_id)
        except ContainerRuntimeError as e:
            logger.error(f"Failed to start container {config.name}: {e}")
            report.errors.append(EntityError(config.id, "start_failed", str(e)))
            return
        report.started.append(config.id)

    async def _reconcile_compose(
        self, project_name: str, state: EntityState, report: ReconcileReport
    ) -> None:
        project = self._load_config(EntityKind.COMPOSE, project_name, report)
        if project is None:
            return
        assert isinstance(project, ComposeProject)

        compose_file = str(self.store.compose_file_path(project.project_name))
        env_file = None
        if project.env_file:
            env_file = str(self.store.compose_file_path(project.project_name).parent / project.env_file)

        try:
            services = await self.runtime.compose_ps(project.project_name, compose_file)
            running = [s for s in services if s.is_running]

            if state.desired_state == RUNNING and (not services or len(running) < len(services)):
                logger.info(f"Bringing up compose project {project.project_name}")
                await self.runtime.compose_up(project.project_name, compose_file, env_file)
                report.started.append(project_name)
            elif state.desired_state == STOPPED and running:
                logger.info(f"Stopping compose project {project.project_name}")
                await self.runtime.compose_stop(project.project_name, compose_file)
                report.stopped.append(project_name)
            else:
                report.unchanged.append(project_name)
        except ContainerRuntimeError as e:
            logger.error(f"Failed to reconcile compose project {project.project_name}: {e}")
            report.errors.append(EntityError(project_name, "compose_failed", str(e)))
