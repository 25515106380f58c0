import asyncio
import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any

import yaml
from croniter import croniter
from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from envm_common.config import Settings
from envm_common.errors import (
    BackupExistsError,
    BackupInProgressError,
    ContainerRuntimeError,
    EnvManagerError,
    GitOperationError,
    NotFoundError,
    RuntimeUnavailableError,
    StoreIOError,
    VersionConflictError,
    WorkerFailureError,
    WorkerTimeoutError,
)
from envm_common.models import (
    DESIRED_STATES,
    RUNNING,
    STOPPED,
    BackupPolicy,
    ComposeProject,
    ContainerConfig,
    ContainerSettings,
    EntityKind,
    EntityMetadata,
    VolumeConfig,
    generate_entity_id,
    utc_now,
)
from envm_common.store import ConfigStore
from envm_controller.backup import BackupScheduler
from envm_controller.container_runtime import ContainerRuntime, RuntimeContainer
from envm_controller.reconciler import Reconciler
from envm_controller.sync import SyncCoordinator
from envm_persistence.desired_state import DesiredStateTracker
from envm_persistence.git_repository import GitRepository
from envm_persistence.yaml_store import YAMLConfigStore

from .auth import (
    is_deploy_ref,
    verify_bearer_token,
    verify_github_signature,
    verify_gitlab_token,
)

logger = logging.getLogger(__name__)

# Global instances (initialized at startup)
settings: Settings | None = None
store: ConfigStore | None = None
tracker: DesiredStateTracker | None = None
git_repo: GitRepository | None = None
runtime: ContainerRuntime | None = None
reconciler: Reconciler | None = None
backup_scheduler: BackupScheduler | None = None
sync_coordinator: SyncCoordinator | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for FastAPI app.

    Handles startup and shutdown events:
    - Startup: Open the config repository, run the startup reconciliation,
      start the backup timers
    - Shutdown: Stop the backup timers and the periodic reconciler
    """
    global settings, store, tracker, git_repo, runtime
    global reconciler, backup_scheduler, sync_coordinator

    settings = Settings.from_env()
    logger.info(f"Using data directory {settings.data_dir}")

    git_repo = GitRepository(
        settings.data_dir, remote_url=settings.git_remote, branch=settings.git_branch
    )
    await asyncio.to_thread(git_repo.initialize)

    store = YAMLConfigStore(settings.data_dir)
    tracker = DesiredStateTracker(store)
    runtime = ContainerRuntime()
    reconciler = Reconciler(
        store,
        runtime=runtime,
        network=settings.network,
        reconcile_interval=settings.reconcile_interval,
    )
    backup_scheduler = BackupScheduler(
        store,
        runtime=runtime,
        git_repo=git_repo,
        worker_image=settings.worker_image,
        worker_timeout=settings.worker_timeout,
    )
    sync_coordinator = SyncCoordinator(git_repo, reconciler, backup_scheduler)

    await reconciler.start()
    await backup_scheduler.start()

    yield

    await backup_scheduler.stop()
    await reconciler.stop()


app = FastAPI(title="Environment Manager", lifespan=lifespan)


# HTTP status for each domain error; anything unlisted is a 500
_ERROR_STATUS: dict[type[EnvManagerError], int] = {
    NotFoundError: 404,
    BackupInProgressError: 409,
    BackupExistsError: 409,
    VersionConflictError: 409,
    RuntimeUnavailableError: 503,
    WorkerFailureError: 500,
    WorkerTimeoutError: 500,
}


@app.exception_handler(EnvManagerError)
async def env_manager_error_handler(request: Request, exc: EnvManagerError) -> JSONResponse:
    status_code = 500
    for error_type, code in _ERROR_STATUS.items():
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


def _require(instance: Any, name: str) -> Any:
    if instance is None:
        raise RuntimeError(f"{name} not initialized")
    return instance


def get_settings() -> Settings:
    return _require(settings, "Settings")


def get_store() -> ConfigStore:
    return _require(store, "Config store")


def get_tracker() -> DesiredStateTracker:
    return _require(tracker, "Desired-state tracker")


def get_git_repository() -> GitRepository:
    return _require(git_repo, "Git repository")


def get_runtime() -> ContainerRuntime:
    return _require(runtime, "Container runtime")


def get_reconciler() -> Reconciler:
    return _require(reconciler, "Reconciler")


def get_backup_scheduler() -> BackupScheduler:
    return _require(backup_scheduler, "Backup scheduler")


def get_sync_coordinator() -> SyncCoordinator:
    return _require(sync_coordinator, "Sync coordinator")


async def commit_changes(repo: GitRepository, message: str) -> bool:
    """
    Commit and push the data directory. Failures are logged, not raised.

    Returns:
        True if a commit was created
    """
    try:
        return await asyncio.to_thread(repo.commit_and_push, message)
    except GitOperationError as e:
        logger.warning(f"Failed to commit '{message}': {e}")
        return False


async def run_reconcile(rec: Reconciler) -> None:
    """Background reconciliation after a desired-state change."""
    try:
        await rec.reconcile_once()
    except Exception as e:
        logger.error(f"Background reconciliation failed: {e}", exc_info=True)


async def run_sync(coordinator: SyncCoordinator) -> None:
    """Background sync triggered by a webhook."""
    try:
        await coordinator.sync()
    except Exception as e:
        logger.error(f"Background sync failed: {e}", exc_info=True)


# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------


class ContainerCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    config: dict[str, Any]
    desired_state: str = RUNNING


class RestoreRequest(BaseModel):
    filename: str


class BackupPolicyRequest(BaseModel):
    enabled: bool = True
    schedule: str = ""
    retention_days: int = 0


class VolumeCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    driver: str = "local"
    driver_opts: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    backup: BackupPolicyRequest = Field(
        default_factory=lambda: BackupPolicyRequest(schedule="0 2 * * *", retention_days=30)
    )


class ComposeCreateRequest(BaseModel):
    project_name: str
    compose_yaml: str
    env_file: str = ""
    desired_state: str = RUNNING


class ComposeUpdateRequest(BaseModel):
    compose_yaml: str | None = None
    env_file: str | None = None
    desired_state: str | None = None


# Names docker compose accepts for a project
_PROJECT_NAME = re.compile(r"^[a-z0-9][a-z0-9_-]*$")


# ----------------------------------------------------------------------
# Health and sync
# ----------------------------------------------------------------------


@app.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint (no authentication required).

    Returns:
        Dictionary with status="ok" if server is running
    """
    return {"status": "ok"}


@app.post("/sync")
async def trigger_sync(
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> dict[str, Any]:
    """Pull the config repository and reconcile, waiting for the result."""
    result = await coordinator.sync()
    return result.to_dict()


# ----------------------------------------------------------------------
# Webhooks
# ----------------------------------------------------------------------


def _parse_payload(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from None
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid JSON payload")
    return payload


def _accept_push(
    payload: dict[str, Any],
    cfg: Settings,
    background_tasks: BackgroundTasks,
    coordinator: SyncCoordinator,
) -> dict[str, str]:
    ref = payload.get("ref")
    if not is_deploy_ref(ref, cfg.git_branch):
        logger.info(f"Ignoring webhook for ref {ref}")
        return {"status": "ignored", "ref": str(ref)}

    logger.info(f"Webhook push to {ref}, scheduling sync")
    background_tasks.add_task(run_sync, coordinator)
    return {"status": "accepted", "ref": str(ref)}


@app.post("/webhooks/github", status_code=202)
async def github_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    cfg: Settings = Depends(get_settings),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> dict[str, str]:
    """
    GitHub push webhook.

    Raises:
        HTTPException: 401 if the X-Hub-Signature-256 signature does not match
    """
    body = await request.body()
    if not verify_github_signature(
        cfg.webhook_secret, body, request.headers.get("X-Hub-Signature-256")
    ):
        raise HTTPException(status_code=401, detail="Invalid signature")

    event = request.headers.get("X-GitHub-Event", "push")
    if event == "ping":
        return {"status": "pong"}
    if event != "push":
        return {"status": "ignored", "event": event}

    return _accept_push(_parse_payload(body), cfg, background_tasks, coordinator)


@app.post("/webhooks/gitlab", status_code=202)
async def gitlab_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    cfg: Settings = Depends(get_settings),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> dict[str, str]:
    """
    GitLab push webhook.

    Raises:
        HTTPException: 401 if X-Gitlab-Token does not match the secret
    """
    if not verify_gitlab_token(cfg.webhook_secret, request.headers.get("X-Gitlab-Token")):
        raise HTTPException(status_code=401, detail="Invalid token")

    body = await request.body()
    return _accept_push(_parse_payload(body), cfg, background_tasks, coordinator)


@app.post("/webhooks/generic", status_code=202)
async def generic_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    cfg: Settings = Depends(get_settings),
    coordinator: SyncCoordinator = Depends(get_sync_coordinator),
) -> dict[str, str]:
    """
    Generic webhook: any authorized POST triggers a sync.

    Raises:
        HTTPException: 401 if the bearer token does not match the secret
    """
    if not verify_bearer_token(cfg.webhook_secret, request.headers.get("Authorization")):
        raise HTTPException(
            status_code=401,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    background_tasks.add_task(run_sync, coordinator)
    return {"status": "accepted"}


# ----------------------------------------------------------------------
# Containers
# ----------------------------------------------------------------------


async def _runtime_status(rt: ContainerRuntime) -> dict[str, RuntimeContainer] | None:
    """Managed containers keyed by entity ID, or None if docker is unreachable."""
    try:
        containers = await rt.list_containers(all=True)
    except RuntimeUnavailableError as e:
        logger.warning(f"Container status unavailable: {e}")
        return None
    return {c.managed_id: c for c in containers if c.managed_id}


def _container_view(
    config: ContainerConfig,
    desired: str | None,
    live: dict[str, RuntimeContainer] | None,
) -> dict[str, Any]:
    view = config.to_dict()
    view["desired_state"] = desired or config.desired_state
    if live is None:
        view["status"] = "unknown"
    elif config.id in live:
        view["status"] = live[config.id].status
    else:
        view["status"] = "missing"
    return view


@app.get("/containers")
async def list_containers(
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    rt: ContainerRuntime = Depends(get_runtime),
) -> list[dict[str, Any]]:
    """List container configs with their desired and actual state."""
    document = trk.get_document()
    live = await _runtime_status(rt)
    views = []
    for config in st.list(EntityKind.CONTAINERS):
        state = document.containers.get(config.key)
        views.append(
            _container_view(config, state.desired_state if state else None, live)
        )
    return views


@app.get("/containers/{container_id}")
async def get_container(
    container_id: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    rt: ContainerRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    Get one container config with its desired and actual state.

    Raises:
        HTTPException: 404 if no config exists for container_id
    """
    config = st.load(EntityKind.CONTAINERS, container_id)
    state = trk.get_document().containers.get(container_id)
    live = await _runtime_status(rt)
    return _container_view(config, state.desired_state if state else None, live)


@app.post("/containers", status_code=201)
async def create_container(
    request: ContainerCreateRequest,
    background_tasks: BackgroundTasks,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """
    Create a container config and its desired-state entry.

    The change is committed and pushed; the container itself is created by
    the reconciliation that follows.

    Raises:
        HTTPException: 400 for an invalid config, 409 if the name is taken
    """
    if request.desired_state not in DESIRED_STATES:
        raise HTTPException(status_code=400, detail=f"Invalid desired_state: {request.desired_state}")
    try:
        container_settings = ContainerSettings.from_dict(request.config)
    except (KeyError, TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid container config: {e}") from None

    if any(c.name == request.name for c in st.list(EntityKind.CONTAINERS)):
        raise HTTPException(status_code=409, detail=f"Container name {request.name} already in use")

    config = ContainerConfig(
        id=generate_entity_id(),
        name=request.name,
        config=container_settings,
        desired_state=request.desired_state,
        metadata=EntityMetadata(created_by="api"),
    )
    st.save(EntityKind.CONTAINERS, config)
    trk.set_entity_state(config.id, request.desired_state)
    await commit_changes(repo, f"Create container {config.name} ({config.id})")

    background_tasks.add_task(run_reconcile, rec)
    return config.to_dict()


async def _set_container_state(
    container_id: str,
    state: str,
    st: ConfigStore,
    trk: DesiredStateTracker,
    repo: GitRepository,
    rec: Reconciler,
) -> dict[str, Any]:
    config = st.load(EntityKind.CONTAINERS, container_id)
    assert isinstance(config, ContainerConfig)

    config.desired_state = state
    config.metadata.updated_at = utc_now()
    st.save(EntityKind.CONTAINERS, config)
    trk.set_entity_state(container_id, state)

    verb = "Start" if state == RUNNING else "Stop"
    await commit_changes(repo, f"{verb} container {config.name} ({container_id})")

    report = await rec.reconcile_once()
    return {"id": container_id, "desired_state": state, "reconcile": report.to_dict()}


@app.post("/containers/{container_id}/start")
async def start_container(
    container_id: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Set a container's desired state to running and reconcile."""
    return await _set_container_state(container_id, RUNNING, st, trk, repo, rec)


@app.post("/containers/{container_id}/stop")
async def stop_container(
    container_id: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Set a container's desired state to stopped and reconcile."""
    return await _set_container_state(container_id, STOPPED, st, trk, repo, rec)


@app.delete("/containers/{container_id}")
async def delete_container(
    container_id: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rt: ContainerRuntime = Depends(get_runtime),
) -> dict[str, str]:
    """
    Remove a container: the docker container, its config and its desired state.

    Raises:
        HTTPException: 404 if no config exists for container_id
    """
    config = st.load(EntityKind.CONTAINERS, container_id)

    live = await rt.inspect(config.name)
    if live is not None and live.managed_id == container_id:
        await rt.remove(live.container_id, force=True)

    st.delete(EntityKind.CONTAINERS, container_id)
    trk.remove_entity(container_id)
    await commit_changes(repo, f"Delete container {config.name} ({container_id})")
    return {"status": "deleted", "id": container_id}


# ----------------------------------------------------------------------
# Compose projects
# ----------------------------------------------------------------------


def _check_compose_yaml(content: str) -> None:
    try:
        parsed = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise HTTPException(status_code=400, detail=f"Invalid compose file: {e}") from None
    if not isinstance(parsed, dict) or not parsed.get("services"):
        raise HTTPException(status_code=400, detail="Compose file defines no services")


def _check_env_file(env_file: str) -> None:
    # Resolved inside the project directory
    if env_file and ("/" in env_file or "\\" in env_file or env_file in (".", "..")):
        raise HTTPException(status_code=400, detail=f"Invalid env_file: {env_file!r}")


def _check_desired_state(state: str) -> None:
    if state not in DESIRED_STATES:
        raise HTTPException(status_code=400, detail=f"Invalid desired_state: {state}")


@app.get("/compose")
async def list_compose_projects(
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
) -> list[dict[str, Any]]:
    document = trk.get_document()
    views = []
    for project in st.list(EntityKind.COMPOSE):
        view = project.to_dict()
        state = document.compose_projects.get(project.key)
        if state:
            view["desired_state"] = state.desired_state
        views.append(view)
    return views


@app.get("/compose/{project_name}")
async def get_compose_project(
    project_name: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    rt: ContainerRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """
    Get a compose project with its compose file and running services.

    Raises:
        HTTPException: 404 if the project does not exist
    """
    project = st.load(EntityKind.COMPOSE, project_name)
    view = project.to_dict()
    view["compose_yaml"] = st.load_compose_file(project_name)
    state = trk.get_document().compose_projects.get(project_name)
    if state:
        view["desired_state"] = state.desired_state

    compose_file = str(st.compose_file_path(project_name))
    try:
        services = await rt.compose_ps(project_name, compose_file)
    except ContainerRuntimeError as e:
        logger.warning(f"Service status of {project_name} unavailable: {e}")
        view["services"] = None
    else:
        view["services"] = [{"name": s.name, "status": s.status} for s in services]
    return view


@app.post("/compose", status_code=201)
async def create_compose_project(
    request: ComposeCreateRequest,
    background_tasks: BackgroundTasks,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """
    Save a compose project and its compose file, then reconcile.

    Raises:
        HTTPException: 400 for an invalid name, state or compose file,
            409 if the project already exists
    """
    if not _PROJECT_NAME.match(request.project_name):
        raise HTTPException(
            status_code=400, detail=f"Invalid project name: {request.project_name!r}"
        )
    _check_desired_state(request.desired_state)
    _check_env_file(request.env_file)
    _check_compose_yaml(request.compose_yaml)

    if st.exists(EntityKind.COMPOSE, request.project_name):
        raise HTTPException(
            status_code=409, detail=f"Compose project {request.project_name} already exists"
        )

    project = ComposeProject(
        project_name=request.project_name,
        env_file=request.env_file,
        desired_state=request.desired_state,
        metadata=EntityMetadata(created_by="api"),
    )
    st.save(EntityKind.COMPOSE, project)
    st.save_compose_file(project.project_name, request.compose_yaml)
    trk.set_entity_state(project.project_name, request.desired_state, EntityKind.COMPOSE)
    await commit_changes(repo, f"Create compose project {project.project_name}")

    background_tasks.add_task(run_reconcile, rec)
    return project.to_dict()


@app.put("/compose/{project_name}")
async def update_compose_project(
    project_name: str,
    request: ComposeUpdateRequest,
    background_tasks: BackgroundTasks,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Replace a project's compose file, env file or desired state."""
    project = st.load(EntityKind.COMPOSE, project_name)
    assert isinstance(project, ComposeProject)

    if request.desired_state is not None:
        _check_desired_state(request.desired_state)
        project.desired_state = request.desired_state
    if request.env_file is not None:
        _check_env_file(request.env_file)
        project.env_file = request.env_file
    if request.compose_yaml is not None:
        _check_compose_yaml(request.compose_yaml)
        st.save_compose_file(project_name, request.compose_yaml)

    project.metadata.updated_at = utc_now()
    st.save(EntityKind.COMPOSE, project)
    if request.desired_state is not None:
        trk.set_entity_state(project_name, request.desired_state, EntityKind.COMPOSE)
    await commit_changes(repo, f"Update compose project {project_name}")

    background_tasks.add_task(run_reconcile, rec)
    return project.to_dict()


async def _set_compose_state(
    project_name: str,
    state: str,
    st: ConfigStore,
    trk: DesiredStateTracker,
    repo: GitRepository,
    rec: Reconciler,
) -> dict[str, Any]:
    project = st.load(EntityKind.COMPOSE, project_name)
    assert isinstance(project, ComposeProject)

    project.desired_state = state
    project.metadata.updated_at = utc_now()
    st.save(EntityKind.COMPOSE, project)
    trk.set_entity_state(project_name, state, EntityKind.COMPOSE)

    verb = "Start" if state == RUNNING else "Stop"
    await commit_changes(repo, f"{verb} compose project {project_name}")

    report = await rec.reconcile_once()
    return {"project_name": project_name, "desired_state": state, "reconcile": report.to_dict()}


@app.post("/compose/{project_name}/up")
async def start_compose_project(
    project_name: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Set a compose project's desired state to running and reconcile."""
    return await _set_compose_state(project_name, RUNNING, st, trk, repo, rec)


@app.post("/compose/{project_name}/down")
async def stop_compose_project(
    project_name: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rec: Reconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    """Set a compose project's desired state to stopped and reconcile."""
    return await _set_compose_state(project_name, STOPPED, st, trk, repo, rec)


@app.delete("/compose/{project_name}")
async def delete_compose_project(
    project_name: str,
    st: ConfigStore = Depends(get_store),
    trk: DesiredStateTracker = Depends(get_tracker),
    repo: GitRepository = Depends(get_git_repository),
    rt: ContainerRuntime = Depends(get_runtime),
) -> dict[str, str]:
    """
    Take a compose project down and remove its config and desired state.

    Raises:
        HTTPException: 404 if the project does not exist,
            503 if docker is unreachable
    """
    st.load(EntityKind.COMPOSE, project_name)

    try:
        await rt.compose_down(project_name, str(st.compose_file_path(project_name)))
    except RuntimeUnavailableError:
        raise
    except ContainerRuntimeError as e:
        logger.warning(f"Failed to take down compose project {project_name}: {e}")

    st.delete(EntityKind.COMPOSE, project_name)
    trk.remove_entity(project_name, EntityKind.COMPOSE)
    await commit_changes(repo, f"Delete compose project {project_name}")
    return {"status": "deleted", "project_name": project_name}


# ----------------------------------------------------------------------
# Volumes and backups
# ----------------------------------------------------------------------


@app.get("/volumes")
async def list_volumes(st: ConfigStore = Depends(get_store)) -> list[dict[str, Any]]:
    return [volume.to_dict() for volume in st.list(EntityKind.VOLUMES)]


@app.post("/volumes", status_code=201)
async def create_volume(
    request: VolumeCreateRequest,
    st: ConfigStore = Depends(get_store),
    repo: GitRepository = Depends(get_git_repository),
    rt: ContainerRuntime = Depends(get_runtime),
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
) -> dict[str, Any]:
    """
    Create a docker volume and its config, then schedule its backups.

    Raises:
        HTTPException: 400 for an invalid name or cron schedule,
            409 if a config for the volume already exists
    """
    policy = request.backup
    if policy.enabled and not croniter.is_valid(policy.schedule):
        raise HTTPException(status_code=400, detail=f"Invalid cron schedule: {policy.schedule!r}")
    try:
        exists = st.exists(EntityKind.VOLUMES, request.name)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    if exists:
        raise HTTPException(status_code=409, detail=f"Volume {request.name} already exists")

    await rt.create_volume(
        request.name,
        driver=request.driver,
        driver_opts=request.driver_opts,
        labels=request.labels,
    )

    volume = VolumeConfig(
        name=request.name,
        driver=request.driver,
        driver_opts=dict(request.driver_opts),
        labels=dict(request.labels),
        backup=BackupPolicy(
            enabled=policy.enabled,
            schedule=policy.schedule,
            retention_days=policy.retention_days,
        ),
        metadata=EntityMetadata(created_by="api"),
    )
    st.save(EntityKind.VOLUMES, volume)
    await commit_changes(repo, f"Create volume {volume.name}")
    scheduler.refresh_schedule(volume.name)
    return volume.to_dict()


@app.delete("/volumes/{volume_name}")
async def delete_volume(
    volume_name: str,
    st: ConfigStore = Depends(get_store),
    repo: GitRepository = Depends(get_git_repository),
    rt: ContainerRuntime = Depends(get_runtime),
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
) -> dict[str, str]:
    """
    Remove a docker volume and its config. Existing backups are kept.

    Raises:
        HTTPException: 404 if no config exists, 409 if docker refuses to
            remove the volume (for example while a container uses it)
    """
    st.load(EntityKind.VOLUMES, volume_name)

    try:
        await rt.remove_volume(volume_name)
    except RuntimeUnavailableError:
        raise
    except ContainerRuntimeError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None

    st.delete(EntityKind.VOLUMES, volume_name)
    await commit_changes(repo, f"Delete volume {volume_name}")
    scheduler.refresh_schedule(volume_name)
    return {"status": "deleted", "name": volume_name}


@app.get("/volumes/{volume_name}/backups")
async def list_backups(
    volume_name: str,
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
) -> list[dict[str, Any]]:
    """List a volume's backups, newest first."""
    return [b.to_dict() for b in scheduler.list_backups(volume_name)]


@app.post("/volumes/{volume_name}/backups", status_code=201)
async def create_backup(
    volume_name: str,
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
) -> dict[str, Any]:
    """
    Back up a volume now and wait for the result.

    Raises:
        HTTPException: 409 if a backup of this volume is already running,
            500 if the worker fails or times out
    """
    info = await scheduler.backup_volume(volume_name)
    return info.to_dict()


@app.post("/volumes/{volume_name}/restore")
async def restore_backup(
    volume_name: str,
    request: RestoreRequest,
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
) -> dict[str, str]:
    """
    Replace a volume's contents with a backup.

    Raises:
        HTTPException: 400 for an invalid filename, 404 if the backup does not exist
    """
    try:
        await scheduler.restore_volume(volume_name, request.filename)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    return {"status": "restored", "volume": volume_name, "filename": request.filename}


@app.put("/volumes/{volume_name}/backup-policy")
async def update_backup_policy(
    volume_name: str,
    request: BackupPolicyRequest,
    st: ConfigStore = Depends(get_store),
    repo: GitRepository = Depends(get_git_repository),
    scheduler: BackupScheduler = Depends(get_backup_scheduler),
) -> dict[str, Any]:
    """
    Set a volume's backup policy and reschedule only that volume.

    Creates the volume config if none exists yet.

    Raises:
        HTTPException: 400 if the schedule is not a valid cron expression
    """
    if request.enabled and not croniter.is_valid(request.schedule):
        raise HTTPException(status_code=400, detail=f"Invalid cron schedule: {request.schedule!r}")

    try:
        volume = st.load(EntityKind.VOLUMES, volume_name)
        assert isinstance(volume, VolumeConfig)
    except NotFoundError:
        volume = VolumeConfig(name=volume_name)

    volume.backup = BackupPolicy(
        enabled=request.enabled,
        schedule=request.schedule,
        retention_days=request.retention_days,
        last_backup=volume.backup.last_backup,
    )
    volume.metadata.updated_at = utc_now()
    try:
        st.save(EntityKind.VOLUMES, volume)
    except StoreIOError as e:
        raise HTTPException(status_code=500, detail=str(e)) from None

    await commit_changes(repo, f"Update backup policy of volume {volume_name}")
    scheduler.refresh_schedule(volume_name)
    return volume.to_dict()


# ----------------------------------------------------------------------
# Git
# ----------------------------------------------------------------------


@app.get("/git/status")
async def git_status(repo: GitRepository = Depends(get_git_repository)) -> dict[str, Any]:
    status = await asyncio.to_thread(repo.status)
    return status.to_dict()


@app.get("/git/history")
async def git_history(
    limit: int = 20,
    repo: GitRepository = Depends(get_git_repository),
) -> list[dict[str, Any]]:
    """Most recent commits of the config repository, newest first."""
    limit = max(1, min(limit, 500))
    commits = await asyncio.to_thread(repo.recent_commits, limit)
    return [c.to_dict() for c in commits]
