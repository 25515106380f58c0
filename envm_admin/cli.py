"""
Admin CLI for the environment manager.

Operates on the data directory directly, without going through the HTTP
server: inspect and edit desired state, reconcile, run backups and look at
the git history.
"""

import asyncio
import json
import sys
from pathlib import Path

import click

from envm_common.config import Settings
from envm_common.errors import (
    BackupExistsError,
    BackupInProgressError,
    ContainerRuntimeError,
    EnvManagerError,
    GitOperationError,
    NotFoundError,
    RuntimeUnavailableError,
    WorkerFailureError,
    WorkerTimeoutError,
)
from envm_common.models import (
    ContainerConfig,
    EntityKind,
    ReconcileReport,
    VolumeConfig,
)
from envm_controller.backup import BackupScheduler
from envm_controller.container_runtime import ContainerRuntime
from envm_controller.reconciler import Reconciler
from envm_controller.sync import SyncCoordinator
from envm_persistence.desired_state import DesiredStateTracker
from envm_persistence.git_repository import GitRepository
from envm_persistence.yaml_store import YAMLConfigStore


def run_async(coro):
    """Helper to run async functions in CLI commands."""
    return asyncio.run(coro)


def get_runtime() -> ContainerRuntime:
    """Get the container runtime instance."""
    return ContainerRuntime()


def get_store(settings: Settings) -> YAMLConfigStore:
    return YAMLConfigStore(settings.data_dir)


def get_git_repository(settings: Settings) -> GitRepository:
    return GitRepository(
        settings.data_dir, remote_url=settings.git_remote, branch=settings.git_branch
    )


def get_scheduler(settings: Settings) -> BackupScheduler:
    return BackupScheduler(
        get_store(settings),
        runtime=get_runtime(),
        git_repo=get_git_repository(settings),
        worker_image=settings.worker_image,
        worker_timeout=settings.worker_timeout,
    )


def commit(settings: Settings, message: str) -> None:
    """Commit and push the data directory, reporting failures as warnings."""
    try:
        if get_git_repository(settings).commit_and_push(message):
            click.echo(f"  Committed: {message}")
    except GitOperationError as e:
        click.echo(f"Warning: {e}", err=True)


def fail(message: str) -> None:
    click.echo(f"Error: {message}", err=True)
    sys.exit(1)


def print_report(report: ReconcileReport) -> None:
    click.echo(f"  Created:   {', '.join(report.created) or '-'}")
    click.echo(f"  Started:   {', '.join(report.started) or '-'}")
    click.echo(f"  Stopped:   {', '.join(report.stopped) or '-'}")
    click.echo(f"  Unchanged: {len(report.unchanged)}")
    for error in report.errors:
        click.echo(f"  ✗ {error.entity_id or '-'} [{error.kind}] {error.message}")


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Config repository directory (default: ENVM_DATA_DIR env or ./data)",
)
@click.pass_context
def cli(ctx: click.Context, data_dir: Path | None):
    """Environment Manager Admin - desired state, backups and history."""
    settings = Settings.from_env()
    if data_dir is not None:
        settings.data_dir = data_dir
    ctx.obj = settings


pass_settings = click.make_pass_decorator(Settings)


# ============================================================================
# Reconcile and sync
# ============================================================================


@cli.command("reconcile")
@pass_settings
def reconcile(settings: Settings):
    """Run one reconciliation pass."""

    async def run():
        reconciler = Reconciler(get_store(settings), runtime=get_runtime(), network=settings.network)
        return await reconciler.reconcile_once()

    try:
        report = run_async(run())
    except RuntimeUnavailableError as e:
        fail(f"Container runtime unavailable: {e}")
        return

    if report.errors:
        click.echo("✗ Reconciliation finished with errors")
    else:
        click.echo("✓ Reconciliation complete")
    print_report(report)
    if report.errors:
        sys.exit(1)


@cli.command("sync")
@pass_settings
def sync(settings: Settings):
    """Pull the config repository and reconcile."""

    async def run():
        store = get_store(settings)
        coordinator = SyncCoordinator(
            get_git_repository(settings),
            Reconciler(store, runtime=get_runtime(), network=settings.network),
        )
        return await coordinator.sync()

    result = run_async(run())
    if result.success:
        click.echo("✓ Sync complete")
    else:
        click.echo("✗ Sync failed", err=True)
    click.echo(f"  Pulled changes: {'yes' if result.pulled_changes else 'no'}")
    print_report(
        ReconcileReport(
            created=result.created,
            started=result.started,
            stopped=result.stopped,
            errors=result.errors,
        )
    )
    if not result.success:
        sys.exit(1)


# ============================================================================
# Desired state
# ============================================================================


@cli.group()
def state():
    """Inspect and edit the desired-state document."""
    pass


@state.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@pass_settings
def state_show(settings: Settings, json_output: bool):
    """Show the desired-state document."""
    document = get_store(settings).load_desired_state()

    if json_output:
        click.echo(json.dumps(document.to_dict(), indent=2))
        return

    click.echo(f"Version: {document.version}")
    if document.is_empty():
        click.echo("No entities in desired state.")
        return

    click.echo(f"\n{'ID':<24} {'Kind':<10} {'Desired':<10} {'Last known':<12} {'Changed':<25}")
    click.echo("-" * 84)
    for kind in (EntityKind.CONTAINERS, EntityKind.COMPOSE):
        for entity_id, entry in sorted(document.entries(kind).items()):
            click.echo(
                f"{entity_id:<24} {kind.value:<10} {entry.desired_state:<10} "
                f"{entry.last_known_state:<12} {entry.last_transition_time.isoformat():<25}"
            )
    click.echo()


@state.command("set")
@click.argument("entity_id")
@click.argument("desired", type=click.Choice(["running", "stopped"]))
@click.option("--compose", is_flag=True, help="ENTITY_ID is a compose project")
@pass_settings
def state_set(settings: Settings, entity_id: str, desired: str, compose: bool):
    """Set the desired state of a container or compose project."""
    store = get_store(settings)
    kind = EntityKind.COMPOSE if compose else EntityKind.CONTAINERS

    try:
        document = store.load(kind, entity_id)
    except NotFoundError:
        fail(f"No {kind.value} config for {entity_id}")
        return

    document.desired_state = desired
    store.save(kind, document)
    saved = DesiredStateTracker(store).set_entity_state(entity_id, desired, kind)

    click.echo(f"✓ {entity_id} desired state set to {desired} (version {saved.version})")
    commit(settings, f"Set {kind.value} {entity_id} desired state to {desired}")


@state.command("remove")
@click.argument("entity_id")
@click.option("--compose", is_flag=True, help="ENTITY_ID is a compose project")
@pass_settings
def state_remove(settings: Settings, entity_id: str, compose: bool):
    """Remove an entity from the desired state (its config is kept)."""
    kind = EntityKind.COMPOSE if compose else EntityKind.CONTAINERS
    saved = DesiredStateTracker(get_store(settings)).remove_entity(entity_id, kind)
    click.echo(f"✓ {entity_id} removed from desired state (version {saved.version})")
    commit(settings, f"Remove {kind.value} {entity_id} from desired state")


# ============================================================================
# Containers and volumes
# ============================================================================


@cli.group()
def container():
    """Inspect container configs."""
    pass


@container.command("list")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@pass_settings
def container_list(settings: Settings, json_output: bool):
    """List all container configs."""
    containers = [
        c for c in get_store(settings).list(EntityKind.CONTAINERS) if isinstance(c, ContainerConfig)
    ]

    if json_output:
        click.echo(json.dumps([c.to_dict() for c in containers], indent=2))
        return

    if not containers:
        click.echo("No containers found.")
        return

    click.echo(f"\n{'ID':<10} {'Name':<24} {'Image':<32} {'Desired':<10}")
    click.echo("-" * 78)
    for c in containers:
        click.echo(f"{c.id:<10} {c.name:<24} {c.config.image:<32} {c.desired_state:<10}")
    click.echo()


@cli.group()
def volume():
    """Inspect volume configs."""
    pass


@volume.command("list")
@pass_settings
def volume_list(settings: Settings):
    """List volume configs and their backup policies."""
    volumes = [v for v in get_store(settings).list(EntityKind.VOLUMES) if isinstance(v, VolumeConfig)]

    if not volumes:
        click.echo("No volumes found.")
        return

    click.echo(f"\n{'Name':<24} {'Backup':<8} {'Schedule':<16} {'Retention':<10} {'Last backup':<20}")
    click.echo("-" * 82)
    for v in volumes:
        policy = v.backup
        click.echo(
            f"{v.name:<24} {'on' if policy.enabled else 'off':<8} {policy.schedule or '-':<16} "
            f"{str(policy.retention_days or '-'):<10} {policy.last_backup or '-':<20}"
        )
    click.echo()


# ============================================================================
# Backups
# ============================================================================


@cli.group()
def backup():
    """Run, list, restore and prune volume backups."""
    pass


@backup.command("run")
@click.argument("volume_name")
@pass_settings
def backup_run(settings: Settings, volume_name: str):
    """Back up a volume now."""
    try:
        info = run_async(get_scheduler(settings).backup_volume(volume_name))
    except WorkerTimeoutError as e:
        fail(f"Backup timed out: {e}")
        return
    except (
        WorkerFailureError,
        BackupInProgressError,
        BackupExistsError,
        ContainerRuntimeError,
    ) as e:
        fail(str(e))
        return

    click.echo("✓ Backup created")
    click.echo(f"  File: {info.filename}")
    click.echo(f"  Size: {info.size_bytes} bytes")


@backup.command("list")
@click.argument("volume_name")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@pass_settings
def backup_list(settings: Settings, volume_name: str, json_output: bool):
    """List a volume's backups, newest first."""
    backups = get_scheduler(settings).list_backups(volume_name)

    if json_output:
        click.echo(json.dumps([b.to_dict() for b in backups], indent=2))
        return

    if not backups:
        click.echo(f"No backups found for volume {volume_name}.")
        return

    click.echo(f"\n{'File':<32} {'Taken':<27} {'Size':>12}")
    click.echo("-" * 73)
    for b in backups:
        click.echo(f"{b.filename:<32} {b.timestamp.isoformat():<27} {b.size_bytes:>12}")
    click.echo()


@backup.command("restore")
@click.argument("volume_name")
@click.argument("filename")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@pass_settings
def backup_restore(settings: Settings, volume_name: str, filename: str, yes: bool):
    """Replace a volume's contents with a backup."""
    if not yes:
        click.confirm(
            f"This deletes everything in volume {volume_name} and restores {filename}. Continue?",
            abort=True,
        )

    try:
        run_async(get_scheduler(settings).restore_volume(volume_name, filename))
    except (ValueError, EnvManagerError) as e:
        fail(str(e))
        return

    click.echo(f"✓ Volume {volume_name} restored from {filename}")


@backup.command("cleanup")
@click.argument("volume_name")
@pass_settings
def backup_cleanup(settings: Settings, volume_name: str):
    """Delete backups older than the volume's retention period."""
    removed = get_scheduler(settings).cleanup_old_backups(volume_name)
    if not removed:
        click.echo("No backups removed.")
        return
    click.echo(f"✓ Removed {len(removed)} backup(s)")
    for name in removed:
        click.echo(f"  {name}")


# ============================================================================
# Git
# ============================================================================


@cli.group()
def git():
    """Inspect the config repository."""
    pass


@git.command("log")
@click.option("-n", "--limit", type=int, default=20, show_default=True, help="Number of commits")
@pass_settings
def git_log(settings: Settings, limit: int):
    """Show recent commits."""
    try:
        commits = get_git_repository(settings).recent_commits(limit)
    except GitOperationError as e:
        fail(str(e))
        return

    if not commits:
        click.echo("No commits yet.")
        return
    for c in commits:
        subject = c.message.splitlines()[0] if c.message else ""
        click.echo(f"{c.hash}  {c.date.isoformat()}  {c.author:<20}  {subject}")


@git.command("status")
@pass_settings
def git_status(settings: Settings):
    """Show uncommitted changes in the data directory."""
    try:
        status = get_git_repository(settings).status()
    except GitOperationError as e:
        fail(str(e))
        return

    if status.clean:
        click.echo("✓ Working tree clean")
        return
    click.echo(f"{len(status.changed_files)} uncommitted change(s):")
    for path in status.changed_files:
        click.echo(f"  {path}")


if __name__ == "__main__":
    cli()
