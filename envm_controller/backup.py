"""
Volume backup scheduler.

Backups are tarballs produced by a short-lived worker container that mounts
the volume read-only and the volume's backup directory read-write. The
backup directory listing is the backup index: archives are named after the
UTC time they were taken (YYYY-MM-DDTHH-MM-SS.tar.gz).

Each volume with an enabled schedule gets its own cancellable timer task,
so changing one volume's schedule leaves every other timer untouched.
"""

import asyncio
import logging
import os
import shlex
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from croniter import croniter

from envm_common.errors import (
    BackupExistsError,
    BackupInProgressError,
    ContainerRuntimeError,
    GitOperationError,
    NotFoundError,
    StoreIOError,
    WorkerFailureError,
    WorkerTimeoutError,
)
from envm_common.models import (
    BackupInfo,
    BackupState,
    EntityKind,
    VolumeConfig,
    utc_now,
)
from envm_common.store import ConfigStore
from envm_persistence.git_repository import GitRepository

from .container_runtime import ContainerRuntime, WorkerMount

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"
ARCHIVE_SUFFIX = ".tar.gz"
STAGING_FILENAME = "backup.tar.gz"


def parse_backup_timestamp(filename: str) -> datetime | None:
    """Parse the UTC timestamp encoded in an archive name, or None."""
    if not filename.endswith(ARCHIVE_SUFFIX):
        return None
    try:
        parsed = datetime.strptime(filename[: -len(ARCHIVE_SUFFIX)], TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return parsed.replace(tzinfo=UTC)


class BackupScheduler:
    """
    Schedules, runs, prunes and restores volume backups.

    Per-volume state machine: idle -> running -> succeeded | failed. A
    volume in succeeded or failed accepts a new backup just like idle.
    """

    def __init__(
        self,
        store: ConfigStore,
        runtime: ContainerRuntime | None = None,
        git_repo: GitRepository | None = None,
        worker_image: str = "alpine:latest",
        worker_timeout: float | None = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Config store holding volume configs and backup directories
            runtime: Container runtime used to run worker containers
            git_repo: Repository to commit backups to; None disables commits
            worker_image: Image providing sh and tar for workers
            worker_timeout: Seconds before a worker is killed; None waits forever
            clock: Source of the current UTC time
        """
        self.store = store
        self.runtime = runtime or ContainerRuntime()
        self.git_repo = git_repo
        self.worker_image = worker_image
        self.worker_timeout = worker_timeout
        self._clock = clock

        self._timers: dict[str, asyncio.Task] = {}
        self._schedules: dict[str, str] = {}
        self._states: dict[str, BackupState] = {}
        self._running = False

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Register a timer for every volume with an enabled schedule."""
        if self._running:
            logger.warning("Backup scheduler already running")
            return
        self._running = True
        logger.info("Starting backup scheduler")
        self.refresh_all()

    async def stop(self) -> None:
        """Cancel every timer. Backups already in flight are cancelled too."""
        if not self._running:
            return
        logger.info("Stopping backup scheduler")
        self._running = False

        tasks = list(self._timers.values())
        self._timers.clear()
        self._schedules.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def scheduled_volumes(self) -> dict[str, str]:
        """Volume name -> cron expression of every active timer."""
        return dict(self._schedules)

    def refresh_all(self) -> None:
        """
        Bring the timer set in line with the current volume configs.

        Timers whose schedule is unchanged keep running.
        """
        if not self._running:
            return

        wanted = {
            vol.name: vol.backup.schedule
            for vol in self.store.list(EntityKind.VOLUMES)
            if isinstance(vol, VolumeConfig) and vol.backup.enabled and vol.backup.schedule
        }

        for name in list(self._timers):
            if self._schedules.get(name) != wanted.get(name):
                self._cancel(name)

        for name, schedule in wanted.items():
            if name not in self._timers:
                self._register(name, schedule)

    def refresh_schedule(self, volume_name: str) -> None:
        """Re-read one volume's config and replace only its timer."""
        if not self._running:
            return

        self._cancel(volume_name)
        try:
            volume = self.store.load(EntityKind.VOLUMES, volume_name)
        except NotFoundError:
            logger.info(f"Volume {volume_name} has no config, backup timer removed")
            return
        except StoreIOError as e:
            logger.error(f"Failed to load volume config {volume_name}: {e}")
            return

        assert isinstance(volume, VolumeConfig)
        if volume.backup.enabled and volume.backup.schedule:
            self._register(volume_name, volume.backup.schedule)

    def _register(self, volume_name: str, schedule: str) -> None:
        if not croniter.is_valid(schedule):
            logger.error(f"Invalid backup schedule for volume {volume_name}: {schedule!r}")
            return
        self._schedules[volume_name] = schedule
        self._timers[volume_name] = asyncio.create_task(
            self._run_schedule(volume_name, schedule), name=f"backup:{volume_name}"
        )
        logger.info(f"Scheduled backup of volume {volume_name} ({schedule})")

    def _cancel(self, volume_name: str) -> None:
        task = self._timers.pop(volume_name, None)
        self._schedules.pop(volume_name, None)
        if task is not None:
            task.cancel()
            logger.info(f"Cancelled backup timer for volume {volume_name}")

    async def _run_schedule(self, volume_name: str, schedule: str) -> None:
        while True:
            # Recomputed from now so a slow backup never causes a backlog
            now = self._clock()
            next_run = croniter(schedule, now).get_next(datetime)
            delay = (next_run - now).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)

            logger.info(f"Running scheduled backup of volume {volume_name}")
            try:
                await self.backup_volume(volume_name)
            except asyncio.CancelledError:
                raise
            except BackupInProgressError:
                logger.warning(f"Skipping scheduled backup of {volume_name}: already running")
            except Exception as e:
                logger.error(f"Scheduled backup of volume {volume_name} failed: {e}", exc_info=True)

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    def get_state(self, volume_name: str) -> BackupState:
        return self._states.get(volume_name, BackupState.IDLE)

    async def backup_volume(self, volume_name: str) -> BackupInfo:
        """
        Snapshot a volume into a new timestamped archive.

        Returns:
            The new backup

        Raises:
            BackupInProgressError: If this volume is already being backed up
            BackupExistsError: If an archive with this timestamp already exists
            WorkerFailureError: If the worker exits non-zero (no archive is kept)
            WorkerTimeoutError: If the worker outlives worker_timeout
            ContainerRuntimeError: If the worker cannot be run at all
        """
        if self.get_state(volume_name) == BackupState.RUNNING:
            raise BackupInProgressError(f"Backup of volume {volume_name} already running")

        self._states[volume_name] = BackupState.RUNNING
        try:
            info = await self._backup(volume_name)
        except BaseException:
            self._states[volume_name] = BackupState.FAILED
            raise
        self._states[volume_name] = BackupState.SUCCEEDED
        return info

    async def _backup(self, volume_name: str) -> BackupInfo:
        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        backup_dir = self.store.backup_dir(volume_name)
        staging = backup_dir / STAGING_FILENAME
        archive = backup_dir / f"{timestamp}{ARCHIVE_SUFFIX}"

        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreIOError(f"Failed to create backup directory {backup_dir}: {e}") from e
        if archive.exists():
            raise BackupExistsError(
                f"Backup {archive.name} of volume {volume_name} already exists"
            )
        self._discard(staging)

        mounts = [
            WorkerMount(source=volume_name, target="/data", read_only=True),
            WorkerMount(source=str(backup_dir.resolve()), target="/backup", volume=False),
        ]
        command = ["tar", "czf", f"/backup/{STAGING_FILENAME}", "-C", "/data", "."]

        logger.info(f"Backing up volume {volume_name} to {archive}")
        try:
            exit_code = await self.runtime.run_worker(
                self.worker_image, command, mounts, timeout=self.worker_timeout
            )
        except (ContainerRuntimeError, WorkerTimeoutError, asyncio.CancelledError):
            self._discard(staging)
            raise

        if exit_code != 0:
            self._discard(staging)
            raise WorkerFailureError(
                f"Backup worker for volume {volume_name} exited with code {exit_code}",
                exit_code=exit_code,
            )
        if not staging.is_file():
            raise WorkerFailureError(
                f"Backup worker for volume {volume_name} produced no archive", exit_code=0
            )

        try:
            os.replace(staging, archive)
        except OSError as e:
            self._discard(staging)
            raise StoreIOError(f"Failed to finalize backup {archive}: {e}") from e

        self._record_last_backup(volume_name, timestamp)
        await self._commit(f"Backup volume {volume_name} at {timestamp}")
        self.cleanup_old_backups(volume_name)

        logger.info(f"Backup completed: {archive}")
        return self._backup_info(volume_name, archive)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove partial backup {path}: {e}")

    def _record_last_backup(self, volume_name: str, timestamp: str) -> None:
        try:
            volume = self.store.load(EntityKind.VOLUMES, volume_name)
        except NotFoundError:
            logger.warning(f"Volume {volume_name} has no config, last_backup not recorded")
            return
        except StoreIOError as e:
            logger.warning(f"Failed to load volume config {volume_name}: {e}")
            return

        assert isinstance(volume, VolumeConfig)
        volume.backup.last_backup = timestamp
        try:
            self.store.save(EntityKind.VOLUMES, volume)
        except StoreIOError as e:
            logger.warning(f"Failed to record last backup of {volume_name}: {e}")

    async def _commit(self, message: str) -> None:
        if self.git_repo is None:
            return
        try:
            await asyncio.to_thread(self.git_repo.commit_and_push, message)
        except GitOperationError as e:
            logger.warning(f"Failed to commit backup: {e}")

    # ------------------------------------------------------------------
    # Retention and listing
    # ------------------------------------------------------------------

    def _archives(self, volume_name: str) -> list[Path]:
        backup_dir = self.store.backup_dir(volume_name)
        try:
            entries = list(backup_dir.iterdir())
        except FileNotFoundError:
            return []
        return [
            entry
            for entry in entries
            if entry.name.endswith(ARCHIVE_SUFFIX)
            and entry.name != STAGING_FILENAME
            and entry.is_file()
        ]

    def _retention_days(self, volume_name: str) -> int:
        try:
            volume = self.store.load(EntityKind.VOLUMES, volume_name)
        except NotFoundError:
            return DEFAULT_RETENTION_DAYS
        except StoreIOError as e:
            logger.warning(f"Failed to load volume config {volume_name}: {e}")
            return DEFAULT_RETENTION_DAYS
        assert isinstance(volume, VolumeConfig)
        days = volume.backup.retention_days
        return days if days > 0 else DEFAULT_RETENTION_DAYS

    def cleanup_old_backups(self, volume_name: str) -> list[str]:
        """
        Delete archives older than the volume's retention period.

        Best effort: failures are logged and never raised.

        Returns:
            Names of the removed archives
        """
        retention_days = self._retention_days(volume_name)
        cutoff = self._clock() - timedelta(days=retention_days)
        removed = []

        for path in self._archives(volume_name):
            try:
                modified = datetime.fromtimestamp(path.stat().st_mtime, UTC)
            except OSError:
                continue
            if modified >= cutoff:
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old backup {path}: {e}")
                continue
            logger.info(f"Removed old backup {path}")
            removed.append(path.name)

        return removed

    def _backup_info(self, volume_name: str, path: Path) -> BackupInfo:
        stat = path.stat()
        timestamp = parse_backup_timestamp(path.name) or datetime.fromtimestamp(
            stat.st_mtime, UTC
        )
        return BackupInfo(
            volume_name=volume_name,
            filename=path.name,
            timestamp=timestamp,
            size_bytes=stat.st_size,
        )

    def list_backups(self, volume_name: str) -> list[BackupInfo]:
        """All archives of a volume, newest first. A missing directory yields []."""
        backups = []
        for path in self._archives(volume_name):
            try:
                backups.append(self._backup_info(volume_name, path))
            except OSError:
                # Deleted by retention between listing and stat
                continue
        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore_volume(self, volume_name: str, filename: str) -> None:
        """
        Replace a volume's contents with a backup archive.

        Destructive: the current contents are deleted before extraction.

        Raises:
            ValueError: If filename is not a plain archive name
            NotFoundError: If the archive does not exist
            BackupInProgressError: If the volume is being backed up
            WorkerFailureError: If the restore worker exits non-zero
            WorkerTimeoutError: If the restore worker outlives worker_timeout
        """
        if (
            not filename.endswith(ARCHIVE_SUFFIX)
            or "/" in filename
            or "\\" in filename
            or filename.startswith(".")
        ):
            raise ValueError(f"Invalid backup filename: {filename!r}")

        backup_dir = self.store.backup_dir(volume_name)
        if not (backup_dir / filename).is_file():
            raise NotFoundError("backup", f"{volume_name}/{filename}")
        if self.get_state(volume_name) == BackupState.RUNNING:
            raise BackupInProgressError(f"Backup of volume {volume_name} is running")

        mounts = [
            WorkerMount(source=volume_name, target="/data"),
            WorkerMount(
                source=str(backup_dir.resolve()), target="/backup", read_only=True, volume=False
            ),
        ]
        script = (
            "rm -rf /data/* /data/..?* /data/.[!.]* ; "
            f"tar xzf /backup/{shlex.quote(filename)} -C /data"
        )

        logger.info(f"Restoring volume {volume_name} from {filename}")
        exit_code = await self.runtime.run_worker(
            self.worker_image, ["sh", "-c", script], mounts, timeout=self.worker_timeout
        )
        if exit_code != 0:
            raise WorkerFailureError(
                f"Restore worker for volume {volume_name} exited with code {exit_code}",
                exit_code=exit_code,
            )
        logger.info(f"Volume {volume_name} restored from {filename}")
