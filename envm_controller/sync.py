"""
Sync coordinator: pull the config repository, then reconcile.

Triggered by webhooks, the HTTP API and the admin CLI. A sync never raises
for environment manager errors; everything is reported in the returned
SyncResult.
"""

import asyncio
import logging

from envm_common.errors import EnvManagerError, GitOperationError, RuntimeUnavailableError
from envm_common.models import EntityError, SyncResult
from envm_persistence.git_repository import GitRepository

from .backup import BackupScheduler
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class SyncCoordinator:
    def __init__(
        self,
        git_repo: GitRepository,
        reconciler: Reconciler,
        backup_scheduler: BackupScheduler | None = None,
    ):
        self.git_repo = git_repo
        self.reconciler = reconciler
        self.backup_scheduler = backup_scheduler

    async def sync(self) -> SyncResult:
        """
        Pull remote changes, reconcile, and refresh backup timers.

        Returns:
            success=False if the pull failed, docker was unreachable or the
            desired state could not be read;
            per-entity errors are listed but keep success=True
        """
        result = SyncResult()

        if self.git_repo.has_remote:
            try:
                result.pulled_changes = await asyncio.to_thread(self.git_repo.pull)
            except GitOperationError as e:
                logger.error(f"Sync aborted, pull failed: {e}")
                result.success = False
                result.errors.append(EntityError("", "pull_failed", str(e)))
                return result
        else:
            logger.debug("No git remote configured, skipping pull")

        try:
            report = await self.reconciler.reconcile_once()
        except RuntimeUnavailableError as e:
            logger.error(f"Sync failed, container runtime unavailable: {e}")
            result.success = False
            result.errors.append(EntityError("", "runtime_unavailable", str(e)))
            return result
        except EnvManagerError as e:
            logger.error(f"Sync failed, reconciliation aborted: {e}")
            result.success = False
            result.errors.append(EntityError("", "reconcile_failed", str(e)))
            return result

        result.created = report.created
        result.started = report.started
        result.stopped = report.stopped
        result.errors.extend(report.errors)

        if self.backup_scheduler is not None:
            try:
                self.backup_scheduler.refresh_all()
            except Exception as e:
                logger.error(f"Failed to refresh backup schedules: {e}", exc_info=True)

        logger.info(
            f"Sync complete: pulled_changes={result.pulled_changes} "
            f"created={len(result.created)} started={len(result.started)} "
            f"stopped={len(result.stopped)} errors={len(result.errors)}"
        )
        return result
