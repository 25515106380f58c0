"""
Environment manager controller module.

This module contains the reconciler, the backup scheduler, the sync
coordinator and the docker CLI runtime they drive. The reconciler converges
actual state (docker containers and compose projects) to the desired state
stored in the git-backed config store.

The controller can run as a separate process from the HTTP server
(envm-controller), or embedded in it.
"""

from .backup import BackupScheduler
from .container_runtime import ContainerRuntime, RuntimeContainer
from .reconciler import Reconciler
from .sync import SyncCoordinator

__all__ = [
    "BackupScheduler",
    "ContainerRuntime",
    "Reconciler",
    "RuntimeContainer",
    "SyncCoordinator",
]
