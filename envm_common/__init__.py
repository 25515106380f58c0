"""
Environment manager common module.

This module contains the shared domain models, settings, errors and the
config store interface used across the other envm_* packages (persistence,
controller, server, admin).

The common module has no dependencies on other envm_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .config import Settings
from .models import (
    BackupInfo,
    ContainerConfig,
    DesiredState,
    EntityKind,
    EntityState,
    SyncResult,
    VolumeConfig,
)
from .store import ConfigStore

__all__ = [
    "BackupInfo",
    "ConfigStore",
    "ContainerConfig",
    "DesiredState",
    "EntityKind",
    "EntityState",
    "Settings",
    "SyncResult",
    "VolumeConfig",
]
