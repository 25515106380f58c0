"""
Environment manager persistence module.

This module contains the YAML config store, the desired-state tracker and
the git backend that together make the data directory the single source of
truth.

The persistence layer depends on envm_common for domain models and
interfaces, and is used by the controller, server and admin CLI.
"""

from .desired_state import DesiredStateTracker
from .git_repository import GitRepository
from .yaml_store import YAMLConfigStore

__all__ = ["DesiredStateTracker", "GitRepository", "YAMLConfigStore"]
