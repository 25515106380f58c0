"""
Exception hierarchy for the environment manager.

Operation-level failures are raised as exceptions. Per-entity problems found
during a reconciliation pass (orphans, name conflicts, failed starts) are
reported as EntityError records instead, so a single broken entity never
aborts a whole pass.
"""


class EnvManagerError(Exception):
    """Base class for all environment manager errors."""


class NotFoundError(EnvManagerError):
    """A config document, backup archive, or runtime object does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class StoreIOError(EnvManagerError):
    """Reading or writing the config store failed."""


class DocumentError(StoreIOError):
    """A config document exists but cannot be parsed."""


class VersionConflictError(EnvManagerError):
    """The desired-state document changed between load and save."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Desired-state version conflict: expected {expected}, found {actual}"
        )
        self.expected = expected
        self.actual = actual


class ContainerRuntimeError(EnvManagerError):
    """A docker command failed."""


class RuntimeUnavailableError(ContainerRuntimeError):
    """The docker daemon cannot be reached at all."""


class WorkerFailureError(EnvManagerError):
    """A backup or restore worker container exited non-zero."""

    def __init__(self, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.exit_code = exit_code


class WorkerTimeoutError(EnvManagerError):
    """A worker container did not finish before its deadline."""


class BackupInProgressError(EnvManagerError):
    """A backup for this volume is already running."""


class BackupExistsError(EnvManagerError):
    """An archive with the same timestamp already exists for this volume."""


class GitOperationError(EnvManagerError):
    """A git commit, push or pull failed."""
