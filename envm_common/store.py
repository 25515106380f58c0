"""
Abstract config store interface.

This module defines the contract any config store must follow. The only
implementation today is the YAML store in envm_persistence, which keeps one
file per entity inside the git working tree.
"""

from abc import ABC, abstractmethod
from pathlib import Path

from .models import DesiredState, Document, EntityKind


class ConfigStore(ABC):
    """
    Abstract base class for declarative config storage.

    Documents are keyed by kind and entity ID. Implementations are not
    required to be safe against concurrent writers, except for the
    compare-and-swap on the desired-state document.
    """

    @abstractmethod
    def load(self, kind: EntityKind, entity_id: str) -> Document:
        """
        Load one document.

        Raises:
            NotFoundError: If no document exists for the ID
            DocumentError: If the document cannot be parsed
        """

    @abstractmethod
    def exists(self, kind: EntityKind, entity_id: str) -> bool:
        """Whether a document file exists for the ID, readable or not."""

    @abstractmethod
    def save(self, kind: EntityKind, document: Document) -> None:
        """
        Persist a document, replacing any previous version.

        Raises:
            StoreIOError: If the document cannot be written
        """

    @abstractmethod
    def delete(self, kind: EntityKind, entity_id: str) -> None:
        """
        Delete a document.

        Raises:
            NotFoundError: If no document exists for the ID
        """

    @abstractmethod
    def list(self, kind: EntityKind) -> list[Document]:
        """
        List all readable documents of a kind.

        Malformed or unreadable documents are skipped, never fatal.
        """

    @abstractmethod
    def load_desired_state(self) -> DesiredState:
        """Load the desired-state document (empty if it does not exist yet)."""

    @abstractmethod
    def save_desired_state(
        self, state: DesiredState, expected_version: int | None = None
    ) -> DesiredState:
        """
        Save the desired-state document and bump its version.

        Args:
            state: Document to save
            expected_version: If given, the on-disk version must match

        Returns:
            The saved document with its new version

        Raises:
            VersionConflictError: If expected_version does not match
        """

    @abstractmethod
    def backup_dir(self, volume_name: str) -> Path:
        """Directory holding the backup archives of one volume."""

    @abstractmethod
    def compose_file_path(self, project_name: str) -> Path:
        """Path of a compose project's docker-compose.yaml."""
