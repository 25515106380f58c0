"""
YAML implementation of the config store.

Each entity is one YAML file inside the data directory, which is also the
git working tree:

- containers/<id>.yaml
- volumes/<name>.yaml
- compose/<project>/config.yaml (+ docker-compose.yaml)
- state/desired-state.yaml

Writes go through a temporary file and os.replace so readers (including a
concurrent git pull) never observe a half-written document.
"""

import logging
import os
import re
import shutil
import tempfile
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from envm_common.errors import (
    DocumentError,
    NotFoundError,
    StoreIOError,
    VersionConflictError,
)
from envm_common.models import DOCUMENT_TYPES, DesiredState, Document, EntityKind
from envm_common.store import ConfigStore

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")

DESIRED_STATE_PATH = Path("state") / "desired-state.yaml"
COMPOSE_CONFIG_NAME = "config.yaml"


def safe_filename(identifier: str) -> str:
    """
    Derive a filesystem-safe name from an entity ID or name.

    Raises:
        ValueError: If the identifier cannot name a file (empty, "." or "..")
    """
    name = _UNSAFE_CHARS.sub("_", identifier)
    if name in ("", ".", ".."):
        raise ValueError(f"Invalid identifier: {identifier!r}")
    return name


class YAMLConfigStore(ConfigStore):
    """
    File-per-entity YAML config store.

    Not safe against concurrent writers of the same document; the
    desired-state document is protected by a version compare-and-swap.
    """

    def __init__(self, data_dir: str | Path):
        """
        Initialize the store.

        Args:
            data_dir: Root of the config repository
        """
        self.data_dir = Path(data_dir)

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _document_path(self, kind: EntityKind, entity_id: str) -> Path:
        key = safe_filename(entity_id)
        if kind == EntityKind.COMPOSE:
            return self.data_dir / kind.value / key / COMPOSE_CONFIG_NAME
        return self.data_dir / kind.value / f"{key}.yaml"

    def compose_file_path(self, project_name: str) -> Path:
        return (
            self.data_dir
            / EntityKind.COMPOSE.value
            / safe_filename(project_name)
            / "docker-compose.yaml"
        )

    def backup_dir(self, volume_name: str) -> Path:
        return self.data_dir / "backups" / "volumes" / safe_filename(volume_name)

    # ------------------------------------------------------------------
    # Raw YAML IO
    # ------------------------------------------------------------------

    def _read_yaml(self, path: Path) -> dict[str, Any]:
        """
        Read a YAML mapping.

        Raises:
            FileNotFoundError: If the file does not exist
            StoreIOError: If the file cannot be read
            DocumentError: If the content is not a YAML mapping
        """
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise
        except OSError as e:
            raise StoreIOError(f"Failed to read {path}: {e}") from e
        except UnicodeDecodeError as e:
            raise DocumentError(f"{path} is not valid UTF-8: {e}") from e

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise DocumentError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise DocumentError(f"Expected a mapping in {path}")
        return data

    def _write_yaml(self, path: Path, data: dict[str, Any]) -> None:
        tmp_path: str | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StoreIOError(f"Failed to write {path}: {e}") from e

    def _parse(self, kind: EntityKind, path: Path) -> Document:
        data = self._read_yaml(path)
        try:
            return DOCUMENT_TYPES[kind].from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise DocumentError(f"Invalid {kind.value} document {path}: {e}") from e

    # ------------------------------------------------------------------
    # Entity documents
    # ------------------------------------------------------------------

    def load(self, kind: EntityKind, entity_id: str) -> Document:
        path = self._document_path(kind, entity_id)
        try:
            return self._parse(kind, path)
        except FileNotFoundError:
            raise NotFoundError(kind.value, entity_id) from None

    def exists(self, kind: EntityKind, entity_id: str) -> bool:
        return self._document_path(kind, entity_id).is_file()

    def save(self, kind: EntityKind, document: Document) -> None:
        expected_type = DOCUMENT_TYPES[kind]
        if not isinstance(document, expected_type):
            raise TypeError(
                f"Cannot save {type(document).__name__} as {kind.value} document"
            )
        path = self._document_path(kind, document.key)
        self._write_yaml(path, document.to_dict())
        logger.debug(f"Saved {kind.value} document {document.key}")

    def delete(self, kind: EntityKind, entity_id: str) -> None:
        path = self._document_path(kind, entity_id)
        if not path.exists():
            raise NotFoundError(kind.value, entity_id)

        try:
            if kind == EntityKind.COMPOSE:
                shutil.rmtree(path.parent)
            else:
                path.unlink()
        except FileNotFoundError:
            raise NotFoundError(kind.value, entity_id) from None
        except OSError as e:
            raise StoreIOError(f"Failed to delete {path}: {e}") from e
        logger.debug(f"Deleted {kind.value} document {entity_id}")

    def _candidate_paths(self, kind: EntityKind) -> list[Path]:
        directory = self.data_dir / kind.value
        if not directory.is_dir():
            return []
        if kind == EntityKind.COMPOSE:
            return sorted(
                entry / COMPOSE_CONFIG_NAME
                for entry in directory.iterdir()
                if entry.is_dir()
            )
        return sorted(p for p in directory.glob("*.yaml") if not p.name.startswith("."))

    def list(self, kind: EntityKind) -> list[Document]:
        documents = []
        try:
            paths = self._candidate_paths(kind)
        except OSError as e:
            logger.warning(f"Failed to scan {kind.value} directory: {e}")
            return []

        for path in paths:
            try:
                documents.append(self._parse(kind, path))
            except FileNotFoundError:
                # Removed between the scan and the read (e.g. by a git pull)
                logger.debug(f"Skipping vanished document {path}")
            except StoreIOError as e:
                logger.warning(f"Skipping unreadable document {path}: {e}")
        return documents

    # ------------------------------------------------------------------
    # Compose files
    # ------------------------------------------------------------------

    def save_compose_file(self, project_name: str, content: str) -> None:
        path = self.compose_file_path(project_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise StoreIOError(f"Failed to write {path}: {e}") from e

    def load_compose_file(self, project_name: str) -> str:
        path = self.compose_file_path(project_name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise NotFoundError("compose file", project_name) from None
        except OSError as e:
            raise StoreIOError(f"Failed to read {path}: {e}") from e

    # ------------------------------------------------------------------
    # Desired state
    # ------------------------------------------------------------------

    def load_desired_state(self) -> DesiredState:
        path = self.data_dir / DESIRED_STATE_PATH
        try:
            data = self._read_yaml(path)
        except FileNotFoundError:
            return DesiredState()
        try:
            return DesiredState.from_dict(data)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise DocumentError(f"Invalid desired-state document: {e}") from e

    def save_desired_state(
        self, state: DesiredState, expected_version: int | None = None
    ) -> DesiredState:
        current_version = self.load_desired_state().version
        if expected_version is not None and current_version != expected_version:
            raise VersionConflictError(expected_version, current_version)

        saved = replace(state, version=current_version + 1)
        self._write_yaml(self.data_dir / DESIRED_STATE_PATH, saved.to_dict())
        logger.debug(f"Saved desired state version {saved.version}")
        return saved
