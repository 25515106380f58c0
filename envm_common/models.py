"""
Data models for managed entities and their desired state.

These models are the documents persisted in the config repository and the
result objects returned by the reconciler, sync coordinator and backup
scheduler. They are independent of the YAML storage format.
"""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

RUNNING = "running"
STOPPED = "stopped"
DESIRED_STATES = (RUNNING, STOPPED)

DesiredStateValue = Literal["running", "stopped"]


def generate_entity_id() -> str:
    """Generate a short, stable entity ID (independent of docker's IDs)."""
    return uuid.uuid4().hex[:8]


def utc_now() -> datetime:
    return datetime.now(UTC)


def _format_time(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_time(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


class EntityKind(str, Enum):
    """Kinds of documents in the config store (also their directory names)."""

    CONTAINERS = "containers"
    VOLUMES = "volumes"
    COMPOSE = "compose"


class BackupState(str, Enum):
    """Per-volume backup state machine."""

    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class PortMapping:
    host: int
    container: int
    protocol: str = "tcp"

    def to_dict(self) -> dict[str, Any]:
        return {"host": self.host, "container": self.container, "protocol": self.protocol}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PortMapping":
        return cls(
            host=int(data["host"]),
            container=int(data["container"]),
            protocol=data.get("protocol") or "tcp",
        )


@dataclass
class VolumeMount:
    """
    A mount for a managed container.

    Exactly one of name (named volume) or host_path (bind mount) is set.
    """

    container_path: str
    name: str | None = None
    host_path: str | None = None
    read_only: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"container_path": self.container_path}
        if self.name is not None:
            result["name"] = self.name
        if self.host_path is not None:
            result["host_path"] = self.host_path
        result["read_only"] = self.read_only
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VolumeMount":
        return cls(
            container_path=data["container_path"],
            name=data.get("name"),
            host_path=data.get("host_path"),
            read_only=bool(data.get("read_only", False)),
        )


@dataclass
class ResourceLimits:
    memory: str | None = None  # e.g. "512m"
    cpu: str | None = None  # e.g. "0.5"

    def to_dict(self) -> dict[str, Any]:
        return {"memory": self.memory, "cpu": self.cpu}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ResourceLimits":
        data = data or {}
        return cls(memory=data.get("memory"), cpu=data.get("cpu"))


@dataclass
class ContainerSettings:
    """Docker run settings of a managed container."""

    image: str
    command: list[str] = field(default_factory=list)
    entrypoint: list[str] = field(default_factory=list)
    working_dir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    ports: list[PortMapping] = field(default_factory=list)
    volumes: list[VolumeMount] = field(default_factory=list)
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    restart: str = ""
    labels: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "image": self.image,
            "command": list(self.command),
            "entrypoint": list(self.entrypoint),
            "working_dir": self.working_dir,
            "env": dict(self.env),
            "ports": [p.to_dict() for p in self.ports],
            "volumes": [v.to_dict() for v in self.volumes],
            "resources": self.resources.to_dict(),
            "restart": self.restart,
            "labels": dict(self.labels),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContainerSettings":
        return cls(
            image=data["image"],
            command=list(data.get("command") or []),
            entrypoint=list(data.get("entrypoint") or []),
            working_dir=data.get("working_dir") or "",
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            ports=[PortMapping.from_dict(p) for p in data.get("ports") or []],
            volumes=[VolumeMount.from_dict(v) for v in data.get("volumes") or []],
            resources=ResourceLimits.from_dict(data.get("resources")),
            restart=data.get("restart") or "",
            labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
        )


@dataclass
class EntityMetadata:
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    created_by: str = "api"  # ui | api | compose | adopted

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": _format_time(self.created_at),
            "updated_at": _format_time(self.updated_at),
            "created_by": self.created_by,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "EntityMetadata":
        data = data or {}
        now = utc_now()
        return cls(
            created_at=_parse_time(data.get("created_at")) or now,
            updated_at=_parse_time(data.get("updated_at")) or now,
            created_by=data.get("created_by") or "api",
        )


@dataclass
class ContainerConfig:
    """
    Declarative config of one managed container.

    id is the stable entity ID used as the document key and as the key in
    the desired-state document; name is the docker container name.
    """

    id: str
    name: str
    config: ContainerSettings
    desired_state: str = RUNNING
    metadata: EntityMetadata = field(default_factory=EntityMetadata)

    @property
    def key(self) -> str:
        return self.id

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "config": self.config.to_dict(),
            "desired_state": self.desired_state,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContainerConfig":
        return cls(
            id=str(data["id"]),
            name=data["name"],
            config=ContainerSettings.from_dict(data["config"]),
            desired_state=data.get("desired_state") or RUNNING,
            metadata=EntityMetadata.from_dict(data.get("metadata")),
        )


@dataclass
class BackupPolicy:
    """Backup settings attached to a volume config."""

    enabled: bool = False
    schedule: str = ""  # cron expression
    retention_days: int = 0  # <= 0 means the default retention
    last_backup: str = ""  # timestamp of the last successful backup

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "schedule": self.schedule,
            "retention_days": self.retention_days,
            "last_backup": self.last_backup,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "BackupPolicy":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", False)),
            schedule=data.get("schedule") or "",
            retention_days=int(data.get("retention_days") or 0),
            last_backup=str(data.get("last_backup") or ""),
        )


@dataclass
class VolumeConfig:
    name: str
    driver: str = "local"
    driver_opts: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    backup: BackupPolicy = field(default_factory=BackupPolicy)
    metadata: EntityMetadata = field(default_factory=EntityMetadata)

    @property
    def key(self) -> str:
        return self.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "driver": self.driver,
            "driver_opts": dict(self.driver_opts),
            "labels": dict(self.labels),
            "backup": self.backup.to_dict(),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "VolumeConfig":
        return cls(
            name=data["name"],
            driver=data.get("driver") or "local",
            driver_opts={str(k): str(v) for k, v in (data.get("driver_opts") or {}).items()},
            labels={str(k): str(v) for k, v in (data.get("labels") or {}).items()},
            backup=BackupPolicy.from_dict(data.get("backup")),
            metadata=EntityMetadata.from_dict(data.get("metadata")),
        )


@dataclass
class ComposeProject:
    """A compose project; the compose YAML itself is stored beside it."""

    project_name: str
    compose_file: str = "docker-compose.yaml"
    env_file: str = ""
    desired_state: str = RUNNING
    metadata: EntityMetadata = field(default_factory=EntityMetadata)

    @property
    def key(self) -> str:
        return self.project_name

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_name": self.project_name,
            "compose_file": self.compose_file,
            "env_file": self.env_file,
            "desired_state": self.desired_state,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ComposeProject":
        return cls(
            project_name=data["project_name"],
            compose_file=data.get("compose_file") or "docker-compose.yaml",
            env_file=data.get("env_file") or "",
            desired_state=data.get("desired_state") or RUNNING,
            metadata=EntityMetadata.from_dict(data.get("metadata")),
        )


Document = ContainerConfig | VolumeConfig | ComposeProject

DOCUMENT_TYPES: dict[EntityKind, type] = {
    EntityKind.CONTAINERS: ContainerConfig,
    EntityKind.VOLUMES: VolumeConfig,
    EntityKind.COMPOSE: ComposeProject,
}


@dataclass
class EntityState:
    """Desired-state entry for one entity."""

    desired_state: str
    last_known_state: str
    last_transition_time: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "desired_state": self.desired_state,
            "last_known_state": self.last_known_state,
            "last_transition_time": _format_time(self.last_transition_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EntityState":
        return cls(
            desired_state=data["desired_state"],
            last_known_state=data.get("last_known_state") or data["desired_state"],
            last_transition_time=_parse_time(data.get("last_transition_time"))
            or utc_now(),
        )


@dataclass
class DesiredState:
    """
    The single desired-state document.

    version is bumped on every save and used for compare-and-swap.
    """

    version: int = 0
    containers: dict[str, EntityState] = field(default_factory=dict)
    compose_projects: dict[str, EntityState] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.containers and not self.compose_projects

    def entries(self, kind: EntityKind) -> dict[str, EntityState]:
        if kind == EntityKind.CONTAINERS:
            return self.containers
        if kind == EntityKind.COMPOSE:
            return self.compose_projects
        raise ValueError(f"Desired state is not tracked for {kind.value}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "containers": {k: v.to_dict() for k, v in self.containers.items()},
            "compose_projects": {
                k: v.to_dict() for k, v in self.compose_projects.items()
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DesiredState":
        data = data or {}
        return cls(
            version=int(data.get("version") or 0),
            containers={
                str(k): EntityState.from_dict(v)
                for k, v in (data.get("containers") or {}).items()
            },
            compose_projects={
                str(k): EntityState.from_dict(v)
                for k, v in (data.get("compose_projects") or {}).items()
            },
        )


@dataclass
class BackupInfo:
    """A backup archive, derived from the file on disk."""

    volume_name: str
    filename: str
    timestamp: datetime
    size_bytes: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "volume_name": self.volume_name,
            "filename": self.filename,
            "timestamp": _format_time(self.timestamp),
            "size_bytes": self.size_bytes,
        }


@dataclass
class CommitInfo:
    hash: str
    message: str
    author: str
    date: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "message": self.message,
            "author": self.author,
            "date": _format_time(self.date),
        }


@dataclass
class GitStatus:
    clean: bool
    changed_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"clean": self.clean, "changed_files": list(self.changed_files)}


@dataclass
class EntityError:
    """
    A per-entity reconciliation failure.

    kind is one of: orphan, invalid_config, name_conflict, create_failed,
    start_failed, stop_failed, inspect_failed, compose_failed. Sync failures
    that are not tied to an entity (pull_failed, runtime_unavailable,
    reconcile_failed) use an empty entity_id.
    """

    entity_id: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"entity_id": self.entity_id, "kind": self.kind, "message": self.message}


@dataclass
class ReconcileReport:
    created: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    errors: list[EntityError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "created": list(self.created),
            "started": list(self.started),
            "stopped": list(self.stopped),
            "unchanged": list(self.unchanged),
            "errors": [e.to_dict() for e in self.errors],
        }


@dataclass
class SyncResult:
    """
    Outcome of a pull + reconcile pass.

    success is False only when the pull failed, the runtime was unreachable
    or the pass could not run at all; per-entity errors keep success True.
    """

    success: bool = True
    pulled_changes: bool = False
    created: list[str] = field(default_factory=list)
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    errors: list[EntityError] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "pulled_changes": self.pulled_changes,
            "created": list(self.created),
            "started": list(self.started),
            "stopped": list(self.stopped),
            "errors": [e.to_dict() for e in self.errors],
        }
