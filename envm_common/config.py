"""
Process configuration loaded from environment variables.

Every entrypoint (server, controller daemon, admin CLI) starts from
Settings.from_env() and lets its own command-line options override fields.
"""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """
    Runtime settings.

    Environment variables:
    - ENVM_DATA_DIR: Git working tree holding all config documents (default: ./data)
    - ENVM_GIT_REMOTE: Remote URL for push/pull (default: none)
    - ENVM_GIT_BRANCH: Branch to push and pull (default: main)
    - ENVM_NETWORK: Docker network managed containers join (default: none)
    - ENVM_WORKER_IMAGE: Image for backup/restore workers (default: alpine:latest)
    - ENVM_WORKER_TIMEOUT: Seconds before a worker is killed (default: 3600)
    - ENVM_RECONCILE_INTERVAL: Seconds between periodic passes, 0 disables (default: 0)
    - ENVM_WEBHOOK_SECRET: Shared secret for webhook verification (default: none)
    - ENVM_HOST / ENVM_PORT: HTTP bind address (default: 0.0.0.0:8080)
    """

    data_dir: Path = Path("./data")
    git_remote: str = ""
    git_branch: str = "main"
    network: str = ""
    worker_image: str = "alpine:latest"
    worker_timeout: float = 3600.0
    reconcile_interval: float = 0.0
    webhook_secret: str = ""
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        return cls(
            data_dir=Path(env.get("ENVM_DATA_DIR", "./data")),
            git_remote=env.get("ENVM_GIT_REMOTE", ""),
            git_branch=env.get("ENVM_GIT_BRANCH", "main") or "main",
            network=env.get("ENVM_NETWORK", ""),
            worker_image=env.get("ENVM_WORKER_IMAGE", "alpine:latest"),
            worker_timeout=_positive_float(env, "ENVM_WORKER_TIMEOUT", 3600.0),
            reconcile_interval=_non_negative_float(
                env, "ENVM_RECONCILE_INTERVAL", 0.0
            ),
            webhook_secret=env.get("ENVM_WEBHOOK_SECRET", ""),
            host=env.get("ENVM_HOST", "0.0.0.0"),
            port=_port(env, "ENVM_PORT", 8080),
        )


def _read_float(env: Mapping[str, str], name: str, default: float) -> float | None:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return None


def _positive_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = _read_float(env, name, default)
    if value is None:
        return default
    if value <= 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def _non_negative_float(env: Mapping[str, str], name: str, default: float) -> float:
    value = _read_float(env, name, default)
    if value is None:
        return default
    if value < 0:
        logger.warning(f"Invalid {name}={value}, using default {default}")
        return default
    return value


def _port(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if not raw:
        return default
    try:
        port = int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw}, using default {default}")
        return default
    if not 0 < port < 65536:
        logger.warning(f"Invalid {name}={port}, using default {default}")
        return default
    return port
