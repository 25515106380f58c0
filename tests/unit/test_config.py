"""
Unit tests for Settings.from_env.
"""

from pathlib import Path

from envm_common.config import Settings
from envm_controller.__main__ import build_settings, parse_args


def test_defaults():
    settings = Settings.from_env({})

    assert settings.data_dir == Path("./data")
    assert settings.git_remote == ""
    assert settings.git_branch == "main"
    assert settings.worker_image == "alpine:latest"
    assert settings.worker_timeout == 3600.0
    assert settings.reconcile_interval == 0.0
    assert settings.port == 8080


def test_environment_overrides():
    settings = Settings.from_env(
        {
            "ENVM_DATA_DIR": "/srv/envm",
            "ENVM_GIT_REMOTE": "git@example.com:ops/envs.git",
            "ENVM_GIT_BRANCH": "prod",
            "ENVM_NETWORK": "envm",
            "ENVM_WORKER_TIMEOUT": "120",
            "ENVM_RECONCILE_INTERVAL": "30",
            "ENVM_WEBHOOK_SECRET": "s3cret",
            "ENVM_PORT": "9000",
        }
    )

    assert settings.data_dir == Path("/srv/envm")
    assert settings.git_remote == "git@example.com:ops/envs.git"
    assert settings.git_branch == "prod"
    assert settings.network == "envm"
    assert settings.worker_timeout == 120.0
    assert settings.reconcile_interval == 30.0
    assert settings.webhook_secret == "s3cret"
    assert settings.port == 9000


def test_invalid_numbers_fall_back(caplog):
    settings = Settings.from_env(
        {
            "ENVM_WORKER_TIMEOUT": "-5",
            "ENVM_RECONCILE_INTERVAL": "soon",
            "ENVM_PORT": "70000",
        }
    )

    assert settings.worker_timeout == 3600.0
    assert settings.reconcile_interval == 0.0
    assert settings.port == 8080
    assert "ENVM_RECONCILE_INTERVAL" in caplog.text


class TestControllerArguments:
    """Test suite for envm-controller command-line overrides."""

    def test_arguments_override_environment(self, monkeypatch):
        monkeypatch.setenv("ENVM_DATA_DIR", "/from/env")
        monkeypatch.setenv("ENVM_RECONCILE_INTERVAL", "10")

        settings = build_settings(
            parse_args(["--data-dir", "/from/cli", "--interval", "45", "--worker-timeout", "60"])
        )

        assert settings.data_dir == Path("/from/cli")
        assert settings.reconcile_interval == 45.0
        assert settings.worker_timeout == 60.0

    def test_environment_used_without_arguments(self, monkeypatch):
        monkeypatch.setenv("ENVM_NETWORK", "envm")

        settings = build_settings(parse_args([]))

        assert settings.network == "envm"

    def test_invalid_arguments_ignored(self, monkeypatch):
        monkeypatch.delenv("ENVM_RECONCILE_INTERVAL", raising=False)
        monkeypatch.delenv("ENVM_WORKER_TIMEOUT", raising=False)

        settings = build_settings(parse_args(["--interval", "-1", "--worker-timeout", "0"]))

        assert settings.reconcile_interval == 0.0
        assert settings.worker_timeout == 3600.0
