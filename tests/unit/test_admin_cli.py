"""
Unit tests for the admin CLI.

Commands run in-process through click's CliRunner against a temporary data
directory; docker is replaced by the FakeRuntime.
"""

import json
import os
from datetime import UTC, datetime, timedelta

import pytest
from click.testing import CliRunner

from envm_admin import cli as admin
from envm_common.models import BackupPolicy, EntityKind, VolumeConfig
from envm_persistence.git_repository import GitRepository


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def invoke(runner, data_dir, fake_runtime, monkeypatch):
    """Run an envm-admin command against the test data directory."""
    monkeypatch.setattr(admin, "get_runtime", lambda: fake_runtime)
    monkeypatch.delenv("ENVM_GIT_REMOTE", raising=False)

    def _invoke(*args, input=None):
        return runner.invoke(admin.cli, ["--data-dir", str(data_dir), *args], input=input)

    return _invoke


class TestState:
    """Test suite for desired-state commands."""

    def test_show_empty(self, invoke):
        result = invoke("state", "show")

        assert result.exit_code == 0
        assert "Version: 0" in result.output
        assert "No entities in desired state." in result.output

    def test_set_and_show(self, invoke, store, add_container_config, data_dir):
        add_container_config("a1b2c3d4", "web")

        result = invoke("state", "set", "a1b2c3d4", "stopped")

        assert result.exit_code == 0, result.output
        assert "desired state set to stopped (version 1)" in result.output
        assert store.load(EntityKind.CONTAINERS, "a1b2c3d4").desired_state == "stopped"

        shown = json.loads(invoke("state", "show", "--json").output)
        assert shown["version"] == 1
        assert shown["containers"]["a1b2c3d4"]["desired_state"] == "stopped"

        commits = GitRepository(data_dir).recent_commits()
        assert commits[0].message == "Set containers a1b2c3d4 desired state to stopped"

    def test_set_unknown_entity(self, invoke):
        result = invoke("state", "set", "missing", "running")

        assert result.exit_code == 1
        assert "No containers config for missing" in result.output

    def test_set_rejects_invalid_state(self, invoke):
        result = invoke("state", "set", "a1", "paused")

        assert result.exit_code == 2

    def test_remove(self, invoke, tracker):
        tracker.set_entity_state("a1", "running")

        result = invoke("state", "remove", "a1")

        assert result.exit_code == 0
        assert tracker.get_document().containers == {}


class TestReconcile:
    def test_reconcile_creates_containers(self, invoke, fake_runtime, tracker, add_container_config):
        add_container_config("a1", "web")
        tracker.set_entity_state("a1", "running")

        result = invoke("reconcile")

        assert result.exit_code == 0, result.output
        assert "✓ Reconciliation complete" in result.output
        assert fake_runtime.by_name("web").is_running

    def test_reconcile_reports_errors(self, invoke, tracker):
        tracker.set_entity_state("ghost", "running")

        result = invoke("reconcile")

        assert result.exit_code == 1
        assert "ghost [orphan]" in result.output

    def test_reconcile_runtime_unavailable(self, invoke, fake_runtime, tracker, add_container_config):
        add_container_config("a1", "web")
        tracker.set_entity_state("a1", "running")
        fake_runtime.unavailable = True

        result = invoke("reconcile")

        assert result.exit_code == 1
        assert "Container runtime unavailable" in result.output

    def test_sync_without_remote(self, invoke, fake_runtime, tracker, add_container_config):
        add_container_config("a1", "web")
        tracker.set_entity_state("a1", "running")

        result = invoke("sync")

        assert result.exit_code == 0, result.output
        assert "Pulled changes: no" in result.output
        assert fake_runtime.by_name("web").is_running


class TestListing:
    def test_container_list(self, invoke, add_container_config):
        add_container_config("a1b2c3d4", "web", image="nginx:1.25")

        result = invoke("container", "list")
        as_json = json.loads(invoke("container", "list", "--json").output)

        assert "web" in result.output and "nginx:1.25" in result.output
        assert as_json[0]["id"] == "a1b2c3d4"

    def test_container_list_empty(self, invoke):
        assert "No containers found." in invoke("container", "list").output

    def test_volume_list(self, invoke, store):
        store.save(
            EntityKind.VOLUMES,
            VolumeConfig(name="logs-vol", backup=BackupPolicy(enabled=True, schedule="0 2 * * *")),
        )

        result = invoke("volume", "list")

        assert "logs-vol" in result.output
        assert "0 2 * * *" in result.output


class TestBackup:
    @pytest.fixture
    def tar_worker(self, fake_runtime):
        async def write_archive(image, command, mounts, timeout):
            backup_dir = next(m.source for m in mounts if m.target == "/backup")
            with open(os.path.join(backup_dir, "backup.tar.gz"), "wb") as f:
                f.write(b"archive")
            return 0

        fake_runtime.worker_handler = write_archive

    def test_run_and_list(self, invoke, tar_worker):
        result = invoke("backup", "run", "logs-vol")

        assert result.exit_code == 0, result.output
        assert "✓ Backup created" in result.output

        listed = json.loads(invoke("backup", "list", "logs-vol", "--json").output)
        assert len(listed) == 1
        assert listed[0]["volume_name"] == "logs-vol"

    def test_run_failure(self, invoke, fake_runtime):
        async def failing(image, command, mounts, timeout):
            return 3

        fake_runtime.worker_handler = failing

        result = invoke("backup", "run", "logs-vol")

        assert result.exit_code == 1
        assert "exited with code 3" in result.output

    def test_list_empty(self, invoke):
        assert "No backups found for volume logs-vol." in invoke("backup", "list", "logs-vol").output

    def test_restore_requires_confirmation(self, invoke, tar_worker, fake_runtime):
        invoke("backup", "run", "logs-vol")
        filename = json.loads(invoke("backup", "list", "logs-vol", "--json").output)[0]["filename"]
        workers_before = len(fake_runtime.workers)

        aborted = invoke("backup", "restore", "logs-vol", filename, input="n\n")

        assert aborted.exit_code == 1
        assert len(fake_runtime.workers) == workers_before

        restored = invoke("backup", "restore", "logs-vol", filename, "--yes")

        assert restored.exit_code == 0, restored.output
        assert len(fake_runtime.workers) == workers_before + 1

    def test_restore_missing(self, invoke):
        result = invoke("backup", "restore", "logs-vol", "nope.tar.gz", "--yes")

        assert result.exit_code == 1

    def test_cleanup(self, invoke, store):
        directory = store.backup_dir("logs-vol")
        directory.mkdir(parents=True)
        old = directory / "2020-01-01T00-00-00.tar.gz"
        old.write_bytes(b"x")
        mtime = (datetime.now(UTC) - timedelta(days=90)).timestamp()
        os.utime(old, (mtime, mtime))

        result = invoke("backup", "cleanup", "logs-vol")

        assert "Removed 1 backup(s)" in result.output
        assert not old.exists()


class TestGit:
    def test_log_and_status(self, invoke, data_dir):
        (data_dir / "notes.yaml").write_text("a: 1\n")

        status = invoke("git", "status")
        assert "1 uncommitted change(s)" in status.output
        assert "notes.yaml" in status.output

        GitRepository(data_dir).commit_all("Add notes")

        log = invoke("git", "log", "-n", "5")
        assert "Add notes" in log.output
        assert "Working tree clean" in invoke("git", "status").output

    def test_log_empty(self, invoke):
        assert "No commits yet." in invoke("git", "log").output
