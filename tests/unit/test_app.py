"""
Unit tests for the FastAPI app.

Collaborators are injected through dependency_overrides: a real YAML store
and git repository in tmp_path, the FakeRuntime for docker, and a mocked
sync coordinator for the webhook endpoints.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from envm_common.config import Settings
from envm_common.models import EntityKind, SyncResult
from envm_controller.backup import BackupScheduler
from envm_controller.reconciler import Reconciler
from envm_persistence.git_repository import GitRepository
from envm_server.app import (
    app,
    get_backup_scheduler,
    get_git_repository,
    get_reconciler,
    get_runtime,
    get_settings,
    get_store,
    get_sync_coordinator,
    get_tracker,
)
from envm_server.auth import compute_github_signature

SECRET = "s3cret"


@pytest.fixture
def git_repo(data_dir):
    repo = GitRepository(data_dir)
    repo.initialize()
    return repo


@pytest.fixture
def coordinator():
    mock = MagicMock()
    mock.sync = AsyncMock(return_value=SyncResult(pulled_changes=True, created=["a1"]))
    return mock


@pytest.fixture
def scheduler(store, fake_runtime, git_repo):
    return BackupScheduler(store, runtime=fake_runtime, git_repo=git_repo)


@pytest.fixture
def test_client(data_dir, store, tracker, git_repo, fake_runtime, coordinator, scheduler):
    """Create a test client with every collaborator overridden."""
    settings = Settings(data_dir=data_dir, webhook_secret=SECRET)
    reconciler = Reconciler(store, runtime=fake_runtime)

    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_tracker] = lambda: tracker
    app.dependency_overrides[get_git_repository] = lambda: git_repo
    app.dependency_overrides[get_runtime] = lambda: fake_runtime
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_backup_scheduler] = lambda: scheduler
    app.dependency_overrides[get_sync_coordinator] = lambda: coordinator

    client = TestClient(app)

    yield client

    # Cleanup
    app.dependency_overrides.clear()


def test_health(test_client):
    response = test_client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_sync(test_client, coordinator):
    response = test_client.post("/sync")

    assert response.status_code == 200
    assert response.json()["pulled_changes"] is True
    assert response.json()["created"] == ["a1"]
    coordinator.sync.assert_awaited_once()


class TestWebhooks:
    """Test suite for webhook verification and branch filtering."""

    def _github(self, client, payload, secret=SECRET, event="push"):
        body = json.dumps(payload).encode()
        headers = {"X-GitHub-Event": event, "Content-Type": "application/json"}
        if secret is not None:
            headers["X-Hub-Signature-256"] = compute_github_signature(secret, body)
        return client.post("/webhooks/github", content=body, headers=headers)

    def test_github_push_to_main_triggers_sync(self, test_client, coordinator):
        response = self._github(test_client, {"ref": "refs/heads/main"})

        assert response.status_code == 202
        assert response.json()["status"] == "accepted"
        coordinator.sync.assert_awaited_once()

    def test_github_push_to_master_triggers_sync(self, test_client, coordinator):
        response = self._github(test_client, {"ref": "refs/heads/master"})

        assert response.json()["status"] == "accepted"

    def test_github_bad_signature_rejected(self, test_client, coordinator):
        response = self._github(test_client, {"ref": "refs/heads/main"}, secret="wrong")

        assert response.status_code == 401
        coordinator.sync.assert_not_awaited()

    def test_github_missing_signature_rejected(self, test_client, coordinator):
        response = self._github(test_client, {"ref": "refs/heads/main"}, secret=None)

        assert response.status_code == 401

    def test_github_other_branch_ignored(self, test_client, coordinator):
        response = self._github(test_client, {"ref": "refs/heads/feature/x"})

        assert response.status_code == 202
        assert response.json()["status"] == "ignored"
        coordinator.sync.assert_not_awaited()

    def test_github_tag_ignored(self, test_client, coordinator):
        response = self._github(test_client, {"ref": "refs/tags/main"})

        assert response.json()["status"] == "ignored"

    def test_github_ping(self, test_client, coordinator):
        response = self._github(test_client, {"zen": "hi"}, event="ping")

        assert response.json() == {"status": "pong"}
        coordinator.sync.assert_not_awaited()

    def test_gitlab_token(self, test_client, coordinator):
        payload = {"ref": "refs/heads/main"}

        ok = test_client.post("/webhooks/gitlab", json=payload, headers={"X-Gitlab-Token": SECRET})
        bad = test_client.post("/webhooks/gitlab", json=payload, headers={"X-Gitlab-Token": "nope"})

        assert ok.status_code == 202
        assert bad.status_code == 401
        coordinator.sync.assert_awaited_once()

    def test_generic_bearer(self, test_client, coordinator):
        ok = test_client.post("/webhooks/generic", headers={"Authorization": f"Bearer {SECRET}"})
        missing = test_client.post("/webhooks/generic")

        assert ok.status_code == 202
        assert missing.status_code == 401
        coordinator.sync.assert_awaited_once()

    def test_invalid_json(self, test_client):
        body = b"not json"
        response = test_client.post(
            "/webhooks/github",
            content=body,
            headers={"X-Hub-Signature-256": compute_github_signature(SECRET, body)},
        )

        assert response.status_code == 400

    def test_no_secret_accepts_unsigned(self, test_client, data_dir, coordinator):
        app.dependency_overrides[get_settings] = lambda: Settings(data_dir=data_dir)

        response = self._github(test_client, {"ref": "refs/heads/main"}, secret=None)

        assert response.status_code == 202
        coordinator.sync.assert_awaited_once()


class TestContainers:
    """Test suite for container desired-state endpoints."""

    def _create(self, client, name="web", **overrides):
        payload = {"name": name, "config": {"image": "nginx:latest"}}
        payload.update(overrides)
        return client.post("/containers", json=payload)

    def test_create_container(self, test_client, store, tracker, git_repo, fake_runtime):
        response = self._create(test_client)

        assert response.status_code == 201
        container_id = response.json()["id"]
        assert store.load(EntityKind.CONTAINERS, container_id).name == "web"
        assert tracker.get_document().containers[container_id].desired_state == "running"
        assert git_repo.recent_commits()[0].message == f"Create container web ({container_id})"
        # Background reconciliation created the container
        assert fake_runtime.by_name("web").is_running

    def test_create_duplicate_name(self, test_client):
        self._create(test_client)

        response = self._create(test_client)

        assert response.status_code == 409

    def test_create_without_image(self, test_client):
        response = test_client.post("/containers", json={"name": "web", "config": {}})

        assert response.status_code == 400

    def test_create_invalid_state(self, test_client):
        response = self._create(test_client, desired_state="paused")

        assert response.status_code == 400

    def test_list_and_get(self, test_client, fake_runtime):
        container_id = self._create(test_client).json()["id"]

        listing = test_client.get("/containers").json()
        single = test_client.get(f"/containers/{container_id}").json()

        assert [c["name"] for c in listing] == ["web"]
        assert single["status"] == "running"
        assert single["desired_state"] == "running"

    def test_status_unknown_when_runtime_down(self, test_client, fake_runtime):
        container_id = self._create(test_client).json()["id"]
        fake_runtime.unavailable = True

        response = test_client.get(f"/containers/{container_id}")

        assert response.json()["status"] == "unknown"

    def test_get_missing(self, test_client):
        assert test_client.get("/containers/nope").status_code == 404

    def test_stop_and_start(self, test_client, tracker, fake_runtime):
        container_id = self._create(test_client).json()["id"]

        stopped = test_client.post(f"/containers/{container_id}/stop")

        assert stopped.status_code == 200
        assert stopped.json()["reconcile"]["stopped"] == [container_id]
        assert tracker.get_document().containers[container_id].desired_state == "stopped"
        assert not fake_runtime.by_name("web").is_running

        started = test_client.post(f"/containers/{container_id}/start")

        assert started.json()["reconcile"]["started"] == [container_id]
        assert fake_runtime.by_name("web").is_running

    def test_stop_missing(self, test_client):
        assert test_client.post("/containers/nope/stop").status_code == 404

    def test_runtime_down_on_reconcile(self, test_client, fake_runtime):
        container_id = self._create(test_client).json()["id"]
        fake_runtime.unavailable = True

        response = test_client.post(f"/containers/{container_id}/stop")

        assert response.status_code == 503

    def test_delete(self, test_client, store, tracker, fake_runtime):
        container_id = self._create(test_client).json()["id"]

        response = test_client.delete(f"/containers/{container_id}")

        assert response.status_code == 200
        assert not store.exists(EntityKind.CONTAINERS, container_id)
        assert container_id not in tracker.get_document().containers
        assert fake_runtime.by_name("web") is None


COMPOSE_YAML = "services:\n  web:\n    image: nginx\n"


class TestCompose:
    """Test suite for compose project endpoints."""

    def _create(self, client, project_name="blog", **overrides):
        payload = {"project_name": project_name, "compose_yaml": COMPOSE_YAML}
        payload.update(overrides)
        return client.post("/compose", json=payload)

    def test_create_project(self, test_client, store, tracker, git_repo, fake_runtime):
        response = self._create(test_client)

        assert response.status_code == 201
        assert store.load(EntityKind.COMPOSE, "blog").env_file == ""
        assert store.load_compose_file("blog") == COMPOSE_YAML
        assert tracker.get_document().compose_projects["blog"].desired_state == "running"
        assert git_repo.recent_commits()[0].message == "Create compose project blog"
        # Background reconciliation brought the project up
        assert ("compose_up", "blog") in fake_runtime.calls

    def test_create_duplicate(self, test_client):
        self._create(test_client)

        assert self._create(test_client).status_code == 409

    @pytest.mark.parametrize("project_name", ["Blog", "../etc", "-blog", ""])
    def test_create_invalid_name(self, test_client, project_name):
        assert self._create(test_client, project_name=project_name).status_code == 400

    def test_create_without_services(self, test_client, store):
        response = self._create(test_client, compose_yaml="version: '3'\n")

        assert response.status_code == 400
        assert not store.exists(EntityKind.COMPOSE, "blog")

    def test_create_unparseable_compose_file(self, test_client):
        assert self._create(test_client, compose_yaml="services: [unclosed\n").status_code == 400

    def test_create_env_file_outside_project(self, test_client):
        assert self._create(test_client, env_file="../secrets.env").status_code == 400

    def test_list_and_get(self, test_client):
        self._create(test_client)

        listing = test_client.get("/compose").json()
        single = test_client.get("/compose/blog").json()

        assert [p["project_name"] for p in listing] == ["blog"]
        assert single["compose_yaml"] == COMPOSE_YAML
        assert single["services"] == [{"name": "blog-web-1", "status": "running"}]

    def test_get_missing(self, test_client):
        assert test_client.get("/compose/nope").status_code == 404

    def test_down_and_up(self, test_client, tracker, fake_runtime):
        self._create(test_client)

        stopped = test_client.post("/compose/blog/down")

        assert stopped.status_code == 200
        assert stopped.json()["reconcile"]["stopped"] == ["blog"]
        assert tracker.get_document().compose_projects["blog"].desired_state == "stopped"
        assert not fake_runtime.compose["blog"][0].is_running

        started = test_client.post("/compose/blog/up")

        assert started.json()["reconcile"]["started"] == ["blog"]
        assert fake_runtime.compose["blog"][0].is_running

    def test_up_missing(self, test_client):
        assert test_client.post("/compose/nope/up").status_code == 404

    def test_update(self, test_client, store, tracker, git_repo):
        self._create(test_client)
        new_yaml = "services:\n  web:\n    image: nginx:1.27\n"

        response = test_client.put(
            "/compose/blog", json={"compose_yaml": new_yaml, "desired_state": "stopped"}
        )

        assert response.status_code == 200
        assert store.load_compose_file("blog") == new_yaml
        assert store.load(EntityKind.COMPOSE, "blog").desired_state == "stopped"
        assert tracker.get_document().compose_projects["blog"].desired_state == "stopped"
        assert git_repo.recent_commits()[0].message == "Update compose project blog"

    def test_delete(self, test_client, store, tracker, fake_runtime):
        self._create(test_client)

        response = test_client.delete("/compose/blog")

        assert response.status_code == 200
        assert ("compose_down", "blog") in fake_runtime.calls
        assert not store.exists(EntityKind.COMPOSE, "blog")
        assert "blog" not in tracker.get_document().compose_projects
        assert "blog" not in fake_runtime.compose

    def test_delete_when_compose_down_fails(self, test_client, store, fake_runtime):
        self._create(test_client)
        fake_runtime.fail_on["compose_down"] = {"blog"}

        response = test_client.delete("/compose/blog")

        assert response.status_code == 200
        assert not store.exists(EntityKind.COMPOSE, "blog")

    def test_delete_when_runtime_down(self, test_client, store, fake_runtime):
        self._create(test_client)
        fake_runtime.unavailable = True

        response = test_client.delete("/compose/blog")

        assert response.status_code == 503
        assert store.exists(EntityKind.COMPOSE, "blog")


class TestVolumes:
    """Test suite for backup endpoints."""

    @pytest.fixture
    def tar_worker(self, fake_runtime):
        async def write_archive(image, command, mounts, timeout):
            backup_dir = next(m.source for m in mounts if m.target == "/backup")
            with open(f"{backup_dir}/backup.tar.gz", "wb") as f:
                f.write(b"archive")
            return 0

        fake_runtime.worker_handler = write_archive

    def test_backup_and_list(self, test_client, tar_worker):
        created = test_client.post("/volumes/logs-vol/backups")

        assert created.status_code == 201
        listing = test_client.get("/volumes/logs-vol/backups").json()
        assert [b["filename"] for b in listing] == [created.json()["filename"]]

    def test_backup_worker_failure(self, test_client, fake_runtime):
        async def failing(image, command, mounts, timeout):
            return 1

        fake_runtime.worker_handler = failing

        response = test_client.post("/volumes/logs-vol/backups")

        assert response.status_code == 500

    def test_restore_invalid_filename(self, test_client):
        response = test_client.post("/volumes/logs-vol/restore", json={"filename": "../x.tar.gz"})

        assert response.status_code == 400

    def test_restore_missing_backup(self, test_client):
        response = test_client.post(
            "/volumes/logs-vol/restore", json={"filename": "2026-01-01T02-00-00.tar.gz"}
        )

        assert response.status_code == 404

    def test_restore(self, test_client, tar_worker, fake_runtime):
        filename = test_client.post("/volumes/logs-vol/backups").json()["filename"]

        response = test_client.post("/volumes/logs-vol/restore", json={"filename": filename})

        assert response.status_code == 200
        assert "tar xzf" in fake_runtime.workers[-1]["command"][2]

    def test_update_backup_policy(self, test_client, store, git_repo):
        response = test_client.put(
            "/volumes/logs-vol/backup-policy",
            json={"enabled": True, "schedule": "0 2 * * *", "retention_days": 7},
        )

        assert response.status_code == 200
        volume = store.load(EntityKind.VOLUMES, "logs-vol")
        assert volume.backup.schedule == "0 2 * * *"
        assert volume.backup.retention_days == 7
        assert "logs-vol" in git_repo.recent_commits()[0].message

    def test_update_backup_policy_invalid_cron(self, test_client, store):
        response = test_client.put(
            "/volumes/logs-vol/backup-policy", json={"enabled": True, "schedule": "every day"}
        )

        assert response.status_code == 400
        assert not store.exists(EntityKind.VOLUMES, "logs-vol")

    def test_list_volumes(self, test_client):
        test_client.put("/volumes/db/backup-policy", json={"enabled": False})

        assert [v["name"] for v in test_client.get("/volumes").json()] == ["db"]

    def test_create_volume(self, test_client, store, git_repo, fake_runtime):
        response = test_client.post(
            "/volumes", json={"name": "logs-vol", "driver_opts": {"type": "tmpfs"}}
        )

        assert response.status_code == 201
        assert fake_runtime.volumes["logs-vol"]["driver_opts"] == {"type": "tmpfs"}
        volume = store.load(EntityKind.VOLUMES, "logs-vol")
        assert volume.backup.enabled
        assert volume.backup.schedule == "0 2 * * *"
        assert volume.backup.retention_days == 30
        assert git_repo.recent_commits()[0].message == "Create volume logs-vol"

    def test_create_volume_duplicate(self, test_client, fake_runtime):
        test_client.post("/volumes", json={"name": "logs-vol"})
        fake_runtime.calls.clear()

        response = test_client.post("/volumes", json={"name": "logs-vol"})

        assert response.status_code == 409
        assert fake_runtime.calls == []

    def test_create_volume_invalid_cron(self, test_client, store, fake_runtime):
        response = test_client.post(
            "/volumes", json={"name": "logs-vol", "backup": {"schedule": "nightly"}}
        )

        assert response.status_code == 400
        assert fake_runtime.volumes == {}
        assert not store.exists(EntityKind.VOLUMES, "logs-vol")

    def test_create_volume_docker_failure(self, test_client, store, fake_runtime):
        fake_runtime.fail_on["create_volume"] = {"logs-vol"}

        response = test_client.post("/volumes", json={"name": "logs-vol"})

        assert response.status_code == 500
        assert not store.exists(EntityKind.VOLUMES, "logs-vol")

    def test_delete_volume(self, test_client, store, git_repo, fake_runtime):
        test_client.post("/volumes", json={"name": "logs-vol"})

        response = test_client.delete("/volumes/logs-vol")

        assert response.status_code == 200
        assert "logs-vol" not in fake_runtime.volumes
        assert not store.exists(EntityKind.VOLUMES, "logs-vol")
        assert git_repo.recent_commits()[0].message == "Delete volume logs-vol"

    def test_delete_volume_in_use_keeps_config(self, test_client, store, fake_runtime):
        test_client.post("/volumes", json={"name": "logs-vol"})
        fake_runtime.fail_on["remove_volume"] = {"logs-vol"}

        response = test_client.delete("/volumes/logs-vol")

        assert response.status_code == 409
        assert store.exists(EntityKind.VOLUMES, "logs-vol")

    def test_delete_volume_runtime_down(self, test_client, fake_runtime):
        test_client.post("/volumes", json={"name": "logs-vol"})
        fake_runtime.unavailable = True

        assert test_client.delete("/volumes/logs-vol").status_code == 503

    def test_delete_missing_volume(self, test_client):
        assert test_client.delete("/volumes/nope").status_code == 404


class TestGit:
    def test_status_and_history(self, test_client, data_dir, git_repo):
        (data_dir / "notes.yaml").write_text("a: 1\n")

        status = test_client.get("/git/status").json()
        assert status == {"clean": False, "changed_files": ["notes.yaml"]}

        git_repo.commit_all("Add notes")
        history = test_client.get("/git/history", params={"limit": 5}).json()
        assert [c["message"] for c in history] == ["Add notes"]
