"""Integration tests for the FastAPI web application."""

# pylint: disable=protected-access

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from inbox_sync.core.config import AppSettings, StorageSettings, WebSettings
from inbox_sync.core.models import MailboxConfig, ReconciliationResult, SyncResult
from inbox_sync.monitor import ConnectionRegistry, SyncMonitor
from inbox_sync.storage import SqliteRepository
from inbox_sync.web import create_app

TOKEN = "trigger-token"
AUTH = {"Authorization": f"Bearer {TOKEN}"}
MAILBOX = MailboxConfig(host="imap.test", username="user", secret="very-secret-blob")


class StubSyncer:
    def sync(self, account_id, config, last_cursor, *, uid_validity=None) -> SyncResult:
        return SyncResult(
            account_id=account_id,
            last_processed_cursor=last_cursor + 1,
            fetched=1,
            new_count=1,
            uid_validity=1,
        )


class StubReconciler:
    def reconcile(self, account_id, config) -> ReconciliationResult:
        return ReconciliationResult(account_id=account_id, archived_count=2, success=True)


@pytest.fixture
def settings(tmp_path: Path) -> AppSettings:
    return AppSettings(
        storage=StorageSettings(db_path=tmp_path / "web.db"),
        web=WebSettings(trigger_token=TOKEN),
    )


@pytest.fixture
def repository(settings: AppSettings):
    repo = SqliteRepository(settings.storage)
    repo.upsert_account("acct-1", "user@example.com", MAILBOX)
    repo.create_connection("acct-1")
    yield repo
    repo.close()


@pytest.fixture
def monitor(settings: AppSettings, repository: SqliteRepository) -> SyncMonitor:
    return SyncMonitor(
        ConnectionRegistry(repository, settings.monitor),
        StubSyncer(),  # type: ignore[arg-type]
        StubReconciler(),  # type: ignore[arg-type]
        settings.monitor,
        repository=repository,
    )


@pytest.fixture
def client(settings: AppSettings, monitor: SyncMonitor):
    with TestClient(create_app(settings, monitor=monitor)) as test_client:
        yield test_client


def test_status_endpoint_reports_stats(client: TestClient) -> None:
    response = client.get("/api/status")

    assert response.status_code == 200
    payload = response.json()
    assert payload["stats"]["total_connections"] == 1
    assert payload["stats"]["is_running"] is False
    assert payload["last_cycle"] is None


def test_connections_endpoint_hides_secrets(client: TestClient) -> None:
    response = client.get("/api/connections")

    assert response.status_code == 200
    connections = response.json()["connections"]
    assert [item["account_id"] for item in connections] == ["acct-1"]
    assert connections[0]["status"] == "active"
    assert connections[0]["host"] == "imap.test"
    assert "very-secret-blob" not in response.text


def test_triggers_require_bearer_token(client: TestClient) -> None:
    assert client.post("/api/cycle").status_code == 401
    assert (
        client.post(
            "/api/cycle", headers={"Authorization": "Bearer wrong"}
        ).status_code
        == 401
    )
    assert client.post("/api/connections/acct-1/sync").status_code == 401


def test_cycle_endpoint_runs_cycle(client: TestClient) -> None:
    response = client.post("/api/cycle", headers=AUTH)

    assert response.status_code == 200
    cycle = response.json()["cycle"]
    assert cycle["synced"] == 1
    assert cycle["reconciled"] == 1
    assert cycle["archived"] == 2
    status = client.get("/api/status").json()
    assert status["last_cycle"]["synced"] == 1


def test_sync_and_reconcile_endpoints(client: TestClient) -> None:
    sync = client.post("/api/connections/acct-1/sync", headers=AUTH)
    reconcile = client.post("/api/connections/acct-1/reconcile", headers=AUTH)

    assert sync.status_code == 200
    assert sync.json()["sync"]["new_count"] == 1
    assert sync.json()["sync"]["succeeded"] is True
    assert reconcile.status_code == 200
    assert reconcile.json()["reconciliation"]["archived_count"] == 2


def test_unknown_account_returns_404(client: TestClient) -> None:
    response = client.post("/api/connections/missing/sync", headers=AUTH)

    assert response.status_code == 404


def test_busy_monitor_returns_409(client: TestClient, monitor: SyncMonitor) -> None:
    monitor._cycle_lock.acquire()
    try:
        assert client.post("/api/cycle", headers=AUTH).status_code == 409
        assert (
            client.post("/api/connections/acct-1/sync", headers=AUTH).status_code
            == 409
        )
    finally:
        monitor._cycle_lock.release()


def test_triggers_disabled_without_configured_token(tmp_path: Path) -> None:
    app_settings = AppSettings(storage=StorageSettings(db_path=tmp_path / "web.db"))
    with TestClient(create_app(app_settings)) as client:
        assert client.get("/api/status").status_code == 200
        response = client.post("/api/cycle", headers=AUTH)

    assert response.status_code == 403


def test_sync_of_disabled_account_returns_409(
    client: TestClient, repository: SqliteRepository
) -> None:
    repository.set_connection_enabled("acct-1", False)

    response = client.post("/api/connections/acct-1/sync", headers=AUTH)

    assert response.status_code == 409
    stored = repository.get_connection("acct-1")
    assert stored is not None and stored.status.value == "disabled"
