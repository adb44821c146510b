"""Tests for the command-line entry point."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from inbox_sync import cli
from inbox_sync.core.config import StorageSettings, load_app_settings
from inbox_sync.security import SecretCipher
from inbox_sync.storage import SqliteRepository


@pytest.fixture(autouse=True)
def isolated_settings(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[Path]:
    """Point the CLI at a temporary database and a fresh key."""

    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("INBOX_SYNC_STORAGE__DB_PATH", str(db_path))
    monkeypatch.setenv(
        "INBOX_SYNC_SECURITY__ENCRYPTION_KEY", SecretCipher.generate_key()
    )
    load_app_settings.cache_clear()
    yield db_path
    load_app_settings.cache_clear()


def test_info_prints_configuration(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["info"]) == 0

    output = capsys.readouterr().out
    assert "Database path" in output
    assert "Encryption key: set" in output


def test_generate_key_prints_usable_key(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["generate-key"]) == 0

    key = capsys.readouterr().out.strip()
    cipher = SecretCipher(key)
    assert cipher.reveal(cipher.encrypt("x")) == "x"


def test_add_account_stores_encrypted_password(
    isolated_settings: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "app-password")

    code = cli.main(
        [
            "add-account",
            "--account",
            "acct-1",
            "--email",
            "user@example.com",
            "--host",
            "imap.example.com",
            "--interval",
            "5",
        ]
    )

    assert code == 0
    assert "acct-1 registered" in capsys.readouterr().out
    with SqliteRepository(StorageSettings(db_path=isolated_settings)) as repository:
        connection = repository.get_connection("acct-1")
    assert connection is not None
    assert connection.sync_interval_minutes == 5
    assert connection.mailbox is not None
    assert connection.mailbox.username == "user@example.com"
    assert connection.mailbox.folder == "INBOX"
    assert connection.mailbox.secret != "app-password"
    cipher = SecretCipher.from_settings(load_app_settings().security)
    assert cipher.reveal(connection.mailbox.secret) == "app-password"


def test_add_account_requires_arguments(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["add-account", "--account", "acct-1"]) == 2
    assert "requires" in capsys.readouterr().out


def test_reconcile_unknown_account_fails(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["reconcile", "--account", "missing"]) == 1
    assert "missing" in capsys.readouterr().out


def test_status_without_accounts(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli.main(["status"]) == 0

    output = capsys.readouterr().out
    assert "Connections: 0 total" in output
    assert "No accounts registered." in output


def test_disable_and_enable_account(
    isolated_settings: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: "app-password")
    cli.main(
        ["add-account", "--account", "acct-1", "--email", "u@x.com", "--host", "imap.x"]
    )

    assert cli.main(["disable", "--account", "acct-1"]) == 0
    with SqliteRepository(StorageSettings(db_path=isolated_settings)) as repository:
        disabled = repository.get_connection("acct-1")
    assert cli.main(["enable", "--account", "acct-1"]) == 0
    with SqliteRepository(StorageSettings(db_path=isolated_settings)) as repository:
        enabled = repository.get_connection("acct-1")

    assert disabled is not None and disabled.status.value == "disabled"
    assert enabled is not None and enabled.status.value == "active"
    assert cli.main(["disable", "--account", "missing"]) == 1
    assert "Cannot update account" in capsys.readouterr().out


def test_serve_uses_settings_from_env_file(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    env_file = tmp_path / "serve.env"
    env_file.write_text("INBOX_SYNC_WEB__TRIGGER_TOKEN=s3cret\n", encoding="utf-8")
    served: dict[str, object] = {}

    def fake_run(app, **kwargs):
        served["app"] = app
        served.update(kwargs)

    monkeypatch.setattr(cli.uvicorn, "run", fake_run)

    assert (
        cli.main(["--env-file", str(env_file), "serve", "--listen-port", "8123"]) == 0
    )

    assert served["port"] == 8123
    with TestClient(served["app"]) as client:
        denied = client.post("/api/cycle", headers={"Authorization": "Bearer wrong"})
        allowed = client.post("/api/cycle", headers={"Authorization": "Bearer s3cret"})
    assert denied.status_code == 401
    assert allowed.status_code == 200
