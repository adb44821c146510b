"""Command-line entry point for Inbox Sync."""

from __future__ import annotations

import argparse
import getpass
import time
from datetime import timedelta
from pathlib import Path

import uvicorn

from inbox_sync.core import AppSettings, configure_logging, load_app_settings
from inbox_sync.core.datetime_utils import utcnow
from inbox_sync.core.interfaces import SecretError, StorageError
from inbox_sync.core.models import MailboxConfig, MailboxConnection
from inbox_sync.monitor import (
    ConnectionNotFoundError,
    MonitorBusyError,
    build_monitor,
)
from inbox_sync.security import SecretCipher
from inbox_sync.storage import SqliteRepository
from inbox_sync.transport import probe_connection
from inbox_sync.web import create_app

COMMANDS = (
    "info",
    "generate-key",
    "add-account",
    "test-connection",
    "enable",
    "disable",
    "sync",
    "reconcile",
    "monitor",
    "status",
    "serve",
)


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(description="Inbox Sync mailbox monitor")
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=COMMANDS,
        help="Operation to execute.",
    )
    parser.add_argument(
        "--account",
        default=None,
        help="Account id for account-specific commands.",
    )
    parser.add_argument("--email", default=None, help="Account email address.")
    parser.add_argument("--host", default=None, help="IMAP server host name.")
    parser.add_argument(
        "--port", type=int, default=993, help="IMAP server port (default: 993)."
    )
    parser.add_argument(
        "--username",
        default=None,
        help="IMAP login; defaults to the account email.",
    )
    parser.add_argument(
        "--folder", default=None, help="Folder to monitor (default: INBOX)."
    )
    parser.add_argument(
        "--no-ssl",
        dest="use_ssl",
        action="store_false",
        help="Connect without implicit TLS.",
    )
    parser.add_argument(
        "--no-message-id-listing",
        dest="list_message_ids",
        action="store_false",
        help="Reconcile by UID only for servers that cannot list Message-IDs.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Per-account sync interval in minutes.",
    )
    parser.add_argument(
        "--listen-host", default="127.0.0.1", help="Bind address for serve."
    )
    parser.add_argument(
        "--listen-port", type=int, default=8000, help="Bind port for serve."
    )
    return parser


def execute(args: argparse.Namespace, settings: AppSettings) -> int:
    """Execute the requested CLI command and return the exit code."""
    command = args.command
    if command == "info":
        print("Inbox Sync is ready. Add an account to start monitoring.")
        print(f"Database path: {settings.storage.db_path}")
        print(f"Monitor interval: {settings.monitor.interval_minutes} minute(s)")
        key_state = "set" if settings.security.encryption_key else "missing"
        print(f"Encryption key: {key_state}")
        return 0
    if command == "generate-key":
        print(SecretCipher.generate_key())
        return 0
    if command == "add-account":
        return _add_account(args, settings)
    if command == "test-connection":
        return _test_connection(args, settings)
    if command in ("enable", "disable"):
        return _set_enabled(args, settings, enabled=command == "enable")
    if command == "sync":
        return _run_sync(args, settings)
    if command == "reconcile":
        return _run_reconcile(args, settings)
    if command == "monitor":
        return _run_monitor(settings)
    if command == "status":
        return _show_status(settings)
    if command == "serve":
        return _serve(args, settings)
    return 2


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    return execute(args, settings)


def _add_account(args: argparse.Namespace, settings: AppSettings) -> int:
    """Register an account and enable inbound sync for it."""
    if not args.account or not args.email or not args.host:
        print("add-account requires --account, --email and --host.")
        return 2
    try:
        cipher = SecretCipher.from_settings(settings.security)
        password = getpass.getpass(f"IMAP password for {args.email}: ")
        secret = cipher.encrypt(password)
    except SecretError as exc:
        print(f"Cannot store password: {exc}")
        print("Run 'inbox-sync generate-key' and set INBOX_SYNC_SECURITY__ENCRYPTION_KEY.")
        return 1

    mailbox = MailboxConfig(
        host=args.host,
        port=args.port,
        use_ssl=args.use_ssl,
        username=args.username or args.email,
        secret=secret,
        folder=args.folder or settings.imap.default_folder,
        list_message_ids=args.list_message_ids,
    )
    interval = args.interval or settings.monitor.default_sync_interval_minutes
    with SqliteRepository(settings.storage) as repository:
        repository.upsert_account(args.account, args.email, mailbox)
        repository.create_connection(args.account, sync_interval_minutes=interval)
    print(f"Account {args.account} registered; syncing every {interval} minute(s).")
    return 0


def _test_connection(args: argparse.Namespace, settings: AppSettings) -> int:
    """Log in to a registered account's mailbox and report the outcome."""
    if not args.account:
        print("test-connection requires --account.")
        return 2
    with SqliteRepository(settings.storage) as repository:
        connection = repository.get_connection(args.account)
    if connection is None or connection.mailbox is None:
        print(f"No mailbox configured for account {args.account}.")
        return 1
    try:
        password = SecretCipher.from_settings(settings.security).reveal(
            connection.mailbox.secret
        )
    except SecretError as exc:
        print(f"Connection test failed: {exc}")
        return 1
    success, message = probe_connection(settings.imap, connection.mailbox, password)
    print(("OK: " if success else "Connection test failed: ") + message)
    return 0 if success else 1


def _set_enabled(
    args: argparse.Namespace, settings: AppSettings, *, enabled: bool
) -> int:
    """Pause or resume inbound sync for one account."""
    if not args.account:
        print("enable and disable require --account.")
        return 2
    with SqliteRepository(settings.storage) as repository:
        try:
            repository.set_connection_enabled(args.account, enabled)
        except StorageError as exc:
            print(f"Cannot update account: {exc}")
            return 1
    state = "enabled" if enabled else "disabled"
    print(f"Inbound sync {state} for account {args.account}.")
    return 0


def _run_sync(args: argparse.Namespace, settings: AppSettings) -> int:
    """Run one monitor cycle, or sync a single account when one is given."""
    with SqliteRepository(settings.storage) as repository:
        monitor = build_monitor(settings, repository)
        if args.account:
            try:
                result = monitor.force_sync(args.account)
            except (MonitorBusyError, ConnectionNotFoundError) as exc:
                print(f"Sync failed: {exc}")
                return 1
            if not result.succeeded:
                print(f"Sync failed: {'; '.join(result.errors)}")
                return 1
            print(
                f"Stored {result.new_count} new message(s). "
                f"Last UID processed: {result.last_processed_cursor}"
            )
            return 0

        report = monitor.run_cycle()
    if report is None:
        print("A monitor cycle is already running.")
        return 1
    print(
        f"Cycle finished: {report.synced} synced, {report.failed} failed, "
        f"{report.reconciled} reconciled, {report.archived} archived."
    )
    return 0 if report.failed == 0 else 1


def _run_reconcile(args: argparse.Namespace, settings: AppSettings) -> int:
    """Run a full reconciliation for one account."""
    if not args.account:
        print("reconcile requires --account.")
        return 2
    with SqliteRepository(settings.storage) as repository:
        monitor = build_monitor(settings, repository)
        try:
            result = monitor.force_reconcile(args.account)
        except (MonitorBusyError, ConnectionNotFoundError) as exc:
            print(f"Reconciliation failed: {exc}")
            return 1
    if not result.success:
        print(f"Reconciliation aborted: {'; '.join(result.errors)}")
        return 1
    print(f"Archived {result.archived_count} message(s) deleted on the server.")
    return 0


def _run_monitor(settings: AppSettings) -> int:
    """Run the periodic monitor in the foreground until interrupted."""
    with SqliteRepository(settings.storage) as repository:
        monitor = build_monitor(settings, repository)
        monitor.start()
        print(
            f"Monitoring every {settings.monitor.interval_minutes} minute(s). "
            "Press Ctrl+C to stop."
        )
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            print("Stopping monitor...")
        finally:
            monitor.stop()
    return 0


def _show_status(settings: AppSettings) -> int:
    """Print connection health and per-account sync state."""
    with SqliteRepository(settings.storage) as repository:
        monitor = build_monitor(settings, repository)
        stats = monitor.stats()
        connections = monitor.connections()

    print(
        f"Connections: {stats.total_connections} total, "
        f"{stats.active_connections} active, {stats.error_connections} error, "
        f"{stats.disabled_connections} disabled"
    )
    print(f"Synced in the last 24h: {stats.recent_syncs}")
    print(f"Unclassified messages: {stats.unclassified_messages}")
    if not connections:
        print("No accounts registered.")
        return 0

    header = f"{'Account':<20}  {'Status':<10}  {'Last UID':>8}  {'Fails':>5}  Next sync"
    print(header)
    print("-" * len(header))
    for connection in connections:
        print(
            f"{connection.account_id:<20}  {connection.status.value:<10}  "
            f"{connection.last_processed_uid:>8}  "
            f"{connection.consecutive_failures:>5}  {_format_next_sync(connection)}"
        )
    return 0


def _format_next_sync(connection: MailboxConnection) -> str:
    if connection.next_sync_at is None:
        return "due"
    remaining = connection.next_sync_at - utcnow()
    if remaining <= timedelta(0):
        return "due"
    return connection.next_sync_at.isoformat(timespec="minutes")


def _serve(args: argparse.Namespace, settings: AppSettings) -> int:
    """Serve the operational HTTP API with the loaded settings."""
    uvicorn.run(
        create_app(settings),
        host=args.listen_host,
        port=args.listen_port,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
