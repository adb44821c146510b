"""SQLite-backed message and connection repository implementation."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from types import TracebackType

from ..core.config import StorageSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.interfaces import ConnectionStore, MessageStore, StorageError
from ..core.models import (
    ConnectionStatus,
    InboundMessage,
    MailboxConfig,
    MailboxConnection,
    StoredMessage,
    UpsertOutcome,
)

LOGGER = logging.getLogger(__name__)

# Keeps IN (...) lists well below SQLite's bound-parameter limit.
_ARCHIVE_CHUNK = 500

_CONNECTION_COLUMNS = """
    c.id,
    c.account_id,
    c.status,
    c.sync_interval_minutes,
    c.last_processed_uid,
    c.uid_validity,
    c.total_messages_processed,
    c.consecutive_failures,
    c.last_error,
    c.last_sync_at,
    c.next_sync_at,
    c.last_successful_connection,
    c.last_full_reconciliation_at,
    a.email,
    a.imap_host,
    a.imap_port,
    a.imap_username,
    a.imap_secret,
    a.imap_use_ssl,
    a.imap_folder,
    a.list_message_ids
"""

_MESSAGE_COLUMNS = """
    id,
    account_id,
    uid,
    uid_validity,
    message_id,
    subject,
    sender,
    received_at,
    classification_status,
    processing_status,
    archived_at
"""


class SqliteRepository(MessageStore, ConnectionStore):
    """Persist inbound messages and mailbox connection state using SQLite."""

    def __init__(self, settings: StorageSettings) -> None:
        """Initialise the repository and apply the bundled schema."""
        self._settings = settings
        db_path = Path(settings.db_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._connection = sqlite3.connect(db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._enable_foreign_keys()
        self._apply_migrations()

    # Context manager helpers -------------------------------------------------
    def __enter__(self) -> SqliteRepository:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Ensure the connection is closed when exiting context manager."""
        self.close()

    # Accounts ----------------------------------------------------------------
    def upsert_account(
        self, account_id: str, email: str, mailbox: MailboxConfig | None
    ) -> None:
        """Create or update an account and its mailbox settings."""
        LOGGER.debug("Saving account %s", account_id)
        with self._write():
            self._connection.execute(
                """
                INSERT INTO accounts (
                    id,
                    email,
                    imap_host,
                    imap_port,
                    imap_username,
                    imap_secret,
                    imap_use_ssl,
                    imap_folder,
                    list_message_ids,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email=excluded.email,
                    imap_host=excluded.imap_host,
                    imap_port=excluded.imap_port,
                    imap_username=excluded.imap_username,
                    imap_secret=excluded.imap_secret,
                    imap_use_ssl=excluded.imap_use_ssl,
                    imap_folder=excluded.imap_folder,
                    list_message_ids=excluded.list_message_ids
                """,
                (
                    account_id,
                    email,
                    mailbox.host if mailbox else None,
                    mailbox.port if mailbox else 993,
                    mailbox.username if mailbox else None,
                    mailbox.secret if mailbox else None,
                    1 if mailbox is None or mailbox.use_ssl else 0,
                    mailbox.folder if mailbox else "INBOX",
                    1 if mailbox is None or mailbox.list_message_ids else 0,
                    serialize_datetime(utcnow()),
                ),
            )

    # ConnectionStore API -----------------------------------------------------
    def create_connection(
        self, account_id: str, *, sync_interval_minutes: int = 15
    ) -> MailboxConnection:
        """Enable inbound sync for ``account_id`` and return its connection."""
        with self._write():
            self._connection.execute(
                """
                INSERT INTO mailbox_connections (
                    account_id, status, sync_interval_minutes, updated_at
                ) VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    sync_interval_minutes=excluded.sync_interval_minutes
                """,
                (
                    account_id,
                    ConnectionStatus.ACTIVE.value,
                    sync_interval_minutes,
                    serialize_datetime(utcnow()),
                ),
            )
        connection = self.get_connection(account_id)
        if connection is None:  # pragma: no cover - insert just succeeded
            raise StorageError(f"Connection for account {account_id} was not stored")
        return connection

    def get_connection(self, account_id: str) -> MailboxConnection | None:
        """Return the connection for ``account_id`` if one exists."""
        with self._lock:
            row = self._connection.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM mailbox_connections c
                JOIN accounts a ON a.id = c.account_id
                WHERE c.account_id = ?
                """,
                (account_id,),
            ).fetchone()
        return _row_to_connection(row) if row else None

    def list_connections(self) -> list[MailboxConnection]:
        """Return all connections ordered by account."""
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM mailbox_connections c
                JOIN accounts a ON a.id = c.account_id
                ORDER BY c.account_id
                """
            ).fetchall()
        return [_row_to_connection(row) for row in rows]

    def list_due_connections(
        self, now: datetime, stale_before: datetime
    ) -> list[MailboxConnection]:
        """Return connections eligible for an incremental sync at ``now``.

        Active and errored connections are due once ``next_sync_at`` has
        passed. Rows left in ``connecting`` by a crashed process are picked up
        again once their attempt started before ``stale_before``.
        """
        now_text = serialize_datetime(now)
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM mailbox_connections c
                JOIN accounts a ON a.id = c.account_id
                WHERE a.imap_host IS NOT NULL
                  AND a.imap_host != ''
                  AND (
                    (
                      c.status IN ('active', 'error')
                      AND (c.next_sync_at IS NULL OR c.next_sync_at <= ?)
                    )
                    OR (
                      c.status = 'connecting'
                      AND (c.last_sync_at IS NULL OR c.last_sync_at <= ?)
                    )
                  )
                ORDER BY c.next_sync_at IS NOT NULL, c.next_sync_at, c.id
                """,
                (now_text, serialize_datetime(stale_before)),
            ).fetchall()
        return [_row_to_connection(row) for row in rows]

    def list_reconciliation_candidates(
        self, older_than: datetime, limit: int
    ) -> list[MailboxConnection]:
        """Return active connections whose last full reconciliation is stale."""
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT {_CONNECTION_COLUMNS}
                FROM mailbox_connections c
                JOIN accounts a ON a.id = c.account_id
                WHERE c.status = 'active'
                  AND a.imap_host IS NOT NULL
                  AND a.imap_host != ''
                  AND (
                    c.last_full_reconciliation_at IS NULL
                    OR c.last_full_reconciliation_at < ?
                  )
                ORDER BY
                    c.last_full_reconciliation_at IS NOT NULL,
                    c.last_full_reconciliation_at,
                    c.id
                LIMIT ?
                """,
                (serialize_datetime(older_than), limit),
            ).fetchall()
        return [_row_to_connection(row) for row in rows]

    def set_connection_status(
        self, account_id: str, status: ConnectionStatus, at: datetime
    ) -> None:
        """Update only the status and attempt timestamp."""
        LOGGER.debug("Setting connection %s status to %s", account_id, status)
        with self._write():
            cur = self._connection.execute(
                """
                UPDATE mailbox_connections
                SET status = ?, last_sync_at = ?, updated_at = ?
                WHERE account_id = ?
                """,
                (
                    ConnectionStatus(status).value,
                    serialize_datetime(at),
                    serialize_datetime(at),
                    account_id,
                ),
            )
        _require_row(cur, account_id)

    def save_connection_state(self, connection: MailboxConnection) -> None:
        """Persist every mutable sync field of ``connection`` in one write."""
        with self._write():
            cur = self._connection.execute(
                """
                UPDATE mailbox_connections
                SET status = ?,
                    sync_interval_minutes = ?,
                    last_processed_uid = ?,
                    uid_validity = ?,
                    total_messages_processed = ?,
                    consecutive_failures = ?,
                    last_error = ?,
                    last_sync_at = ?,
                    next_sync_at = ?,
                    last_successful_connection = ?,
                    last_full_reconciliation_at = ?,
                    updated_at = ?
                WHERE account_id = ?
                """,
                (
                    ConnectionStatus(connection.status).value,
                    connection.sync_interval_minutes,
                    connection.last_processed_uid,
                    connection.uid_validity,
                    connection.total_messages_processed,
                    connection.consecutive_failures,
                    connection.last_error,
                    serialize_datetime(connection.last_sync_at),
                    serialize_datetime(connection.next_sync_at),
                    serialize_datetime(connection.last_successful_connection),
                    serialize_datetime(connection.last_full_reconciliation_at),
                    serialize_datetime(utcnow()),
                    connection.account_id,
                ),
            )
        _require_row(cur, connection.account_id)

    def record_full_reconciliation(self, account_id: str, at: datetime) -> None:
        """Store the completion time of a full reconciliation."""
        with self._write():
            cur = self._connection.execute(
                """
                UPDATE mailbox_connections
                SET last_full_reconciliation_at = ?, updated_at = ?
                WHERE account_id = ?
                """,
                (serialize_datetime(at), serialize_datetime(utcnow()), account_id),
            )
        _require_row(cur, account_id)

    def set_connection_enabled(self, account_id: str, enabled: bool) -> None:
        """Soft-disable a connection, or re-enable it for immediate sync."""
        status = ConnectionStatus.ACTIVE if enabled else ConnectionStatus.DISABLED
        with self._write():
            cur = self._connection.execute(
                """
                UPDATE mailbox_connections
                SET status = ?,
                    next_sync_at = NULL,
                    consecutive_failures = CASE WHEN ? THEN 0
                        ELSE consecutive_failures END,
                    updated_at = ?
                WHERE account_id = ?
                """,
                (status.value, enabled, serialize_datetime(utcnow()), account_id),
            )
        _require_row(cur, account_id)

    def count_connections_by_status(self) -> dict[str, int]:
        """Return connection counts keyed by status."""
        with self._lock:
            rows = self._connection.execute(
                "SELECT status, COUNT(*) AS total FROM mailbox_connections GROUP BY status"
            ).fetchall()
        return {row["status"]: row["total"] for row in rows}

    def count_recent_syncs(self, since: datetime) -> int:
        """Return how many connections attempted a sync after ``since``."""
        with self._lock:
            row = self._connection.execute(
                "SELECT COUNT(*) FROM mailbox_connections WHERE last_sync_at > ?",
                (serialize_datetime(since),),
            ).fetchone()
        return int(row[0])

    def count_failing_connections(self) -> int:
        """Return how many connections have at least one consecutive failure."""
        with self._lock:
            row = self._connection.execute(
                "SELECT COUNT(*) FROM mailbox_connections WHERE consecutive_failures > 0"
            ).fetchone()
        return int(row[0])

    # MessageStore API --------------------------------------------------------
    def upsert_message(self, account_id: str, message: InboundMessage) -> UpsertOutcome:
        """Insert ``message`` unless a copy already exists.

        Messages are keyed on ``(account, Message-ID)``; a message without a
        Message-ID falls back to ``(account, UIDVALIDITY, UID)``. An archived
        copy is reactivated and an active one only has its UID refreshed.
        """
        try:
            with self._write():
                existing = self._find_existing(account_id, message)
                if existing is None:
                    self._insert_message(account_id, message)
                    LOGGER.debug(
                        "Stored UID %s for account %s", message.uid, account_id
                    )
                    return UpsertOutcome.INSERTED

                self._connection.execute(
                    """
                    UPDATE messages
                    SET uid = ?, uid_validity = ?, archived_at = NULL
                    WHERE id = ?
                    """,
                    (message.uid, message.uid_validity, existing["id"]),
                )
                if existing["archived_at"] is not None:
                    LOGGER.info(
                        "Reactivated archived message %s for account %s",
                        message.message_id or f"UID {message.uid}",
                        account_id,
                    )
                    return UpsertOutcome.REACTIVATED
                return UpsertOutcome.UNCHANGED
        except StorageError as exc:
            LOGGER.error(
                "Database error storing UID %s for account %s: %s",
                message.uid,
                account_id,
                exc,
            )
            raise StorageError(
                f"Failed to store UID {message.uid} for account {account_id}"
            ) from exc

    def find_active_messages(self, account_id: str) -> list[StoredMessage]:
        """Return every non-archived message for the account, newest first."""
        with self._lock:
            rows = self._connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE account_id = ? AND archived_at IS NULL
                ORDER BY received_at DESC, id DESC
                """,
                (account_id,),
            ).fetchall()
        return [_row_to_message(row) for row in rows]

    def archive_by_ids(self, message_ids: Sequence[int], archived_at: datetime) -> int:
        """Archive the given rows in a single transaction."""
        if not message_ids:
            return 0
        archived = 0
        stamp = serialize_datetime(archived_at)
        with self._write():
            for start in range(0, len(message_ids), _ARCHIVE_CHUNK):
                chunk = list(message_ids[start : start + _ARCHIVE_CHUNK])
                placeholders = ",".join("?" for _ in chunk)
                cur = self._connection.execute(
                    f"""
                    UPDATE messages
                    SET archived_at = ?
                    WHERE archived_at IS NULL AND id IN ({placeholders})
                    """,
                    (stamp, *chunk),
                )
                archived += cur.rowcount
        return archived

    def fetch_message(self, row_id: int) -> StoredMessage | None:
        """Return a stored message by its row id."""
        with self._lock:
            row = self._connection.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?",
                (row_id,),
            ).fetchone()
        return _row_to_message(row) if row else None

    def find_message(self, account_id: str, message_id: str) -> StoredMessage | None:
        """Return the stored copy of ``message_id`` for an account."""
        with self._lock:
            row = self._connection.execute(
                f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages
                WHERE account_id = ? AND message_id = ?
                """,
                (account_id, message_id),
            ).fetchone()
        return _row_to_message(row) if row else None

    def list_unclassified(
        self, *, account_id: str | None = None, limit: int = 100
    ) -> list[StoredMessage]:
        """Return active messages still waiting for classification, oldest first."""
        query = f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE classification_status = 'unclassified'
              AND processing_status = 'pending'
              AND archived_at IS NULL
        """
        params: list[object] = []
        if account_id is not None:
            query += " AND account_id = ?"
            params.append(account_id)
        query += " ORDER BY received_at ASC, id ASC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._connection.execute(query, params).fetchall()
        return [_row_to_message(row) for row in rows]

    def count_unclassified(self) -> int:
        """Return the number of active messages waiting for classification."""
        with self._lock:
            row = self._connection.execute(
                """
                SELECT COUNT(*) FROM messages
                WHERE classification_status = 'unclassified'
                  AND processing_status = 'pending'
                  AND archived_at IS NULL
                """
            ).fetchone()
        return int(row[0])

    def update_classification(
        self,
        row_id: int,
        classification: str,
        confidence: float | None,
        *,
        processing_status: str = "completed",
    ) -> None:
        """Record the verdict of a classification collaborator."""
        if confidence is not None and not 0.0 <= confidence <= 1.0:
            raise ValueError("confidence must be between 0 and 1")
        with self._write():
            cur = self._connection.execute(
                """
                UPDATE messages
                SET classification_status = ?,
                    classification_confidence = ?,
                    processing_status = ?,
                    processed_at = ?
                WHERE id = ?
                """,
                (
                    classification,
                    confidence,
                    processing_status,
                    serialize_datetime(utcnow()),
                    row_id,
                ),
            )
        if cur.rowcount == 0:
            raise StorageError(f"Message {row_id} does not exist")

    def close(self) -> None:
        """Close the underlying SQLite connection."""
        with self._lock:
            self._connection.close()

    # Internal helpers --------------------------------------------------------
    @contextmanager
    def _write(self) -> Iterator[None]:
        """Serialise access and wrap the block in one transaction."""
        with self._lock:
            try:
                with self._connection:
                    yield
            except sqlite3.Error as exc:
                raise StorageError(f"Database write failed: {exc}") from exc

    def _enable_foreign_keys(self) -> None:
        with self._connection:
            self._connection.execute("PRAGMA foreign_keys = ON")

    def _apply_migrations(self) -> None:
        schema_dir = Path(__file__).resolve().parent / "schema"
        migrations = sorted(schema_dir.glob("*.sql"))
        for migration in migrations:
            LOGGER.debug("Applying migration %s", migration.name)
            script = migration.read_text(encoding="utf-8")
            try:
                with self._connection:
                    self._connection.executescript(script)
            except sqlite3.Error as exc:
                raise StorageError(
                    f"Migration {migration.name} failed: {exc}"
                ) from exc

    def _find_existing(
        self, account_id: str, message: InboundMessage
    ) -> sqlite3.Row | None:
        if message.message_id:
            return self._connection.execute(
                """
                SELECT id, archived_at FROM messages
                WHERE account_id = ? AND message_id = ?
                """,
                (account_id, message.message_id),
            ).fetchone()
        return self._connection.execute(
            """
            SELECT id, archived_at FROM messages
            WHERE account_id = ?
              AND message_id IS NULL
              AND uid = ?
              AND uid_validity IS ?
            """,
            (account_id, message.uid, message.uid_validity),
        ).fetchone()

    def _insert_message(self, account_id: str, message: InboundMessage) -> None:
        attachments = [
            {
                "filename": attachment.filename,
                "content_type": attachment.content_type,
                "size": attachment.size,
            }
            for attachment in message.attachments
        ]
        self._connection.execute(
            """
            INSERT INTO messages (
                account_id,
                uid,
                uid_validity,
                message_id,
                in_reply_to,
                email_references,
                sender,
                to_recipients,
                cc_recipients,
                subject,
                received_at,
                body_text,
                body_html,
                attachments,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                account_id,
                message.uid,
                message.uid_validity,
                message.message_id,
                message.in_reply_to,
                message.references,
                message.sender,
                ",".join(message.to),
                ",".join(message.cc),
                message.subject,
                serialize_datetime(message.received_at),
                message.body.text,
                message.body.html,
                json.dumps(attachments),
                serialize_datetime(utcnow()),
            ),
        )


def _require_row(cursor: sqlite3.Cursor, account_id: str) -> None:
    if cursor.rowcount == 0:
        raise StorageError(f"No mailbox connection for account {account_id}")


def _row_to_connection(row: sqlite3.Row) -> MailboxConnection:
    mailbox: MailboxConfig | None = None
    if row["imap_host"]:
        mailbox = MailboxConfig(
            host=row["imap_host"],
            port=row["imap_port"],
            use_ssl=bool(row["imap_use_ssl"]),
            username=row["imap_username"] or row["email"],
            secret=row["imap_secret"] or "",
            folder=row["imap_folder"],
            list_message_ids=bool(row["list_message_ids"]),
        )
    return MailboxConnection(
        id=row["id"],
        account_id=row["account_id"],
        email=row["email"],
        mailbox=mailbox,
        status=ConnectionStatus(row["status"]),
        sync_interval_minutes=row["sync_interval_minutes"],
        last_processed_uid=row["last_processed_uid"],
        uid_validity=row["uid_validity"],
        total_messages_processed=row["total_messages_processed"],
        consecutive_failures=row["consecutive_failures"],
        last_error=row["last_error"],
        last_sync_at=parse_datetime(row["last_sync_at"]),
        next_sync_at=parse_datetime(row["next_sync_at"]),
        last_successful_connection=parse_datetime(row["last_successful_connection"]),
        last_full_reconciliation_at=parse_datetime(
            row["last_full_reconciliation_at"]
        ),
    )


def _row_to_message(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=row["id"],
        account_id=row["account_id"],
        uid=row["uid"],
        uid_validity=row["uid_validity"],
        message_id=row["message_id"],
        subject=row["subject"],
        sender=row["sender"],
        received_at=parse_datetime(row["received_at"]),
        classification_status=row["classification_status"],
        processing_status=row["processing_status"],
        archived_at=parse_datetime(row["archived_at"]),
    )


__all__ = ["SqliteRepository"]
