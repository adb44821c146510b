"""Core domain models used across the application."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum


class ConnectionStatus(StrEnum):
    """Lifecycle states of a mailbox connection."""

    ACTIVE = "active"
    CONNECTING = "connecting"
    ERROR = "error"
    DISABLED = "disabled"


class UpsertOutcome(StrEnum):
    """Effect of storing a fetched message."""

    INSERTED = "inserted"
    REACTIVATED = "reactivated"
    UNCHANGED = "unchanged"


@dataclass(slots=True, frozen=True)
class MailboxConfig:
    """Parameters needed to open one account's mailbox."""

    host: str
    username: str
    secret: str = field(repr=False)
    port: int = 993
    use_ssl: bool = True
    folder: str = "INBOX"
    list_message_ids: bool = True


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MailboxConnection:
    """Sync state for one account with inbound processing enabled."""

    id: int | None
    account_id: str
    email: str
    mailbox: MailboxConfig | None
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    sync_interval_minutes: int = 15
    last_processed_uid: int = 0
    uid_validity: int | None = None
    total_messages_processed: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None
    last_successful_connection: datetime | None = None
    last_full_reconciliation_at: datetime | None = None


@dataclass(slots=True)
class MessageChunk:
    """Raw IMAP payload paired with its UID."""

    uid: int
    raw: bytes


@dataclass(slots=True, frozen=True)
class FolderState:
    """Folder metadata reported by the server on selection."""

    name: str
    exists: int | None
    uid_validity: int | None


@dataclass(slots=True)
class AttachmentMeta:
    """Metadata describing an email attachment."""

    filename: str | None
    content_type: str | None
    size: int | None


@dataclass(slots=True)
class EmailBody:
    """Container for textual representations of an email."""

    text: str | None
    html: str | None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class InboundMessage:
    """Normalized inbound email ready for persistence."""

    uid: int
    message_id: str | None
    in_reply_to: str | None
    references: str | None
    subject: str | None
    sender: str | None
    to: tuple[str, ...]
    cc: tuple[str, ...]
    received_at: datetime | None
    body: EmailBody
    attachments: tuple[AttachmentMeta, ...] = ()
    uid_validity: int | None = None


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class StoredMessage:
    """Persisted inbound message as seen by reconciliation and classifiers."""

    id: int
    account_id: str
    uid: int | None
    uid_validity: int | None
    message_id: str | None
    subject: str | None
    sender: str | None
    received_at: datetime | None
    classification_status: str
    processing_status: str
    archived_at: datetime | None

    @property
    def is_active(self) -> bool:
        """Return ``True`` while the message has not been archived."""
        return self.archived_at is None


@dataclass(slots=True)
class SyncResult:
    """Outcome of one incremental sync attempt."""

    account_id: str
    last_processed_cursor: int
    fetched: int = 0
    new_count: int = 0
    reactivated_count: int = 0
    uid_validity: int | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the attempt finished without any error."""
        return not self.errors


@dataclass(slots=True, frozen=True)
class ServerListing:
    """Identifiers currently present in a server folder.

    ``None`` for either set means the server did not provide that listing,
    which is different from an empty set.
    """

    uids: frozenset[int] | None
    message_ids: frozenset[str] | None
    uid_validity: int | None = None
    total: int | None = None


@dataclass(slots=True)
class ReconciliationResult:
    """Outcome of one full reconciliation pass."""

    account_id: str
    archived_count: int = 0
    errors: list[str] = field(default_factory=list)
    success: bool = False
    aborted: bool = False


@dataclass(slots=True)
class CycleReport:
    """Summary of one monitor cycle."""

    started_at: datetime
    finished_at: datetime | None = None
    due: int = 0
    synced: int = 0
    failed: int = 0
    reconciled: int = 0
    archived: int = 0


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class MonitoringStats:
    """Aggregated health of all mailbox connections."""

    is_running: bool
    total_connections: int
    active_connections: int
    error_connections: int
    connecting_connections: int
    disabled_connections: int
    recent_syncs: int
    failing_connections: int
    unclassified_messages: int


__all__ = [
    "AttachmentMeta",
    "ConnectionStatus",
    "CycleReport",
    "EmailBody",
    "FolderState",
    "InboundMessage",
    "MailboxConfig",
    "MailboxConnection",
    "MessageChunk",
    "MonitoringStats",
    "ReconciliationResult",
    "ServerListing",
    "StoredMessage",
    "SyncResult",
    "UpsertOutcome",
]
