"""Protocol interfaces and shared errors for decoupling components."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Protocol

from .models import (
    ConnectionStatus,
    FolderState,
    InboundMessage,
    MailboxConfig,
    MailboxConnection,
    MessageChunk,
    ServerListing,
    StoredMessage,
    UpsertOutcome,
)


class MailboxError(RuntimeError):
    """Raised when the mailbox server cannot be reached or refuses a command."""


class ListingIncompleteError(MailboxError):
    """Raised when the server returned fewer identifiers than it holds."""


class SecretError(RuntimeError):
    """Raised when a stored mailbox secret cannot be decrypted."""


class StorageError(RuntimeError):
    """Raised when a persistence write fails."""


class MailboxClient(Protocol):
    """Abstraction over a mailbox protocol session such as IMAP."""

    def connect(self, config: MailboxConfig, password: str) -> None:
        """Open and authenticate a session."""
        raise NotImplementedError

    def open_folder(self, name: str) -> FolderState:
        """Select ``name`` read-only and report its state."""
        raise NotImplementedError

    def fetch_range(self, since_uid: int, batch_size: int) -> Iterable[MessageChunk]:
        """Yield messages whose UID is strictly greater than ``since_uid``."""
        raise NotImplementedError

    def list_identifiers(self, include_message_ids: bool = True) -> ServerListing:
        """Return every identifier currently present in the open folder."""
        raise NotImplementedError

    def disconnect(self) -> None:
        """Release network resources. Must be safe to call repeatedly."""
        raise NotImplementedError


class SecretProvider(Protocol):
    """Turns a stored secret blob into a usable password."""

    def reveal(self, blob: str) -> str:
        """Return the plaintext for ``blob`` or raise :class:`SecretError`."""
        raise NotImplementedError


class MessageParser(Protocol):
    """Converts raw RFC822 payloads into :class:`InboundMessage` records."""

    def parse(self, uid: int, payload: bytes) -> InboundMessage:
        """Parse a single message."""
        raise NotImplementedError


class MessageStore(Protocol):
    """Persistence for inbound messages."""

    def upsert_message(self, account_id: str, message: InboundMessage) -> UpsertOutcome:
        """Insert, reactivate, or leave untouched the stored copy of ``message``."""
        raise NotImplementedError

    def find_active_messages(self, account_id: str) -> list[StoredMessage]:
        """Return every non-archived message for the account."""
        raise NotImplementedError

    def archive_by_ids(self, message_ids: Sequence[int], archived_at: datetime) -> int:
        """Archive the given rows in one batch and return the affected count."""
        raise NotImplementedError


class ConnectionStore(Protocol):
    """Persistence for :class:`MailboxConnection` records."""

    def get_connection(self, account_id: str) -> MailboxConnection | None:
        """Return the connection for ``account_id`` if one exists."""
        raise NotImplementedError

    def list_connections(self) -> list[MailboxConnection]:
        """Return all connections."""
        raise NotImplementedError

    def list_due_connections(
        self, now: datetime, stale_before: datetime
    ) -> list[MailboxConnection]:
        """Return connections eligible for an incremental sync at ``now``."""
        raise NotImplementedError

    def list_reconciliation_candidates(
        self, older_than: datetime, limit: int
    ) -> list[MailboxConnection]:
        """Return active connections whose last full reconciliation is stale."""
        raise NotImplementedError

    def set_connection_status(
        self, account_id: str, status: ConnectionStatus, at: datetime
    ) -> None:
        """Update only the status and attempt timestamp."""
        raise NotImplementedError

    def save_connection_state(self, connection: MailboxConnection) -> None:
        """Persist every mutable sync field of ``connection`` in one write."""
        raise NotImplementedError

    def record_full_reconciliation(self, account_id: str, at: datetime) -> None:
        """Store the completion time of a full reconciliation."""
        raise NotImplementedError


__all__ = [
    "ConnectionStore",
    "ListingIncompleteError",
    "MailboxClient",
    "MailboxError",
    "MessageParser",
    "MessageStore",
    "SecretError",
    "SecretProvider",
    "StorageError",
]
