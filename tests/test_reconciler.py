"""Tests for full reconciliation against the server listing."""

from __future__ import annotations

import dataclasses
from datetime import UTC, datetime
from pathlib import Path

import pytest

from inbox_sync.core.config import StorageSettings
from inbox_sync.core.interfaces import ListingIncompleteError, MailboxError
from inbox_sync.core.models import (
    EmailBody,
    FolderState,
    InboundMessage,
    MailboxConfig,
    ServerListing,
    StoredMessage,
)
from inbox_sync.ingestion import FullReconciler, find_deletion_candidates
from inbox_sync.storage import SqliteRepository

NOW = datetime(2025, 10, 24, 15, 0, tzinfo=UTC)
CONFIG = MailboxConfig(host="imap.test", username="user", secret="blob")


class ListingMailbox:
    """Mailbox client returning a fixed server listing."""

    def __init__(
        self, listing: ServerListing | None = None, error: Exception | None = None
    ) -> None:
        self.listing = listing
        self.error = error
        self.include_message_ids: list[bool] = []
        self.disconnects = 0

    def connect(self, config: MailboxConfig, password: str) -> None:
        return None

    def open_folder(self, name: str) -> FolderState:
        return FolderState(name=name, exists=None, uid_validity=1)

    def list_identifiers(self, include_message_ids: bool = True) -> ServerListing:
        self.include_message_ids.append(include_message_ids)
        if self.error is not None:
            raise self.error
        assert self.listing is not None
        return self.listing

    def disconnect(self) -> None:
        self.disconnects += 1


class PassthroughSecrets:
    def reveal(self, blob: str) -> str:
        return blob


def _inbound(uid: int, message_id: str | None, uid_validity: int = 1) -> InboundMessage:
    return InboundMessage(
        uid=uid,
        message_id=message_id,
        in_reply_to=None,
        references=None,
        subject=f"Message {uid}",
        sender="sender@example.com",
        to=(),
        cc=(),
        received_at=NOW,
        body=EmailBody(text="Body", html=None),
        uid_validity=uid_validity,
    )


def _listing(
    uids: set[int], message_ids: set[str] | None, total: int | None = None
) -> ServerListing:
    return ServerListing(
        uids=frozenset(uids),
        message_ids=frozenset(message_ids) if message_ids is not None else None,
        uid_validity=1,
        total=len(uids) if total is None else total,
    )


@pytest.fixture
def repository(tmp_path: Path):
    repo = SqliteRepository(StorageSettings(db_path=tmp_path / "inbox.db"))
    repo.upsert_account("acct-1", "user@example.com", CONFIG)
    repo.create_connection("acct-1")
    for uid, message_id in ((1, "<a@x>"), (2, "<b@x>"), (3, "<c@x>")):
        repo.upsert_message("acct-1", _inbound(uid, message_id))
    yield repo
    repo.close()


def _reconciler(
    mailbox: ListingMailbox, repository: SqliteRepository, *, strict: bool = False
) -> FullReconciler:
    return FullReconciler(
        lambda: mailbox,
        repository,
        repository,
        PassthroughSecrets(),
        strict_identifier_matching=strict,
        clock=lambda: NOW,
    )


def _active_ids(repository: SqliteRepository) -> set[str | None]:
    return {message.message_id for message in repository.find_active_messages("acct-1")}


def test_message_deleted_on_server_is_archived(repository: SqliteRepository) -> None:
    mailbox = ListingMailbox(_listing({1, 3}, {"<a@x>", "<c@x>"}))

    result = _reconciler(mailbox, repository).reconcile("acct-1", CONFIG)

    assert result.success
    assert result.archived_count == 1
    assert _active_ids(repository) == {"<a@x>", "<c@x>"}
    archived = repository.find_message("acct-1", "<b@x>")
    assert archived is not None
    assert archived.archived_at == NOW
    connection = repository.get_connection("acct-1")
    assert connection is not None
    assert connection.last_full_reconciliation_at == NOW
    assert mailbox.disconnects == 1


def test_reconciliation_is_idempotent(repository: SqliteRepository) -> None:
    mailbox = ListingMailbox(_listing({1, 3}, {"<a@x>", "<c@x>"}))
    reconciler = _reconciler(mailbox, repository)

    reconciler.reconcile("acct-1", CONFIG)
    second = reconciler.reconcile("acct-1", CONFIG)

    assert second.success
    assert second.archived_count == 0
    assert _active_ids(repository) == {"<a@x>", "<c@x>"}


def test_message_ids_win_over_renumbered_uids(repository: SqliteRepository) -> None:
    # Every message still exists, but under different UIDs.
    mailbox = ListingMailbox(_listing({40, 41, 42}, {"<a@x>", "<b@x>", "<c@x>"}))

    result = _reconciler(mailbox, repository).reconcile("acct-1", CONFIG)

    assert result.archived_count == 0


def test_incomplete_listing_archives_nothing(repository: SqliteRepository) -> None:
    mailbox = ListingMailbox(error=ListingIncompleteError("listed 1 of 3"))

    result = _reconciler(mailbox, repository).reconcile("acct-1", CONFIG)

    assert not result.success
    assert result.aborted
    assert result.archived_count == 0
    assert len(_active_ids(repository)) == 3
    connection = repository.get_connection("acct-1")
    assert connection is not None
    assert connection.last_full_reconciliation_at is None
    assert mailbox.disconnects == 1


def test_listing_shorter_than_reported_total_is_rejected(
    repository: SqliteRepository,
) -> None:
    mailbox = ListingMailbox(_listing({1}, {"<a@x>"}, total=3))

    result = _reconciler(mailbox, repository).reconcile("acct-1", CONFIG)

    assert result.aborted
    assert len(_active_ids(repository)) == 3


def test_empty_listing_without_count_is_rejected(repository: SqliteRepository) -> None:
    listing = ServerListing(uids=frozenset(), message_ids=frozenset(), total=None)

    result = _reconciler(ListingMailbox(listing), repository).reconcile(
        "acct-1", CONFIG
    )

    assert result.aborted
    assert len(_active_ids(repository)) == 3


def test_confirmed_empty_folder_archives_everything(
    repository: SqliteRepository,
) -> None:
    mailbox = ListingMailbox(_listing(set(), set(), total=0))

    result = _reconciler(mailbox, repository).reconcile("acct-1", CONFIG)

    assert result.success
    assert result.archived_count == 3


def test_connection_failure_aborts(repository: SqliteRepository) -> None:
    mailbox = ListingMailbox(error=MailboxError("timed out"))

    result = _reconciler(mailbox, repository).reconcile("acct-1", CONFIG)

    assert result.aborted
    assert result.errors == ["timed out"]
    assert len(_active_ids(repository)) == 3


def test_uid_only_listing_when_message_ids_unsupported(
    repository: SqliteRepository,
) -> None:
    mailbox = ListingMailbox(_listing({1, 2}, None))
    config = dataclasses.replace(CONFIG, list_message_ids=False)

    result = _reconciler(mailbox, repository).reconcile("acct-1", config)

    assert mailbox.include_message_ids == [False]
    assert result.archived_count == 1
    assert _active_ids(repository) == {"<a@x>", "<b@x>"}


def _stored(
    row_id: int, uid: int | None, message_id: str | None, uid_validity: int | None = 1
) -> StoredMessage:
    return StoredMessage(
        id=row_id,
        account_id="acct-1",
        uid=uid,
        uid_validity=uid_validity,
        message_id=message_id,
        subject=None,
        sender=None,
        received_at=None,
        classification_status="unclassified",
        processing_status="pending",
        archived_at=None,
    )


def test_candidates_without_message_id_fall_back_to_uid() -> None:
    messages = [_stored(1, 5, None), _stored(2, 6, None)]
    listing = _listing({5}, {"<other@x>"})

    candidates = find_deletion_candidates(messages, listing)

    assert [message.id for message in candidates] == [2]


def test_uid_fallback_skips_other_uidvalidity_epoch() -> None:
    messages = [_stored(1, 6, None, uid_validity=99)]

    assert find_deletion_candidates(messages, _listing({5}, set())) == []


def test_strict_matching_never_uses_uids() -> None:
    messages = [_stored(1, 6, None), _stored(2, 7, "<gone@x>")]

    candidates = find_deletion_candidates(messages, _listing({5}, set()), strict=True)

    assert [message.id for message in candidates] == [2]
