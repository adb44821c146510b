"""Incremental mailbox synchronisation."""

from __future__ import annotations

import logging
from collections.abc import Callable

from ..core.interfaces import (
    MailboxClient,
    MailboxError,
    MessageParser,
    MessageStore,
    SecretError,
    SecretProvider,
    StorageError,
)
from ..core.models import MailboxConfig, SyncResult, UpsertOutcome

LOGGER = logging.getLogger(__name__)

MailboxClientFactory = Callable[[], MailboxClient]


class IncrementalSync:
    """Fetch messages above the stored cursor, parse, and store them."""

    def __init__(
        self,
        client_factory: MailboxClientFactory,
        store: MessageStore,
        parser: MessageParser,
        secrets: SecretProvider,
        *,
        batch_size: int = 50,
    ) -> None:
        """Initialise the sync with its protocol, storage and parsing collaborators."""
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self._client_factory = client_factory
        self._store = store
        self._parser = parser
        self._secrets = secrets
        self._batch_size = batch_size

    def sync(
        self,
        account_id: str,
        config: MailboxConfig,
        last_cursor: int,
        *,
        uid_validity: int | None = None,
    ) -> SyncResult:
        """Run one incremental pass for ``account_id`` and report the outcome.

        ``last_cursor`` of ``0`` means the mailbox was never synced. Errors
        never escape: they are collected on the returned result, and the
        session is always closed before returning.
        """
        if last_cursor < 0:
            raise ValueError("last_cursor must not be negative")
        result = SyncResult(account_id=account_id, last_processed_cursor=last_cursor)
        client = self._client_factory()
        LOGGER.info(
            "Starting incremental sync for account %s (last UID %s)",
            account_id,
            last_cursor,
        )
        try:
            password = self._secrets.reveal(config.secret)
            client.connect(config, password)
            folder = client.open_folder(config.folder)
            result.uid_validity = folder.uid_validity

            since = last_cursor
            if (
                uid_validity is not None
                and folder.uid_validity is not None
                and folder.uid_validity != uid_validity
            ):
                LOGGER.warning(
                    "UIDVALIDITY changed for account %s (%s -> %s); restarting from UID 0",
                    account_id,
                    uid_validity,
                    folder.uid_validity,
                )
                since = 0
                result.last_processed_cursor = 0

            for chunk in client.fetch_range(since, self._batch_size):
                result.fetched += 1
                # Advance past the message even if it cannot be stored.
                result.last_processed_cursor = max(
                    result.last_processed_cursor, chunk.uid
                )
                self._store_chunk(account_id, chunk.uid, chunk.raw, result)
        except SecretError as exc:
            LOGGER.warning("Cannot unlock mailbox secret for account %s", account_id)
            result.errors.append(str(exc))
        except MailboxError as exc:
            LOGGER.warning("Mailbox error for account %s: %s", account_id, exc)
            result.errors.append(str(exc))
        finally:
            client.disconnect()

        LOGGER.info(
            "Sync completed for account %s: fetched=%s, new=%s, reactivated=%s, "
            "errors=%s, last_uid=%s",
            account_id,
            result.fetched,
            result.new_count,
            result.reactivated_count,
            len(result.errors),
            result.last_processed_cursor,
        )
        return result

    def _store_chunk(
        self, account_id: str, uid: int, raw: bytes, result: SyncResult
    ) -> None:
        try:
            message = self._parser.parse(uid, raw)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.warning("Failed to parse UID %s for account %s: %s", uid, account_id, exc)
            result.errors.append(f"Parse error UID {uid}: {exc}")
            return

        message.uid_validity = result.uid_validity
        try:
            outcome = self._store.upsert_message(account_id, message)
        except StorageError as exc:
            result.errors.append(f"Store error UID {uid}: {exc}")
            return

        if outcome is UpsertOutcome.INSERTED:
            result.new_count += 1
        elif outcome is UpsertOutcome.REACTIVATED:
            result.reactivated_count += 1
        LOGGER.debug("UID %s for account %s: %s", uid, account_id, outcome.value)


__all__ = ["IncrementalSync", "MailboxClientFactory"]
