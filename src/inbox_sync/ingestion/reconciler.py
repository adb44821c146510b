"""Full reconciliation of stored messages against the server listing."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from ..core.datetime_utils import utcnow
from ..core.interfaces import (
    ConnectionStore,
    ListingIncompleteError,
    MailboxClient,
    MailboxError,
    MessageStore,
    SecretError,
    SecretProvider,
    StorageError,
)
from ..core.models import (
    MailboxConfig,
    ReconciliationResult,
    ServerListing,
    StoredMessage,
)

LOGGER = logging.getLogger(__name__)


def find_deletion_candidates(
    messages: Iterable[StoredMessage],
    listing: ServerListing,
    *,
    strict: bool = False,
) -> list[StoredMessage]:
    """Return the active messages that are no longer present on the server.

    A message with a Message-ID is matched against the server's Message-ID
    set. Messages without one, or every message when the server offered no
    Message-ID listing, fall back to the UID set, but only while the stored
    UIDVALIDITY agrees with the server's. ``strict`` disables that fallback.
    """
    candidates: list[StoredMessage] = []
    for message in messages:
        if message.message_id and listing.message_ids is not None:
            if message.message_id not in listing.message_ids:
                candidates.append(message)
            continue
        if strict or listing.uids is None or message.uid is None:
            continue
        if (
            message.uid_validity is not None
            and listing.uid_validity is not None
            and message.uid_validity != listing.uid_validity
        ):
            continue
        if message.uid not in listing.uids:
            candidates.append(message)
    return candidates


def _is_trustworthy(listing: ServerListing) -> bool:
    """Reject listings that cannot be told apart from a failed listing."""
    if listing.uids is None and listing.message_ids is None:
        return False
    listed = len(listing.uids) if listing.uids is not None else None
    if listing.total is None:
        # Without a server-reported count an empty listing proves nothing.
        return bool(listing.uids) or bool(listing.message_ids)
    return listed is None or listed >= listing.total


class FullReconciler:
    """Archive local messages whose server copy has been deleted."""

    def __init__(
        self,
        client_factory: Callable[[], MailboxClient],
        messages: MessageStore,
        connections: ConnectionStore,
        secrets: SecretProvider,
        *,
        strict_identifier_matching: bool = False,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise the reconciler with protocol and storage collaborators."""
        self._client_factory = client_factory
        self._messages = messages
        self._connections = connections
        self._secrets = secrets
        self._strict = strict_identifier_matching
        self._clock = clock or utcnow

    def reconcile(self, account_id: str, config: MailboxConfig) -> ReconciliationResult:
        """Run one full reconciliation pass for ``account_id``."""
        result = ReconciliationResult(account_id=account_id)
        LOGGER.info("Starting full reconciliation for account %s", account_id)

        listing = self._fetch_listing(account_id, config, result)
        if listing is None:
            result.aborted = True
            return result

        try:
            active = self._messages.find_active_messages(account_id)
            candidates = find_deletion_candidates(active, listing, strict=self._strict)
            now = self._clock()
            if candidates:
                for message in candidates:
                    LOGGER.debug(
                        "Archiving message %s (UID %s) for account %s",
                        message.message_id,
                        message.uid,
                        account_id,
                    )
                result.archived_count = self._messages.archive_by_ids(
                    [message.id for message in candidates], now
                )
            self._connections.record_full_reconciliation(account_id, now)
        except StorageError as exc:
            LOGGER.error(
                "Reconciliation storage error for account %s: %s", account_id, exc
            )
            result.errors.append(str(exc))
            return result

        result.success = True
        LOGGER.info(
            "Full reconciliation for account %s: %s of %s active message(s) archived",
            account_id,
            result.archived_count,
            len(active),
        )
        return result

    def _fetch_listing(
        self, account_id: str, config: MailboxConfig, result: ReconciliationResult
    ) -> ServerListing | None:
        client = self._client_factory()
        try:
            password = self._secrets.reveal(config.secret)
            client.connect(config, password)
            client.open_folder(config.folder)
            listing = client.list_identifiers(
                include_message_ids=config.list_message_ids
            )
        except ListingIncompleteError as exc:
            LOGGER.warning(
                "Incomplete server listing for account %s; nothing archived: %s",
                account_id,
                exc,
            )
            result.errors.append(f"Incomplete server listing: {exc}")
            return None
        except (MailboxError, SecretError) as exc:
            LOGGER.warning(
                "Reconciliation aborted for account %s: %s", account_id, exc
            )
            result.errors.append(str(exc))
            return None
        finally:
            client.disconnect()

        if not _is_trustworthy(listing):
            LOGGER.warning(
                "Server listing for account %s is empty or unverifiable; nothing archived",
                account_id,
            )
            result.errors.append("Server listing could not be verified as complete")
            return None
        return listing


__all__ = ["FullReconciler", "find_deletion_candidates"]
