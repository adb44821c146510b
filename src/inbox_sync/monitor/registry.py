"""Per-account sync state transitions and due selection."""

from __future__ import annotations

import dataclasses
import logging
import random
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from ..core.backoff import backoff_delay
from ..core.config import MonitorSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import ConnectionStore
from ..core.models import ConnectionStatus, MailboxConnection, SyncResult

LOGGER = logging.getLogger(__name__)

# Keeps a pathological error list from bloating the connection row.
MAX_ERROR_LENGTH = 2000


class ConnectionRegistry:
    """Source of truth for which mailbox connections are due for work.

    Every transition is written through :meth:`ConnectionStore.save_connection_state`
    so status, cursor, failure count and next due time change together.
    """

    def __init__(
        self,
        store: ConnectionStore,
        settings: MonitorSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        """Initialise the registry over a connection store."""
        self._store = store
        self._settings = settings or MonitorSettings()
        self._clock = clock or utcnow
        self._rng = rng or random.Random()

    @property
    def store(self) -> ConnectionStore:
        """Return the underlying connection store."""
        return self._store

    def get(self, account_id: str) -> MailboxConnection | None:
        """Return the connection for ``account_id``."""
        return self._store.get_connection(account_id)

    def select_due(self, now: datetime | None = None) -> list[MailboxConnection]:
        """Return connections that should be synced at ``now``."""
        current = now or self._clock()
        stale_before = current - timedelta(
            minutes=self._settings.stale_connecting_minutes
        )
        return self._store.list_due_connections(current, stale_before)

    def select_for_reconciliation(
        self, now: datetime | None = None
    ) -> list[MailboxConnection]:
        """Return a bounded batch of connections needing full reconciliation."""
        current = now or self._clock()
        window = timedelta(hours=self._settings.reconciliation_window_hours)
        return self._store.list_reconciliation_candidates(
            current - window, self._settings.reconciliation_batch_size
        )

    def mark_connecting(self, account_id: str) -> None:
        """Flag an attempt as in progress before any network I/O starts."""
        self._store.set_connection_status(
            account_id, ConnectionStatus.CONNECTING, self._clock()
        )

    def release(self, account_id: str) -> None:
        """Move an attempt whose outcome could not be saved back to ``error``.

        ``next_sync_at`` is left alone, so the next due-check retries it
        instead of waiting for the ``connecting`` row to turn stale.
        """
        self._store.set_connection_status(
            account_id, ConnectionStatus.ERROR, self._clock()
        )

    def mark_synced(
        self, connection: MailboxConnection, result: SyncResult
    ) -> MailboxConnection:
        """Record an error-free incremental sync."""
        if not result.succeeded:
            raise ValueError("mark_synced requires an error-free SyncResult")
        now = self._clock()
        updated = dataclasses.replace(
            connection,
            status=ConnectionStatus.ACTIVE,
            last_processed_uid=result.last_processed_cursor,
            uid_validity=(
                result.uid_validity
                if result.uid_validity is not None
                else connection.uid_validity
            ),
            total_messages_processed=connection.total_messages_processed
            + result.new_count,
            consecutive_failures=0,
            last_error=None,
            last_sync_at=now,
            last_successful_connection=now,
            next_sync_at=now + timedelta(minutes=connection.sync_interval_minutes),
        )
        self._store.save_connection_state(updated)
        return updated

    def mark_failed(
        self,
        connection: MailboxConnection,
        outcome: SyncResult | Sequence[str],
    ) -> MailboxConnection:
        """Record a failed attempt and schedule the retry with backoff.

        When ``outcome`` is a :class:`SyncResult` whose attempt still got
        past some messages, the advanced cursor is kept in the same write.
        """
        now = self._clock()
        failures = connection.consecutive_failures + 1
        delay = backoff_delay(failures)
        if self._settings.retry_jitter_seconds:
            delay += timedelta(
                seconds=self._rng.uniform(0, self._settings.retry_jitter_seconds)
            )

        cursor = connection.last_processed_uid
        uid_validity = connection.uid_validity
        new_messages = 0
        if isinstance(outcome, SyncResult):
            errors: Sequence[str] = outcome.errors or ["Unknown sync failure"]
            new_messages = outcome.new_count
            if (
                outcome.uid_validity is not None
                and outcome.uid_validity != connection.uid_validity
                and outcome.fetched
            ):
                cursor = outcome.last_processed_cursor
                uid_validity = outcome.uid_validity
            else:
                cursor = max(cursor, outcome.last_processed_cursor)
        else:
            errors = outcome or ["Unknown sync failure"]

        updated = dataclasses.replace(
            connection,
            status=ConnectionStatus.ERROR,
            last_processed_uid=cursor,
            uid_validity=uid_validity,
            total_messages_processed=connection.total_messages_processed
            + new_messages,
            consecutive_failures=failures,
            last_error="; ".join(errors)[:MAX_ERROR_LENGTH],
            last_sync_at=now,
            next_sync_at=now + delay,
        )
        self._store.save_connection_state(updated)
        LOGGER.info(
            "Connection %s failed %s time(s) in a row; next attempt at %s",
            connection.account_id,
            failures,
            updated.next_sync_at,
        )
        return updated


__all__ = ["ConnectionRegistry", "MAX_ERROR_LENGTH"]
