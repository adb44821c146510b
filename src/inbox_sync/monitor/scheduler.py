"""Background monitor driving periodic mailbox sync and reconciliation."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..core.config import MonitorSettings
from ..core.datetime_utils import utcnow
from ..core.interfaces import StorageError
from ..core.models import (
    ConnectionStatus,
    CycleReport,
    MailboxConfig,
    MailboxConnection,
    MonitoringStats,
    ReconciliationResult,
    SyncResult,
)
from ..ingestion.reconciler import FullReconciler
from ..ingestion.sync import IncrementalSync
from ..storage.sqlite import SqliteRepository
from .registry import ConnectionRegistry

LOGGER = logging.getLogger(__name__)

JOB_ID = "mailbox_monitor_cycle"


class MonitorBusyError(RuntimeError):
    """Raised when a manual trigger arrives while a cycle is running."""


class ConnectionNotFoundError(LookupError):
    """Raised when a manual trigger names an unknown or unconfigured account."""


class ConnectionDisabledError(ConnectionNotFoundError):
    """Raised when a manual sync targets an account the operator disabled."""


class SyncMonitor:
    """Single-flight driver over all due mailbox connections.

    At most one cycle runs at a time in this process. Connections are walked
    sequentially so no more than one mailbox socket is open at once.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        syncer: IncrementalSync,
        reconciler: FullReconciler,
        settings: MonitorSettings | None = None,
        *,
        repository: SqliteRepository | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise the monitor with its collaborators."""
        self._registry = registry
        self._syncer = syncer
        self._reconciler = reconciler
        self._settings = settings or MonitorSettings()
        self._repository = repository
        self._clock = clock or utcnow
        self._cycle_lock = threading.Lock()
        self._scheduler: BackgroundScheduler | None = None
        self._last_report: CycleReport | None = None

    @property
    def is_running(self) -> bool:
        """Return ``True`` while a cycle or manual trigger holds the lock."""
        return self._cycle_lock.locked()

    @property
    def last_report(self) -> CycleReport | None:
        """Return the report of the most recent completed cycle."""
        return self._last_report

    # Periodic driver ----------------------------------------------------------
    def start(self) -> None:
        """Start the interval timer; the first cycle runs immediately."""
        if self._scheduler is not None and self._scheduler.running:
            LOGGER.info("Mailbox monitor is already running")
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_cycle,
            IntervalTrigger(minutes=self._settings.interval_minutes),
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            next_run_time=utcnow(),
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        LOGGER.info(
            "Mailbox monitor started (every %s minute(s))",
            self._settings.interval_minutes,
        )

    def stop(self, wait: bool = True) -> None:
        """Stop the interval timer; a running cycle finishes first when waiting."""
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        LOGGER.info("Mailbox monitor stopped")

    # Cycle --------------------------------------------------------------------
    def run_cycle(self) -> CycleReport | None:
        """Run one monitor cycle, or return ``None`` if one is already running."""
        if not self._cycle_lock.acquire(blocking=False):
            LOGGER.info("Monitor cycle already in progress; skipping")
            return None
        try:
            report = self._run_cycle_locked()
            self._last_report = report
            return report
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> CycleReport:
        report = CycleReport(started_at=self._clock())
        LOGGER.info("Monitor cycle started")

        try:
            due = self._registry.select_due(report.started_at)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Unable to load due connections")
            due = []
        report.due = len(due)

        if due:
            LOGGER.info("Found %s connection(s) to sync", len(due))
        for connection in due:
            try:
                result = self._sync_connection(connection)
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception("Error syncing account %s", connection.account_id)
                report.failed += 1
                continue
            if result.succeeded:
                report.synced += 1
            else:
                report.failed += 1

        self._reconcile_stale(report)

        report.finished_at = self._clock()
        LOGGER.info(
            "Monitor cycle completed: due=%s synced=%s failed=%s reconciled=%s archived=%s",
            report.due,
            report.synced,
            report.failed,
            report.reconciled,
            report.archived,
        )
        return report

    def _sync_connection(self, connection: MailboxConnection) -> SyncResult:
        if connection.mailbox is None:
            raise ConnectionNotFoundError(
                f"Account {connection.account_id} has no mailbox configured"
            )
        LOGGER.info(
            "Syncing account %s (%s@%s)",
            connection.account_id,
            connection.mailbox.username,
            connection.mailbox.host,
        )
        self._registry.mark_connecting(connection.account_id)
        try:
            result = self._syncer.sync(
                connection.account_id,
                connection.mailbox,
                connection.last_processed_uid,
                uid_validity=connection.uid_validity,
            )
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error(
                "Sync raised for account %s: %s",
                connection.account_id,
                exc,
                exc_info=True,
            )
            result = SyncResult(
                account_id=connection.account_id,
                last_processed_cursor=connection.last_processed_uid,
                errors=[str(exc) or type(exc).__name__],
            )

        if result.succeeded:
            try:
                self._registry.mark_synced(connection, result)
            except StorageError as exc:
                LOGGER.error(
                    "Unable to record sync for account %s: %s",
                    connection.account_id,
                    exc,
                )
                result = dataclasses.replace(
                    result, errors=[f"Failed to record sync state: {exc}"]
                )

        if result.succeeded:
            LOGGER.info(
                "Synced %s new message(s) for account %s",
                result.new_count,
                connection.account_id,
            )
        else:
            self._record_failure(connection, result)
            LOGGER.warning(
                "Sync failed for account %s: %s",
                connection.account_id,
                "; ".join(result.errors),
            )
        return result

    def _record_failure(
        self, connection: MailboxConnection, result: SyncResult
    ) -> None:
        try:
            self._registry.mark_failed(connection, result)
        except StorageError:
            LOGGER.exception(
                "Unable to record failure for account %s", connection.account_id
            )
            self._registry.release(connection.account_id)

    def _reconcile_stale(self, report: CycleReport) -> None:
        try:
            candidates = self._registry.select_for_reconciliation(self._clock())
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Unable to load connections needing reconciliation")
            return
        if not candidates:
            LOGGER.debug("No connections need full reconciliation")
            return

        LOGGER.info("Found %s connection(s) needing full reconciliation", len(candidates))
        for connection in candidates:
            if connection.mailbox is None:
                continue
            try:
                result = self._reconciler.reconcile(
                    connection.account_id, connection.mailbox
                )
            except Exception:  # pylint: disable=broad-except
                LOGGER.exception(
                    "Full reconciliation raised for account %s", connection.account_id
                )
                continue
            if result.success:
                report.reconciled += 1
                report.archived += result.archived_count
            else:
                LOGGER.warning(
                    "Full reconciliation warnings for account %s: %s",
                    connection.account_id,
                    "; ".join(result.errors),
                )

    # Manual triggers ------------------------------------------------------------
    def force_sync(self, account_id: str) -> SyncResult:
        """Sync one account immediately, outside the periodic schedule."""
        with self._exclusive():
            connection, _ = self._require_connection(account_id)
            if connection.status is ConnectionStatus.DISABLED:
                raise ConnectionDisabledError(
                    f"Inbound sync is disabled for account {account_id}"
                )
            return self._sync_connection(connection)

    def force_reconcile(self, account_id: str) -> ReconciliationResult:
        """Run a full reconciliation for one account immediately."""
        with self._exclusive():
            _, mailbox = self._require_connection(account_id)
            return self._reconciler.reconcile(account_id, mailbox)

    # Observability --------------------------------------------------------------
    def stats(self) -> MonitoringStats:
        """Return aggregated connection health."""
        if self._repository is None:
            raise RuntimeError("Monitoring stats require a repository")
        counts = self._repository.count_connections_by_status()
        since = self._clock() - timedelta(hours=24)
        return MonitoringStats(
            is_running=self.is_running,
            total_connections=sum(counts.values()),
            active_connections=counts.get("active", 0),
            error_connections=counts.get("error", 0),
            connecting_connections=counts.get("connecting", 0),
            disabled_connections=counts.get("disabled", 0),
            recent_syncs=self._repository.count_recent_syncs(since),
            failing_connections=self._repository.count_failing_connections(),
            unclassified_messages=self._repository.count_unclassified(),
        )

    def connections(self) -> list[MailboxConnection]:
        """Return every registered connection."""
        return self._registry.store.list_connections()

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._cycle_lock.acquire(blocking=False):
            raise MonitorBusyError("A monitor cycle is currently running")
        try:
            yield
        finally:
            self._cycle_lock.release()

    def _require_connection(
        self, account_id: str
    ) -> tuple[MailboxConnection, MailboxConfig]:
        connection = self._registry.get(account_id)
        mailbox = connection.mailbox if connection is not None else None
        if connection is None or mailbox is None:
            raise ConnectionNotFoundError(
                f"No mailbox connection configured for account {account_id}"
            )
        return connection, mailbox


__all__ = [
    "ConnectionDisabledError",
    "ConnectionNotFoundError",
    "JOB_ID",
    "MonitorBusyError",
    "SyncMonitor",
]
