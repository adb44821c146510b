"""FastAPI application exposing monitor status and manual triggers."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Request, status as http_status

from inbox_sync.core import AppSettings, load_app_settings
from inbox_sync.core.datetime_utils import serialize_datetime
from inbox_sync.core.models import (
    CycleReport,
    MailboxConnection,
    MonitoringStats,
    ReconciliationResult,
    SyncResult,
)
from inbox_sync.monitor import (
    ConnectionDisabledError,
    ConnectionNotFoundError,
    MonitorBusyError,
    SyncMonitor,
    build_monitor,
)
from inbox_sync.storage import SqliteRepository

from .security import BearerTokenGuard

LOGGER = logging.getLogger(__name__)


def create_app(
    settings: AppSettings | None = None,
    *,
    monitor: SyncMonitor | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    When ``monitor`` is omitted a SQLite-backed monitor is built from
    ``settings`` and its repository is closed on shutdown.
    """
    app_settings = settings or load_app_settings()
    app = FastAPI(title="Inbox Sync Monitor")
    guard = BearerTokenGuard(app_settings.web.trigger_token)

    repository: SqliteRepository | None = None
    if monitor is None:
        repository = SqliteRepository(app_settings.storage)
        monitor = build_monitor(app_settings, repository)
    sync_monitor = monitor

    @app.on_event("startup")
    async def startup_event() -> None:
        """Start the periodic monitor when autostart is enabled."""
        if app_settings.monitor.autostart:
            sync_monitor.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Stop the monitor and release owned resources."""
        await asyncio.to_thread(sync_monitor.stop)
        if repository is not None:
            repository.close()
            LOGGER.info("Repository closed")

    @app.get("/api/status")
    async def monitor_status() -> dict[str, Any]:
        """Return aggregated connection health and the last cycle report."""
        stats = await asyncio.to_thread(sync_monitor.stats)
        return {
            "stats": _serialize_stats(stats),
            "last_cycle": _serialize_report(sync_monitor.last_report),
        }

    @app.get("/api/connections")
    async def list_connections() -> dict[str, Any]:
        """Return the sync state of every registered connection."""
        connections = await asyncio.to_thread(sync_monitor.connections)
        return {"connections": [_serialize_connection(item) for item in connections]}

    @app.post("/api/cycle")
    async def trigger_cycle(request: Request) -> dict[str, Any]:
        """Run one monitor cycle now."""
        guard.validate(request)
        report = await asyncio.to_thread(sync_monitor.run_cycle)
        if report is None:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail="A monitor cycle is already running.",
            )
        return {"cycle": _serialize_report(report)}

    @app.post("/api/connections/{account_id}/sync")
    async def trigger_sync(account_id: str, request: Request) -> dict[str, Any]:
        """Sync one account immediately."""
        guard.validate(request)
        try:
            result = await asyncio.to_thread(sync_monitor.force_sync, account_id)
        except (MonitorBusyError, ConnectionNotFoundError) as exc:
            raise _trigger_error(exc) from exc
        return {"sync": _serialize_sync_result(result)}

    @app.post("/api/connections/{account_id}/reconcile")
    async def trigger_reconcile(account_id: str, request: Request) -> dict[str, Any]:
        """Run a full reconciliation for one account immediately."""
        guard.validate(request)
        try:
            result = await asyncio.to_thread(sync_monitor.force_reconcile, account_id)
        except (MonitorBusyError, ConnectionNotFoundError) as exc:
            raise _trigger_error(exc) from exc
        return {"reconciliation": _serialize_reconciliation(result)}

    return app


def _trigger_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (MonitorBusyError, ConnectionDisabledError)):
        return HTTPException(status_code=http_status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=http_status.HTTP_404_NOT_FOUND, detail=str(exc))


def _serialize_stats(stats: MonitoringStats) -> dict[str, Any]:
    return {
        "is_running": stats.is_running,
        "total_connections": stats.total_connections,
        "active_connections": stats.active_connections,
        "error_connections": stats.error_connections,
        "connecting_connections": stats.connecting_connections,
        "disabled_connections": stats.disabled_connections,
        "recent_syncs": stats.recent_syncs,
        "failing_connections": stats.failing_connections,
        "unclassified_messages": stats.unclassified_messages,
    }


def _serialize_report(report: CycleReport | None) -> dict[str, Any] | None:
    if report is None:
        return None
    return {
        "started_at": serialize_datetime(report.started_at),
        "finished_at": serialize_datetime(report.finished_at),
        "due": report.due,
        "synced": report.synced,
        "failed": report.failed,
        "reconciled": report.reconciled,
        "archived": report.archived,
    }


def _serialize_connection(connection: MailboxConnection) -> dict[str, Any]:
    mailbox = connection.mailbox
    return {
        "account_id": connection.account_id,
        "email": connection.email,
        "host": mailbox.host if mailbox else None,
        "folder": mailbox.folder if mailbox else None,
        "status": connection.status.value,
        "sync_interval_minutes": connection.sync_interval_minutes,
        "last_processed_uid": connection.last_processed_uid,
        "uid_validity": connection.uid_validity,
        "total_messages_processed": connection.total_messages_processed,
        "consecutive_failures": connection.consecutive_failures,
        "last_error": connection.last_error,
        "last_sync_at": serialize_datetime(connection.last_sync_at),
        "next_sync_at": serialize_datetime(connection.next_sync_at),
        "last_successful_connection": serialize_datetime(
            connection.last_successful_connection
        ),
        "last_full_reconciliation_at": serialize_datetime(
            connection.last_full_reconciliation_at
        ),
    }


def _serialize_sync_result(result: SyncResult) -> dict[str, Any]:
    return {
        "account_id": result.account_id,
        "succeeded": result.succeeded,
        "fetched": result.fetched,
        "new_count": result.new_count,
        "reactivated_count": result.reactivated_count,
        "last_processed_uid": result.last_processed_cursor,
        "errors": list(result.errors),
    }


def _serialize_reconciliation(result: ReconciliationResult) -> dict[str, Any]:
    return {
        "account_id": result.account_id,
        "success": result.success,
        "aborted": result.aborted,
        "archived_count": result.archived_count,
        "errors": list(result.errors),
    }


__all__ = ["create_app"]
