"""Wire the production collaborators of a :class:`SyncMonitor`."""

from __future__ import annotations

from functools import partial

from ..core.config import AppSettings
from ..ingestion.parser import EmailParser
from ..ingestion.reconciler import FullReconciler
from ..ingestion.sync import IncrementalSync
from ..security.secrets import SecretCipher
from ..storage.sqlite import SqliteRepository
from ..transport.imap_client import ImapClient
from .registry import ConnectionRegistry
from .scheduler import SyncMonitor


def build_monitor(settings: AppSettings, repository: SqliteRepository) -> SyncMonitor:
    """Return a monitor using IMAP, Fernet secrets and ``repository``.

    The caller owns ``repository`` and closes it once the monitor is stopped.
    """
    cipher = SecretCipher.from_settings(settings.security)
    client_factory = partial(ImapClient, settings.imap)
    registry = ConnectionRegistry(repository, settings.monitor)
    syncer = IncrementalSync(
        client_factory,
        repository,
        EmailParser(),
        cipher,
        batch_size=settings.imap.batch_size,
    )
    reconciler = FullReconciler(
        client_factory,
        repository,
        repository,
        cipher,
        strict_identifier_matching=settings.monitor.strict_identifier_matching,
    )
    return SyncMonitor(
        registry,
        syncer,
        reconciler,
        settings.monitor,
        repository=repository,
    )


__all__ = ["build_monitor"]
