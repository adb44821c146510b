"""Connection registry and background sync monitor."""

from .factory import build_monitor
from .registry import ConnectionRegistry
from .scheduler import (
    ConnectionDisabledError,
    ConnectionNotFoundError,
    MonitorBusyError,
    SyncMonitor,
)

__all__ = [
    "ConnectionDisabledError",
    "ConnectionNotFoundError",
    "ConnectionRegistry",
    "MonitorBusyError",
    "SyncMonitor",
    "build_monitor",
]
