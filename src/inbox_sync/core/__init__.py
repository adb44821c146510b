"""Core utilities for configuration, logging, and shared domain types."""

from .backoff import backoff_delay
from .config import AppSettings, MonitorSettings, load_app_settings
from .logging import configure_logging

__all__ = [
    "AppSettings",
    "MonitorSettings",
    "backoff_delay",
    "configure_logging",
    "load_app_settings",
]
