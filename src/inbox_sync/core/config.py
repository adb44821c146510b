"""Application configuration models and loader utilities."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, cast

from dotenv import dotenv_values
from pydantic import BaseModel, Field


class ImapSettings(BaseModel):
    """Settings controlling IMAP connectivity shared by every account."""

    timeout_seconds: float = Field(
        default=30.0, gt=0, description="Socket timeout for every IMAP operation"
    )
    batch_size: int = Field(
        default=50, ge=1, description="Messages fetched per IMAP batch"
    )
    default_folder: str = Field(default="INBOX", description="Folder to monitor")


class StorageSettings(BaseModel):
    """Settings for local persistence."""

    db_path: Path = Field(
        default=Path("./inbox_sync.db"), description="SQLite database path"
    )


class LoggingSettings(BaseModel):
    """Logging preferences."""

    level: str = Field(default="INFO", description="Root logging level")
    structured: bool = Field(
        default=False, description="Emit key=value log lines instead of plain text"
    )


class MonitorSettings(BaseModel):
    """Settings driving the background sync monitor."""

    interval_minutes: int = Field(
        default=15, ge=1, description="Minutes between monitor cycles"
    )
    default_sync_interval_minutes: int = Field(
        default=15, ge=1, description="Per-connection sync interval for new accounts"
    )
    reconciliation_window_hours: float = Field(
        default=6.0, gt=0, description="Maximum age of a full reconciliation"
    )
    reconciliation_batch_size: int = Field(
        default=5, ge=1, description="Full reconciliations allowed per cycle"
    )
    stale_connecting_minutes: int = Field(
        default=60,
        ge=1,
        description="Age after which a 'connecting' row is considered abandoned",
    )
    retry_jitter_seconds: int = Field(
        default=0, ge=0, description="Upper bound of random delay added to backoff"
    )
    strict_identifier_matching: bool = Field(
        default=False,
        description="Only reconcile messages that carry a Message-ID",
    )
    autostart: bool = Field(
        default=False, description="Start the monitor with the web application"
    )


class SecuritySettings(BaseModel):
    """Secret handling configuration."""

    encryption_key: str | None = Field(
        default=None, description="Fernet key used to encrypt mailbox passwords"
    )


class WebSettings(BaseModel):
    """Settings for the operational HTTP API."""

    trigger_token: str | None = Field(
        default=None, description="Bearer token required by trigger endpoints"
    )


class AppSettings(BaseModel):
    """Aggregated application configuration."""

    imap: ImapSettings = Field(default_factory=ImapSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    monitor: MonitorSettings = Field(default_factory=MonitorSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    web: WebSettings = Field(default_factory=WebSettings)


ENV_PREFIX = "INBOX_SYNC_"


def _normalize_key(raw_key: str) -> list[str]:
    """Convert an environment variable key into a nested attribute path."""
    trimmed = raw_key.removeprefix(ENV_PREFIX)
    return [segment.lower() for segment in trimmed.split("__") if segment]


def _merge_into_tree(tree: dict[str, Any], path: list[str], value: Any) -> None:
    """Assign a value to a nested dictionary given a path."""
    cursor = tree
    for segment in path[:-1]:
        next_node = cursor.setdefault(segment, {})
        cursor = cast(dict[str, Any], next_node)
    cursor[path[-1]] = value


def _coerce_value(value: Any) -> Any:
    if isinstance(value, str) and value == "":
        return None
    if isinstance(value, str):
        lowercase_value = value.lower()
        if lowercase_value == "true":
            return True
        if lowercase_value == "false":
            return False
    return value


def _collect_env_values(
    env_file: Path | str | None, include_environment: bool
) -> dict[str, Any]:
    """Load configuration values from environment variables and optional file."""
    collected: dict[str, Any] = {}

    file_values = {}
    if env_file:
        env_path = Path(env_file)
        if env_path.is_file():
            file_values = {
                key: value
                for key, value in dotenv_values(env_path).items()
                if key and key.startswith(ENV_PREFIX)
            }

    env_values = {}
    if include_environment:
        env_values = {
            key: value
            for key, value in os.environ.items()
            if key.startswith(ENV_PREFIX)
        }

    combined: dict[str, Any] = {**file_values, **env_values}

    for key, value in combined.items():
        path = _normalize_key(key)
        if not path:
            continue
        _merge_into_tree(collected, path, _coerce_value(value))

    return collected


@lru_cache(maxsize=1)
def load_app_settings(
    env_file: Path | str | None = None,
    include_environment: bool = True,
    **overrides: Any,
) -> AppSettings:
    """Load application settings, applying env files and overrides."""
    collected = _collect_env_values(env_file, include_environment)
    if overrides:
        collected.update(overrides)
    return AppSettings.model_validate(collected)


__all__ = [
    "AppSettings",
    "ImapSettings",
    "LoggingSettings",
    "MonitorSettings",
    "SecuritySettings",
    "StorageSettings",
    "WebSettings",
    "load_app_settings",
]
