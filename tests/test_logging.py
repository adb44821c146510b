"""Tests for logging utilities."""

from __future__ import annotations

import logging

from inbox_sync.core.config import LoggingSettings
from inbox_sync.core.logging import configure_logging


def test_configure_logging_sets_root_level() -> None:
    """configure_logging should set the root logger level according to settings."""

    settings = LoggingSettings(level="DEBUG", structured=False)
    configure_logging(settings)
    assert logging.getLogger().level == logging.DEBUG


def test_configure_logging_quiets_scheduler() -> None:
    configure_logging(LoggingSettings(level="DEBUG", structured=True))
    assert logging.getLogger("apscheduler").level == logging.WARNING


def test_structured_logging_emits_key_value_lines() -> None:
    configure_logging(LoggingSettings(level="INFO", structured=True))

    console = next(h for h in logging.getLogger().handlers if h.name == "console")
    formatter = console.formatter
    assert formatter is not None
    record = logging.LogRecord(
        "inbox_sync.test", logging.INFO, __file__, 1, "hello", None, None
    )
    line = formatter.format(record)

    assert "level=INFO" in line
    assert "logger=inbox_sync.test" in line
    assert line.endswith("msg=hello")
