"""
Tests for setup_logging: one handler, one formatter chain for structlog and
stdlib records, quiet third-party loggers.
"""

from __future__ import annotations

import logging

import pytest
import structlog

from battlegym.config import LoggingConfig
from battlegym.telemetry.logging import setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)
    structlog.reset_defaults()


class TestSetupLogging:
    def test_single_handler_with_processor_formatter(self):
        setup_logging(LoggingConfig(level="DEBUG", format="json"))
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, structlog.stdlib.ProcessorFormatter)
        assert root.level == logging.DEBUG

    def test_repeated_setup_does_not_stack_handlers(self):
        setup_logging(LoggingConfig())
        setup_logging(LoggingConfig())
        assert len(logging.getLogger().handlers) == 1

    def test_unknown_level_falls_back_to_info(self):
        setup_logging(LoggingConfig(level="chatty"))
        assert logging.getLogger().level == logging.INFO

    def test_third_party_loggers_held_at_warning(self):
        setup_logging(LoggingConfig(level="DEBUG"))
        assert logging.getLogger("httpx").level == logging.WARNING
        assert logging.getLogger("asyncpg").level == logging.WARNING

    def test_stdlib_records_render_as_json(self):
        setup_logging(LoggingConfig(format="json"))
        formatter = logging.getLogger().handlers[0].formatter
        record = logging.LogRecord("uvicorn", logging.INFO, __file__, 1, "started", None, None)
        line = formatter.format(record)
        assert '"event": "started"' in line
        assert '"logger": "uvicorn"' in line
        assert '"level": "info"' in line
