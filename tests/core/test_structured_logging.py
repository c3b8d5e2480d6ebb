"""Tests for structured logging module."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import pytest
import structlog

from unical.core.logging import (
    _NOISE_LOGGERS,
    _account_context,
    _calendar_context,
    add_otel_context,
    add_sync_context,
    configure_logging,
    get_sync_context,
    set_sync_context,
    sync_context,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _reset_logging():
    """Reset logging and sync context between tests."""
    account_token = _account_context.set(None)
    calendar_token = _calendar_context.set(None)
    yield
    _calendar_context.reset(calendar_token)
    _account_context.reset(account_token)
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)


class TestSyncContext:
    def test_set_and_get(self):
        set_sync_context("acct", "primary")
        assert get_sync_context() == ("acct", "primary")

    def test_default_is_none(self):
        assert get_sync_context() == (None, None)

    def test_scoped_block_restores_previous(self):
        set_sync_context("outer", "cal")
        with sync_context("acct", "primary"):
            assert get_sync_context() == ("acct", "primary")
        assert get_sync_context() == ("outer", "cal")

    async def test_tasks_do_not_share_context(self):
        async def _worker(account_id: str) -> tuple[str | None, str | None]:
            with sync_context(account_id, "primary"):
                await asyncio.sleep(0)
                return get_sync_context()

        results = await asyncio.gather(_worker("a"), _worker("b"))
        assert results == [("a", "primary"), ("b", "primary")]


class TestProcessors:
    def test_add_sync_context(self):
        with sync_context("acct", "primary"):
            result = add_sync_context(None, "info", {"event": "test"})
        assert result["account_id"] == "acct"
        assert result["calendar_id"] == "primary"

    def test_unset_context_is_none(self):
        result = add_sync_context(None, "info", {"event": "test"})
        assert result["account_id"] is None

    def test_zeroed_ids_when_no_span(self):
        result = add_otel_context(None, "info", {"event": "test"})
        assert result["trace_id"] == "0" * 32
        assert result["span_id"] == "0" * 16

    def test_real_ids_when_span_active(self):
        from opentelemetry.sdk.trace import TracerProvider

        provider = TracerProvider()
        tracer = provider.get_tracer("test")
        with tracer.start_as_current_span("test-span"):
            result = add_otel_context(None, "info", {"event": "test"})
            assert result["trace_id"] != "0" * 32
            assert len(result["span_id"]) == 16
        provider.shutdown()


class TestConfigureLogging:
    def test_text_format_installs_console_renderer(self):
        configure_logging(fmt="text")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
        assert isinstance(formatter.processors[-1], structlog.dev.ConsoleRenderer)

    def test_json_format_installs_json_renderer(self):
        configure_logging(fmt="json")
        formatter = logging.getLogger().handlers[0].formatter
        assert isinstance(formatter.processors[-1], structlog.processors.JSONRenderer)

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging()
        configure_logging()
        assert len(logging.getLogger().handlers) == 1

    def test_noise_loggers_suppressed(self):
        configure_logging(level="DEBUG")
        for name in _NOISE_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING

    def test_log_level_applied(self):
        configure_logging(level="debug")
        assert logging.getLogger().level == logging.DEBUG

    def test_log_file_receives_json_with_sync_context(self, tmp_path: Path):
        log_path = tmp_path / "logs" / "unical.jsonl"
        configure_logging(level="INFO", log_file=log_path)

        with sync_context("acct", "primary"):
            logging.getLogger("unical.test").info("Synced %d events", 3)

        for handler in logging.getLogger().handlers:
            handler.flush()
        record = json.loads(log_path.read_text().strip().splitlines()[-1])
        assert record["event"] == "Synced 3 events"
        assert record["account_id"] == "acct"
        assert record["calendar_id"] == "primary"
        assert record["level"] == "info"
