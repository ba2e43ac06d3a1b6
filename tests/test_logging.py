"""Tests for onebox_ingest.logging."""

from __future__ import annotations

import json
import logging

import structlog

from onebox_ingest.logging import setup_logging


class TestSetupLogging:
    def test_json_mode(self):
        setup_logging(json=True, level="INFO")
        root = logging.getLogger()
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_console_mode(self):
        setup_logging(json=False, level="DEBUG")
        assert logging.getLogger().level == logging.DEBUG

    def test_level_case_insensitive(self):
        setup_logging(level="warning")
        assert logging.getLogger().level == logging.WARNING

    def test_replaces_existing_handlers(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())
        root.addHandler(logging.StreamHandler())
        setup_logging()
        assert len(root.handlers) == 1

    def test_library_loggers_quieted(self):
        setup_logging(level="DEBUG")
        assert logging.getLogger("aiokafka").level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_library_loggers_follow_stricter_root(self):
        setup_logging(level="ERROR")
        assert logging.getLogger("imapclient").level == logging.ERROR

    def test_structlog_produces_output(self):
        setup_logging(json=True, level="DEBUG")
        structlog.get_logger("test_logger").info("test_event", key="value")

    def test_json_exception_is_structured(self, capsys):
        setup_logging(json=True, level="INFO")
        try:
            raise ValueError("bad select count")
        except ValueError:
            structlog.get_logger("test_logger").exception("select_failed", account_id="acc-1")

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["event"] == "select_failed"
        assert record["level"] == "error"
        assert record["logger"] == "test_logger"
        assert record["account_id"] == "acc-1"
        assert record["exception"][0]["exc_type"] == "ValueError"

    def test_stdlib_records_rendered_as_json(self, capsys):
        setup_logging(json=True, level="INFO")
        logging.getLogger("plain.stdlib").warning("disk %s", "full")

        record = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert record["event"] == "disk full"
        assert record["level"] == "warning"
        assert record["logger"] == "plain.stdlib"
        assert "timestamp" in record
