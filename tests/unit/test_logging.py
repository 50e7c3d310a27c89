#
# tests/unit/test_logging.py
#
"""
Tests for structlog setup.
"""

import json
import logging
import sys
from pathlib import Path

import pytest
import structlog

from pesterbridge.telemetry import setup_logging


@pytest.fixture(autouse=True)
def restore_logging():
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    structlog.reset_defaults()


class TestSetupLogging:
    def test_file_logs_are_json(self, tmp_path: Path) -> None:
        log_file = tmp_path / "bridge.log"
        setup_logging(level=logging.INFO, log_file=str(log_file), file_only=True)

        structlog.get_logger("controller").info("Starting test run", targets=2, emoji_key="run")

        records = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
        record = records[-1]
        assert record["event"] == "🧪 Starting test run"
        assert record["targets"] == 2
        assert record["logger"] == "controller"
        assert "emoji_key" not in record

    def test_headless_console_goes_to_stderr(self) -> None:
        setup_logging(level=logging.WARNING, headless_mode=True)

        handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.StreamHandler)]
        assert [h.stream for h in handlers] == [sys.stderr]

    def test_level_filters_records(self, tmp_path: Path) -> None:
        log_file = tmp_path / "bridge.log"
        setup_logging(level=logging.WARNING, log_file=str(log_file), file_only=True)

        log = structlog.get_logger("discovery")
        log.info("Adding to discovery queue")
        log.warning("Test discovery failed")

        events = [json.loads(line)["event"] for line in log_file.read_text(encoding="utf-8").splitlines()]
        assert events == ["⚠️ Test discovery failed"]
