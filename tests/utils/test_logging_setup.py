"""Tests for CLI logging configuration."""

import json
import logging

from hookchat.utils.logging_setup import JsonLineFormatter, configure_logging


def test_json_formatter_emits_one_object():
    record = logging.LogRecord(
        "hookchat.test", logging.WARNING, __file__, 1, "sent %d", (3,), None,
    )
    entry = json.loads(JsonLineFormatter().format(record))
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "hookchat.test"
    assert entry["message"] == "sent 3"


def test_configure_logging_writes_file(tmp_path):
    log_file = tmp_path / "logs" / "hookchat.log"
    configure_logging(level="info", fmt="json", file=str(log_file))
    try:
        logging.getLogger("hookchat.services.test").info("hello %s", "file")
        for handler in logging.getLogger("hookchat").handlers:
            handler.flush()
        lines = log_file.read_text().strip().splitlines()
        assert json.loads(lines[-1])["message"] == "hello file"
    finally:
        configure_logging(level="warning")


def test_reconfigure_replaces_handlers():
    configure_logging(level="debug")
    configure_logging(level="error")
    root = logging.getLogger("hookchat")
    assert len(root.handlers) == 1
    assert root.level == logging.ERROR
    configure_logging(level="warning")
