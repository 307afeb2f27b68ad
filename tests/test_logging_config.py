"""
Tests for deedflow_core.logging_config.
"""

from __future__ import annotations

import json
import logging
import sys

import pytest

from deedflow_core.logging_config import _HumanFormatter, _JSONFormatter, setup_logging


def _record(msg="hello", level=logging.INFO, **extra):
    rec = logging.LogRecord("deedflow_escrow", level, __file__, 1, msg, None, None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJSONFormatter:

    def test_basic_fields(self):
        obj = json.loads(_JSONFormatter().format(_record()))
        assert obj["level"] == "INFO"
        assert obj["logger"] == "deedflow_escrow"
        assert obj["msg"] == "hello"
        assert "ts" in obj
        assert "token_id" not in obj

    def test_context_fields(self):
        obj = json.loads(_JSONFormatter().format(_record(token_id=4, caller="0xSeller")))
        assert obj["token_id"] == 4
        assert obj["caller"] == "0xSeller"

    def test_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            rec = _record()
            rec.exc_info = sys.exc_info()
        obj = json.loads(_JSONFormatter().format(rec))
        assert "RuntimeError: boom" in obj["exception"]


class TestHumanFormatter:

    def test_single_line(self):
        line = _HumanFormatter().format(_record("listed"))
        assert "deedflow_escrow: listed" in line
        assert "[INFO" in line

    def test_token_suffix(self):
        line = _HumanFormatter().format(_record("listed", token_id=7))
        assert line.endswith("[token 7]")


class TestSetupLogging:

    def test_console_handler(self, restore_root):
        setup_logging("DEBUG", "json")
        assert restore_root.level == logging.DEBUG
        assert len(restore_root.handlers) == 1
        assert isinstance(restore_root.handlers[0].formatter, _JSONFormatter)
        assert logging.getLogger("aiohttp.access").level == logging.DEBUG

    def test_no_duplicate_handlers(self, restore_root):
        setup_logging()
        setup_logging()
        assert len(restore_root.handlers) == 1
        assert isinstance(restore_root.handlers[0].formatter, _HumanFormatter)
        assert logging.getLogger("aiohttp.access").level == logging.WARNING

    def test_unknown_level_falls_back_to_info(self, restore_root):
        setup_logging("chatty")
        assert restore_root.level == logging.INFO

    def test_log_file(self, restore_root, tmp_path):
        path = tmp_path / "logs" / "deedflow.log"
        setup_logging("INFO", "human", str(path))
        logging.getLogger("deedflow_test").info("to file", extra={"token_id": 2})
        for h in restore_root.handlers:
            h.flush()
        line = path.read_text().strip().splitlines()[-1]
        obj = json.loads(line)
        assert obj["msg"] == "to file"
        assert obj["token_id"] == 2
        for h in restore_root.handlers:
            if isinstance(h, logging.FileHandler):
                h.close()
