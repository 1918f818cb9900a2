"""Tests for logging setup, formatters and redaction"""

from __future__ import annotations

import json
import logging
import sys

from pmsheet.core.logging import (
    ContextFormatter,
    ContextLoggerAdapter,
    JSONFormatter,
    SensitiveDataFilter,
    is_credential_name,
    mask_credentials,
    setup_logging,
    with_log_context,
)


def _record(msg="Acquired lock", **extra):
    record = logging.makeLogRecord({"name": "pmsheet.locks", "levelno": logging.INFO, "levelname": "INFO", "msg": msg})
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestFormatters:
    def test_context_formatter_appends_extras(self):
        line = ContextFormatter("%(levelname)s %(message)s").format(_record(resource="PROJECT:P-1", request_id="ab"))
        assert line == "INFO Acquired lock [request_id=ab resource=PROJECT:P-1]"

    def test_context_formatter_without_extras(self):
        assert ContextFormatter("%(message)s").format(_record()) == "Acquired lock"

    def test_json_formatter(self):
        entry = json.loads(JSONFormatter().format(_record(resource="PROJECT:P-1", api_token="abc")))
        assert entry["message"] == "Acquired lock"
        assert entry["level"] == "INFO"
        assert entry["resource"] == "PROJECT:P-1"
        assert entry["api_token"] == "[REDACTED]"

    def test_json_formatter_includes_exception(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.makeLogRecord({"msg": "failed", "exc_info": sys.exc_info()})
        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]


class TestSensitiveDataFilter:
    def test_redacts_message_values(self):
        record = _record("Connecting with password=hunter2, token: 'abc def'")
        assert SensitiveDataFilter().filter(record) is True
        assert record.msg == "Connecting with password=[REDACTED], token: [REDACTED]"

    def test_redacts_sensitive_extras(self):
        record = _record(client_secret="s3cret", owner="alice")
        SensitiveDataFilter().filter(record)
        assert record.client_secret == "[REDACTED]"
        assert record.owner == "alice"

    def test_merges_args(self):
        record = logging.makeLogRecord({"msg": "%s attempts", "args": (3,)})
        SensitiveDataFilter().filter(record)
        assert record.msg == "3 attempts"
        assert record.args == ()

    def test_unformattable_args_do_not_raise(self):
        record = logging.makeLogRecord({"msg": "%d locks", "args": ("many",)})
        SensitiveDataFilter().filter(record)
        assert record.msg.startswith("%d locks [unformattable args")

    def test_credential_names(self):
        assert is_credential_name("api_token")
        assert is_credential_name("X-Api-Key")
        assert not is_credential_name("resource")
        assert not is_credential_name("tokenizer")

    def test_mask_leaves_longer_words_alone(self):
        assert mask_credentials("tokens=3 secret=\"a b\"") == "tokens=3 secret=[REDACTED]"


class TestWithLogContext:
    def test_adds_fields(self, caplog):
        logger = logging.getLogger("test.context")
        adapter = with_log_context(logger, resource="TASKS:*", skipped=None)
        assert isinstance(adapter, ContextLoggerAdapter)
        with caplog.at_level(logging.INFO, logger="test.context"):
            adapter.info("held")
        record = caplog.records[-1]
        assert record.resource == "TASKS:*"
        assert not hasattr(record, "skipped")

    def test_nested_context_merges(self, caplog):
        logger = logging.getLogger("test.context")
        outer = with_log_context(logger, resource="PROJECT:P-1")
        inner = with_log_context(outer, request_id="r1")
        assert inner.logger is logger
        with caplog.at_level(logging.INFO, logger="test.context"):
            inner.info("step", extra={"step": "persist"})
        record = caplog.records[-1]
        assert (record.resource, record.request_id, record.step) == ("PROJECT:P-1", "r1", "persist")

    def test_non_logger_passes_through(self):
        sentinel = object()
        assert with_log_context(sentinel, resource="x") is sentinel


class TestSetupLogging:
    def test_text_console(self, restore_root_logging):
        logger = setup_logging("debug")
        assert logger.name == "pmsheet"
        assert logging.root.level == logging.DEBUG
        assert len(logging.root.handlers) == 1
        handler = logging.root.handlers[0]
        assert isinstance(handler.formatter, ContextFormatter)
        assert any(isinstance(f, SensitiveDataFilter) for f in handler.filters)

    def test_json_with_file(self, restore_root_logging, tmp_path):
        setup_logging("INFO", "json", tmp_path / "logs")
        assert len(logging.root.handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in logging.root.handlers)
        assert len(list((tmp_path / "logs").glob("pmsheet_*.log"))) == 1

    def test_invalid_level_falls_back(self, restore_root_logging, capsys):
        setup_logging("LOUD")
        assert logging.root.level == logging.INFO
        assert "Invalid log level" in capsys.readouterr().err
