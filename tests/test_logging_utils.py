"""
Tests for structured logging helpers.
"""

import io
import json
import logging
import sys

from browser_session_sync.logging_utils import (
    StructuredJsonFormatter,
    SyncLoggerAdapter,
    configure_structured_logging,
    get_sync_logger,
)


def make_record(msg="hello", **extra):
    record = logging.LogRecord(
        name="browser_session_sync.sync.engine",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestStructuredJsonFormatter:
    """Tests for JSON log formatting."""

    def test_basic_fields(self):
        payload = json.loads(StructuredJsonFormatter().format(make_record()))
        assert payload["level"] == "INFO"
        assert payload["logger"] == "browser_session_sync.sync.engine"
        assert payload["message"] == "hello"
        assert "timestamp" in payload

    def test_extra_fields_included(self):
        record = make_record(cycle_id="abc123", sync_result={"pushed": 2})
        payload = json.loads(StructuredJsonFormatter().format(record))
        assert payload["cycle_id"] == "abc123"
        assert payload["sync_result"] == {"pushed": 2}

    def test_unserializable_extra_is_stringified(self):
        record = make_record(target=object())
        payload = json.loads(StructuredJsonFormatter().format(record))
        assert payload["target"].startswith("<object object")

    def test_timestamp_is_record_creation_time(self):
        record = make_record()
        record.created = 1_700_000_000.5
        payload = json.loads(StructuredJsonFormatter().format(record))
        assert payload["timestamp"] == "2023-11-14T22:13:20.500000+00:00"

    def test_static_fields(self):
        formatter = StructuredJsonFormatter({"device": "laptop"})
        payload = json.loads(formatter.format(make_record()))
        assert payload["device"] == "laptop"

    def test_exception_included(self):
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()
        payload = json.loads(StructuredJsonFormatter().format(record))
        assert "ValueError: bad" in payload["exception"]


class TestHelpers:
    """Tests for logger helpers."""

    def test_get_sync_logger_name(self):
        assert get_sync_logger("engine").name == "browser_session_sync.engine"

    def test_configure_replaces_handlers(self):
        stream = io.StringIO()
        configure_structured_logging(logging.DEBUG, "browser_session_sync.test")
        logger = configure_structured_logging(
            logging.DEBUG, "browser_session_sync.test", stream=stream, static_fields={"device": "d1"}
        )
        try:
            assert len(logger.handlers) == 1
            assert isinstance(logger.handlers[0].formatter, StructuredJsonFormatter)
            assert logger.level == logging.DEBUG

            logger.debug("configured")
            payload = json.loads(stream.getvalue())
            assert payload["message"] == "configured"
            assert payload["device"] == "d1"
        finally:
            logger.handlers.clear()

    def test_adapter_adds_context(self, caplog):
        logger = logging.getLogger("browser_session_sync.test")
        adapter = SyncLoggerAdapter(logger, {"cycle_id": "c1"})
        with caplog.at_level(logging.INFO, logger="browser_session_sync.test"):
            adapter.info("cycle started", extra={"phase": "draining"})

        record = caplog.records[-1]
        assert record.cycle_id == "c1"
        assert record.phase == "draining"

    def test_call_extra_overrides_context(self, caplog):
        logger = logging.getLogger("browser_session_sync.test")
        adapter = SyncLoggerAdapter(logger, {"cycle_id": "c1", "phase": "idle"})
        with caplog.at_level(logging.INFO, logger="browser_session_sync.test"):
            adapter.info("failed", extra={"phase": "fetching"})

        assert caplog.records[-1].phase == "fetching"
        assert caplog.records[-1].cycle_id == "c1"

    def test_bind_adds_fields_without_changing_parent(self, caplog):
        logger = logging.getLogger("browser_session_sync.test")
        adapter = SyncLoggerAdapter(logger, {"cycle_id": "c1"})
        bound = adapter.bind(phase="merging")

        with caplog.at_level(logging.INFO, logger="browser_session_sync.test"):
            bound.info("merged")
            adapter.info("plain")

        merged, plain = caplog.records[-2:]
        assert (merged.cycle_id, merged.phase) == ("c1", "merging")
        assert not hasattr(plain, "phase")
        assert adapter.extra == {"cycle_id": "c1"}
