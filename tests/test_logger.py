import io
import logging

import pytest

from vaultbridge.mcp.logger import (
    RequestContextFilter,
    RequestTimer,
    envelope_label,
    request_context,
    setup_logging,
)


def _record() -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, "message", None, None)


def test_envelope_labels() -> None:
    assert envelope_label({"jsonrpc": "2.0", "id": 7, "method": "tools/call"}) == "tools/call#7"
    assert envelope_label({"jsonrpc": "2.0", "method": "notifications/progress"}) == "notifications/progress"
    assert envelope_label({"jsonrpc": "2.0", "id": 7, "result": {}}) == "reply#7"
    assert envelope_label({"jsonrpc": "2.0", "id": 7, "error": {"code": -32601}}) == "error#7"
    assert envelope_label(["not", "an", "envelope"]) == "list"


def test_request_context_tags_and_resets() -> None:
    context_filter = RequestContextFilter()

    with request_context("abcdef0123456789") as request_id:
        assert request_id == "abcdef0123456789"
        record = _record()
        context_filter.filter(record)
        assert record.request_id == "abcdef01"

    record = _record()
    context_filter.filter(record)
    assert record.request_id == "-"


def test_request_context_generates_an_id() -> None:
    with request_context() as request_id:
        assert len(request_id) == 36


def test_setup_logging_writes_context() -> None:
    root = logging.getLogger()
    saved_level, saved_handlers = root.level, root.handlers[:]
    stream = io.StringIO()
    try:
        setup_logging(logging.INFO, stream=stream)
        with request_context("feedbeef-0000"):
            logging.getLogger("vaultbridge-test").info("hello")
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)

    line = stream.getvalue()
    assert " feedbeef]" in line
    assert "vaultbridge-test INFO: hello" in line


def test_request_timer_levels(caplog) -> None:
    logger = logging.getLogger("vaultbridge-timer")
    caplog.set_level(logging.DEBUG, logger="vaultbridge-timer")

    with RequestTimer(logger, "fast") as timer:
        pass
    assert timer.duration_ms is not None
    assert caplog.records[-1].levelno == logging.DEBUG

    with RequestTimer(logger, "slow", slow_ms=0.0):
        pass
    assert caplog.records[-1].levelno == logging.INFO
    assert "slow was slow" in caplog.records[-1].getMessage()

    with pytest.raises(KeyError):
        with RequestTimer(logger, "broken"):
            raise KeyError("missing")
    assert caplog.records[-1].levelno == logging.WARNING
    assert "broken failed" in caplog.records[-1].getMessage()
