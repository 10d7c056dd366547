import json
import logging
import sys

import pytest

from graphquota.core.logging_config import JsonFormatter, configure_logging
from graphquota.observability.events import emit_circuit_opened, emit_queue_finished, emit_tier_classified


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("graphquota.queue", logging.INFO, __file__, 1, "Operation %s completed", ("op-1",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_context_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record(account_id="123", operation_id="op-1", tier="WARNING")))
    assert payload["message"] == "Operation op-1 completed"
    assert payload["logger"] == "graphquota.queue"
    assert payload["account_id"] == "123"
    assert payload["operation_id"] == "op-1"
    assert payload["tier"] == "WARNING"
    assert "breaker" not in payload


def test_json_formatter_renders_exceptions() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("graphquota", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())
    payload = json.loads(JsonFormatter().format(record))
    assert payload["account_id"] is None
    assert "RuntimeError: boom" in payload["exception"]


def test_configure_logging_picks_formatter_by_environment() -> None:
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    httpx_logger = logging.getLogger("httpx")
    saved_httpx_level = httpx_logger.level
    try:
        configure_logging(log_level="debug", app_env="production")
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert httpx_logger.level == logging.WARNING

        configure_logging(log_level="bogus", app_env="local")
        assert root.level == logging.INFO
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
        httpx_logger.setLevel(saved_httpx_level)


def test_events_are_logged_as_json(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.INFO, logger="graphquota.observability"):
        emit_tier_classified(account_id="123", tier="CRITICAL", call_count=90, seconds_until_access_regained=0)
        emit_queue_finished(account_id="123", completed=4, failed=1, duration_seconds=1.23456)
        emit_circuit_opened(breaker="graph_api", consecutive_failures=5, next_probe_at=1060.0)

    events = [json.loads(record.getMessage()) for record in caplog.records]
    assert [event["event"] for event in events] == ["usage.tier_classified", "queue.finished", "circuit.opened"]
    assert events[1]["duration_seconds"] == 1.235
    assert caplog.records[2].levelno == logging.ERROR
