import io
import json
import logging

import pytest

pytestmark = [pytest.mark.unit]


def make_test_logger(service: str) -> tuple[logging.Logger, io.StringIO]:
    """Create a logger with JsonFormatter that writes to a StringIO buffer."""
    from services.shared.logging import JsonFormatter

    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(JsonFormatter(service))
    logger = logging.getLogger(f"test_{service}_{id(buf)}")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, buf


def get_log_line(buf: io.StringIO) -> dict:
    """Parse the last JSON log line from buffer."""
    buf.seek(0)
    lines = [line.strip() for line in buf.readlines() if line.strip()]
    return json.loads(lines[-1])


def test_json_formatter_produces_valid_json():
    logger, buf = make_test_logger("alert-engine")
    logger.info("alert scan started")
    line = get_log_line(buf)
    assert line["msg"] == "alert scan started"
    assert line["level"] == "INFO"
    assert line["service"] == "alert-engine"
    assert line["ts"].endswith("Z")


def test_json_formatter_includes_extra_fields():
    logger, buf = make_test_logger("alert-engine")
    logger.info("alert opened", extra={"tenant_id": "acme", "alert_id": "a-42"})
    line = get_log_line(buf)
    assert line["tenant_id"] == "acme"
    assert line["alert_id"] == "a-42"


def test_json_formatter_warning_level():
    logger, buf = make_test_logger("alert-engine")
    logger.warning("sla ordering not enforced", extra={"issues": ["critical > warning"]})
    line = get_log_line(buf)
    assert line["level"] == "WARNING"
    assert line["issues"] == ["critical > warning"]


def test_trace_id_is_attached():
    from services.shared.logging import trace_id_var

    logger, buf = make_test_logger("alert-engine")
    token = trace_id_var.set("trace-123")
    try:
        logger.info("tick_start")
    finally:
        trace_id_var.reset(token)
    assert get_log_line(buf)["trace_id"] == "trace-123"


def test_log_exception_helper():
    from services.shared.logging import log_exception

    logger, buf = make_test_logger("alert-engine")
    try:
        raise ConnectionError("connection reset")
    except ConnectionError as exc:
        log_exception(logger, "sensor check failed", exc, context={"sensor_id": "s-1"})
    line = get_log_line(buf)
    assert line["level"] == "ERROR"
    assert line["error_type"] == "ConnectionError"
    assert line["error"] == "connection reset"
    assert line["sensor_id"] == "s-1"
    assert "Traceback" in line["exc"]


def test_log_event_helper():
    from services.shared.logging import log_event

    logger, buf = make_test_logger("alert-engine")
    log_event(logger, "alert scan complete", level="INFO", tenant_id="t1", checked_sensors=3)
    line = get_log_line(buf)
    assert line["msg"] == "alert scan complete"
    assert line["checked_sensors"] == 3


def test_non_serializable_extra_is_stringified():
    from datetime import datetime, timezone

    logger, buf = make_test_logger("alert-engine")
    logger.info("alert opened", extra={"at": datetime(2025, 3, 1, tzinfo=timezone.utc)})
    assert get_log_line(buf)["at"].startswith("2025-03-01")


def test_json_output_is_single_line():
    """Each log record must be exactly one line (no newlines in JSON output)."""
    logger, buf = make_test_logger("alert-engine")
    logger.info("test message", extra={"key": "value with\nnewline"})
    buf.seek(0)
    lines = [line for line in buf.readlines() if line.strip()]
    assert len(lines) == 1


def test_configure_logging_respects_level(monkeypatch):
    from services.shared.logging import JsonFormatter, configure_logging

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    monkeypatch.setenv("LOG_LEVEL", "warning")
    try:
        configure_logging("alert_engine")
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
