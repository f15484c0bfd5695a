"""
Tests for logging_setup module.

Verifies:
- JSON structured logging format
- Component and severity tagging
- Conversation/session correlation via bound fields
- Log level configuration
"""
import json
import logging
from io import StringIO
from datetime import datetime

import pytest

from logging_setup import (
    setup_logging,
    get_logger,
    Component,
    JSONFormatter,
    StructuredLogger,
)


@pytest.fixture
def capture_logs():
    """Capture log output to a string buffer."""
    buffer = StringIO()
    handler = logging.StreamHandler(buffer)
    handler.setFormatter(JSONFormatter())

    logger = logging.getLogger()
    logger.handlers = []
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield buffer

    logger.handlers = []


def _entries(buffer):
    return [json.loads(line) for line in buffer.getvalue().strip().split("\n") if line]


def test_json_formatter_basic(capture_logs):
    """Test basic JSON log formatting."""
    logger = get_logger(Component.ORCHESTRATOR)
    logger.info("Test message", extra_field="value")

    log_entry = _entries(capture_logs)[0]

    assert log_entry["severity"] == "info"
    assert log_entry["component"] == "orchestrator"
    assert log_entry["message"] == "Test message"
    assert log_entry["extra_field"] == "value"
    assert "timestamp" in log_entry


def test_json_formatter_timestamp_format(capture_logs):
    """Test that timestamp is in ISO8601 format."""
    logger = get_logger(Component.VOICE_BRIDGE)
    logger.info("Timestamp test")

    timestamp = _entries(capture_logs)[0]["timestamp"]
    dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    assert dt is not None


def test_bound_fields_on_every_record(capture_logs):
    """Fields passed to get_logger travel with every record."""
    logger = get_logger(Component.CHAT_SERVER, session_id="sess_123")
    logger.info("First")
    logger.warning("Second")

    entries = _entries(capture_logs)
    assert [e["session_id"] for e in entries] == ["sess_123", "sess_123"]


def test_bind_creates_child_logger(capture_logs):
    """bind() adds correlation fields without touching the parent."""
    base_logger = get_logger(Component.ORCHESTRATOR)
    child = base_logger.bind(conversation_id="conv-1", session_id=None)

    child.info("With conversation")
    base_logger.info("Without conversation")

    child_entry, base_entry = _entries(capture_logs)
    assert child_entry["conversation_id"] == "conv-1"
    assert "session_id" not in child_entry
    assert "conversation_id" not in base_entry
    assert isinstance(child, StructuredLogger)


def test_call_fields_override_bound_fields(capture_logs):
    logger = get_logger(Component.USAGE, event="message")
    logger.info("Override", event="tts_generation")

    assert _entries(capture_logs)[0]["event"] == "tts_generation"


def test_severity_levels(capture_logs):
    """Test all severity levels."""
    logger = get_logger(Component.INPUT_GUARD)

    logger.debug("Debug message")
    logger.info("Info message")
    logger.warning("Warning message")
    logger.error("Error message")
    logger.critical("Critical message")

    severities = [e["severity"] for e in _entries(capture_logs)]
    assert severities == ["debug", "info", "warning", "error", "critical"]


def test_component_enum():
    """Test that Component enum has expected values."""
    assert Component.CHAT_SERVER.value == "chat_server"
    assert Component.ORCHESTRATOR.value == "orchestrator"
    assert Component.INPUT_GUARD.value == "input_guard"
    assert Component.RESPONSE_GUARD.value == "response_guard"
    assert Component.USAGE.value == "usage"
    assert Component.VOICE_BRIDGE.value == "voice_bridge"


def test_component_string_fallback(capture_logs):
    """Test that component can be a plain string."""
    logger = get_logger("custom_component")
    logger.info("Test")

    assert _entries(capture_logs)[0]["component"] == "custom_component"


def test_multiple_extra_fields(capture_logs):
    """Test logging with multiple extra fields."""
    logger = get_logger(Component.PLANNER)
    logger.info(
        "Complex log",
        field1="value1",
        field2=123,
        field3=True,
        field4={"nested": "object"}
    )

    log_entry = _entries(capture_logs)[0]
    assert log_entry["field1"] == "value1"
    assert log_entry["field2"] == 123
    assert log_entry["field3"] is True
    assert log_entry["field4"] == {"nested": "object"}


def test_non_serializable_field_is_stringified(capture_logs):
    logger = get_logger(Component.USAGE)
    logger.info("Odd value", when=datetime(2024, 5, 1))

    assert _entries(capture_logs)[0]["when"].startswith("2024-05-01")


def test_setup_logging_json():
    """Test setup_logging with JSON format."""
    setup_logging(level="DEBUG", use_json=True)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG
    assert len(root_logger.handlers) == 1
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_text():
    """Test setup_logging with text format."""
    setup_logging(level="INFO", use_json=False)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.INFO
    assert len(root_logger.handlers) == 1
    assert not isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_exception_logging(capture_logs):
    """Test that exceptions are logged properly."""
    logger = get_logger(Component.OPENAI_CLIENT)

    try:
        raise ValueError("Test exception")
    except ValueError:
        logger.exception("Exception occurred")

    log_entry = _entries(capture_logs)[0]
    assert log_entry["severity"] == "error"
    assert "ValueError: Test exception" in log_entry["exception"]


def test_record_attribute_names_are_renamed(capture_logs):
    """Fields named like LogRecord attributes are kept under a prefix instead of raising."""
    logger = get_logger(Component.SPECIALIST, module="voice")
    logger.info("Audio transcribed", filename="clip.webm", message="hi", asctime="now", chars=5)

    log_entry = _entries(capture_logs)[0]
    assert log_entry["message"] == "Audio transcribed"
    assert log_entry["field_filename"] == "clip.webm"
    assert log_entry["field_message"] == "hi"
    assert log_entry["field_asctime"] == "now"
    assert log_entry["field_module"] == "voice"
    assert log_entry["chars"] == 5
