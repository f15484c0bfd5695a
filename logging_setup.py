"""
Shared logging infrastructure for the chat pipeline.

Every package (chat_server, orchestration, guards, usage_limits, voice_bridge)
logs through this module so diagnostic output is one JSON object per line.

Features:
- JSON-formatted structured logs
- Configurable log levels
- Conversation/session correlation via bound fields
- Component and severity tagging
"""

import json
import logging
import sys
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class Severity(str, Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Component(str, Enum):
    """System components for log tagging."""
    CHAT_SERVER = "chat_server"
    SESSION_REGISTRY = "session_registry"
    ORCHESTRATOR = "orchestrator"
    PLANNER = "planner"
    SPECIALIST = "specialist"
    INPUT_GUARD = "input_guard"
    RESPONSE_GUARD = "response_guard"
    USAGE = "usage"
    VOICE_BRIDGE = "voice_bridge"
    OPENAI_CLIENT = "openai_client"


_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName", "component", "message",
})

# LogRecord attributes that `extra` may not overwrite
_RECORD_ATTRS = (_RESERVED_ATTRS - {"component"}) | {"asctime"}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output fields:
    - ISO8601 timestamp
    - Severity level
    - Component identifier
    - Message and any extra fields passed by StructuredLogger
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class StructuredLogger:
    """
    Wrapper around Python's logging with structured JSON output.

    Usage:
        logger = get_logger(Component.ORCHESTRATOR)
        log = logger.bind(conversation_id="c-1")
        log.info("Turn started", queue_size=1)
        log.error("Dispatch failed", error="details")
    """

    def __init__(
        self,
        component: str | Component,
        fields: Optional[Dict[str, Any]] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.fields = dict(fields or {})
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(self, level: int, message: str, **kwargs):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        fields = {**self.fields, **kwargs}
        extra = {
            "component": self.component,
            **{(f"field_{key}" if key in _RECORD_ATTRS else key): value for key, value in fields.items()},
        }

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        """Log a debug message."""
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        """Log an info message."""
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """Log a warning message."""
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        """Log an error message."""
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        """Log a critical message."""
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with exception info (mirrors logging.Logger.exception)."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def bind(self, **fields: Any) -> "StructuredLogger":
        """
        Create a child logger that carries correlation fields on every record.

        Example:
            log = logger.bind(conversation_id="c-1", session_id="s-1")
        """
        return StructuredLogger(
            self.component,
            fields={**self.fields, **{k: v for k, v in fields.items() if v is not None}},
            logger_name=self.logger.name
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure root logger for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or simple text (False)
        include_timestamp: Include timestamps in text logs

    This should be called once at application startup.
    """
    root_logger = logging.getLogger()

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)

    if use_json:
        formatter = JSONFormatter()
    else:
        format_str = "%(levelname)s - %(component)s - %(message)s"
        if include_timestamp:
            format_str = "%(asctime)s - " + format_str
        formatter = logging.Formatter(format_str)

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(component: str | Component, **fields: Any) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Args:
        component: Component name or Component enum
        **fields: Optional correlation fields (conversation_id, session_id, ...)

    Example:
        logger = get_logger(Component.CHAT_SERVER)
        logger.info("Server started", port=8000)
    """
    return StructuredLogger(component, fields=fields)
