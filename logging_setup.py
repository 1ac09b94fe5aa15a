"""
Shared logging infrastructure for the voice relay.

Every relay component logs through a StructuredLogger so that log lines
are single JSON objects carrying the component name and, once a session
exists, its session_id.

Features:
- JSON-formatted structured logs (or plain text for local debugging)
- Component tagging
- Session ID correlation via with_session()
- Keyword fields become top-level JSON keys
"""

import json
import logging
import os
import re
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
    """Relay components for log tagging."""
    RELAY_SERVER = "relay_server"
    VOICE_SESSION = "voice_session"
    UPSTREAM_LINK = "upstream_link"
    CLIENT_LINK = "client_link"
    FUNCTION_DISPATCHER = "function_dispatcher"
    TOOL_REGISTRY = "tool_registry"
    COLLABORATOR = "collaborator"
    CONFIG = "config"


# LogRecord attributes that are never copied into the JSON payload
_RESERVED_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "component", "session_id", "message", "taskName",
})


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output fields:
    - ISO8601 timestamp
    - severity
    - component
    - session_id (if bound)
    - message and any extra keyword fields

    latency_ms values get an "ms" unit appended (and orange color unless
    NO_COLOR is set) after serialization.
    """

    ORANGE = '\033[38;5;208m'
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "severity": record.levelname.lower(),
            "component": getattr(record, "component", "unknown"),
            "message": record.getMessage(),
        }

        if hasattr(record, "session_id"):
            log_data["session_id"] = record.session_id

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        json_output = json.dumps(log_data, ensure_ascii=False, default=str)

        if "latency_ms" in log_data:
            no_color = os.environ.get("NO_COLOR", "").lower() in ("1", "true", "yes")
            pattern = r'("latency_ms"\s*:\s*)(\d+)'
            if no_color:
                replacement = r'\1\2 ms'
            else:
                replacement = rf'\1{self.ORANGE}\2 ms{self.RESET}'
            json_output = re.sub(pattern, replacement, json_output)

        return json_output


class StructuredLogger:
    """
    Wrapper around Python's logging with structured keyword fields.

    Usage:
        logger = StructuredLogger("voice_session", session_id="abc")
        logger.info("Function dispatched", call_id="c1", function="list_issues")
    """

    def __init__(
        self,
        component: str | Component,
        session_id: Optional[str] = None,
        logger_name: Optional[str] = None
    ):
        self.component = component.value if isinstance(component, Component) else component
        self.session_id = session_id
        self.logger = logging.getLogger(logger_name or self.component)

    def _log(self, level: int, message: str, **kwargs):
        exc_info = kwargs.pop("exc_info", None)
        stack_info = kwargs.pop("stack_info", None)
        stacklevel = kwargs.pop("stacklevel", 1)

        extra = {
            "component": self.component,
            **kwargs
        }

        if self.session_id:
            extra["session_id"] = self.session_id

        self.logger.log(
            level,
            message,
            exc_info=exc_info,
            stack_info=stack_info,
            stacklevel=stacklevel,
            extra=extra
        )

    def debug(self, message: str, **kwargs):
        self._log(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._log(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._log(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._log(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(logging.CRITICAL, message, **kwargs)

    def exception(self, message: str, **kwargs):
        """Log an error message with the active exception attached."""
        kwargs.setdefault("exc_info", True)
        self._log(logging.ERROR, message, **kwargs)

    def with_session(self, session_id: str) -> "StructuredLogger":
        """Create a new logger instance bound to a session ID."""
        return StructuredLogger(
            self.component,
            session_id=session_id,
            logger_name=self.logger.name
        )


def setup_logging(
    level: str = "INFO",
    use_json: bool = True,
    include_timestamp: bool = True
) -> None:
    """
    Configure the root logger. Call once at process startup.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: Use JSON formatter (True) or simple text (False)
        include_timestamp: Include timestamps in text logs
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
        formatter = logging.Formatter(format_str, defaults={"component": "unknown"})

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    log_level = getattr(logging, level.upper(), logging.INFO)
    root_logger.setLevel(log_level)


def get_logger(
    component: str | Component,
    session_id: Optional[str] = None
) -> StructuredLogger:
    """
    Get a structured logger for a component.

    Example:
        logger = get_logger(Component.VOICE_SESSION, session_id="abc")
        logger.info("Session started")
    """
    return StructuredLogger(component, session_id=session_id)
