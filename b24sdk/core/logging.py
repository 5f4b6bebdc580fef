"""Structured logging configuration for the b24sdk runtime.

JSON output suits log aggregation (ELK, CloudWatch, etc.); the pretty
formatter is meant for local debugging. Webhook secrets never reach a log
line produced through ``safe_preview``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from b24sdk.core.errors import SdkError, _mask_sensitive_data

if TYPE_CHECKING:
    from b24sdk.conf.config import Settings


class JSONFormatter(logging.Formatter):
    """Format log records as JSON for structured logging."""

    def __init__(
        self,
        *,
        include_timestamp: bool = True,
        include_level: bool = True,
        include_logger: bool = True,
        include_path: bool = False,
        extra_fields: dict[str, Any] | None = None,
    ):
        super().__init__()
        self.include_timestamp = include_timestamp
        self.include_level = include_level
        self.include_logger = include_logger
        self.include_path = include_path
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as a JSON string."""
        log_data: dict[str, Any] = {}

        if self.include_timestamp:
            log_data["timestamp"] = datetime.now(UTC).isoformat()

        if self.include_level:
            log_data["level"] = record.levelname

        if self.include_logger:
            log_data["logger"] = record.name

        log_data["message"] = _mask_sensitive_data(record.getMessage())

        if self.include_path:
            log_data["path"] = f"{record.pathname}:{record.lineno}"
            log_data["function"] = record.funcName

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Extra fields from record
        for key in ["event", "request_id", "api_method", "duration_ms", "status_code", "root_cause"]:
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        log_data.update(self.extra_fields)

        return json.dumps(log_data, ensure_ascii=False, default=str)


class PrettyFormatter(logging.Formatter):
    """Human-readable formatter for development/debugging."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET

        timestamp = datetime.now(UTC).strftime("%Y-%m-%d %H:%M:%S")
        level = f"{color}{record.levelname:8}{reset}"
        logger_name = record.name[:24].ljust(24)
        message = _mask_sensitive_data(record.getMessage())

        output = f"{timestamp} | {level} | {logger_name} | {message}"

        if record.exc_info:
            output += f"\n{self.formatException(record.exc_info)}"

        return output


def setup_logging(
    *,
    level: str = "INFO",
    json_format: bool = False,
    include_path: bool = False,
    service_name: str = "b24sdk",
) -> None:
    """Configure logging for an application using the SDK.

    Args:
        level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON format (True) or pretty format (False)
        include_path: Include source file path in logs
        service_name: Service name to include in JSON logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if json_format:
        formatter: logging.Formatter = JSONFormatter(
            include_path=include_path,
            extra_fields={"service": service_name},
        )
    else:
        formatter = PrettyFormatter()

    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)


def setup_logging_from_settings(settings: Settings | None = None) -> None:
    """Configure logging from ``LOG_LEVEL`` / ``LOG_JSON``."""
    if settings is None:
        from b24sdk.conf.config import get_settings

        settings = get_settings()
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name.

    Usage:
        logger = get_logger(__name__)
        logger.info("Calling method", extra={"request_id": "abc123"})
    """
    return logging.getLogger(name)


LOG_EVENT_TITLES: dict[str, str] = {
    "rest_call_done": "[B24:REST] call done",
    "rest_call_api_error": "[B24:REST] api error",
    "rest_limit_exceeded": "[B24:REST] query limit exceeded",
    "batch_chunk_sent": "[B24:BATCH] chunk sent",
    "batch_halted": "[B24:BATCH] halted on error",
    "pull_connected": "[B24:PULL] connected",
    "pull_reconnect_scheduled": "[B24:PULL] reconnect scheduled",
    "pull_frame_dropped": "[B24:PULL] frame dropped",
    "pull_subscriber_failed": "[B24:PULL] subscriber failed",
}


def log_event(
    logger: logging.Logger,
    *,
    event: str,
    level: str | None = None,
    **kwargs: Any,
) -> None:
    """Structured event logging helper.

    The message is the event title followed by ``key=value`` pairs, the same
    pairs go to ``extra`` so JSON output keeps them as fields.

    Args:
        logger: Logger instance to use
        event: Event name (key in LOG_EVENT_TITLES)
        level: Log level (debug, info, warning, error, critical)
        **kwargs: Additional context fields (api_method, duration_ms, etc.)
    """
    lvl = (level or "info").lower()
    log_fn = getattr(logger, lvl, logger.info)

    title = LOG_EVENT_TITLES.get(event, event)
    parts = [title]
    for key, value in kwargs.items():
        if value is None:
            continue
        parts.append(f"{key}={safe_preview(value, 80)}")

    log_fn(" ".join(parts), extra={"event": event, **kwargs})


def safe_preview(value: Any, max_len: int = 120) -> str:
    """Return a masked, truncated string preview of value."""
    if value is None:
        return ""
    text = _mask_sensitive_data(str(value))
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def classify_root_cause(error: Any, *, status_code: int | None = None) -> str:
    """Classify error root cause for structured logging."""
    if isinstance(error, SdkError):
        return f"{type(error).__name__.upper()}:{error.error_code}"

    msg = str(error or "").lower()

    if status_code is not None:
        if status_code == 429:
            return "B24_RATE_LIMIT"
        if 400 <= status_code < 500:
            return f"B24_REJECTED_{status_code}"
        if status_code >= 500:
            return f"B24_UPSTREAM_{status_code}"

    if "timeout" in msg or "timed out" in msg:
        return "NETWORK_TIMEOUT"
    if "connect" in msg or "dns" in msg or "ssl" in msg:
        return "NETWORK_ERROR"
    if "protobuf" in msg or "decode" in msg:
        return "PULL_DECODE_ERROR"
    return "UNKNOWN"


def log_with_root_cause(
    logger: logging.Logger,
    level: str,
    message: str,
    *,
    root_cause: str | None = None,
    error: Exception | None = None,
    **context: Any,
) -> None:
    """Log with root cause in [ROOT_CAUSE: ...] brackets.

    Example:
        log_with_root_cause(logger, "error", "[B24:REST] transport failed", error=e)
        # Output: "[B24:REST] transport failed [ROOT_CAUSE: TRANSPORTERROR:NETWORK_ERROR]"
    """
    level = level.upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        level = "INFO"

    if root_cause is None and error is not None:
        root_cause = classify_root_cause(error, status_code=context.get("status_code"))

    if root_cause:
        message = f"{message} [ROOT_CAUSE: {root_cause}]"

    extra = context.copy()
    if root_cause:
        extra["root_cause"] = root_cause
    if error:
        extra["error_type"] = type(error).__name__
        extra["error_message"] = safe_preview(error, 300)

    log_fn = getattr(logger, level.lower(), logger.info)
    log_fn(message, extra=extra)
