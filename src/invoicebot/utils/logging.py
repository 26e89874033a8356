"""
Structured JSON logging for the invoice bot.

Every record is emitted as one JSON object on stdout so that webhook turns
can be traced by correlation id, message id and conversation state.
"""

import json
import logging
import sys
from typing import Any

# LogRecord attributes that are never copied into the JSON document
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "taskName",
        "exc_info",
        "exc_text",
        "stack_info",
    }
)

# Keys dropped by log_event: phone numbers, chat text and credentials
PII_FIELDS = frozenset(
    {
        "phone",
        "from",
        "sender",
        "whatsapp_phone",
        "client_name",
        "name",
        "city",
        "text",
        "body",
        "message_text",
        "reply",
        "email",
        "address",
    }
)
SENSITIVE_SUBSTRINGS = ("password", "token", "secret", "key", "signature")


class JSONFormatter(logging.Formatter):
    """
    Format log records as JSON objects.

    Carries timestamp, level, logger name and message plus every attribute
    passed through ``extra=``.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


def setup_logging(level: str = "INFO") -> None:
    """
    Configure the root logger with a single JSON stdout handler.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Unknown names fall back to INFO.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(JSONFormatter())

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module, typically ``get_logger(__name__)``."""
    return logging.getLogger(name)


def filter_pii(metadata: dict[str, Any]) -> dict[str, Any]:
    """
    Drop PII and credential-looking keys from a metadata dict.

    Example:
        >>> filter_pii({"invoice_id": 7, "phone": "420777123456", "api_token": "x"})
        {'invoice_id': 7}
    """
    filtered = {}
    for key, value in metadata.items():
        lowered = key.lower()
        if lowered in PII_FIELDS:
            continue
        if any(part in lowered for part in SENSITIVE_SUBSTRINGS):
            continue
        filtered[key] = value
    return filtered


def log_event(
    event: str,
    level: str = "INFO",
    correlation_id: str | None = None,
    **metadata: Any,
) -> None:
    """
    Log a business event with PII-free metadata.

    Example:
        >>> log_event(
        ...     "Invoice created",
        ...     invoice_id=42,
        ...     invoice_number="2025-00001",
        ...     phone="420777123456",  # dropped
        ... )
    """
    extra = filter_pii(metadata)
    if correlation_id:
        extra["correlation_id"] = correlation_id

    logger = get_logger("invoicebot.events")
    logger.log(getattr(logging, level.upper(), logging.INFO), event, extra=extra)


def log_api_call(
    service: str,
    endpoint: str,
    method: str,
    status_code: int,
    duration_ms: float,
    error_type: str | None = None,
) -> None:
    """
    Log an outbound API call with metadata only (no request/response bodies).

    Args:
        service: API service name ("whatsapp", "messenger")
        endpoint: API path that was called
        method: HTTP method
        status_code: HTTP response status code (0 when no response arrived)
        duration_ms: Request duration in milliseconds
        error_type: Exception type if the call failed
    """
    extra_data: dict[str, Any] = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }
    if error_type:
        extra_data["error_type"] = error_type

    get_logger(__name__).info(f"API call to {service}", extra=extra_data)
