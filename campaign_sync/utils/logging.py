"""
Logging Utility - Structured JSON Logging

Provides centralized, structured logging configuration for all sync components.
Supports JSON format for production and human-readable format for development.
Credentials are masked before any record leaves the process.

Usage:
    from campaign_sync.utils.logging import get_logger, setup_logging

    setup_logging(level="INFO", format_type="json")
    logger = get_logger(__name__)
    logger.info("Page fetched", extra={"page": 3, "records": 10})
"""

import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

import orjson

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Attributes every LogRecord carries; anything else came in through `extra`.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")
_AUTH_HEADER_RE = re.compile(r"\b(Basic|Bearer)\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE)
_TOKEN_RE = re.compile(r"\b(?:mock_)?access_token_[A-Za-z0-9_-]+")

_SENSITIVE_KEYS = frozenset({"password", "authorization", "access_token", "token", "secret"})
MASK = "***"


def mask_secrets(value: str) -> str:
    """Redact e-mail addresses, auth headers and access tokens from a string."""
    value = _AUTH_HEADER_RE.sub(lambda m: f"{m.group(1)} {MASK}", value)
    value = _TOKEN_RE.sub(MASK, value)
    return _EMAIL_RE.sub("***@***", value)


def _mask_value(key: str, value: Any) -> Any:
    if key.lower() in _SENSITIVE_KEYS:
        return MASK
    if isinstance(value, str):
        return mask_secrets(value)
    if isinstance(value, dict):
        return {k: _mask_value(str(k), v) for k, v in value.items()}
    return value


class SecretMaskingFilter(logging.Filter):
    """Rewrites the message and extra fields of a record with secrets masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = mask_secrets(record.getMessage())
        record.args = None
        for key, value in list(record.__dict__.items()):
            if key not in _RESERVED_ATTRS:
                setattr(record, key, _mask_value(key, value))
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, extra fields inlined."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def setup_logging(
    level: str = "INFO",
    format_type: str = "json",
    stream: Any = None,
) -> None:
    """Configure application-wide logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format_type: Log format ('json' or 'text')
        stream: Output stream, defaults to stdout
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if format_type == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))
    handler.addFilter(SecretMaskingFilter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
