"""Structured logging with payment context for request tracing.

This module provides structured JSON logging with:
- Request IDs for tracing a payment attempt through the gate
- Contextual fields (challenge id, transaction reference)
- Consistent log formatting
"""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
challenge_id_var: ContextVar[Optional[str]] = ContextVar("challenge_id", default=None)
reference_var: ContextVar[Optional[str]] = ContextVar("reference", default=None)

_CONTEXT_FIELDS = ("request_id", "challenge_id", "reference")

_RESERVED_ATTRS = frozenset(
    (
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
    )
    + _CONTEXT_FIELDS
)


class PaymentContextFilter(logging.Filter):
    """Logging filter that adds payment context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get()
        record.challenge_id = challenge_id_var.get()
        record.reference = reference_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value:
                log_data[name] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed through ``extra=``
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = True) -> None:
    """
    Configure logging for the ``paymentauth`` logger hierarchy.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Use JSON structured logging (True) or simple format (False)
    """
    package_logger = logging.getLogger("paymentauth")
    package_logger.setLevel(getattr(logging, level.upper()))

    for handler in package_logger.handlers[:]:
        package_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(PaymentContextFilter())
    package_logger.addHandler(console_handler)
    package_logger.propagate = False


def generate_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:16]}"


class LogContext:
    """Context manager for temporary logging context."""

    def __init__(
        self,
        request_id: Optional[str] = None,
        challenge_id: Optional[str] = None,
        reference: Optional[str] = None,
    ):
        self.values = {
            request_id_var: request_id,
            challenge_id_var: challenge_id,
            reference_var: reference,
        }
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        for var, value in self.values.items():
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()


__all__ = [
    "request_id_var",
    "challenge_id_var",
    "reference_var",
    "PaymentContextFilter",
    "StructuredFormatter",
    "setup_logging",
    "generate_request_id",
    "LogContext",
]
