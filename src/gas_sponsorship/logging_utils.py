"""
Structured logging for the sponsorship engine.

Features:
- JSON formatter with correlation context (correlation id, user, chain)
- setup_logging() for hosts and the CLI
- log_operation() timing wrapper for collaborator calls
"""
from __future__ import annotations

import json
import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
user_address_var: ContextVar[Optional[str]] = ContextVar("user_address", default=None)
chain_id_var: ContextVar[Optional[int]] = ContextVar("chain_id", default=None)

_CONTEXT_FIELDS = ("correlation_id", "user_address", "chain_id")

# Attributes every LogRecord has; anything else came in via ``extra``
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class ContextFilter(logging.Filter):
    """Adds correlation context to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        record.user_address = user_address_var.get()
        record.chain_id = chain_id_var.get()
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for key in _CONTEXT_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in _CONTEXT_FIELDS:
                log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = False) -> None:
    """
    Configure root logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_format: Emit JSON lines instead of plain text
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if json_format:
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler.addFilter(ContextFilter())
    root_logger.addHandler(handler)


def generate_correlation_id() -> str:
    return f"cor_{uuid.uuid4().hex[:16]}"


class LogContext:
    """Context manager binding correlation fields for the enclosed calls."""

    def __init__(
        self,
        correlation_id: Optional[str] = None,
        user_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.user_address = user_address
        self.chain_id = chain_id
        self._tokens: list = []

    def __enter__(self) -> "LogContext":
        self._tokens = [
            (correlation_id_var, correlation_id_var.set(self.correlation_id)),
            (user_address_var, user_address_var.set(self.user_address)),
            (chain_id_var, chain_id_var.set(self.chain_id)),
        ]
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens = []


@asynccontextmanager
async def log_operation(
    operation: str,
    logger: Optional[logging.Logger] = None,
    **fields: Any,
) -> AsyncIterator[Dict[str, Any]]:
    """
    Time an operation and log its outcome.

    Yields a dict the caller can add result fields to. Failures are logged at
    DEBUG with their duration and re-raised; callers decide the real level.
    """
    log = logger or logging.getLogger(__name__)
    context: Dict[str, Any] = {"operation": operation, **fields}
    started = time.perf_counter()
    try:
        yield context
    except Exception as e:
        context["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
        context["error"] = str(e) or type(e).__name__
        log.debug(f"{operation} failed", extra={"op": context})
        raise
    context["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
    log.debug(f"{operation} completed", extra={"op": context})


__all__ = [
    "correlation_id_var",
    "user_address_var",
    "chain_id_var",
    "ContextFilter",
    "StructuredFormatter",
    "setup_logging",
    "generate_correlation_id",
    "LogContext",
    "log_operation",
]
