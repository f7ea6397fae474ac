"""Structured JSON logging for trip tracking and claim approval."""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

_LOGGER_PREFIX = "field_travel_expense"


class LogContext:
    """Context-local fields merged into every structured log line."""

    _employee_id: ContextVar[str | None] = ContextVar("log_employee_id", default=None)
    _session_id: ContextVar[str | None] = ContextVar("log_session_id", default=None)
    _claim_id: ContextVar[str | None] = ContextVar("log_claim_id", default=None)
    _actor_id: ContextVar[str | None] = ContextVar("log_actor_id", default=None)

    _FIELD_NAMES = ("employee_id", "session_id", "claim_id", "actor_id")

    @classmethod
    def get_all(cls) -> dict[str, str]:
        """Return all non-None context fields."""

        ctx: dict[str, str] = {}
        for name in cls._FIELD_NAMES:
            value = getattr(cls, f"_{name}").get()
            if value is not None:
                ctx[name] = value
        return ctx

    @classmethod
    def clear(cls) -> None:
        for name in cls._FIELD_NAMES:
            getattr(cls, f"_{name}").set(None)

    @classmethod
    def bind(cls, **fields: str | None) -> _LogContextManager:
        """Context manager that sets fields on entry and restores them on exit."""

        unknown = set(fields) - set(cls._FIELD_NAMES)
        if unknown:
            raise ValueError(f"Unknown log context fields: {', '.join(sorted(unknown))}")
        return _LogContextManager(fields)


class _LogContextManager:
    def __init__(self, fields: dict[str, str | None]):
        self._fields = fields
        self._tokens: dict[str, Token[str | None]] = {}

    def __enter__(self) -> type[LogContext]:
        for key, value in self._fields.items():
            if value is not None:
                var: ContextVar[str | None] = getattr(LogContext, f"_{key}")
                self._tokens[key] = var.set(value)
        return LogContext

    def __exit__(self, *exc: object) -> None:
        for key, token in self._tokens.items():
            var: ContextVar[str | None] = getattr(LogContext, f"_{key}")
            var.reset(token)


_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """Format each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())

        for key, value in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = value

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            if hasattr(exc, "code"):
                payload["exc_code"] = exc.code
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the package namespace."""

    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """Install the structured formatter on the package logger (idempotent)."""

    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level)
    root_logger.propagate = False

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())
    root_logger.addHandler(target)


def reset_logging() -> None:
    """Remove installed handlers. Intended for tests."""

    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_LOGGER_PREFIX)
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


__all__ = [
    "LogContext",
    "StructuredFormatter",
    "configure_logging",
    "get_logger",
    "reset_logging",
]
