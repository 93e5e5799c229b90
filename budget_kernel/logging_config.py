"""Structured JSON logging for the budget kernel."""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import AbstractContextManager, contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any, TextIO
from uuid import UUID

# ---------------------------------------------------------------------------
# Context propagation
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = ("correlation_id", "actor_id", "workflow_id", "batch_id")

_context: ContextVar[Mapping[str, str]] = ContextVar(
    "budget_log_context", default=MappingProxyType({})
)


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - set(_CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown log context fields: {sorted(unknown)}")


def _merged(fields: Mapping[str, Any]) -> Mapping[str, str]:
    current = dict(_context.get())
    current.update({k: str(v) for k, v in fields.items() if v is not None})
    return MappingProxyType(current)


class LogContext:
    """Operation-scoped log fields, carried per task or thread.

    Services bind the workflow or batch they are working on so that every
    line emitted underneath (ledger, auditor, notifier) carries it.
    """

    @staticmethod
    def set(**fields: Any) -> None:
        """Merge non-None fields into the current context."""
        _check_fields(fields)
        _context.set(_merged(fields))

    @staticmethod
    def get_all() -> dict[str, str]:
        return dict(_context.get())

    @staticmethod
    def clear() -> None:
        _context.set(MappingProxyType({}))

    @staticmethod
    def bind(**fields: Any) -> AbstractContextManager[None]:
        """Set fields for the duration of a ``with`` block.

        Unknown field names raise TypeError here rather than on entry.
        """
        _check_fields(fields)
        return _bound(fields)


@contextmanager
def _bound(fields: Mapping[str, Any]) -> Iterator[None]:
    token = _context.set(_merged(fields))
    try:
        yield
    finally:
        _context.reset(token)


# ---------------------------------------------------------------------------
# JSON Formatter
# ---------------------------------------------------------------------------

_RESERVED_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}

# Exception attributes never copied into the payload.
_EXC_SKIP = frozenset({"args", "code", "retryable", "result"})


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (UUID, Decimal)):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context,
    ``extra`` fields, and the structured fields of any attached exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        for key, val in vars(record).items():
            if key not in _RESERVED_ATTRS:
                payload.setdefault(key, val)

        exc = record.exc_info[1] if record.exc_info else None
        if exc is not None:
            payload.update(self._exception_fields(exc))
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
            fields["exc_retryable"] = bool(getattr(exc, "retryable", False))
        for name, val in vars(exc).items():
            if not name.startswith("_") and name not in _EXC_SKIP:
                fields[f"exc_{name}"] = val
        return fields


# ---------------------------------------------------------------------------
# Logger factory and setup
# ---------------------------------------------------------------------------

_ROOT = "budget_kernel"

_configured = False
_lock = threading.Lock()


def get_logger(name: str) -> logging.Logger:
    """Logger named ``budget_kernel.<name>``."""
    return logging.getLogger(f"{_ROOT}.{name}")


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: TextIO | None = None,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the ``budget_kernel`` logger. Runs once.

    ``level`` is a logging constant or a name such as ``"DEBUG"`` (the form
    carried by ``BUDGET_LOG_LEVEL``). Unknown names mean INFO.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    if handler is None:
        handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(StructuredFormatter())

    logger = logging.getLogger(_ROOT)
    logger.setLevel(_resolve_level(level))
    logger.propagate = False
    logger.addHandler(handler)


def reset_logging() -> None:
    """Undo configure_logging. Used by tests."""
    global _configured
    with _lock:
        _configured = False
    logger = logging.getLogger(_ROOT)
    logger.handlers.clear()
    logger.setLevel(logging.WARNING)
