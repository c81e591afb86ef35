"""Structured JSON logging for the borrowing kernel."""

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
from contextvars import ContextVar
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

# ---------------------------------------------------------------------------
# Request-scoped context
# ---------------------------------------------------------------------------

_CONTEXT_FIELDS = (
    "correlation_id",
    "batch_id",
    "actor_id",
    "action",
    "idempotency_key",
)

_context_vars: dict[str, ContextVar[str | None]] = {
    name: ContextVar(f"borrowing_log_{name}", default=None) for name in _CONTEXT_FIELDS
}


class LogContext:
    """
    Fields stamped on every log line emitted in the current context.

    Backed by ContextVars, so each thread and each asyncio task sees its
    own values.  The workflow engine binds ``batch_id``, ``actor_id``,
    ``action`` and ``idempotency_key`` for the duration of a call.
    """

    @staticmethod
    def set(**fields: str | None) -> None:
        """Set the given fields; ``None`` values leave a field untouched."""
        for name, value in fields.items():
            if name not in _context_vars:
                raise TypeError(f"Unknown log context field {name!r}")
            if value is not None:
                _context_vars[name].set(str(value))

    @staticmethod
    def get_all() -> dict[str, str]:
        ctx: dict[str, str] = {}
        for name, var in _context_vars.items():
            value = var.get()
            if value is not None:
                ctx[name] = value
        return ctx

    @staticmethod
    def clear() -> None:
        for var in _context_vars.values():
            var.set(None)

    @staticmethod
    def bind(**fields: Any) -> "_BoundContext":
        """Set fields for a ``with`` block, restoring the previous values after it.

        Unknown names and ``None`` values are skipped.
        """
        return _BoundContext(fields)


class _BoundContext:

    def __init__(self, fields: dict[str, Any]):
        self._fields = fields
        self._tokens: list[tuple[ContextVar[str | None], Any]] = []

    def __enter__(self) -> type[LogContext]:
        for name, value in self._fields.items():
            var = _context_vars.get(name)
            if var is not None and value is not None:
                self._tokens.append((var, var.set(str(value))))
        return LogContext

    def __exit__(self, *exc: Any) -> None:
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)


# ---------------------------------------------------------------------------
# JSON formatting
# ---------------------------------------------------------------------------

# Attributes every LogRecord carries; anything else on a record came from ``extra``.
_RECORD_ATTRIBUTES: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _json_default(obj: Any) -> Any:
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (tuple, set, frozenset)):
        return list(obj)
    return str(obj)


class StructuredFormatter(logging.Formatter):
    """
    Render a record as one JSON object per line.

    Envelope keys ``ts``, ``level``, ``logger`` and ``message`` come first,
    then the LogContext fields, then ``extra`` values.  When the record
    carries an exception, its type, message, ``code`` and public
    attributes are added with an ``exc_`` prefix together with the
    formatted traceback.
    """

    def format(self, record: logging.LogRecord) -> str:
        line: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        line.update(LogContext.get_all())
        for key, value in vars(record).items():
            if key not in _RECORD_ATTRIBUTES:
                line.setdefault(key, value)
        if record.exc_info and record.exc_info[1] is not None:
            line.update(self._exception_fields(record.exc_info[1]))
            line["traceback"] = self.formatException(record.exc_info)
        return json.dumps(line, default=_json_default)

    @staticmethod
    def _exception_fields(exc: BaseException) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "exc_type": type(exc).__name__,
            "exc_message": str(exc),
        }
        code = getattr(exc, "code", None)
        if code is not None:
            fields["exc_code"] = code
        for name, value in vars(exc).items():
            if not name.startswith("_") and name not in ("args", "code"):
                fields[f"exc_{name}"] = value
        return fields


# ---------------------------------------------------------------------------
# Loggers
# ---------------------------------------------------------------------------

_ROOT_NAME = "borrowing_kernel"


def get_logger(name: str) -> logging.Logger:
    """Logger ``borrowing_kernel.<name>``."""
    return logging.getLogger(f"{_ROOT_NAME}.{name}")


_configured = False
_configure_lock = threading.Lock()


def configure_logging(
    *,
    level: int = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``borrowing_kernel`` logger.

    Only the first call has any effect.  The kernel logger does not
    propagate, so host applications see kernel logs only through this
    handler.
    """
    global _configured
    with _configure_lock:
        if _configured:
            return
        _configured = True

    target = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    target.setFormatter(StructuredFormatter())

    root = logging.getLogger(_ROOT_NAME)
    root.setLevel(level)
    root.propagate = False
    root.addHandler(target)


def reset_logging() -> None:
    """Undo configure_logging. FOR TESTING ONLY."""
    global _configured
    with _configure_lock:
        _configured = False
    root = logging.getLogger(_ROOT_NAME)
    root.handlers.clear()
    root.setLevel(logging.WARNING)
