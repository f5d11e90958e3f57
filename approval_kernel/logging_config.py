"""
approval_kernel.logging_config -- JSON log lines for the workflow engine.

Every engine event is one JSON object per line.  Request-scoped fields
(request, actor, company, activity type) are bound once by the workflow
service with ``LogContext.bind`` and stamped onto every line emitted inside
that block, including lines from the selectors and the sweeper.

Engine exceptions logged with ``exc_info`` contribute their machine-readable
``code`` and their structured attributes as ``exc_*`` fields.
"""

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
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

_LOGGER_PREFIX = "approval_kernel"


class LogContext:
    """Request-scoped log fields, isolated per thread and per task."""

    FIELDS = ("request_id", "actor_id", "company_id", "activity_type")

    _fields: ContextVar[dict[str, str]] = ContextVar("approval_log_context", default={})

    @classmethod
    @contextmanager
    def bind(cls, **fields: Any) -> Iterator[None]:
        """Overlay fields for the duration of the block.

        ``None`` values and names outside ``FIELDS`` are ignored; everything
        else is stored as ``str``.
        """
        current = cls._fields.get()
        overlay = {
            name: str(value)
            for name, value in fields.items()
            if value is not None and name in cls.FIELDS
        }
        token = cls._fields.set({**current, **overlay})
        try:
            yield
        finally:
            cls._fields.reset(token)

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(cls._fields.get())

    @classmethod
    def clear(cls) -> None:
        cls._fields.set({})


# Attributes every LogRecord carries; anything else came in through ``extra``.
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "taskName"}


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: base fields, context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **LogContext.get_all(),
        }
        payload.update(
            (key, value) for key, value in vars(record).items()
            if key not in _RECORD_ATTRS and key not in payload
        )

        if record.exc_info and record.exc_info[1] is not None:
            payload.update(self._exception_fields(record.exc_info[1]))
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
            # Engine errors keep their context as public attributes.
            fields.update(
                (f"exc_{name}", value) for name, value in vars(exc).items()
                if not name.startswith("_") and name != "request"
            )
        return fields


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``approval_kernel`` namespace."""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


def configure_logging(
    *,
    level: int | str = logging.INFO,
    handler: logging.Handler | None = None,
) -> None:
    """Attach a JSON handler to the ``approval_kernel`` logger once.

    Later calls are no-ops while a handler is attached.  Defaults to stderr.
    """
    root = logging.getLogger(_LOGGER_PREFIX)
    if root.handlers:
        return
    handler = handler or logging.StreamHandler(sys.stderr)
    handler.setFormatter(StructuredFormatter())
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False


def reset_logging() -> None:
    """Detach engine handlers and restore propagation.  Used by tests."""
    root = logging.getLogger(_LOGGER_PREFIX)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.setLevel(logging.NOTSET)
    root.propagate = True
