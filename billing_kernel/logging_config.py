"""
Structured JSON logging for the billing kernel.

Every record under the ``billing_kernel`` logger tree is one JSON line:

    {"ts": ..., "level": ..., "logger": ..., "message": <event name>,
     <operation context>, <extra fields>, <exception fields>}

Operation context (correlation id, actor, operation, client, billing month)
is bound once by the operations facade and stamped on every record emitted
inside the unit of work.  Extra fields carry billing values as they are:
Decimals print as strings so KRW/THB amounts keep their exact scale, dates
as ISO strings, status enums as their stored value, and DTO dataclasses as
objects.
"""

__all__ = [
    "StructuredFormatter",
    "LogContext",
    "get_logger",
    "configure_logging",
    "reset_logging",
]

import dataclasses
import json
import logging
import sys
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, date, datetime
from decimal import Decimal
from enum import Enum
from types import MappingProxyType
from typing import Any

_LOGGER_PREFIX = "billing_kernel"

_EMPTY: Mapping[str, str] = MappingProxyType({})


class LogContext:
    """Operation-scoped log fields, isolated per thread and per task."""

    FIELDS = ("correlation_id", "actor_id", "operation", "client_id", "billing_month")

    _fields: ContextVar[Mapping[str, str]] = ContextVar("billing_log_context", default=_EMPTY)

    @classmethod
    def _merge(cls, values: Mapping[str, Any]) -> Mapping[str, str]:
        merged = dict(cls._fields.get())
        for name, val in values.items():
            if name in cls.FIELDS and val is not None:
                merged[name] = str(val)
        return MappingProxyType(merged)

    @classmethod
    def set(
        cls,
        *,
        correlation_id: str | None = None,
        actor_id: str | None = None,
        operation: str | None = None,
        client_id: str | None = None,
        billing_month: str | None = None,
    ) -> None:
        """Update the given fields; None leaves a field as it is."""
        cls._fields.set(cls._merge({
            "correlation_id": correlation_id,
            "actor_id": actor_id,
            "operation": operation,
            "client_id": client_id,
            "billing_month": billing_month,
        }))

    @classmethod
    def get_all(cls) -> dict[str, str]:
        return dict(cls._fields.get())

    @classmethod
    def clear(cls) -> None:
        cls._fields.set(_EMPTY)

    @classmethod
    @contextmanager
    def bind(cls, **values: Any) -> Iterator[type["LogContext"]]:
        """
        Bind fields for the duration of a ``with`` block.

        Values are stringified, None values and unknown names are skipped,
        and the enclosing context is restored on exit.
        """
        token = cls._fields.set(cls._merge(values))
        try:
            yield cls
        finally:
            cls._fields.reset(token)


_RESERVED_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None))
) | {"message", "taskName"}


def _to_json(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return obj.value
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=str)
    return str(obj)


def _exception_fields(exc: BaseException) -> dict[str, Any]:
    fields: dict[str, Any] = {"exc_type": type(exc).__name__, "exc_message": str(exc)}
    code = getattr(exc, "code", None)
    if code is not None:
        fields["exc_code"] = code
    category = getattr(exc, "category", None)
    if isinstance(category, Enum):
        fields["exc_category"] = category.value
    # Kernel errors keep their structured arguments as public attributes
    for name, val in vars(exc).items():
        if not name.startswith("_") and name not in ("args", "code", "category"):
            fields[f"exc_{name}"] = val
    return fields


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: envelope, then context, extras, exception."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(LogContext.get_all())
        payload.update(
            (key, val) for key, val in vars(record).items()
            if key not in _RESERVED_KEYS and key not in payload
        )
        if record.exc_info and record.exc_info[1] is not None:
            payload.update(_exception_fields(record.exc_info[1]))
            payload["traceback"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=_to_json)


def get_logger(name: str) -> logging.Logger:
    """``billing_kernel.<name>``"""
    return logging.getLogger(f"{_LOGGER_PREFIX}.{name}")


_configured = False
_lock = threading.Lock()


def configure_logging(
    *,
    level: int | str = logging.INFO,
    stream: Any = None,
    handler: logging.Handler | None = None,
) -> None:
    """
    Attach a JSON handler to the ``billing_kernel`` logger tree.

    Only the first call has an effect.  ``level`` accepts a level number
    or name (``"DEBUG"``).  Records do not propagate to the root logger.
    """
    global _configured
    with _lock:
        if _configured:
            return
        _configured = True

    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.setLevel(level.upper() if isinstance(level, str) else level)
    root_logger.propagate = False

    h = handler if handler is not None else logging.StreamHandler(stream or sys.stderr)
    h.setFormatter(StructuredFormatter())
    root_logger.addHandler(h)


def reset_logging() -> None:
    """Detach handlers and allow configure_logging to run again. Tests only."""
    global _configured
    with _lock:
        _configured = False
    root_logger = logging.getLogger(_LOGGER_PREFIX)
    root_logger.handlers.clear()
    root_logger.setLevel(logging.WARNING)
