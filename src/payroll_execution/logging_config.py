"""Structured logging setup with request-scoped context fields."""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Iterator
from uuid import UUID

_run_id: ContextVar[str | None] = ContextVar("log_run_id", default=None)
_actor_id: ContextVar[str | None] = ContextVar("log_actor_id", default=None)

_STDLIB_KEYS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "taskName"}


@contextmanager
def log_context(run_id: UUID | str | None = None, actor_id: UUID | str | None = None) -> Iterator[None]:
    """Bind run/actor ids to every log record emitted inside the block."""
    tokens = []
    if run_id is not None:
        tokens.append((_run_id, _run_id.set(str(run_id))))
    if actor_id is not None:
        tokens.append((_actor_id, _actor_id.set(str(actor_id))))
    try:
        yield
    finally:
        for var, token in reversed(tokens):
            var.reset(token)


def _jsonable(value: Any) -> Any:
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class StructuredFormatter(logging.Formatter):
    """Formats each log record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if (run_id := _run_id.get()) is not None:
            payload["run_id"] = run_id
        if (actor_id := _actor_id.get()) is not None:
            payload["actor_id"] = actor_id

        for key, val in vars(record).items():
            if key not in _STDLIB_KEYS and key not in payload:
                payload[key] = _jsonable(val)

        if record.exc_info and record.exc_info[1] is not None:
            exc = record.exc_info[1]
            payload["exc_type"] = type(exc).__name__
            payload["exc_message"] = str(exc)
            if hasattr(exc, "code"):
                payload["exc_code"] = exc.code
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def configure_logging(level: str = "INFO") -> None:
    """Install the structured formatter on the package logger."""
    handler = logging.StreamHandler()
    handler.setFormatter(StructuredFormatter())

    logger = logging.getLogger("payroll_execution")
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False
