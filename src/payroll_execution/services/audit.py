"""Audit trail recording for mutating operations."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from payroll_execution.models import AuditEvent


def _serialize_value(value: Any) -> Any:
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return _serialize_dict(value)
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    return value


def _serialize_dict(d: dict[str, Any]) -> dict[str, Any]:
    """Make a dict JSON-safe (Decimal/UUID/date to str)."""
    return {k: _serialize_value(v) for k, v in d.items()}


class AuditRecorder:
    """Appends AuditEvent rows in the caller's transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: str,
        actor_user_id: UUID | None = None,
        before: dict[str, Any] | None = None,
        after: dict[str, Any] | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_user_id=actor_user_id,
            before_json=_serialize_dict(before) if before is not None else None,
            after_json=_serialize_dict(after) if after is not None else None,
        )
        self.session.add(event)
        return event
