"""Audit event emission for transitions and delivery attempts."""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Mapping

from sqlalchemy.orm import Session

from models import AuditEvent
from transitions.tables import EntityType

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _status_value(value: Enum | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def record_audit(
    session: Session,
    *,
    clinic_id: int | None,
    entity_type: EntityType,
    entity_id: object,
    action: str,
    actor: str,
    now: datetime,
    previous_status: Enum | str | None = None,
    new_status: Enum | str | None = None,
    details: Mapping[str, Any] | None = None,
) -> AuditEvent:
    """Stage an audit event in ``session``; the caller commits it with the state change."""
    event = AuditEvent(
        clinic_id=clinic_id,
        entity_type=entity_type.value,
        entity_id=str(entity_id),
        action=action,
        previous_status=_status_value(previous_status),
        new_status=_status_value(new_status),
        actor=actor,
        details=dict(details) if details else None,
        created_at=now,
    )
    session.add(event)
    logger.debug(
        "Audit: %s %s:%s %s -> %s by %s",
        action,
        entity_type.value,
        entity_id,
        event.previous_status,
        event.new_status,
        actor,
    )
    return event
