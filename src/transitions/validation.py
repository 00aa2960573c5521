"""Pure status transition validation.

``validate_transition`` never raises for an illegal transition; it returns a
``TransitionVerdict`` so callers decide how to surface the rejection.
Unknown state names are an input error and raise ``ValueError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from errors import InvalidTransitionError
from transitions.tables import (
    ACTION_VERBS,
    ENTITY_LABELS,
    STATUS_TYPES,
    TRANSITION_TABLES,
    EntityType,
)


@dataclass(frozen=True)
class TransitionVerdict:
    """Outcome of a transition check."""

    entity_type: EntityType
    current_status: str
    requested_status: str
    allowed: bool
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.allowed

    def raise_if_rejected(self) -> None:
        """Raise ``InvalidTransitionError`` when the transition was rejected."""
        if self.allowed:
            return
        raise InvalidTransitionError(
            self.reason or "Invalid status transition",
            entity_type=self.entity_type.value,
            current_status=self.current_status,
            requested_status=self.requested_status,
        )


def _coerce_status(entity_type: EntityType, value: Enum | str) -> Enum:
    status_type = STATUS_TYPES[entity_type]
    if isinstance(value, status_type):
        return value
    raw = value.value if isinstance(value, Enum) else str(value)
    try:
        return status_type(raw.strip().upper())
    except ValueError as exc:
        raise ValueError(f"Unknown {entity_type.value} status: {raw}") from exc


def _rejection_reason(entity_type: EntityType, current: Enum, requested: Enum) -> str:
    verb = ACTION_VERBS[entity_type].get(requested.value)
    label = ENTITY_LABELS[entity_type]
    if verb is None:
        return (
            f"Cannot move {label} from status {current.value} to {requested.value}"
        )
    return f"Cannot {verb} {label} with status: {current.value}"


def allowed_targets(entity_type: EntityType | str, current: Enum | str) -> frozenset:
    """Return the statuses reachable from ``current``."""
    entity_type = EntityType(entity_type)
    return TRANSITION_TABLES[entity_type][_coerce_status(entity_type, current)]


def is_terminal(entity_type: EntityType | str, current: Enum | str) -> bool:
    """Return whether ``current`` has no outbound transitions."""
    return not allowed_targets(entity_type, current)


def validate_transition(
    entity_type: EntityType | str,
    current_status: Enum | str,
    requested_status: Enum | str,
) -> TransitionVerdict:
    """Check ``current_status -> requested_status`` against the entity's table."""
    entity_type = EntityType(entity_type)
    current = _coerce_status(entity_type, current_status)
    requested = _coerce_status(entity_type, requested_status)
    allowed = requested in TRANSITION_TABLES[entity_type][current]
    return TransitionVerdict(
        entity_type=entity_type,
        current_status=current.value,
        requested_status=requested.value,
        allowed=allowed,
        reason=None if allowed else _rejection_reason(entity_type, current, requested),
    )


def require_transition(
    entity_type: EntityType | str,
    current_status: Enum | str,
    requested_status: Enum | str,
) -> None:
    """Raise ``InvalidTransitionError`` unless the transition is legal."""
    validate_transition(entity_type, current_status, requested_status).raise_if_rejected()
