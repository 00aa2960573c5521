"""Status transition tables and validation for appointments, campaigns, messages and reminders."""

from transitions.guarded import compare_and_set_status
from transitions.tables import EntityType
from transitions.validation import (
    TransitionVerdict,
    allowed_targets,
    is_terminal,
    require_transition,
    validate_transition,
)

__all__ = [
    "EntityType",
    "TransitionVerdict",
    "allowed_targets",
    "compare_and_set_status",
    "is_terminal",
    "require_transition",
    "validate_transition",
]
