"""Legal status transition tables for every stateful entity.

A source state missing from a table, or mapped to an empty set, is terminal.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping

from models import AppointmentStatus, CampaignStatus, MessageStatus, ReminderStatus


class EntityType(str, Enum):
    APPOINTMENT = "appointment"
    CAMPAIGN = "campaign"
    MESSAGE = "message"
    REMINDER_DELIVERY = "reminder_delivery"


APPOINTMENT_TRANSITIONS: Mapping[AppointmentStatus, frozenset[AppointmentStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {AppointmentStatus.CONFIRMED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.CONFIRMED: frozenset(
        {AppointmentStatus.ARRIVED, AppointmentStatus.NO_SHOW, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.ARRIVED: frozenset(
        {AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED}
    ),
    AppointmentStatus.IN_PROGRESS: frozenset({AppointmentStatus.COMPLETED}),
    AppointmentStatus.COMPLETED: frozenset(),
    AppointmentStatus.NO_SHOW: frozenset(),
    AppointmentStatus.CANCELLED: frozenset(),
}

CAMPAIGN_TRANSITIONS: Mapping[CampaignStatus, frozenset[CampaignStatus]] = {
    CampaignStatus.DRAFT: frozenset({CampaignStatus.ACTIVE, CampaignStatus.ARCHIVED}),
    CampaignStatus.SCHEDULED: frozenset({CampaignStatus.ACTIVE, CampaignStatus.ARCHIVED}),
    CampaignStatus.PAUSED: frozenset({CampaignStatus.ACTIVE, CampaignStatus.ARCHIVED}),
    CampaignStatus.ACTIVE: frozenset({CampaignStatus.PAUSED, CampaignStatus.ARCHIVED}),
    CampaignStatus.ARCHIVED: frozenset(),
}

# SENDING and RETRYING are the in-flight claim markers for first attempts and
# retries. PERMANENTLY_FAILED accepts nothing.
MESSAGE_TRANSITIONS: Mapping[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset(
        {MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.FAILED}
    ),
    MessageStatus.SCHEDULED: frozenset(
        {MessageStatus.SENDING, MessageStatus.SENT, MessageStatus.FAILED}
    ),
    MessageStatus.SENDING: frozenset(
        {
            MessageStatus.SENT,
            MessageStatus.DELIVERED,
            MessageStatus.FAILED,
            MessageStatus.PERMANENTLY_FAILED,
        }
    ),
    MessageStatus.FAILED: frozenset({MessageStatus.RETRYING}),
    MessageStatus.RETRYING: frozenset(
        {
            MessageStatus.SENT,
            MessageStatus.DELIVERED,
            MessageStatus.FAILED,
            MessageStatus.PERMANENTLY_FAILED,
        }
    ),
    MessageStatus.SENT: frozenset({MessageStatus.DELIVERED}),
    MessageStatus.DELIVERED: frozenset({MessageStatus.READ}),
    MessageStatus.READ: frozenset(),
    MessageStatus.PERMANENTLY_FAILED: frozenset(),
}

REMINDER_TRANSITIONS: Mapping[ReminderStatus, frozenset[ReminderStatus]] = {
    ReminderStatus.PENDING: frozenset(
        {ReminderStatus.SENDING, ReminderStatus.SKIPPED, ReminderStatus.CANCELLED}
    ),
    ReminderStatus.SENDING: frozenset(
        {
            ReminderStatus.SENT,
            ReminderStatus.FAILED,
            ReminderStatus.RETRYING,
            ReminderStatus.PERMANENTLY_FAILED,
            ReminderStatus.SKIPPED,
            ReminderStatus.CANCELLED,
        }
    ),
    ReminderStatus.RETRYING: frozenset(
        {ReminderStatus.SENDING, ReminderStatus.SKIPPED, ReminderStatus.CANCELLED}
    ),
    ReminderStatus.SENT: frozenset(),
    ReminderStatus.FAILED: frozenset(),
    ReminderStatus.PERMANENTLY_FAILED: frozenset(),
    ReminderStatus.SKIPPED: frozenset(),
    ReminderStatus.CANCELLED: frozenset(),
}

TRANSITION_TABLES: Mapping[EntityType, Mapping] = {
    EntityType.APPOINTMENT: APPOINTMENT_TRANSITIONS,
    EntityType.CAMPAIGN: CAMPAIGN_TRANSITIONS,
    EntityType.MESSAGE: MESSAGE_TRANSITIONS,
    EntityType.REMINDER_DELIVERY: REMINDER_TRANSITIONS,
}

STATUS_TYPES: Mapping[EntityType, type[Enum]] = {
    EntityType.APPOINTMENT: AppointmentStatus,
    EntityType.CAMPAIGN: CampaignStatus,
    EntityType.MESSAGE: MessageStatus,
    EntityType.REMINDER_DELIVERY: ReminderStatus,
}

# Verb used in rejection reasons, keyed by requested state.
ACTION_VERBS: Mapping[EntityType, Mapping[str, str]] = {
    EntityType.APPOINTMENT: {
        "CONFIRMED": "confirm",
        "ARRIVED": "check in",
        "IN_PROGRESS": "start",
        "COMPLETED": "complete",
        "NO_SHOW": "mark as no-show",
        "CANCELLED": "cancel",
    },
    EntityType.CAMPAIGN: {
        "ACTIVE": "activate",
        "PAUSED": "pause",
        "ARCHIVED": "archive",
    },
    EntityType.MESSAGE: {
        "SENDING": "send",
        "SENT": "send",
        "RETRYING": "retry",
        "READ": "mark as read",
    },
    EntityType.REMINDER_DELIVERY: {
        "SENDING": "send",
        "CANCELLED": "cancel",
        "SKIPPED": "skip",
    },
}

ENTITY_LABELS: Mapping[EntityType, str] = {
    EntityType.APPOINTMENT: "an appointment",
    EntityType.CAMPAIGN: "a campaign",
    EntityType.MESSAGE: "a message",
    EntityType.REMINDER_DELIVERY: "a reminder",
}


def _check_exhaustive() -> None:
    for entity_type, table in TRANSITION_TABLES.items():
        status_type = STATUS_TYPES[entity_type]
        missing = set(status_type) - set(table)
        if missing:
            names = ", ".join(sorted(member.value for member in missing))
            raise RuntimeError(f"Transition table for {entity_type.value} misses: {names}")


_check_exhaustive()
