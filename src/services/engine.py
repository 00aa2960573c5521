"""Wiring of the engine's services around one session factory and clock."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy.orm import Session

from campaigns.campaign_service import CampaignService
from delivery.backoff import BackoffPolicy
from delivery.channels import ChannelRegistry, build_default_registry
from delivery.message_dispatcher import ScheduledMessageDispatcher
from delivery.message_service import MessageService
from reminders.processor import ReminderProcessor
from reminders.scheduling import ReminderScheduler
from services.database import get_session_factory
from time_utils import Clock, SystemClock
from transitions.appointment_service import AppointmentService


@dataclass(frozen=True)
class EngineServices:
    """Every entry point the HTTP layer and batch jobs call into."""

    dispatcher: ScheduledMessageDispatcher
    reminder_processor: ReminderProcessor
    reminder_scheduler: ReminderScheduler
    appointments: AppointmentService
    campaigns: CampaignService
    messages: MessageService
    channels: ChannelRegistry
    clock: Clock


def build_engine(
    *,
    session_factory: Callable[[], Session] | None = None,
    channels: ChannelRegistry | None = None,
    clock: Clock | None = None,
    backoff: BackoffPolicy | None = None,
) -> EngineServices:
    """Build the engine services, defaulting to the configured database and gateway."""
    session_factory = session_factory or get_session_factory()
    channels = channels or build_default_registry()
    clock = clock or SystemClock()
    backoff = backoff or BackoffPolicy.from_settings()
    return EngineServices(
        dispatcher=ScheduledMessageDispatcher(
            session_factory, channels, backoff=backoff, clock=clock
        ),
        reminder_processor=ReminderProcessor(
            session_factory, channels, backoff=backoff, clock=clock
        ),
        reminder_scheduler=ReminderScheduler(session_factory, clock=clock),
        appointments=AppointmentService(session_factory, clock=clock),
        campaigns=CampaignService(session_factory, clock=clock),
        messages=MessageService(session_factory, clock=clock),
        channels=channels,
        clock=clock,
    )
