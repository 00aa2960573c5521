"""State-transition endpoints for appointments, campaigns and messages.

Every route acts within the clinic named by the ``x-clinic-id`` header and
records the ``x-actor-id`` header as the actor on the audit trail. Channel
gateway callbacks (inbound messages and delivery reports) present the shared
trigger secret instead of an actor.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from api.cron import require_cron_secret
from api.dependencies import RequestContext, get_clinic_id, get_request_context, get_services
from models import (
    AppointmentStatus,
    CampaignStatus,
    ConfirmationStatus,
    MessageChannel,
    MessageDirection,
    MessageStatus,
    ReminderType,
)
from reminders.scheduling import ReminderTiming
from services.engine import EngineServices

router = APIRouter(prefix="/api", tags=["transitions"])


class NotesPayload(BaseModel):
    notes: str | None = None


class ReasonPayload(BaseModel):
    reason: str | None = None


class ConfirmationResponsePayload(BaseModel):
    response: ConfirmationStatus
    response_text: str | None = Field(default=None, alias="responseText")

    model_config = ConfigDict(populate_by_name=True)


class ReminderTimingPayload(BaseModel):
    hours_before: int = Field(alias="hoursBefore", gt=0)
    channel: MessageChannel
    reminder_type: ReminderType = Field(default=ReminderType.STANDARD, alias="reminderType")

    model_config = ConfigDict(populate_by_name=True)

    def to_timing(self) -> ReminderTiming:
        return ReminderTiming(
            hours_before=self.hours_before,
            channel=self.channel,
            reminder_type=self.reminder_type,
        )


class SchedulePayload(BaseModel):
    sequence: list[ReminderTimingPayload] | None = None


class CreateMessagePayload(BaseModel):
    patient_id: int = Field(alias="patientId")
    channel: MessageChannel
    body: str = Field(min_length=1)
    subject: str | None = None
    scheduled_at: datetime | None = Field(default=None, alias="scheduledAt")
    to_address: str | None = Field(default=None, alias="toAddress")
    related_type: str | None = Field(default=None, alias="relatedType")
    related_id: str | None = Field(default=None, alias="relatedId")

    model_config = ConfigDict(populate_by_name=True)


class InboundMessagePayload(BaseModel):
    from_address: str = Field(alias="fromAddress", min_length=1)
    body: str = Field(min_length=1)
    channel: MessageChannel = MessageChannel.SMS
    to_address: str | None = Field(default=None, alias="toAddress")
    external_id: str | None = Field(default=None, alias="externalId")

    model_config = ConfigDict(populate_by_name=True)


class DeliveryStatusPayload(BaseModel):
    external_id: str = Field(alias="externalId", min_length=1)
    status: MessageStatus
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    status: AppointmentStatus
    confirmation_status: ConfirmationStatus
    start_time: datetime
    confirmed_at: datetime | None = None
    arrived_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    marked_no_show_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None


class CampaignOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    status: CampaignStatus
    activated_at: datetime | None = None
    paused_at: datetime | None = None
    archived_at: datetime | None = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    channel: MessageChannel
    direction: MessageDirection
    status: MessageStatus
    scheduled_at: datetime | None = None
    delivered_at: datetime | None = None
    read_at: datetime | None = None


def _ok(data: Any) -> dict[str, Any]:
    return {"success": True, "data": data}


def _appointment(appointment: Any) -> dict[str, Any]:
    return _ok(AppointmentOut.model_validate(appointment).model_dump(mode="json"))


def _campaign(campaign: Any) -> dict[str, Any]:
    return _ok(CampaignOut.model_validate(campaign).model_dump(mode="json"))


def _message(message: Any) -> dict[str, Any]:
    return _ok(MessageOut.model_validate(message).model_dump(mode="json"))


@router.post("/appointments/{appointment_id}/confirm")
def confirm_appointment(
    appointment_id: int,
    payload: NotesPayload | None = None,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.appointments.confirm(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        actor=context.actor,
        notes=payload.notes if payload else None,
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/check-in")
def check_in_appointment(
    appointment_id: int,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.appointments.check_in(
        clinic_id=context.clinic_id, appointment_id=appointment_id, actor=context.actor
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/start")
def start_appointment(
    appointment_id: int,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.appointments.start(
        clinic_id=context.clinic_id, appointment_id=appointment_id, actor=context.actor
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/complete")
def complete_appointment(
    appointment_id: int,
    payload: NotesPayload | None = None,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.appointments.complete(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        actor=context.actor,
        notes=payload.notes if payload else None,
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/no-show")
def mark_no_show(
    appointment_id: int,
    payload: ReasonPayload | None = None,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.appointments.mark_no_show(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        actor=context.actor,
        reason=payload.reason if payload else None,
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: int,
    payload: ReasonPayload | None = None,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.appointments.cancel(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        actor=context.actor,
        reason=payload.reason if payload else None,
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/confirmation-response")
def confirmation_response(
    appointment_id: int,
    payload: ConfirmationResponsePayload,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    appointment = services.reminder_scheduler.process_confirmation_response(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        response=payload.response,
        response_text=payload.response_text,
    )
    return _appointment(appointment)


@router.post("/appointments/{appointment_id}/reminders/schedule")
def schedule_reminders(
    appointment_id: int,
    payload: SchedulePayload | None = None,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    sequence = None
    if payload is not None and payload.sequence is not None:
        sequence = [entry.to_timing() for entry in payload.sequence]
    results = services.reminder_scheduler.schedule_reminders_for_appointment(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        sequence=sequence,
        actor=context.actor,
    )
    return _ok([result.to_dict() for result in results])


@router.post("/appointments/{appointment_id}/reminders/cancel")
def cancel_reminders(
    appointment_id: int,
    payload: ReasonPayload | None = None,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    reason = payload.reason if payload and payload.reason else "Reminders cancelled"
    cancelled = services.reminder_scheduler.cancel_reminders_for_appointment(
        clinic_id=context.clinic_id,
        appointment_id=appointment_id,
        actor=context.actor,
        reason=reason,
    )
    return _ok({"cancelled": cancelled})


@router.post("/campaigns/{campaign_id}/activate")
def activate_campaign(
    campaign_id: int,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    campaign = services.campaigns.activate(
        clinic_id=context.clinic_id, campaign_id=campaign_id, actor=context.actor
    )
    return _campaign(campaign)


@router.post("/campaigns/{campaign_id}/pause")
def pause_campaign(
    campaign_id: int,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    campaign = services.campaigns.pause(
        clinic_id=context.clinic_id, campaign_id=campaign_id, actor=context.actor
    )
    return _campaign(campaign)


@router.post("/campaigns/{campaign_id}/archive")
def archive_campaign(
    campaign_id: int,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    campaign = services.campaigns.archive(
        clinic_id=context.clinic_id, campaign_id=campaign_id, actor=context.actor
    )
    return _campaign(campaign)


@router.post("/messages", status_code=201)
def create_message(
    payload: CreateMessagePayload,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    message = services.messages.create_outbound_message(
        clinic_id=context.clinic_id,
        patient_id=payload.patient_id,
        channel=payload.channel,
        body=payload.body,
        subject=payload.subject,
        scheduled_at=payload.scheduled_at,
        to_address=payload.to_address,
        related_type=payload.related_type,
        related_id=payload.related_id,
        actor=context.actor,
    )
    return _message(message)


@router.post("/messages/{message_id}/read")
def mark_message_read(
    message_id: int,
    context: RequestContext = Depends(get_request_context),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    message = services.messages.mark_message_read(
        clinic_id=context.clinic_id, message_id=message_id, actor=context.actor
    )
    return _message(message)


@router.post(
    "/messages/inbound",
    status_code=201,
    dependencies=[Depends(require_cron_secret)],
)
def receive_inbound_message(
    payload: InboundMessagePayload,
    clinic_id: int = Depends(get_clinic_id),
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    message = services.messages.receive_inbound_message(
        clinic_id=clinic_id,
        from_address=payload.from_address,
        body=payload.body,
        channel=payload.channel,
        to_address=payload.to_address,
        external_id=payload.external_id,
    )
    return _message(message)


@router.post("/messages/delivery-status", dependencies=[Depends(require_cron_secret)])
def delivery_status(
    payload: DeliveryStatusPayload,
    services: EngineServices = Depends(get_services),
) -> dict[str, Any]:
    message = services.messages.apply_delivery_status(
        external_id=payload.external_id, status=payload.status, error=payload.error
    )
    return _message(message)
