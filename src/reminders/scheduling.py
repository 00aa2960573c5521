"""Reminder scheduling, cancellation and confirmation replies."""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Sequence

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import ReminderTimingConfig, settings
from delivery.audit import SYSTEM_ACTOR, record_audit
from delivery.channels import patient_address
from errors import NotFoundError, ValidationError
from models import (
    Appointment,
    AppointmentStatus,
    ConfirmationStatus,
    MessageChannel,
    ReminderDelivery,
    ReminderStatus,
    ReminderType,
)
from time_utils import Clock, SystemClock, to_utc
from transitions import EntityType, compare_and_set_status, is_terminal, require_transition

logger = logging.getLogger(__name__)

PATIENT_ACTOR = "patient"

_OUTSTANDING = (ReminderStatus.PENDING, ReminderStatus.RETRYING)


@dataclass(frozen=True)
class ReminderTiming:
    """One step of a reminder sequence."""

    hours_before: int
    channel: MessageChannel
    reminder_type: ReminderType

    @classmethod
    def from_config(cls, entry: ReminderTimingConfig) -> "ReminderTiming":
        return cls(
            hours_before=entry.hours_before,
            channel=MessageChannel(entry.channel.upper()),
            reminder_type=ReminderType(entry.reminder_type.upper()),
        )


def default_sequence() -> list[ReminderTiming]:
    return [ReminderTiming.from_config(entry) for entry in settings.reminders.sequence]


@dataclass(frozen=True)
class ScheduleResult:
    """Outcome of scheduling one step of a sequence."""

    success: bool
    reminder_id: int | None = None
    due_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "reminderId": self.reminder_id,
            "dueAt": self.due_at.isoformat() if self.due_at else None,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
        }


def _has_address(appointment: Appointment, channel: MessageChannel) -> bool:
    if channel == MessageChannel.IN_APP:
        return True
    return patient_address(appointment.patient, channel) is not None


def load_appointment(session: Session, clinic_id: int, appointment_id: int) -> Appointment:
    """Return the clinic's appointment or raise ``NotFoundError``."""
    appointment = session.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.clinic_id == clinic_id,
        )
    ).scalar_one_or_none()
    if appointment is None:
        raise NotFoundError("Appointment", appointment_id)
    return appointment


def cancel_outstanding_reminders(
    session: Session,
    *,
    appointment: Appointment,
    now: datetime,
    actor: str,
    reason: str,
) -> int:
    """Cancel the appointment's reminders that have not been attempted yet.

    Each row is moved with its own conditional update so a reminder claimed by
    a concurrent processor is left alone. The caller commits.
    """
    reminder_ids = session.execute(
        select(ReminderDelivery.id, ReminderDelivery.status).where(
            ReminderDelivery.appointment_id == appointment.id,
            ReminderDelivery.status.in_(_OUTSTANDING),
        )
    ).all()
    cancelled = 0
    for reminder_id, previous_status in reminder_ids:
        result = session.execute(
            update(ReminderDelivery)
            .where(
                ReminderDelivery.id == reminder_id,
                ReminderDelivery.status.in_(_OUTSTANDING),
            )
            .values(status=ReminderStatus.CANCELLED, next_retry_at=None, last_error=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            continue
        cancelled += 1
        record_audit(
            session,
            clinic_id=appointment.clinic_id,
            entity_type=EntityType.REMINDER_DELIVERY,
            entity_id=reminder_id,
            action="reminder.cancel",
            actor=actor,
            now=now,
            previous_status=previous_status,
            new_status=ReminderStatus.CANCELLED,
            details={"reason": reason},
        )
    if cancelled:
        logger.info("Cancelled %s reminders for appointment %s", cancelled, appointment.id)
    return cancelled


class ReminderScheduler:
    """Creates, cancels and answers appointment reminders."""

    def __init__(self, session_factory: Callable[[], Session], *, clock: Clock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def schedule_reminders_for_appointment(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        sequence: Sequence[ReminderTiming] | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> list[ScheduleResult]:
        """Create one PENDING reminder per sequence step that is still ahead of now."""
        now = self._clock.now()
        timings: Iterable[ReminderTiming] = sequence if sequence is not None else default_sequence()
        results: list[ScheduleResult] = []
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            appointment = load_appointment(session, clinic_id, appointment_id)
            if is_terminal(EntityType.APPOINTMENT, appointment.status):
                return [
                    ScheduleResult(
                        success=False,
                        error_code="INVALID_STATUS",
                        error_message=(
                            "Cannot schedule reminders for an appointment with status: "
                            f"{AppointmentStatus(appointment.status).value}"
                        ),
                    )
                ]
            start_time = to_utc(appointment.start_time)
            try:
                for timing in timings:
                    results.append(self._schedule_one(session, appointment, start_time, timing, now, actor))
                session.commit()
            except Exception:
                session.rollback()
                raise
        scheduled = sum(1 for result in results if result.success)
        logger.info("Scheduled %s reminders for appointment %s", scheduled, appointment_id)
        return results

    def _schedule_one(
        self,
        session: Session,
        appointment: Appointment,
        start_time: datetime,
        timing: ReminderTiming,
        now: datetime,
        actor: str,
    ) -> ScheduleResult:
        due_at = start_time - timedelta(hours=timing.hours_before)
        if due_at < now:
            return ScheduleResult(
                success=False,
                due_at=due_at,
                error_code="TIME_PASSED",
                error_message=f"Reminder time ({timing.hours_before}h before) has already passed",
            )
        if not _has_address(appointment, timing.channel):
            return ScheduleResult(
                success=False,
                error_code="NO_RECIPIENT",
                error_message=f"Patient has no {timing.channel.value} address",
            )
        existing = session.execute(
            select(ReminderDelivery.id).where(
                ReminderDelivery.appointment_id == appointment.id,
                ReminderDelivery.channel == timing.channel,
                ReminderDelivery.due_at == due_at,
                ReminderDelivery.status.in_((ReminderStatus.PENDING, ReminderStatus.SENDING)),
            )
        ).scalar()
        if existing is not None:
            return ScheduleResult(success=True, reminder_id=existing, due_at=due_at)

        reminder = ReminderDelivery(
            clinic_id=appointment.clinic_id,
            appointment_id=appointment.id,
            patient_id=appointment.patient_id,
            channel=timing.channel,
            reminder_type=timing.reminder_type,
            due_at=due_at,
            status=ReminderStatus.PENDING,
            attempt_count=0,
            created_at=now,
        )
        session.add(reminder)
        session.flush()
        record_audit(
            session,
            clinic_id=appointment.clinic_id,
            entity_type=EntityType.REMINDER_DELIVERY,
            entity_id=reminder.id,
            action="reminder.schedule",
            actor=actor,
            now=now,
            new_status=ReminderStatus.PENDING,
            details={"channel": timing.channel.value, "reminder_type": timing.reminder_type.value},
        )
        return ScheduleResult(success=True, reminder_id=reminder.id, due_at=due_at)

    def cancel_reminders_for_appointment(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        actor: str = SYSTEM_ACTOR,
        reason: str = "Appointment cancelled",
    ) -> int:
        """Cancel every outstanding reminder of an appointment; return how many."""
        now = self._clock.now()
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            appointment = load_appointment(session, clinic_id, appointment_id)
            try:
                count = cancel_outstanding_reminders(
                    session, appointment=appointment, now=now, actor=actor, reason=reason
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return count

    def process_confirmation_response(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        response: ConfirmationStatus | str,
        response_text: str | None = None,
    ) -> Appointment:
        """Apply a patient's reply to a confirmation reminder.

        CONFIRMED marks the confirmation dimension and, from SCHEDULED, also
        moves the appointment to CONFIRMED. DECLINED cancels the appointment
        and its outstanding reminders.
        """
        try:
            response = ConfirmationStatus(str(getattr(response, "value", response)).upper())
        except ValueError as exc:
            raise ValidationError.for_field("response", f"Unknown response: {response}") from exc
        if response not in (ConfirmationStatus.CONFIRMED, ConfirmationStatus.DECLINED):
            raise ValidationError.for_field("response", "Response must be CONFIRMED or DECLINED")

        now = self._clock.now()
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            appointment = load_appointment(session, clinic_id, appointment_id)
            previous_status = AppointmentStatus(appointment.status)
            try:
                if response == ConfirmationStatus.CONFIRMED:
                    self._apply_confirmed(session, appointment, previous_status, now)
                else:
                    self._apply_declined(session, appointment, previous_status, now)
                self._record_response(session, appointment, response, response_text, now)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return appointment

    def _apply_confirmed(
        self,
        session: Session,
        appointment: Appointment,
        previous_status: AppointmentStatus,
        now: datetime,
    ) -> None:
        if is_terminal(EntityType.APPOINTMENT, previous_status):
            require_transition(EntityType.APPOINTMENT, previous_status, AppointmentStatus.CONFIRMED)
        new_status = previous_status
        if previous_status == AppointmentStatus.SCHEDULED:
            new_status = AppointmentStatus.CONFIRMED
        compare_and_set_status(
            session,
            Appointment,
            EntityType.APPOINTMENT,
            appointment.id,
            expected_status=previous_status,
            new_status=new_status,
            values={
                "confirmation_status": ConfirmationStatus.CONFIRMED,
                "confirmed_at": now,
                "confirmed_by": PATIENT_ACTOR,
                "updated_at": now,
            },
        )
        record_audit(
            session,
            clinic_id=appointment.clinic_id,
            entity_type=EntityType.APPOINTMENT,
            entity_id=appointment.id,
            action="appointment.confirm",
            actor=PATIENT_ACTOR,
            now=now,
            previous_status=previous_status,
            new_status=new_status,
            details={"source": "reminder_reply"},
        )

    def _apply_declined(
        self,
        session: Session,
        appointment: Appointment,
        previous_status: AppointmentStatus,
        now: datetime,
    ) -> None:
        require_transition(EntityType.APPOINTMENT, previous_status, AppointmentStatus.CANCELLED)
        reason = "Patient declined via reminder"
        compare_and_set_status(
            session,
            Appointment,
            EntityType.APPOINTMENT,
            appointment.id,
            expected_status=previous_status,
            new_status=AppointmentStatus.CANCELLED,
            values={
                "confirmation_status": ConfirmationStatus.DECLINED,
                "cancelled_at": now,
                "cancelled_by": PATIENT_ACTOR,
                "cancellation_reason": reason,
                "updated_at": now,
            },
        )
        record_audit(
            session,
            clinic_id=appointment.clinic_id,
            entity_type=EntityType.APPOINTMENT,
            entity_id=appointment.id,
            action="appointment.cancel",
            actor=PATIENT_ACTOR,
            now=now,
            previous_status=previous_status,
            new_status=AppointmentStatus.CANCELLED,
            details={"source": "reminder_reply", "reason": reason},
        )
        cancel_outstanding_reminders(
            session, appointment=appointment, now=now, actor=PATIENT_ACTOR, reason=reason
        )

    def _record_response(
        self,
        session: Session,
        appointment: Appointment,
        response: ConfirmationStatus,
        response_text: str | None,
        now: datetime,
    ) -> None:
        latest = session.execute(
            select(ReminderDelivery)
            .where(
                ReminderDelivery.appointment_id == appointment.id,
                ReminderDelivery.reminder_type == ReminderType.CONFIRMATION,
                ReminderDelivery.status == ReminderStatus.SENT,
            )
            .order_by(ReminderDelivery.sent_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if latest is None:
            return
        latest.response_type = response.value
        latest.responded_at = now
        details = {"response": response.value}
        if response_text:
            details["text"] = response_text
        record_audit(
            session,
            clinic_id=appointment.clinic_id,
            entity_type=EntityType.REMINDER_DELIVERY,
            entity_id=latest.id,
            action="reminder.response",
            actor=PATIENT_ACTOR,
            now=now,
            details=details,
        )
