"""Appointment status transitions with audit logging.

Every operation loads the appointment within the caller's clinic, checks the
requested move against the appointment transition table, stamps the
contextual timestamps and writes an audit event in the same transaction.
The status column is only written while it still holds the status that was
read, so a concurrent move makes the later writer fail instead of
overwriting it.
Cancelling an appointment or marking it a no-show also cancels its
outstanding reminders.
"""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime
from typing import Any, Callable

from sqlalchemy.orm import Session

from delivery.audit import record_audit
from errors import ValidationError
from models import Appointment, AppointmentStatus, ConfirmationStatus
from reminders.scheduling import cancel_outstanding_reminders, load_appointment
from time_utils import Clock, SystemClock
from transitions.guarded import compare_and_set_status
from transitions.tables import EntityType
from transitions.validation import require_transition

logger = logging.getLogger(__name__)


def _clean_reason(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


class AppointmentService:
    """Move appointments along the clinical workflow."""

    def __init__(self, session_factory: Callable[[], Session], *, clock: Clock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def confirm(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        actor: str,
        notes: str | None = None,
    ) -> Appointment:
        def apply(now: datetime) -> dict[str, Any]:
            return {
                "confirmed_at": now,
                "confirmed_by": actor,
                "confirmation_status": ConfirmationStatus.CONFIRMED,
            }

        return self._transition(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            actor=actor,
            target=AppointmentStatus.CONFIRMED,
            action="appointment.confirm",
            apply=apply,
            details={"notes": notes} if notes else None,
        )

    def check_in(self, *, clinic_id: int, appointment_id: int, actor: str) -> Appointment:
        def apply(now: datetime) -> dict[str, Any]:
            return {"arrived_at": now}

        return self._transition(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            actor=actor,
            target=AppointmentStatus.ARRIVED,
            action="appointment.check_in",
            apply=apply,
        )

    def start(self, *, clinic_id: int, appointment_id: int, actor: str) -> Appointment:
        def apply(now: datetime) -> dict[str, Any]:
            return {"started_at": now}

        return self._transition(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            actor=actor,
            target=AppointmentStatus.IN_PROGRESS,
            action="appointment.start",
            apply=apply,
        )

    def complete(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        actor: str,
        notes: str | None = None,
    ) -> Appointment:
        def apply(now: datetime) -> dict[str, Any]:
            return {"completed_at": now}

        return self._transition(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            actor=actor,
            target=AppointmentStatus.COMPLETED,
            action="appointment.complete",
            apply=apply,
            details={"notes": notes} if notes else None,
        )

    def mark_no_show(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        actor: str,
        reason: str | None = None,
    ) -> Appointment:
        reason = _clean_reason(reason)

        def apply(now: datetime) -> dict[str, Any]:
            return {"marked_no_show_at": now, "no_show_reason": reason}

        return self._transition(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            actor=actor,
            target=AppointmentStatus.NO_SHOW,
            action="appointment.no_show",
            apply=apply,
            details={"reason": reason} if reason else None,
            cancel_reminders_reason="Appointment marked as no-show",
        )

    def cancel(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        actor: str,
        reason: str | None,
    ) -> Appointment:
        """Cancel an appointment; a non-empty reason is required."""
        reason = _clean_reason(reason)
        if reason is None:
            raise ValidationError.for_field("reason", "Cancellation reason is required")

        def apply(now: datetime) -> dict[str, Any]:
            return {
                "cancelled_at": now,
                "cancelled_by": actor,
                "cancellation_reason": reason,
            }

        return self._transition(
            clinic_id=clinic_id,
            appointment_id=appointment_id,
            actor=actor,
            target=AppointmentStatus.CANCELLED,
            action="appointment.cancel",
            apply=apply,
            details={"reason": reason},
            cancel_reminders_reason="Appointment cancelled",
        )

    def _transition(
        self,
        *,
        clinic_id: int,
        appointment_id: int,
        actor: str,
        target: AppointmentStatus,
        action: str,
        apply: Callable[[datetime], dict[str, Any]],
        details: dict[str, Any] | None = None,
        cancel_reminders_reason: str | None = None,
    ) -> Appointment:
        now = self._clock.now()
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            appointment = load_appointment(session, clinic_id, appointment_id)
            previous_status = AppointmentStatus(appointment.status)
            require_transition(EntityType.APPOINTMENT, previous_status, target)
            try:
                compare_and_set_status(
                    session,
                    Appointment,
                    EntityType.APPOINTMENT,
                    appointment.id,
                    expected_status=previous_status,
                    new_status=target,
                    values={**apply(now), "updated_at": now},
                    conditions=(Appointment.clinic_id == clinic_id,),
                )
                record_audit(
                    session,
                    clinic_id=clinic_id,
                    entity_type=EntityType.APPOINTMENT,
                    entity_id=appointment.id,
                    action=action,
                    actor=actor,
                    now=now,
                    previous_status=previous_status,
                    new_status=target,
                    details=details,
                )
                if cancel_reminders_reason is not None:
                    cancel_outstanding_reminders(
                        session,
                        appointment=appointment,
                        now=now,
                        actor=actor,
                        reason=cancel_reminders_reason,
                    )
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info(
            "Appointment %s moved from %s to %s by %s",
            appointment_id,
            previous_status.value,
            target.value,
            actor,
        )
        return appointment
