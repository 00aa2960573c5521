"""Unit tests for appointment status transitions."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from errors import InvalidTransitionError, NotFoundError, ValidationError
from helpers.factories import (
    audit_events,
    fetch,
    make_appointment,
    make_clinic,
    make_patient,
    make_reminder,
)
from models import (
    Appointment,
    AppointmentStatus,
    ConfirmationStatus,
    ReminderDelivery,
    ReminderStatus,
)
from time_utils import optional_utc
import transitions.appointment_service as appointment_module
from transitions.appointment_service import AppointmentService


@pytest.fixture()
def appointment(sqlite_session_factory: sessionmaker, clock):
    clinic = make_clinic(sqlite_session_factory)
    patient = make_patient(sqlite_session_factory, clinic)
    return make_appointment(
        sqlite_session_factory, patient, start_time=clock.now() + timedelta(days=1)
    )


@pytest.fixture()
def service(sqlite_session_factory: sessionmaker, clock) -> AppointmentService:
    return AppointmentService(sqlite_session_factory, clock=clock)


def _ids(appointment) -> dict:
    return {"clinic_id": appointment.clinic_id, "appointment_id": appointment.id}


def test_confirm_stamps_confirmation(
    sqlite_session_factory: sessionmaker, clock, service, appointment
) -> None:
    service.confirm(**_ids(appointment), actor="user-7", notes="Called patient")

    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.status == AppointmentStatus.CONFIRMED
    assert stored.confirmation_status == ConfirmationStatus.CONFIRMED
    assert optional_utc(stored.confirmed_at) == clock.now()
    assert stored.confirmed_by == "user-7"
    events = audit_events(
        sqlite_session_factory, entity_type="appointment", entity_id=appointment.id
    )
    assert len(events) == 1
    assert events[0].action == "appointment.confirm"
    assert (events[0].previous_status, events[0].new_status) == ("SCHEDULED", "CONFIRMED")
    assert events[0].actor == "user-7"
    assert events[0].details == {"notes": "Called patient"}


def test_confirming_twice_is_rejected(
    sqlite_session_factory: sessionmaker, service, appointment
) -> None:
    service.confirm(**_ids(appointment), actor="user-7")

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.confirm(**_ids(appointment), actor="user-8")

    assert excinfo.value.code == "INVALID_STATUS_TRANSITION"
    assert excinfo.value.current_status == "CONFIRMED"
    assert excinfo.value.requested_status == "CONFIRMED"
    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.confirmed_by == "user-7"
    assert len(audit_events(sqlite_session_factory, entity_type="appointment")) == 1


def test_full_visit_workflow(
    sqlite_session_factory: sessionmaker, clock, service, appointment
) -> None:
    service.confirm(**_ids(appointment), actor="front-desk")
    clock.advance(hours=24)
    service.check_in(**_ids(appointment), actor="front-desk")
    clock.advance(minutes=10)
    service.start(**_ids(appointment), actor="dr-hopper")
    clock.advance(minutes=30)
    service.complete(**_ids(appointment), actor="dr-hopper", notes="Routine")

    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.status == AppointmentStatus.COMPLETED
    assert optional_utc(stored.completed_at) == clock.now()
    assert optional_utc(stored.started_at) == clock.now() - timedelta(minutes=30)
    assert optional_utc(stored.arrived_at) == clock.now() - timedelta(minutes=40)
    actions = [
        event.action for event in audit_events(sqlite_session_factory, entity_type="appointment")
    ]
    assert actions == [
        "appointment.confirm",
        "appointment.check_in",
        "appointment.start",
        "appointment.complete",
    ]


def test_completed_appointment_is_terminal(service, appointment) -> None:
    service.confirm(**_ids(appointment), actor="front-desk")
    service.check_in(**_ids(appointment), actor="front-desk")
    service.start(**_ids(appointment), actor="dr-hopper")
    service.complete(**_ids(appointment), actor="dr-hopper")

    with pytest.raises(InvalidTransitionError):
        service.cancel(**_ids(appointment), actor="front-desk", reason="Too late")


def test_cannot_check_in_unconfirmed_appointment(service, appointment) -> None:
    with pytest.raises(InvalidTransitionError):
        service.check_in(**_ids(appointment), actor="front-desk")


def test_cannot_start_before_check_in(service, appointment) -> None:
    service.confirm(**_ids(appointment), actor="front-desk")
    with pytest.raises(InvalidTransitionError):
        service.start(**_ids(appointment), actor="dr-hopper")


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_cancel_requires_reason(
    sqlite_session_factory: sessionmaker, service, appointment, reason
) -> None:
    with pytest.raises(ValidationError) as excinfo:
        service.cancel(**_ids(appointment), actor="front-desk", reason=reason)

    assert excinfo.value.details == {"fields": {"reason": "Cancellation reason is required"}}
    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.status == AppointmentStatus.SCHEDULED


def test_cancel_cancels_outstanding_reminders(
    sqlite_session_factory: sessionmaker, clock, service, appointment
) -> None:
    """Only reminders not yet attempted are cancelled."""
    due = clock.now() + timedelta(hours=2)
    pending = make_reminder(sqlite_session_factory, appointment, due_at=due, created_at=clock.now())
    retrying = make_reminder(
        sqlite_session_factory,
        appointment,
        due_at=due,
        created_at=clock.now(),
        status=ReminderStatus.RETRYING,
        next_retry_at=clock.now() + timedelta(minutes=5),
    )
    sent = make_reminder(
        sqlite_session_factory,
        appointment,
        due_at=clock.now() - timedelta(hours=1),
        created_at=clock.now(),
        status=ReminderStatus.SENT,
    )

    service.cancel(**_ids(appointment), actor="front-desk", reason="Patient called to cancel")

    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.status == AppointmentStatus.CANCELLED
    assert stored.cancellation_reason == "Patient called to cancel"
    assert stored.cancelled_by == "front-desk"
    assert optional_utc(stored.cancelled_at) == clock.now()

    for reminder in (pending, retrying):
        row = fetch(sqlite_session_factory, ReminderDelivery, reminder.id)
        assert row.status == ReminderStatus.CANCELLED
        assert row.next_retry_at is None
    assert fetch(sqlite_session_factory, ReminderDelivery, sent.id).status == ReminderStatus.SENT

    reminder_events = audit_events(sqlite_session_factory, entity_type="reminder_delivery")
    assert sorted(int(event.entity_id) for event in reminder_events) == sorted(
        [pending.id, retrying.id]
    )
    assert {event.details["reason"] for event in reminder_events} == {"Appointment cancelled"}


def test_no_show_records_reason_and_cancels_reminders(
    sqlite_session_factory: sessionmaker, clock, service, appointment
) -> None:
    reminder = make_reminder(
        sqlite_session_factory,
        appointment,
        due_at=clock.now() + timedelta(hours=1),
        created_at=clock.now(),
    )
    service.confirm(**_ids(appointment), actor="front-desk")

    service.mark_no_show(**_ids(appointment), actor="front-desk", reason="  Did not arrive ")

    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.status == AppointmentStatus.NO_SHOW
    assert stored.no_show_reason == "Did not arrive"
    assert optional_utc(stored.marked_no_show_at) == clock.now()
    row = fetch(sqlite_session_factory, ReminderDelivery, reminder.id)
    assert row.status == ReminderStatus.CANCELLED
    assert row.last_error == "Appointment marked as no-show"


def test_appointment_from_other_clinic_is_not_found(
    sqlite_session_factory: sessionmaker, service, appointment
) -> None:
    other = make_clinic(sqlite_session_factory, name="Elsewhere")
    with pytest.raises(NotFoundError):
        service.confirm(clinic_id=other.id, appointment_id=appointment.id, actor="user-7")


def test_stale_confirm_cannot_reopen_cancelled_appointment(
    monkeypatch, sqlite_session_factory: sessionmaker, service, appointment
) -> None:
    """A cancel committed after confirm() read the row wins; confirm is rejected."""
    original_load = appointment_module.load_appointment
    interleaved: list[bool] = []

    def load_then_cancel(session, clinic_id, appointment_id):
        loaded = original_load(session, clinic_id, appointment_id)
        if not interleaved:
            interleaved.append(True)
            service.cancel(**_ids(appointment), actor="front-desk", reason="Clinic closed")
        return loaded

    monkeypatch.setattr(appointment_module, "load_appointment", load_then_cancel)

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.confirm(**_ids(appointment), actor="user-7")

    assert excinfo.value.current_status == "CANCELLED"
    assert excinfo.value.requested_status == "CONFIRMED"
    stored = fetch(sqlite_session_factory, Appointment, appointment.id)
    assert stored.status == AppointmentStatus.CANCELLED
    assert stored.confirmed_by is None
    assert stored.cancellation_reason == "Clinic closed"
    events = audit_events(
        sqlite_session_factory, entity_type="appointment", entity_id=appointment.id
    )
    assert [(event.previous_status, event.new_status) for event in events] == [
        ("SCHEDULED", "CANCELLED")
    ]
