"""Unit tests for compare-and-set row claims."""

from __future__ import annotations

from contextlib import closing
from datetime import timedelta

from sqlalchemy.orm import sessionmaker

from delivery.claims import finish_claim, try_claim
from helpers.factories import fetch, make_appointment, make_clinic, make_patient, make_reminder
from models import ReminderDelivery, ReminderStatus


def _pending_reminder(session_factory: sessionmaker, clock):
    clinic = make_clinic(session_factory)
    patient = make_patient(session_factory, clinic)
    appointment = make_appointment(
        session_factory, patient, start_time=clock.now() + timedelta(days=1)
    )
    return make_reminder(
        session_factory, appointment, due_at=clock.now(), created_at=clock.now()
    )


def _claim(session_factory: sessionmaker, reminder_id: int, now, lease_seconds: int = 300):
    with closing(session_factory()) as session:
        claim = try_claim(
            session,
            ReminderDelivery,
            reminder_id,
            from_statuses=(ReminderStatus.PENDING,),
            in_flight_status=ReminderStatus.SENDING,
            now=now,
            lease_seconds=lease_seconds,
        )
        session.commit()
        return claim


def test_only_one_of_two_claims_wins(sqlite_session_factory: sessionmaker, clock) -> None:
    """Two callers racing for one row: exactly one sees the claim."""
    reminder = _pending_reminder(sqlite_session_factory, clock)

    first = _claim(sqlite_session_factory, reminder.id, clock.now())
    second = _claim(sqlite_session_factory, reminder.id, clock.now())

    assert first is not None
    assert second is None
    stored = fetch(sqlite_session_factory, ReminderDelivery, reminder.id)
    assert stored.status == ReminderStatus.SENDING
    assert stored.claim_token == first.token


def test_stale_claim_can_be_taken_over(sqlite_session_factory: sessionmaker, clock) -> None:
    """A claim older than the lease is treated as abandoned."""
    reminder = _pending_reminder(sqlite_session_factory, clock)
    original = _claim(sqlite_session_factory, reminder.id, clock.now(), lease_seconds=60)

    still_fresh = _claim(
        sqlite_session_factory, reminder.id, clock.now() + timedelta(seconds=30), lease_seconds=60
    )
    takeover = _claim(
        sqlite_session_factory, reminder.id, clock.now() + timedelta(seconds=61), lease_seconds=60
    )

    assert original is not None
    assert still_fresh is None
    assert takeover is not None
    assert takeover.token != original.token


def test_finish_claim_requires_current_token(sqlite_session_factory: sessionmaker, clock) -> None:
    """A caller whose claim was taken over cannot write its result."""
    reminder = _pending_reminder(sqlite_session_factory, clock)
    original = _claim(sqlite_session_factory, reminder.id, clock.now(), lease_seconds=60)
    takeover = _claim(
        sqlite_session_factory, reminder.id, clock.now() + timedelta(minutes=5), lease_seconds=60
    )

    with closing(sqlite_session_factory()) as session:
        assert finish_claim(session, ReminderDelivery, original, {"status": ReminderStatus.SENT}) is False
        session.rollback()
    with closing(sqlite_session_factory()) as session:
        assert finish_claim(session, ReminderDelivery, takeover, {"status": ReminderStatus.SENT}) is True
        session.commit()

    stored = fetch(sqlite_session_factory, ReminderDelivery, reminder.id)
    assert stored.status == ReminderStatus.SENT
    assert stored.claim_token is None
    assert stored.claimed_at is None


def test_claim_respects_extra_conditions(sqlite_session_factory: sessionmaker, clock) -> None:
    reminder = _pending_reminder(sqlite_session_factory, clock)
    with closing(sqlite_session_factory()) as session:
        claim = try_claim(
            session,
            ReminderDelivery,
            reminder.id,
            from_statuses=(ReminderStatus.PENDING,),
            in_flight_status=ReminderStatus.SENDING,
            now=clock.now(),
            lease_seconds=300,
            conditions=(ReminderDelivery.attempt_count > 0,),
        )
        session.rollback()
    assert claim is None
    assert fetch(sqlite_session_factory, ReminderDelivery, reminder.id).status == ReminderStatus.PENDING
