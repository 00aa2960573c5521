"""Unit tests for the batch job runner and its Celery wiring."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

import jobs.celery_app as celery_module
import jobs.runner as runner_module
from helpers.channel_sender_stub import ScriptedChannelSender, registry_for
from helpers.factories import (
    fetch,
    make_appointment,
    make_clinic,
    make_message,
    make_patient,
    make_reminder,
)
from jobs import JOB_NAMES, run_job
from models import Message, MessageStatus, ReminderDelivery, ReminderStatus
from services.engine import build_engine


@pytest.fixture()
def services(sqlite_session_factory: sessionmaker, clock):
    return build_engine(
        session_factory=sqlite_session_factory,
        channels=registry_for(ScriptedChannelSender()),
        clock=clock,
    )


def test_process_jobs_return_counters(sqlite_session_factory: sessionmaker, clock, services) -> None:
    clinic = make_clinic(sqlite_session_factory)
    patient = make_patient(sqlite_session_factory, clinic)
    message = make_message(sqlite_session_factory, patient, created_at=clock.now())
    appointment = make_appointment(
        sqlite_session_factory, patient, start_time=clock.now() + timedelta(hours=3)
    )
    reminder = make_reminder(
        sqlite_session_factory,
        appointment,
        due_at=clock.now() - timedelta(minutes=1),
        created_at=clock.now() - timedelta(days=2),
    )

    messages = run_job("process_scheduled_messages", services)
    reminders = run_job("process_due_reminders", services)

    assert messages == {"processed": 1, "failed": 0, "skipped": 0}
    assert reminders == {"processed": 1, "sent": 1, "failed": 0, "skipped": 0}
    assert fetch(sqlite_session_factory, Message, message.id).status == MessageStatus.SENT
    assert fetch(sqlite_session_factory, ReminderDelivery, reminder.id).status == ReminderStatus.SENT


def test_retry_jobs_with_nothing_due(services) -> None:
    assert run_job("retry_failed_messages", services) == {
        "retried": 0,
        "succeeded": 0,
        "failed": 0,
        "skipped": 0,
    }
    assert run_job("retry_failed_reminders", services)["retried"] == 0


def test_runner_closes_channels_it_built(monkeypatch, services) -> None:
    closed: list[bool] = []
    monkeypatch.setattr(services.channels, "close", lambda: closed.append(True))
    monkeypatch.setattr(runner_module, "build_engine", lambda: services)

    run_job("retry_failed_messages")
    assert closed == [True]

    run_job("retry_failed_messages", services)
    assert closed == [True]


def test_unknown_job_is_rejected(services) -> None:
    with pytest.raises(ValueError, match="Unknown job"):
        run_job("send_everything", services)


def test_beat_schedule_covers_every_job() -> None:
    schedule = celery_module.build_beat_schedule(30)

    assert set(schedule) == {f"clinicflow.{job}" for job in JOB_NAMES}
    for name, entry in schedule.items():
        assert entry == {"task": name, "schedule": 30}


def test_celery_tasks_are_registered() -> None:
    registered = set(celery_module.celery_app.tasks)
    assert {f"clinicflow.{job}" for job in JOB_NAMES} <= registered


def test_celery_task_delegates_to_runner(monkeypatch) -> None:
    calls: list[str] = []

    def fake_run_job(name: str) -> dict[str, int]:
        calls.append(name)
        return {"processed": 0}

    monkeypatch.setattr(celery_module, "run_job", fake_run_job)

    assert celery_module.retry_failed_reminders.run() == {"processed": 0}
    assert calls == ["retry_failed_reminders"]
