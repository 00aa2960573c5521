"""Tests for the appointment, campaign and message transition routes."""

from __future__ import annotations

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from api.server import create_app
from config import settings
from helpers.channel_sender_stub import ScriptedChannelSender, registry_for
from helpers.factories import (
    audit_events,
    fetch,
    make_appointment,
    make_campaign,
    make_clinic,
    make_message,
    make_patient,
    make_reminder,
)
from models import (
    Appointment,
    CampaignTriggerType,
    Message,
    MessageDirection,
    MessageStatus,
    ReminderDelivery,
    ReminderStatus,
)
from services.engine import build_engine


@pytest.fixture()
def client(sqlite_session_factory: sessionmaker, clock) -> TestClient:
    services = build_engine(
        session_factory=sqlite_session_factory,
        channels=registry_for(ScriptedChannelSender()),
        clock=clock,
    )
    return TestClient(create_app(services))


@pytest.fixture()
def clinic(sqlite_session_factory: sessionmaker):
    return make_clinic(sqlite_session_factory)


@pytest.fixture()
def patient(sqlite_session_factory: sessionmaker, clinic):
    return make_patient(sqlite_session_factory, clinic)


@pytest.fixture()
def appointment(sqlite_session_factory: sessionmaker, clock, patient):
    return make_appointment(
        sqlite_session_factory, patient, start_time=clock.now() + timedelta(days=3)
    )


def _headers(clinic, actor: str = "user-7") -> dict[str, str]:
    return {"x-clinic-id": str(clinic.id), "x-actor-id": actor}


def test_confirm_appointment(
    sqlite_session_factory: sessionmaker, client, clinic, appointment
) -> None:
    response = client.post(
        f"/api/appointments/{appointment.id}/confirm",
        json={"notes": "Confirmed by phone"},
        headers=_headers(clinic),
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["status"] == "CONFIRMED"
    assert body["data"]["confirmation_status"] == "CONFIRMED"
    assert fetch(sqlite_session_factory, Appointment, appointment.id).confirmed_by == "user-7"


def test_confirm_without_body(client, clinic, appointment) -> None:
    response = client.post(
        f"/api/appointments/{appointment.id}/confirm", headers=_headers(clinic)
    )
    assert response.status_code == 200


def test_invalid_transition_is_bad_request(client, clinic, appointment) -> None:
    client.post(f"/api/appointments/{appointment.id}/confirm", headers=_headers(clinic))

    response = client.post(f"/api/appointments/{appointment.id}/confirm", headers=_headers(clinic))

    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "INVALID_STATUS_TRANSITION"
    assert error["details"]["current_status"] == "CONFIRMED"


def test_cancel_without_reason_is_validation_error(client, clinic, appointment) -> None:
    response = client.post(
        f"/api/appointments/{appointment.id}/cancel", json={}, headers=_headers(clinic)
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_cancel_with_reason(sqlite_session_factory: sessionmaker, client, clinic, appointment) -> None:
    response = client.post(
        f"/api/appointments/{appointment.id}/cancel",
        json={"reason": "Patient travelling"},
        headers=_headers(clinic, actor="front-desk"),
    )

    assert response.status_code == 200
    assert response.json()["data"]["cancellation_reason"] == "Patient travelling"
    events = audit_events(sqlite_session_factory, entity_type="appointment")
    assert [(event.action, event.actor) for event in events] == [
        ("appointment.cancel", "front-desk")
    ]


@pytest.mark.parametrize(
    "headers",
    [
        {"x-actor-id": "user-7"},
        {"x-clinic-id": "1"},
        {"x-clinic-id": "lakeside", "x-actor-id": "user-7"},
        {"x-clinic-id": "1", "x-actor-id": "   "},
    ],
)
def test_missing_or_bad_headers_are_rejected(client, appointment, headers) -> None:
    response = client.post(f"/api/appointments/{appointment.id}/confirm", headers=headers)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_unknown_appointment_is_not_found(client, clinic) -> None:
    response = client.post("/api/appointments/9999/confirm", headers=_headers(clinic))

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"


def test_other_clinic_cannot_touch_appointment(
    sqlite_session_factory: sessionmaker, client, appointment
) -> None:
    other = make_clinic(sqlite_session_factory, name="Elsewhere")
    response = client.post(f"/api/appointments/{appointment.id}/confirm", headers=_headers(other))
    assert response.status_code == 404


def test_schedule_and_cancel_reminders(
    sqlite_session_factory: sessionmaker, client, clinic, appointment
) -> None:
    response = client.post(
        f"/api/appointments/{appointment.id}/reminders/schedule",
        json={"sequence": [{"hoursBefore": 24, "channel": "SMS", "reminderType": "CONFIRMATION"}]},
        headers=_headers(clinic),
    )

    assert response.status_code == 200
    results = response.json()["data"]
    assert len(results) == 1
    assert results[0]["success"] is True
    reminder_id = results[0]["reminderId"]

    response = client.post(
        f"/api/appointments/{appointment.id}/reminders/cancel", headers=_headers(clinic)
    )

    assert response.json()["data"] == {"cancelled": 1}
    reminder = fetch(sqlite_session_factory, ReminderDelivery, reminder_id)
    assert reminder.status == ReminderStatus.CANCELLED
    assert reminder.last_error == "Reminders cancelled"


def test_schedule_rejects_non_positive_offset(client, clinic, appointment) -> None:
    response = client.post(
        f"/api/appointments/{appointment.id}/reminders/schedule",
        json={"sequence": [{"hoursBefore": 0, "channel": "SMS"}]},
        headers=_headers(clinic),
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_confirmation_response_declined(
    sqlite_session_factory: sessionmaker, clock, client, clinic, appointment
) -> None:
    reminder = make_reminder(
        sqlite_session_factory,
        appointment,
        due_at=clock.now() + timedelta(days=1),
        created_at=clock.now(),
    )

    response = client.post(
        f"/api/appointments/{appointment.id}/confirmation-response",
        json={"response": "DECLINED", "responseText": "Can't make it"},
        headers=_headers(clinic),
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["confirmation_status"] == "DECLINED"
    assert data["status"] == "CANCELLED"
    stored = fetch(sqlite_session_factory, ReminderDelivery, reminder.id)
    assert stored.status == ReminderStatus.CANCELLED


def test_campaign_activation_failure_code(
    sqlite_session_factory: sessionmaker, client, clinic
) -> None:
    campaign = make_campaign(
        sqlite_session_factory, clinic, trigger_type=CampaignTriggerType.EVENT
    )

    response = client.post(f"/api/campaigns/{campaign.id}/activate", headers=_headers(clinic))

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NO_TRIGGER_EVENT"


def test_campaign_lifecycle(sqlite_session_factory: sessionmaker, client, clinic) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic)

    activated = client.post(f"/api/campaigns/{campaign.id}/activate", headers=_headers(clinic))
    paused = client.post(f"/api/campaigns/{campaign.id}/pause", headers=_headers(clinic))
    archived = client.post(f"/api/campaigns/{campaign.id}/archive", headers=_headers(clinic))

    assert activated.json()["data"]["status"] == "ACTIVE"
    assert paused.json()["data"]["status"] == "PAUSED"
    assert archived.json()["data"]["status"] == "ARCHIVED"


def test_create_message(sqlite_session_factory: sessionmaker, client, clinic, patient) -> None:
    response = client.post(
        "/api/messages",
        json={"patientId": patient.id, "channel": "EMAIL", "subject": "Hi", "body": "Hello"},
        headers=_headers(clinic),
    )

    assert response.status_code == 201
    data = response.json()["data"]
    assert data["status"] == "PENDING"
    assert data["direction"] == "OUTBOUND"
    assert fetch(sqlite_session_factory, Message, data["id"]).created_by == "user-7"


def test_create_message_rejects_empty_body(client, clinic, patient) -> None:
    response = client.post(
        "/api/messages",
        json={"patientId": patient.id, "channel": "SMS", "body": ""},
        headers=_headers(clinic),
    )

    assert response.status_code == 400
    assert "body" in response.json()["error"]["details"]["fields"]


def test_mark_message_read(
    sqlite_session_factory: sessionmaker, clock, client, clinic, patient
) -> None:
    inbound = make_message(
        sqlite_session_factory,
        patient,
        created_at=clock.now(),
        direction=MessageDirection.INBOUND,
        status=MessageStatus.DELIVERED,
    )

    response = client.post(f"/api/messages/{inbound.id}/read", headers=_headers(clinic))

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "READ"


def test_gateway_callbacks_require_secret(client, clinic) -> None:
    response = client.post(
        "/api/messages/inbound",
        json={"fromAddress": "+15550001111", "body": "C"},
        headers={"x-clinic-id": str(clinic.id)},
    )

    assert response.status_code == 401


def test_inbound_message_and_delivery_report(
    monkeypatch, sqlite_session_factory: sessionmaker, clock, client, clinic, patient
) -> None:
    monkeypatch.setattr(settings.cron, "secret", "gateway-secret")
    auth = {"Authorization": "Bearer gateway-secret"}
    sent = make_message(
        sqlite_session_factory,
        patient,
        created_at=clock.now(),
        status=MessageStatus.SENT,
        external_id="gw-9",
    )

    inbound = client.post(
        "/api/messages/inbound",
        json={"fromAddress": patient.phone, "body": "C", "externalId": "SM-1"},
        headers={**auth, "x-clinic-id": str(clinic.id)},
    )
    report = client.post(
        "/api/messages/delivery-status",
        json={"externalId": "gw-9", "status": "DELIVERED"},
        headers=auth,
    )

    assert inbound.status_code == 201
    assert inbound.json()["data"]["direction"] == "INBOUND"
    assert inbound.json()["data"]["status"] == "DELIVERED"
    assert report.status_code == 200
    assert report.json()["data"]["status"] == "DELIVERED"
    assert fetch(sqlite_session_factory, Message, sent.id).status == MessageStatus.DELIVERED
