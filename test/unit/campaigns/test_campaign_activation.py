"""Unit tests for campaign activation and lifecycle transitions."""

from __future__ import annotations

from contextlib import closing

import pytest
from sqlalchemy.orm import sessionmaker

import campaigns.campaign_service as campaign_module
from campaigns.activation import check_activation
from campaigns.campaign_service import CampaignService
from errors import CampaignActivationError, InvalidTransitionError, NotFoundError
from helpers.factories import audit_events, fetch, make_campaign, make_clinic
from models import Campaign, CampaignStatus, CampaignStep, CampaignStepType, CampaignTriggerType
from time_utils import optional_utc
from transitions import EntityType, allowed_targets


@pytest.fixture()
def clinic(sqlite_session_factory: sessionmaker):
    return make_clinic(sqlite_session_factory)


def _activate(session_factory, clock, campaign):
    return CampaignService(session_factory, clock=clock).activate(
        clinic_id=campaign.clinic_id, campaign_id=campaign.id, actor="staff-1"
    )


def test_manual_campaign_with_send_step_activates(
    sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic)

    _activate(sqlite_session_factory, clock, campaign)

    stored = fetch(sqlite_session_factory, Campaign, campaign.id)
    assert stored.status == CampaignStatus.ACTIVE
    assert optional_utc(stored.activated_at) == clock.now()
    events = audit_events(sqlite_session_factory, entity_type="campaign", entity_id=campaign.id)
    assert [(event.action, event.previous_status, event.new_status) for event in events] == [
        ("campaign.activate", "DRAFT", "ACTIVE")
    ]


def test_event_campaign_without_event_is_rejected(
    sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    """The rejection carries its code and leaves the campaign untouched."""
    campaign = make_campaign(
        sqlite_session_factory, clinic, trigger_type=CampaignTriggerType.EVENT
    )

    with pytest.raises(CampaignActivationError) as excinfo:
        _activate(sqlite_session_factory, clock, campaign)

    assert excinfo.value.code == "NO_TRIGGER_EVENT"
    assert excinfo.value.http_status == 400
    stored = fetch(sqlite_session_factory, Campaign, campaign.id)
    assert stored.status == CampaignStatus.DRAFT
    assert stored.activated_at is None
    assert audit_events(sqlite_session_factory, entity_type="campaign") == []


def test_scheduled_campaign_needs_schedule(
    sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    campaign = make_campaign(
        sqlite_session_factory, clinic, trigger_type=CampaignTriggerType.SCHEDULED
    )
    with pytest.raises(CampaignActivationError) as excinfo:
        _activate(sqlite_session_factory, clock, campaign)
    assert excinfo.value.code == "NO_SCHEDULE"


def test_single_send_step_is_enough(sqlite_session_factory: sessionmaker, clock, clinic) -> None:
    campaign = make_campaign(
        sqlite_session_factory,
        clinic,
        steps=(CampaignStepType.WAIT, CampaignStepType.CONDITION, CampaignStepType.SEND),
        trigger_type=CampaignTriggerType.EVENT,
        trigger_event="appointment.completed",
    )
    assert _activate(sqlite_session_factory, clock, campaign).status == CampaignStatus.ACTIVE


@pytest.mark.parametrize(
    ("status", "steps", "trigger_type", "expected"),
    [
        (CampaignStatus.ARCHIVED, (), CampaignTriggerType.EVENT, "INVALID_STATUS"),
        (CampaignStatus.ACTIVE, (CampaignStepType.SEND,), CampaignTriggerType.MANUAL, "INVALID_STATUS"),
        (CampaignStatus.DRAFT, (), CampaignTriggerType.EVENT, "NO_STEPS"),
        (CampaignStatus.DRAFT, (CampaignStepType.WAIT,), CampaignTriggerType.EVENT, "NO_SEND_STEP"),
        (CampaignStatus.PAUSED, (CampaignStepType.SEND,), CampaignTriggerType.SCHEDULED, "NO_SCHEDULE"),
        (CampaignStatus.SCHEDULED, (CampaignStepType.SEND,), CampaignTriggerType.EVENT, "NO_TRIGGER_EVENT"),
    ],
)
def test_first_failing_check_wins(
    sqlite_session_factory: sessionmaker, clinic, status, steps, trigger_type, expected
) -> None:
    campaign = make_campaign(
        sqlite_session_factory, clinic, status=status, steps=steps, trigger_type=trigger_type
    )
    check = check_activation(campaign)
    assert check.ok is False
    assert check.code == expected


def test_activate_pause_reactivate_archive(
    sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic)
    service = CampaignService(sqlite_session_factory, clock=clock)
    ids = {"clinic_id": clinic.id, "campaign_id": campaign.id, "actor": "staff-1"}

    service.activate(**ids)
    clock.advance(hours=1)
    paused = service.pause(**ids)
    assert paused.status == CampaignStatus.PAUSED
    assert optional_utc(paused.paused_at) == clock.now()

    clock.advance(hours=1)
    reactivated = service.activate(**ids)
    assert reactivated.status == CampaignStatus.ACTIVE
    assert reactivated.paused_at is None

    archived = service.archive(**ids)
    assert archived.status == CampaignStatus.ARCHIVED

    with pytest.raises(CampaignActivationError) as excinfo:
        service.activate(**ids)
    assert excinfo.value.code == "INVALID_STATUS"
    with pytest.raises(InvalidTransitionError):
        service.pause(**ids)

    actions = [
        event.action
        for event in audit_events(sqlite_session_factory, entity_type="campaign")
    ]
    assert actions == [
        "campaign.activate",
        "campaign.pause",
        "campaign.activate",
        "campaign.archive",
    ]


def test_draft_campaign_cannot_be_paused(sqlite_session_factory: sessionmaker, clock, clinic) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic)
    with pytest.raises(InvalidTransitionError):
        CampaignService(sqlite_session_factory, clock=clock).pause(
            clinic_id=clinic.id, campaign_id=campaign.id, actor="staff-1"
        )


def test_campaign_of_other_clinic_is_not_found(
    sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic)
    other = make_clinic(sqlite_session_factory, name="Elsewhere")
    with pytest.raises(NotFoundError):
        CampaignService(sqlite_session_factory, clock=clock).activate(
            clinic_id=other.id, campaign_id=campaign.id, actor="staff-1"
        )


def test_failed_activation_succeeds_once_precondition_is_fixed(
    sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic, trigger_type=CampaignTriggerType.EVENT)

    with pytest.raises(CampaignActivationError) as excinfo:
        _activate(sqlite_session_factory, clock, campaign)
    assert excinfo.value.code == "NO_TRIGGER_EVENT"
    assert fetch(sqlite_session_factory, Campaign, campaign.id).status == CampaignStatus.DRAFT

    with closing(sqlite_session_factory()) as session:
        session.get(Campaign, campaign.id).trigger_event = "appointment.completed"
        session.commit()

    activated = _activate(sqlite_session_factory, clock, campaign)

    assert activated.status == CampaignStatus.ACTIVE
    assert optional_utc(activated.activated_at) == clock.now()
    events = audit_events(sqlite_session_factory, entity_type="campaign", entity_id=campaign.id)
    assert [event.action for event in events] == ["campaign.activate"]
    assert (events[0].previous_status, events[0].new_status) == ("DRAFT", "ACTIVE")


def test_stale_pause_cannot_reopen_archived_campaign(
    monkeypatch, sqlite_session_factory: sessionmaker, clock, clinic
) -> None:
    campaign = make_campaign(sqlite_session_factory, clinic, status=CampaignStatus.ACTIVE)
    service = CampaignService(sqlite_session_factory, clock=clock)
    ids = {"clinic_id": clinic.id, "campaign_id": campaign.id}
    original_load = campaign_module.load_campaign
    interleaved: list[bool] = []

    def load_then_archive(session, clinic_id, campaign_id):
        loaded = original_load(session, clinic_id, campaign_id)
        if not interleaved:
            interleaved.append(True)
            service.archive(**ids, actor="staff-2")
        return loaded

    monkeypatch.setattr(campaign_module, "load_campaign", load_then_archive)

    with pytest.raises(InvalidTransitionError) as excinfo:
        service.pause(**ids, actor="staff-1")

    assert excinfo.value.current_status == "ARCHIVED"
    stored = fetch(sqlite_session_factory, Campaign, campaign.id)
    assert stored.status == CampaignStatus.ARCHIVED
    assert stored.paused_at is None
    actions = [
        event.action
        for event in audit_events(sqlite_session_factory, entity_type="campaign", entity_id=campaign.id)
    ]
    assert actions == ["campaign.archive"]


@pytest.mark.parametrize("status", list(CampaignStatus))
def test_status_check_follows_transition_table(status) -> None:
    campaign = Campaign(
        status=status,
        trigger_type=CampaignTriggerType.MANUAL,
        steps=[CampaignStep(step_order=1, step_type=CampaignStepType.SEND)],
    )

    check = check_activation(campaign)

    activatable = CampaignStatus.ACTIVE in allowed_targets(EntityType.CAMPAIGN, status)
    assert check.ok is activatable
    assert (check.code == "INVALID_STATUS") is not activatable
