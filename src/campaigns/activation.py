"""Campaign activation preconditions.

Checks run in a fixed order and the first failure wins, so a campaign that
is both in the wrong status and missing steps always reports INVALID_STATUS.
"""

from __future__ import annotations

from dataclasses import dataclass

from errors import CampaignActivationError, codes
from models import Campaign, CampaignStatus, CampaignStepType, CampaignTriggerType
from transitions import EntityType, validate_transition


@dataclass(frozen=True)
class ActivationCheck:
    """Result of checking a campaign's activation preconditions."""

    ok: bool
    code: str | None = None
    message: str | None = None


def check_activation(campaign: Campaign) -> ActivationCheck:
    """Return the first unmet activation precondition, or an ok result."""
    status = CampaignStatus(campaign.status)
    if not validate_transition(EntityType.CAMPAIGN, status, CampaignStatus.ACTIVE).allowed:
        return ActivationCheck(
            ok=False,
            code=codes.INVALID_STATUS,
            message=f"Cannot activate a campaign with status: {status.value}",
        )
    steps = list(campaign.steps or [])
    if not steps:
        return ActivationCheck(
            ok=False,
            code=codes.NO_STEPS,
            message="Campaign must have at least one step",
        )
    if not any(step.step_type == CampaignStepType.SEND for step in steps):
        return ActivationCheck(
            ok=False,
            code=codes.NO_SEND_STEP,
            message="Campaign must have at least one send step",
        )
    trigger_type = CampaignTriggerType(campaign.trigger_type)
    if trigger_type == CampaignTriggerType.SCHEDULED and not campaign.trigger_schedule:
        return ActivationCheck(
            ok=False,
            code=codes.NO_SCHEDULE,
            message="Scheduled campaigns require a trigger schedule",
        )
    if trigger_type == CampaignTriggerType.EVENT and not campaign.trigger_event:
        return ActivationCheck(
            ok=False,
            code=codes.NO_TRIGGER_EVENT,
            message="Event-triggered campaigns require a trigger event",
        )
    return ActivationCheck(ok=True)


def require_activation(campaign: Campaign) -> None:
    """Raise ``CampaignActivationError`` unless ``campaign`` may be activated."""
    check = check_activation(campaign)
    if check.ok:
        return
    raise CampaignActivationError(
        check.code,
        check.message,
        current_status=CampaignStatus(campaign.status).value,
    )
