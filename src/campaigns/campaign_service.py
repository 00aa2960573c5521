"""Campaign status transitions with audit logging."""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from campaigns.activation import require_activation
from delivery.audit import record_audit
from errors import NotFoundError
from models import Campaign, CampaignStatus
from time_utils import Clock, SystemClock
from transitions import EntityType, compare_and_set_status, require_transition

logger = logging.getLogger(__name__)


def load_campaign(session: Session, clinic_id: int, campaign_id: int) -> Campaign:
    """Return the clinic's campaign or raise ``NotFoundError``."""
    campaign = session.execute(
        select(Campaign).where(Campaign.id == campaign_id, Campaign.clinic_id == clinic_id)
    ).scalar_one_or_none()
    if campaign is None:
        raise NotFoundError("Campaign", campaign_id)
    return campaign


class CampaignService:
    """Activate, pause and archive campaigns within one clinic."""

    def __init__(self, session_factory: Callable[[], Session], *, clock: Clock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def activate(self, *, clinic_id: int, campaign_id: int, actor: str) -> Campaign:
        """Move a campaign to ACTIVE once every activation precondition holds.

        A failed activation leaves the row untouched, so fixing the reported
        precondition and calling again is enough.
        """
        return self._transition(
            clinic_id=clinic_id,
            campaign_id=campaign_id,
            actor=actor,
            target=CampaignStatus.ACTIVE,
            action="campaign.activate",
        )

    def pause(self, *, clinic_id: int, campaign_id: int, actor: str) -> Campaign:
        return self._transition(
            clinic_id=clinic_id,
            campaign_id=campaign_id,
            actor=actor,
            target=CampaignStatus.PAUSED,
            action="campaign.pause",
        )

    def archive(self, *, clinic_id: int, campaign_id: int, actor: str) -> Campaign:
        return self._transition(
            clinic_id=clinic_id,
            campaign_id=campaign_id,
            actor=actor,
            target=CampaignStatus.ARCHIVED,
            action="campaign.archive",
        )

    def _transition(
        self,
        *,
        clinic_id: int,
        campaign_id: int,
        actor: str,
        target: CampaignStatus,
        action: str,
    ) -> Campaign:
        now = self._clock.now()
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            campaign = load_campaign(session, clinic_id, campaign_id)
            previous_status = CampaignStatus(campaign.status)
            if target == CampaignStatus.ACTIVE:
                require_activation(campaign)
            else:
                require_transition(EntityType.CAMPAIGN, previous_status, target)

            values = {"updated_at": now}
            if target == CampaignStatus.ACTIVE:
                values.update(activated_at=now, paused_at=None)
            elif target == CampaignStatus.PAUSED:
                values["paused_at"] = now
            else:
                values["archived_at"] = now
            try:
                compare_and_set_status(
                    session,
                    Campaign,
                    EntityType.CAMPAIGN,
                    campaign.id,
                    expected_status=previous_status,
                    new_status=target,
                    values=values,
                    conditions=(Campaign.clinic_id == clinic_id,),
                )
                record_audit(
                    session,
                    clinic_id=clinic_id,
                    entity_type=EntityType.CAMPAIGN,
                    entity_id=campaign.id,
                    action=action,
                    actor=actor,
                    now=now,
                    previous_status=previous_status,
                    new_status=target,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info(
            "Campaign %s moved from %s to %s by %s",
            campaign_id,
            previous_status.value,
            target.value,
            actor,
        )
        return campaign
