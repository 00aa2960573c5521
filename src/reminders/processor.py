"""Reminder processor.

Sends due reminder deliveries and retries the ones that failed. Appointment
state is re-checked after a reminder is claimed, because an appointment can
be cancelled, completed or confirmed between scheduling and due time.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from config import settings
from delivery.audit import SYSTEM_ACTOR, record_audit
from delivery.backoff import BackoffPolicy
from delivery.batch import AttemptOutcome, isolated, run_items
from delivery.channels import (
    ChannelRegistry,
    OutboundPayload,
    SendOutcome,
    attempt_reference,
    patient_address,
)
from delivery.claims import Claim, finish_claim, stale_cutoff, try_claim
from errors import PermanentFailure
from models import (
    AppointmentStatus,
    ConfirmationStatus,
    MessageChannel,
    ReminderDelivery,
    ReminderStatus,
    ReminderType,
)
from reminders.rendering import render_reminder
from time_utils import Clock, SystemClock, to_utc
from transitions import EntityType, is_terminal, require_transition, validate_transition

logger = logging.getLogger(__name__)


@dataclass
class DueReminderResult:
    """Counters returned by ``process_due_reminders``."""

    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class RetryReminderResult:
    """Counters returned by ``retry_failed_reminders``."""

    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def skip_reason(
    reminder: ReminderDelivery,
    now: datetime,
    *,
    skip_final_when_confirmed: bool = True,
) -> str | None:
    """Return why a reminder should no longer be sent, or ``None`` to send it."""
    appointment = reminder.appointment
    status = AppointmentStatus(appointment.status)
    if is_terminal(EntityType.APPOINTMENT, status):
        return f"Appointment status: {status.value}"
    if to_utc(appointment.start_time) < now:
        return "Appointment has passed"
    if (
        skip_final_when_confirmed
        and reminder.reminder_type == ReminderType.FINAL
        and appointment.confirmation_status == ConfirmationStatus.CONFIRMED
    ):
        return "Already confirmed"
    return None


class ReminderProcessor:
    """Sends due appointment reminders and retries failed ones."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        channels: ChannelRegistry,
        *,
        backoff: BackoffPolicy | None = None,
        clock: Clock | None = None,
        batch_size: int | None = None,
        retry_batch_size: int | None = None,
        lease_seconds: int | None = None,
        max_workers: int | None = None,
        skip_final_when_confirmed: bool | None = None,
    ) -> None:
        reminders = settings.reminders
        self._session_factory = session_factory
        self._channels = channels
        self._backoff = backoff or BackoffPolicy.from_settings()
        self._clock = clock or SystemClock()
        self._batch_size = batch_size or reminders.batch_size
        self._retry_batch_size = retry_batch_size or reminders.retry_batch_size
        self._lease_seconds = (
            lease_seconds if lease_seconds is not None else settings.delivery.claim_lease_seconds
        )
        self._max_workers = max_workers or settings.delivery.max_workers
        self._skip_final_when_confirmed = (
            reminders.skip_final_when_confirmed
            if skip_final_when_confirmed is None
            else skip_final_when_confirmed
        )

    def process_due_reminders(self) -> DueReminderResult:
        """Send every PENDING reminder whose due time has arrived."""
        now = self._clock.now()
        stmt = (
            select(ReminderDelivery.id)
            .where(
                or_(
                    and_(
                        ReminderDelivery.status == ReminderStatus.PENDING,
                        ReminderDelivery.due_at <= now,
                    ),
                    and_(
                        ReminderDelivery.status == ReminderStatus.SENDING,
                        ReminderDelivery.claimed_at <= stale_cutoff(now, self._lease_seconds),
                    ),
                )
            )
            .order_by(ReminderDelivery.due_at, ReminderDelivery.id)
            .limit(self._batch_size)
        )
        with closing(self._session_factory()) as session:
            reminder_ids = list(session.execute(stmt).scalars())
        logger.info("Processing %s due reminders", len(reminder_ids))

        worker = isolated(
            EntityType.REMINDER_DELIVERY.value,
            lambda reminder_id: self._attempt(reminder_id, (ReminderStatus.PENDING,), now),
        )
        result = DueReminderResult()
        for outcome in run_items(reminder_ids, worker, self._max_workers):
            if outcome == AttemptOutcome.CLAIM_LOST:
                result.skipped += 1
                continue
            result.processed += 1
            if outcome == AttemptOutcome.SENT:
                result.sent += 1
            elif outcome == AttemptOutcome.SKIPPED:
                result.skipped += 1
            else:
                result.failed += 1
        logger.info("Reminder processing complete: %s", result.to_dict())
        return result

    def retry_failed_reminders(self) -> RetryReminderResult:
        """Retry reminders whose backoff delay has elapsed."""
        now = self._clock.now()
        stmt = (
            select(ReminderDelivery.id)
            .where(
                ReminderDelivery.status == ReminderStatus.RETRYING,
                ReminderDelivery.attempt_count < self._backoff.max_attempts,
                ReminderDelivery.next_retry_at <= now,
            )
            .order_by(ReminderDelivery.next_retry_at, ReminderDelivery.id)
            .limit(self._retry_batch_size)
        )
        with closing(self._session_factory()) as session:
            reminder_ids = list(session.execute(stmt).scalars())
        logger.info("Retrying %s reminders", len(reminder_ids))

        worker = isolated(
            EntityType.REMINDER_DELIVERY.value,
            lambda reminder_id: self._attempt(reminder_id, (ReminderStatus.RETRYING,), now),
        )
        result = RetryReminderResult()
        for outcome in run_items(reminder_ids, worker, self._max_workers):
            if outcome in (AttemptOutcome.CLAIM_LOST, AttemptOutcome.SKIPPED):
                result.skipped += 1
                continue
            result.retried += 1
            if outcome == AttemptOutcome.SENT:
                result.succeeded += 1
            else:
                result.failed += 1
        logger.info("Reminder retry processing complete: %s", result.to_dict())
        return result

    def process_reminder(self, reminder_id: int) -> AttemptOutcome:
        """Attempt one reminder now if it is due for a first send or a retry."""
        return self._attempt(
            reminder_id,
            (ReminderStatus.PENDING, ReminderStatus.RETRYING),
            self._clock.now(),
        )

    def _attempt(
        self,
        reminder_id: int,
        from_statuses: Iterable[ReminderStatus],
        now: datetime,
    ) -> AttemptOutcome:
        with closing(self._session_factory()) as session:
            reminder = session.get(ReminderDelivery, reminder_id)
            if reminder is None:
                return AttemptOutcome.CLAIM_LOST
            previous_status = ReminderStatus(reminder.status)
            if previous_status != ReminderStatus.SENDING:
                verdict = validate_transition(
                    EntityType.REMINDER_DELIVERY, previous_status, ReminderStatus.SENDING
                )
                if not verdict.allowed:
                    logger.info("Reminder no longer claimable: %s", verdict.reason)
                    return AttemptOutcome.CLAIM_LOST
            claim = try_claim(
                session,
                ReminderDelivery,
                reminder_id,
                from_statuses=from_statuses,
                in_flight_status=ReminderStatus.SENDING,
                now=now,
                lease_seconds=self._lease_seconds,
                conditions=(
                    ReminderDelivery.due_at <= now,
                    or_(
                        ReminderDelivery.next_retry_at.is_(None),
                        ReminderDelivery.next_retry_at <= now,
                    ),
                    ReminderDelivery.attempt_count < self._backoff.max_attempts,
                ),
                values={"next_retry_at": None},
            )
            if claim is None:
                session.rollback()
                logger.info("Reminder already claimed elsewhere: reminder=%s", reminder_id)
                return AttemptOutcome.CLAIM_LOST
            session.commit()

            reason = skip_reason(
                reminder, now, skip_final_when_confirmed=self._skip_final_when_confirmed
            )
            if reason is not None:
                logger.info("Skipping reminder %s: %s", reminder_id, reason)
                return self._finish_without_send(
                    session,
                    claim,
                    reminder,
                    previous_status,
                    ReminderStatus.SKIPPED,
                    reason,
                    AttemptOutcome.SKIPPED,
                )

            channel = MessageChannel(reminder.channel)
            address = patient_address(reminder.appointment.patient, channel)
            if address is None and channel != MessageChannel.IN_APP:
                return self._finish_without_send(
                    session,
                    claim,
                    reminder,
                    previous_status,
                    ReminderStatus.FAILED,
                    f"Patient has no {channel.value} address",
                    AttemptOutcome.FAILED,
                )

            content = render_reminder(reminder)
            attempt = int(reminder.attempt_count or 0)
            payload = OutboundPayload(
                reference=attempt_reference("reminder", reminder.id, attempt),
                clinic_id=reminder.clinic_id,
                patient_id=reminder.patient_id,
                channel=channel,
                to_address=address,
                subject=content.subject,
                body=content.body,
                metadata={
                    "reminder_id": reminder.id,
                    "appointment_id": reminder.appointment_id,
                    "reminder_type": ReminderType(reminder.reminder_type).value,
                    "attempt": attempt + 1,
                },
            )

        outcome = self._channels.send(payload)
        return self._record(claim, previous_status, attempt, payload, outcome)

    def _finish_without_send(
        self,
        session: Session,
        claim: Claim,
        reminder: ReminderDelivery,
        previous_status: ReminderStatus,
        new_status: ReminderStatus,
        reason: str,
        outcome: AttemptOutcome,
    ) -> AttemptOutcome:
        require_transition(EntityType.REMINDER_DELIVERY, claim.in_flight_status, new_status)
        action = "reminder.skip" if new_status == ReminderStatus.SKIPPED else "reminder.send_attempt"
        try:
            if not finish_claim(
                session,
                ReminderDelivery,
                claim,
                {"status": new_status, "last_error": reason, "next_retry_at": None},
            ):
                session.rollback()
                return AttemptOutcome.CLAIM_LOST
            record_audit(
                session,
                clinic_id=reminder.clinic_id,
                entity_type=EntityType.REMINDER_DELIVERY,
                entity_id=claim.entity_id,
                action=action,
                actor=SYSTEM_ACTOR,
                now=self._clock.now(),
                previous_status=previous_status,
                new_status=new_status,
                details={"reason": reason},
            )
            session.commit()
        except Exception:
            session.rollback()
            raise
        return outcome

    def _record(
        self,
        claim: Claim,
        previous_status: ReminderStatus,
        attempt: int,
        payload: OutboundPayload,
        outcome: SendOutcome,
    ) -> AttemptOutcome:
        recorded_at = self._clock.now()
        details: dict[str, Any] = {
            "attempt": attempt + 1,
            "channel": payload.channel.value,
            "reference": payload.reference,
        }
        if outcome.success:
            new_status = ReminderStatus.SENT
            values: dict[str, Any] = {
                "status": new_status,
                "sent_at": recorded_at,
                "content_sent": payload.body,
                "external_id": outcome.external_id,
                "last_error": None,
                "next_retry_at": None,
            }
            result = AttemptOutcome.SENT
        else:
            failures = attempt + 1
            decision = self._backoff.next_attempt(failures)
            error = outcome.error_message or outcome.error_code or "Unknown delivery error"
            details["error_code"] = outcome.error_code
            if outcome.retryable and decision.eligible:
                new_status = ReminderStatus.RETRYING
                values = {
                    "status": new_status,
                    "attempt_count": failures,
                    "next_retry_at": decision.retry_at(recorded_at),
                    "last_error": error,
                }
                result = AttemptOutcome.FAILED
                logger.warning(
                    "Reminder send failed; retry %s scheduled: reminder=%s error=%s",
                    failures,
                    claim.entity_id,
                    error,
                )
            else:
                new_status = ReminderStatus.PERMANENTLY_FAILED
                failure = PermanentFailure(error)
                values = {
                    "status": new_status,
                    "attempt_count": min(failures, self._backoff.max_retries),
                    "next_retry_at": None,
                    "last_error": failure.message,
                }
                details["terminal_code"] = failure.code
                result = AttemptOutcome.PERMANENTLY_FAILED
                logger.warning(
                    "Reminder permanently failed: reminder=%s error=%s",
                    claim.entity_id,
                    error,
                )
        require_transition(EntityType.REMINDER_DELIVERY, claim.in_flight_status, new_status)

        with closing(self._session_factory()) as session:
            try:
                if not finish_claim(session, ReminderDelivery, claim, values):
                    session.rollback()
                    return AttemptOutcome.CLAIM_LOST
                record_audit(
                    session,
                    clinic_id=payload.clinic_id,
                    entity_type=EntityType.REMINDER_DELIVERY,
                    entity_id=claim.entity_id,
                    action="reminder.send_attempt",
                    actor=SYSTEM_ACTOR,
                    now=recorded_at,
                    previous_status=previous_status,
                    new_status=new_status,
                    details=details,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result
