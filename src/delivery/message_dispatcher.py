"""Scheduled message dispatcher.

Both entry points are stateless batch jobs: they read the due set, then run
claim -> send -> record for each message in isolation. A per-item failure is
logged and counted and never aborts the batch. Errors while reading the due
set propagate to the caller.
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
from errors import PermanentFailure, codes
from models import Message, MessageChannel, MessageDirection, MessageStatus
from time_utils import Clock, SystemClock, optional_utc
from transitions import EntityType, require_transition, validate_transition

logger = logging.getLogger(__name__)

_DUE_STATUSES = (MessageStatus.PENDING, MessageStatus.SCHEDULED)


@dataclass
class ScheduledMessageResult:
    """Counters returned by ``process_scheduled_messages``."""

    processed: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class RetryMessageResult:
    """Counters returned by ``retry_failed_messages``."""

    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


def resolve_recipient(message: Message) -> str | None:
    """Return the address a message should go to, falling back to the patient record."""
    if message.to_address:
        return message.to_address
    return patient_address(message.patient, MessageChannel(message.channel))


class ScheduledMessageDispatcher:
    """Sends due outbound messages and retries failed ones."""

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
    ) -> None:
        delivery = settings.delivery
        self._session_factory = session_factory
        self._channels = channels
        self._backoff = backoff or BackoffPolicy.from_settings()
        self._clock = clock or SystemClock()
        self._batch_size = batch_size or delivery.message_batch_size
        self._retry_batch_size = retry_batch_size or delivery.retry_batch_size
        self._lease_seconds = (
            lease_seconds if lease_seconds is not None else delivery.claim_lease_seconds
        )
        self._max_workers = max_workers or delivery.max_workers

    def process_scheduled_messages(self) -> ScheduledMessageResult:
        """Send every outbound message that is due now."""
        now = self._clock.now()
        message_ids = self._due_message_ids(now)
        logger.info("Processing %s due messages", len(message_ids))

        worker = isolated(
            EntityType.MESSAGE.value,
            lambda message_id: self._attempt_due(message_id, now),
        )
        result = ScheduledMessageResult()
        for outcome in run_items(message_ids, worker, self._max_workers):
            if outcome == AttemptOutcome.SENT:
                result.processed += 1
            elif outcome == AttemptOutcome.CLAIM_LOST:
                result.skipped += 1
            else:
                result.failed += 1
        logger.info("Scheduled message processing complete: %s", result.to_dict())
        return result

    def retry_failed_messages(self) -> RetryMessageResult:
        """Retry failed messages whose backoff delay has elapsed."""
        now = self._clock.now()
        candidates = self._retry_candidates(now)
        result = RetryMessageResult()
        due_ids: list[int] = []
        for message_id, status, next_retry_at in candidates:
            retry_at = optional_utc(next_retry_at)
            if status == MessageStatus.FAILED and retry_at is not None and retry_at > now:
                result.skipped += 1
                continue
            due_ids.append(message_id)

        worker = isolated(
            EntityType.MESSAGE.value,
            lambda message_id: self._attempt_retry(message_id, now),
        )
        for outcome in run_items(due_ids, worker, self._max_workers):
            if outcome == AttemptOutcome.CLAIM_LOST:
                result.skipped += 1
                continue
            result.retried += 1
            if outcome == AttemptOutcome.SENT:
                result.succeeded += 1
            else:
                result.failed += 1
        logger.info("Message retry processing complete: %s", result.to_dict())
        return result

    def process_message(self, message_id: int) -> AttemptOutcome:
        """Attempt one message now if it is due for a first send or a retry."""
        now = self._clock.now()
        outcome = self._attempt_due(message_id, now)
        if outcome == AttemptOutcome.CLAIM_LOST:
            outcome = self._attempt_retry(message_id, now)
        return outcome

    def _attempt_due(self, message_id: int, now: datetime) -> AttemptOutcome:
        return self._attempt(
            message_id,
            from_statuses=_DUE_STATUSES,
            in_flight_status=MessageStatus.SENDING,
            now=now,
            conditions=(
                Message.direction == MessageDirection.OUTBOUND,
                or_(Message.scheduled_at.is_(None), Message.scheduled_at <= now),
            ),
        )

    def _attempt_retry(self, message_id: int, now: datetime) -> AttemptOutcome:
        return self._attempt(
            message_id,
            from_statuses=(MessageStatus.FAILED,),
            in_flight_status=MessageStatus.RETRYING,
            now=now,
            conditions=(
                Message.direction == MessageDirection.OUTBOUND,
                or_(Message.next_retry_at.is_(None), Message.next_retry_at <= now),
                Message.retry_count < self._backoff.max_attempts,
            ),
        )

    def _due_message_ids(self, now: datetime) -> list[int]:
        stmt = (
            select(Message.id)
            .where(
                Message.direction == MessageDirection.OUTBOUND,
                or_(
                    and_(
                        Message.status.in_(_DUE_STATUSES),
                        or_(Message.scheduled_at.is_(None), Message.scheduled_at <= now),
                    ),
                    and_(
                        Message.status == MessageStatus.SENDING,
                        Message.claimed_at <= stale_cutoff(now, self._lease_seconds),
                    ),
                ),
            )
            .order_by(Message.scheduled_at, Message.id)
            .limit(self._batch_size)
        )
        with closing(self._session_factory()) as session:
            return list(session.execute(stmt).scalars())

    def _retry_candidates(self, now: datetime) -> list[tuple[int, MessageStatus, datetime | None]]:
        stmt = (
            select(Message.id, Message.status, Message.next_retry_at)
            .where(
                Message.direction == MessageDirection.OUTBOUND,
                or_(
                    and_(
                        Message.status == MessageStatus.FAILED,
                        Message.retry_count < self._backoff.max_attempts,
                    ),
                    and_(
                        Message.status == MessageStatus.RETRYING,
                        Message.claimed_at <= stale_cutoff(now, self._lease_seconds),
                    ),
                ),
            )
            .order_by(Message.next_retry_at, Message.id)
            .limit(self._retry_batch_size)
        )
        with closing(self._session_factory()) as session:
            return [tuple(row) for row in session.execute(stmt).all()]

    def _attempt(
        self,
        message_id: int,
        *,
        from_statuses: Iterable[MessageStatus],
        in_flight_status: MessageStatus,
        now: datetime,
        conditions: Iterable[Any],
    ) -> AttemptOutcome:
        with closing(self._session_factory()) as session:
            message = session.get(Message, message_id)
            if message is None:
                return AttemptOutcome.CLAIM_LOST
            previous_status = message.status
            if previous_status != in_flight_status:
                verdict = validate_transition(EntityType.MESSAGE, previous_status, in_flight_status)
                if not verdict.allowed:
                    logger.info("Message no longer claimable: %s", verdict.reason)
                    return AttemptOutcome.CLAIM_LOST
            claim = try_claim(
                session,
                Message,
                message_id,
                from_statuses=from_statuses,
                in_flight_status=in_flight_status,
                now=now,
                lease_seconds=self._lease_seconds,
                conditions=conditions,
            )
            if claim is None:
                session.rollback()
                logger.info("Message already claimed elsewhere: message=%s", message_id)
                return AttemptOutcome.CLAIM_LOST
            session.commit()
            attempt = int(message.retry_count or 0)
            payload = OutboundPayload(
                reference=attempt_reference("message", message.id, attempt),
                clinic_id=message.clinic_id,
                patient_id=message.patient_id,
                channel=MessageChannel(message.channel),
                to_address=resolve_recipient(message),
                subject=message.subject,
                body=message.body,
                metadata={"message_id": message.id, "attempt": attempt + 1},
            )

        outcome = self._send(payload)
        return self._record(claim, previous_status, attempt, payload, outcome)

    def _send(self, payload: OutboundPayload) -> SendOutcome:
        if payload.to_address is None and payload.channel != MessageChannel.IN_APP:
            return SendOutcome.failed(
                codes.NO_RECIPIENT,
                f"Patient has no {payload.channel.value} address on file",
                retryable=False,
            )
        return self._channels.send(payload)

    def _record(
        self,
        claim: Claim,
        previous_status: MessageStatus,
        attempt: int,
        payload: OutboundPayload,
        outcome: SendOutcome,
    ) -> AttemptOutcome:
        recorded_at = self._clock.now()
        values: dict[str, Any]
        details: dict[str, Any] = {
            "attempt": attempt + 1,
            "channel": payload.channel.value,
            "reference": payload.reference,
        }
        if outcome.success:
            new_status = (
                MessageStatus.DELIVERED
                if payload.channel == MessageChannel.IN_APP
                else MessageStatus.SENT
            )
            values = {
                "status": new_status,
                "sent_at": recorded_at,
                "next_retry_at": None,
                "last_error": None,
                "external_id": outcome.external_id,
            }
            if new_status == MessageStatus.DELIVERED:
                values["delivered_at"] = recorded_at
            result = AttemptOutcome.SENT
        else:
            failures = attempt + 1
            decision = self._backoff.next_attempt(failures)
            error = outcome.error_message or outcome.error_code or "Unknown delivery error"
            details["error_code"] = outcome.error_code
            if outcome.retryable and decision.eligible:
                new_status = MessageStatus.FAILED
                values = {
                    "status": new_status,
                    "retry_count": failures,
                    "next_retry_at": decision.retry_at(recorded_at),
                    "last_error": error,
                }
                result = AttemptOutcome.FAILED
                logger.warning(
                    "Message send failed; retry %s scheduled: message=%s error=%s",
                    failures,
                    claim.entity_id,
                    error,
                )
            else:
                new_status = MessageStatus.PERMANENTLY_FAILED
                failure = PermanentFailure(error)
                values = {
                    "status": new_status,
                    "retry_count": min(failures, self._backoff.max_retries),
                    "next_retry_at": None,
                    "last_error": failure.message,
                }
                details["terminal_code"] = failure.code
                result = AttemptOutcome.PERMANENTLY_FAILED
                logger.warning(
                    "Message permanently failed: message=%s error=%s",
                    claim.entity_id,
                    error,
                )
        require_transition(EntityType.MESSAGE, claim.in_flight_status, new_status)

        with closing(self._session_factory()) as session:
            try:
                if not finish_claim(session, Message, claim, values):
                    session.rollback()
                    return AttemptOutcome.CLAIM_LOST
                record_audit(
                    session,
                    clinic_id=payload.clinic_id,
                    entity_type=EntityType.MESSAGE,
                    entity_id=claim.entity_id,
                    action="message.send_attempt",
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

