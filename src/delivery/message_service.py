"""Message creation, inbound intake, delivery reports and read receipts."""

from __future__ import annotations

import logging
import re
from contextlib import closing
from datetime import datetime
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from delivery.audit import SYSTEM_ACTOR, record_audit
from errors import InvalidTransitionError, NotFoundError, ValidationError
from models import Message, MessageChannel, MessageDirection, MessageStatus, Patient
from time_utils import Clock, SystemClock, to_utc
from transitions import EntityType, compare_and_set_status, require_transition

logger = logging.getLogger(__name__)

_DELIVERY_REPORTS = (MessageStatus.DELIVERED, MessageStatus.FAILED)

# Numbers are compared on their last ten digits.
_PHONE_DIGITS = 10


def _phone_digits(value: str) -> str:
    return re.sub(r"\D", "", value)[-_PHONE_DIGITS:]


def _find_patient_by_phone(
    session: Session, clinic_id: int, address: str, digits: str
) -> Patient | None:
    candidates = session.execute(
        select(Patient)
        .where(
            Patient.clinic_id == clinic_id,
            Patient.phone.is_not(None),
            or_(Patient.phone == address, Patient.phone.contains(digits[-4:])),
        )
        .order_by(Patient.id)
    ).scalars()
    for patient in candidates:
        if patient.phone == address or _phone_digits(patient.phone) == digits:
            return patient
    return None


class MessageService:
    """Tenant-scoped operations on individual messages."""

    def __init__(self, session_factory: Callable[[], Session], *, clock: Clock | None = None) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    def create_outbound_message(
        self,
        *,
        clinic_id: int,
        patient_id: int,
        channel: MessageChannel | str,
        body: str,
        subject: str | None = None,
        scheduled_at: datetime | None = None,
        to_address: str | None = None,
        related_type: str | None = None,
        related_id: str | None = None,
        actor: str = SYSTEM_ACTOR,
    ) -> Message:
        """Record an outbound message for the dispatcher to pick up.

        A message scheduled in the future is stored as SCHEDULED; anything
        else is PENDING and goes out on the next dispatcher run.
        """
        if not body or not body.strip():
            raise ValidationError.for_field("body", "Message body is required")
        try:
            channel = MessageChannel(channel)
        except ValueError as exc:
            raise ValidationError.for_field("channel", f"Unknown channel: {channel}") from exc
        now = self._clock.now()
        if scheduled_at is not None:
            scheduled_at = to_utc(scheduled_at)
        status = (
            MessageStatus.SCHEDULED
            if scheduled_at is not None and scheduled_at > now
            else MessageStatus.PENDING
        )

        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            patient = session.execute(
                select(Patient).where(Patient.id == patient_id, Patient.clinic_id == clinic_id)
            ).scalar_one_or_none()
            if patient is None:
                raise NotFoundError("Patient", patient_id)
            message = Message(
                clinic_id=clinic_id,
                patient_id=patient_id,
                channel=channel,
                direction=MessageDirection.OUTBOUND,
                status=status,
                subject=subject,
                body=body,
                to_address=to_address,
                scheduled_at=scheduled_at,
                retry_count=0,
                related_type=related_type,
                related_id=related_id,
                created_by=actor,
                created_at=now,
            )
            try:
                session.add(message)
                session.flush()
                record_audit(
                    session,
                    clinic_id=clinic_id,
                    entity_type=EntityType.MESSAGE,
                    entity_id=message.id,
                    action="message.create",
                    actor=actor,
                    now=now,
                    new_status=status,
                    details={"channel": channel.value},
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info("Message %s created with status %s", message.id, status.value)
        return message

    def receive_inbound_message(
        self,
        *,
        clinic_id: int,
        from_address: str,
        body: str,
        channel: MessageChannel | str = MessageChannel.SMS,
        to_address: str | None = None,
        external_id: str | None = None,
    ) -> Message:
        """Record a patient's reply as an INBOUND message in DELIVERED status.

        The sender is matched to a clinic patient by phone number. A repeated
        callback carrying an ``external_id`` already on file returns the
        stored message.
        """
        if not body or not body.strip():
            raise ValidationError.for_field("body", "Message body is required")
        from_address = (from_address or "").strip()
        digits = _phone_digits(from_address)
        if not digits:
            raise ValidationError.for_field("from_address", "Sender phone number is required")
        try:
            channel = MessageChannel(channel)
        except ValueError as exc:
            raise ValidationError.for_field("channel", f"Unknown channel: {channel}") from exc
        now = self._clock.now()

        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            if external_id:
                existing = session.execute(
                    select(Message).where(
                        Message.clinic_id == clinic_id,
                        Message.external_id == external_id,
                        Message.direction == MessageDirection.INBOUND,
                    )
                ).scalars().first()
                if existing is not None:
                    logger.info("Inbound message %s already recorded as %s", external_id, existing.id)
                    return existing
            patient = _find_patient_by_phone(session, clinic_id, from_address, digits)
            if patient is None:
                logger.warning("Inbound message from unknown number for clinic %s", clinic_id)
                raise NotFoundError("Patient", from_address)
            message = Message(
                clinic_id=clinic_id,
                patient_id=patient.id,
                channel=channel,
                direction=MessageDirection.INBOUND,
                status=MessageStatus.DELIVERED,
                body=body,
                from_address=from_address,
                to_address=to_address,
                sent_at=now,
                delivered_at=now,
                retry_count=0,
                external_id=external_id,
                created_by=SYSTEM_ACTOR,
                created_at=now,
            )
            try:
                session.add(message)
                session.flush()
                record_audit(
                    session,
                    clinic_id=clinic_id,
                    entity_type=EntityType.MESSAGE,
                    entity_id=message.id,
                    action="message.receive",
                    actor=SYSTEM_ACTOR,
                    now=now,
                    new_status=MessageStatus.DELIVERED,
                    details={"channel": channel.value},
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info("Inbound message %s received from patient %s", message.id, patient.id)
        return message

    def apply_delivery_status(
        self,
        *,
        external_id: str,
        status: MessageStatus | str,
        error: str | None = None,
    ) -> Message:
        """Apply a channel gateway's delivery report to the outbound message it names.

        DELIVERED moves a SENT message to DELIVERED; a repeated report is a
        no-op. FAILED leaves the status alone and records the error on the
        message and the audit trail.
        """
        try:
            status = MessageStatus(str(getattr(status, "value", status)).upper())
        except ValueError as exc:
            raise ValidationError.for_field("status", f"Unknown delivery status: {status}") from exc
        if status not in _DELIVERY_REPORTS:
            raise ValidationError.for_field("status", "Delivery status must be DELIVERED or FAILED")
        now = self._clock.now()

        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            message = session.execute(
                select(Message).where(
                    Message.external_id == external_id,
                    Message.direction == MessageDirection.OUTBOUND,
                )
                .order_by(Message.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if message is None:
                logger.warning("Delivery report for unknown message %s", external_id)
                raise NotFoundError("Message", external_id)
            previous_status = MessageStatus(message.status)
            if status == MessageStatus.DELIVERED and previous_status == MessageStatus.DELIVERED:
                return message
            if previous_status != MessageStatus.SENT:
                raise InvalidTransitionError(
                    f"Delivery reports apply only to sent messages; message status: {previous_status.value}",
                    entity_type=EntityType.MESSAGE.value,
                    current_status=previous_status.value,
                    requested_status=status.value,
                )
            if status == MessageStatus.DELIVERED:
                new_status = MessageStatus.DELIVERED
                values = {"delivered_at": now, "updated_at": now}
                action = "message.delivered"
                details = None
            else:
                new_status = previous_status
                error = (error or "").strip() or "Delivery failed"
                values = {"last_error": error, "updated_at": now}
                action = "message.delivery_failed"
                details = {"error": error}
            try:
                compare_and_set_status(
                    session,
                    Message,
                    EntityType.MESSAGE,
                    message.id,
                    expected_status=previous_status,
                    new_status=new_status,
                    values=values,
                )
                record_audit(
                    session,
                    clinic_id=message.clinic_id,
                    entity_type=EntityType.MESSAGE,
                    entity_id=message.id,
                    action=action,
                    actor=SYSTEM_ACTOR,
                    now=now,
                    previous_status=previous_status,
                    new_status=new_status,
                    details=details,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        logger.info("Delivery report %s applied to message %s", status.value, message.id)
        return message

    def mark_message_read(self, *, clinic_id: int, message_id: int, actor: str) -> Message:
        """Record that staff read an inbound message."""
        now = self._clock.now()
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            message = session.execute(
                select(Message).where(Message.id == message_id, Message.clinic_id == clinic_id)
            ).scalar_one_or_none()
            if message is None:
                raise NotFoundError("Message", message_id)
            if message.direction != MessageDirection.INBOUND:
                raise ValidationError("Only inbound messages can be marked as read")
            previous_status = MessageStatus(message.status)
            require_transition(EntityType.MESSAGE, previous_status, MessageStatus.READ)
            try:
                compare_and_set_status(
                    session,
                    Message,
                    EntityType.MESSAGE,
                    message.id,
                    expected_status=previous_status,
                    new_status=MessageStatus.READ,
                    values={"read_at": now, "updated_at": now},
                )
                record_audit(
                    session,
                    clinic_id=clinic_id,
                    entity_type=EntityType.MESSAGE,
                    entity_id=message.id,
                    action="message.read",
                    actor=actor,
                    now=now,
                    previous_status=previous_status,
                    new_status=MessageStatus.READ,
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return message
