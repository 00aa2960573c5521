"""Data models for the clinicflow engine.

Status enumerations are closed ``str`` enums, one per stateful entity. The
legal transitions between their members live in ``transitions.tables``.
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

# SQLAlchemy base
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AppointmentStatus(str, PyEnum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    ARRIVED = "ARRIVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    CANCELLED = "CANCELLED"


class ConfirmationStatus(str, PyEnum):
    UNCONFIRMED = "UNCONFIRMED"
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    DECLINED = "DECLINED"


class MessageChannel(str, PyEnum):
    SMS = "SMS"
    EMAIL = "EMAIL"
    IN_APP = "IN_APP"
    PUSH = "PUSH"


class MessageDirection(str, PyEnum):
    INBOUND = "INBOUND"
    OUTBOUND = "OUTBOUND"


class MessageStatus(str, PyEnum):
    PENDING = "PENDING"
    SCHEDULED = "SCHEDULED"
    SENDING = "SENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    PERMANENTLY_FAILED = "PERMANENTLY_FAILED"
    READ = "READ"


class ReminderStatus(str, PyEnum):
    PENDING = "PENDING"
    SENDING = "SENDING"
    SENT = "SENT"
    FAILED = "FAILED"
    RETRYING = "RETRYING"
    PERMANENTLY_FAILED = "PERMANENTLY_FAILED"
    SKIPPED = "SKIPPED"
    CANCELLED = "CANCELLED"


class ReminderType(str, PyEnum):
    STANDARD = "STANDARD"
    CONFIRMATION = "CONFIRMATION"
    FINAL = "FINAL"
    PRE_VISIT = "PRE_VISIT"
    FIRST_VISIT = "FIRST_VISIT"
    FOLLOW_UP = "FOLLOW_UP"


class CampaignStatus(str, PyEnum):
    DRAFT = "DRAFT"
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class CampaignTriggerType(str, PyEnum):
    SCHEDULED = "SCHEDULED"
    EVENT = "EVENT"
    MANUAL = "MANUAL"


class CampaignStepType(str, PyEnum):
    SEND = "SEND"
    WAIT = "WAIT"
    CONDITION = "CONDITION"


def _enum(enum_cls: type[PyEnum], name: str) -> Enum:
    return Enum(enum_cls, name=name, native_enum=False, length=32)


class Clinic(Base):
    """Tenant that owns every other row."""

    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(40), nullable=True)
    address = Column(Text, nullable=True)


class Patient(Base):
    """Patient contact details used to address outbound communication."""

    __tablename__ = "patients"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(320), nullable=True)
    phone = Column(String(40), nullable=True)


class Appointment(Base):
    """Appointment status dimension and the timestamps its transitions stamp."""

    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    provider_name = Column(String(200), nullable=True)
    appointment_type = Column(String(200), nullable=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=30)
    status = Column(
        _enum(AppointmentStatus, "appointment_status"),
        nullable=False,
        default=AppointmentStatus.SCHEDULED,
    )
    confirmation_status = Column(
        _enum(ConfirmationStatus, "confirmation_status"),
        nullable=False,
        default=ConfirmationStatus.UNCONFIRMED,
    )
    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by = Column(String(200), nullable=True)
    arrived_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    marked_no_show_at = Column(DateTime(timezone=True), nullable=True)
    no_show_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(200), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    patient = relationship("Patient", lazy="joined")
    clinic = relationship("Clinic", lazy="joined")


class Message(Base):
    """One unit of outbound or inbound communication."""

    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_status_scheduled_at", "status", "scheduled_at"),
        Index("ix_messages_status_next_retry_at", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    channel = Column(_enum(MessageChannel, "message_channel"), nullable=False)
    direction = Column(
        _enum(MessageDirection, "message_direction"),
        nullable=False,
        default=MessageDirection.OUTBOUND,
    )
    status = Column(
        _enum(MessageStatus, "message_status"),
        nullable=False,
        default=MessageStatus.PENDING,
    )
    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    to_address = Column(String(320), nullable=True)
    from_address = Column(String(320), nullable=True)
    scheduled_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    read_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claim_token = Column(String(64), nullable=True)
    external_id = Column(String(200), nullable=True, index=True)
    related_type = Column(String(100), nullable=True)
    related_id = Column(String(100), nullable=True)
    created_by = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    patient = relationship("Patient", lazy="joined")


class ReminderTemplate(Base):
    """Clinic-defined reminder content and timing."""

    __tablename__ = "reminder_templates"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    reminder_type = Column(_enum(ReminderType, "reminder_type"), nullable=False)
    channel = Column(_enum(MessageChannel, "reminder_template_channel"), nullable=False)
    subject = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    hours_before = Column(Integer, nullable=False, default=24)
    is_active = Column(Boolean, nullable=False, default=True)


class ReminderDelivery(Base):
    """One scheduled attempt to notify a patient about an appointment."""

    __tablename__ = "reminder_deliveries"
    __table_args__ = (
        Index("ix_reminder_deliveries_status_due_at", "status", "due_at"),
        Index("ix_reminder_deliveries_status_next_retry_at", "status", "next_retry_at"),
    )

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    appointment_id = Column(Integer, ForeignKey("appointments.id"), nullable=False, index=True)
    patient_id = Column(Integer, ForeignKey("patients.id"), nullable=False)
    template_id = Column(Integer, ForeignKey("reminder_templates.id"), nullable=True)
    channel = Column(_enum(MessageChannel, "reminder_channel"), nullable=False)
    reminder_type = Column(
        _enum(ReminderType, "reminder_delivery_type"),
        nullable=False,
        default=ReminderType.STANDARD,
    )
    due_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        _enum(ReminderStatus, "reminder_status"),
        nullable=False,
        default=ReminderStatus.PENDING,
    )
    attempt_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    claim_token = Column(String(64), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    content_sent = Column(Text, nullable=True)
    external_id = Column(String(200), nullable=True)
    response_type = Column(String(40), nullable=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    appointment = relationship("Appointment", lazy="joined")
    template = relationship("ReminderTemplate", lazy="joined")


class Campaign(Base):
    """Multi-step outbound communication program."""

    __tablename__ = "campaigns"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    status = Column(
        _enum(CampaignStatus, "campaign_status"),
        nullable=False,
        default=CampaignStatus.DRAFT,
    )
    trigger_type = Column(
        _enum(CampaignTriggerType, "campaign_trigger_type"),
        nullable=False,
        default=CampaignTriggerType.MANUAL,
    )
    trigger_schedule = Column(String(200), nullable=True)
    trigger_event = Column(String(200), nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    archived_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    steps = relationship(
        "CampaignStep",
        order_by="CampaignStep.step_order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class CampaignStep(Base):
    """Ordered step of a campaign."""

    __tablename__ = "campaign_steps"

    id = Column(Integer, primary_key=True)
    campaign_id = Column(Integer, ForeignKey("campaigns.id"), nullable=False, index=True)
    step_order = Column(Integer, nullable=False)
    step_type = Column(_enum(CampaignStepType, "campaign_step_type"), nullable=False)
    channel = Column(_enum(MessageChannel, "campaign_step_channel"), nullable=True)
    body = Column(Text, nullable=True)
    wait_hours = Column(Integer, nullable=True)


class AuditEvent(Base):
    """Audit entry emitted for every transition and delivery attempt."""

    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True)
    clinic_id = Column(Integer, nullable=True, index=True)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(100), nullable=False)
    action = Column(String(100), nullable=False)
    previous_status = Column(String(40), nullable=True)
    new_status = Column(String(40), nullable=True)
    actor = Column(String(200), nullable=False)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
