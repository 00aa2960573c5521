"""Reminder content rendering.

Clinic templates use ``{placeholder}`` substitution; reminders without an
active template fall back to built-in wording per reminder type and channel.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime

from models import Appointment, MessageChannel, ReminderDelivery, ReminderTemplate, ReminderType
from time_utils import to_utc

_PLACEHOLDER = re.compile(r"\{(\w+)\}")


@dataclass(frozen=True)
class RenderedContent:
    body: str
    subject: str | None = None


def format_date(value: datetime) -> str:
    """Format a date as ``Monday, March 2, 2026``."""
    value = to_utc(value)
    return f"{value:%A, %B} {value.day}, {value.year}"


def format_time(value: datetime) -> str:
    """Format a time as ``2:30 PM``."""
    value = to_utc(value)
    return f"{value.hour % 12 or 12}:{value:%M %p}"


def build_variables(appointment: Appointment) -> dict[str, str]:
    """Collect the substitution variables for an appointment's reminders."""
    patient = appointment.patient
    clinic = appointment.clinic
    return {
        "patient_first_name": patient.first_name if patient else "",
        "patient_last_name": patient.last_name if patient else "",
        "appointment_date": format_date(appointment.start_time),
        "appointment_time": format_time(appointment.start_time),
        "appointment_duration": str(appointment.duration_minutes or ""),
        "appointment_type": appointment.appointment_type or "Appointment",
        "provider_name": appointment.provider_name or "Your provider",
        "clinic_name": clinic.name if clinic else "",
        "clinic_phone": (clinic.phone if clinic else None) or "",
        "clinic_address": (clinic.address if clinic else None) or "",
    }


def substitute(text: str, variables: dict[str, str]) -> str:
    """Replace known ``{name}`` placeholders; unknown ones are left as written."""
    return _PLACEHOLDER.sub(lambda match: variables.get(match.group(1), match.group(0)), text)


def render_template(template: ReminderTemplate, variables: dict[str, str]) -> RenderedContent:
    subject = substitute(template.subject, variables) if template.subject else None
    return RenderedContent(body=substitute(template.body, variables), subject=subject)


def builtin_content(
    reminder_type: ReminderType,
    channel: MessageChannel,
    variables: dict[str, str],
) -> RenderedContent:
    """Return the default wording for a reminder type on a channel."""
    v = variables
    first = v["patient_first_name"]
    date = v["appointment_date"]
    time = v["appointment_time"]
    provider = v["provider_name"]
    clinic = v["clinic_name"]
    phone = v["clinic_phone"]
    email = channel == MessageChannel.EMAIL

    if reminder_type == ReminderType.STANDARD:
        if email:
            return RenderedContent(
                subject=f"Appointment Reminder - {date}",
                body=(
                    f"Hi {first},\n\nThis is a friendly reminder about your upcoming appointment:\n\n"
                    f"Date: {date}\nTime: {time}\nProvider: {provider}\nLocation: {clinic}\n\n"
                    f"If you need to reschedule or cancel, please contact us at "
                    f"{phone or 'our office'}.\n\nWe look forward to seeing you!\n\n{clinic}"
                ),
            )
        return RenderedContent(
            body=(
                f"Hi {first}! Reminder: You have an appointment on {date} at {time} "
                f"with {provider} at {clinic}. Questions? Call {phone or 'us'}."
            )
        )

    if reminder_type == ReminderType.CONFIRMATION:
        if email:
            return RenderedContent(
                subject=f"Please Confirm Your Appointment - {date}",
                body=(
                    f"Hi {first},\n\nPlease confirm your upcoming appointment:\n\n"
                    f"Date: {date}\nTime: {time}\nProvider: {provider}\n\n"
                    f"Reply CONFIRM to confirm or CANCEL if you cannot make it.\n\n{clinic}"
                ),
            )
        return RenderedContent(
            body=(
                f"Hi {first}! Please confirm your appt on {date} at {time}. "
                f"Reply C to confirm or X to cancel. {clinic}"
            )
        )

    if reminder_type == ReminderType.FINAL:
        return RenderedContent(
            body=(
                f"Reminder: Your appointment is TODAY at {time} with {provider} "
                f"at {clinic}. See you soon!"
            )
        )

    if reminder_type == ReminderType.PRE_VISIT:
        if email:
            return RenderedContent(
                subject=f"Prepare for Your Visit - {date}",
                body=(
                    f"Hi {first},\n\nYour appointment is coming up! Here's what to know:\n\n"
                    f"Date: {date}\nTime: {time}\n\n"
                    "Please arrive 10 minutes early and bring:\n"
                    "- Valid ID\n- Insurance card (if applicable)\n- List of current medications\n\n"
                    f"{clinic}"
                ),
            )
        return RenderedContent(
            body=(
                f"Hi {first}! Your appt is {date} at {time}. Please arrive 10 min early "
                f"with ID & insurance card. {clinic}"
            )
        )

    if reminder_type == ReminderType.FIRST_VISIT:
        if email:
            address = v["clinic_address"]
            location = f"{clinic}\n   {address}" if address else clinic
            return RenderedContent(
                subject=f"Welcome! Your First Appointment - {date}",
                body=(
                    f"Hi {first},\n\nWe're excited to meet you! Here's your first appointment info:\n\n"
                    f"Date: {date}\nTime: {time}\nProvider: {provider}\nLocation: {location}\n\n"
                    "Please arrive 15 minutes early to complete paperwork.\n\n"
                    f"Questions? Call us at {phone or 'our office'}.\n\n"
                    f"We look forward to meeting you!\n\n{clinic}"
                ),
            )
        return RenderedContent(
            body=(
                f"Welcome {first}! Your first visit is {date} at {time} at {clinic}. "
                "Please arrive 15 min early. See you soon!"
            )
        )

    if reminder_type == ReminderType.FOLLOW_UP:
        if email:
            return RenderedContent(
                subject=f"Thank You for Your Visit - {clinic}",
                body=(
                    f"Hi {first},\n\nThank you for visiting us today!\n\n"
                    "We hope everything went well. If you have any questions about your visit "
                    "or treatment, please don't hesitate to contact us.\n\n"
                    f"{clinic}\n{phone}"
                ).rstrip(),
            )
        return RenderedContent(
            body=(
                f"Thank you for visiting {clinic} today, {first}! "
                "Questions about your visit? Contact us anytime."
            )
        )

    return RenderedContent(
        body=f"Reminder: You have an appointment on {date} at {time} at {clinic}."
    )


def render_reminder(reminder: ReminderDelivery) -> RenderedContent:
    """Render the content a reminder should carry."""
    variables = build_variables(reminder.appointment)
    template = reminder.template
    if template is not None and template.is_active:
        return render_template(template, variables)
    return builtin_content(
        ReminderType(reminder.reminder_type),
        MessageChannel(reminder.channel),
        variables,
    )
