"""Map domain records to :class:`CalendarEvent` values.

Minimal mode is the privacy boundary: a minimal event carries only a fixed
per-category label, so no title, patient name, provider name or note ever
reaches a third-party calendar client.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from curaknot.feed.models import (
    AppointmentRecord,
    CalendarEvent,
    EventCategory,
    FollowupRecord,
    ShiftRecord,
    TaskRecord,
)

TASK_DURATION = timedelta(minutes=30)
APPOINTMENT_DURATION = timedelta(minutes=60)

_UID_PREFIXES: dict[EventCategory, str] = {
    EventCategory.TASK: "task",
    EventCategory.SHIFT: "shift",
    EventCategory.APPOINTMENT: "appt",
    EventCategory.HANDOFF_FOLLOWUP: "followup",
}

Record = TaskRecord | ShiftRecord | AppointmentRecord | FollowupRecord


@dataclass(frozen=True)
class Branding:
    """Product naming used in summaries and UIDs."""

    product_name: str = "CuraKnot"
    uid_domain: str = "curaknot.app"
    summary_prefix: str = "CK"

    def minimal_summary(self, category: EventCategory) -> str:
        label = {
            EventCategory.TASK: "Event",
            EventCategory.SHIFT: "Shift",
            EventCategory.APPOINTMENT: "Appointment",
            EventCategory.HANDOFF_FOLLOWUP: "Follow-up",
        }[category]
        return f"{self.product_name} {label}"


DEFAULT_BRANDING = Branding()


def event_uid(category: EventCategory, record_id: UUID | str, domain: str) -> str:
    """Stable UID so calendar apps treat re-polled records as updates."""
    return f"{_UID_PREFIXES[category]}-{record_id}@{domain}"


def _join(*parts: str | None) -> str:
    return "\n".join(part for part in parts if part)


def format_task(
    task: TaskRecord, minimal: bool, branding: Branding = DEFAULT_BRANDING
) -> CalendarEvent:
    category = EventCategory.TASK
    if minimal:
        summary, description = branding.minimal_summary(category), ""
    else:
        summary = f"{branding.summary_prefix}: {task.title}"
        description = _join(
            task.description,
            f"Patient: {task.patient_name}" if task.patient_name else None,
            f"Priority: {task.priority}",
        )
    return CalendarEvent(
        uid=event_uid(category, task.id, branding.uid_domain),
        start=task.due_at,
        end=task.due_at + TASK_DURATION,
        summary=summary,
        description=description,
        category=category,
    )


def format_followup(
    followup: FollowupRecord, minimal: bool, branding: Branding = DEFAULT_BRANDING
) -> CalendarEvent:
    category = EventCategory.HANDOFF_FOLLOWUP
    if minimal:
        summary, description = branding.minimal_summary(category), ""
    else:
        summary = f"{branding.summary_prefix} Follow-up: {followup.title}"
        description = _join(
            followup.description,
            f"Patient: {followup.patient_name}" if followup.patient_name else None,
            f"From handoff: {followup.handoff_title}" if followup.handoff_title else None,
            f"Priority: {followup.priority}",
        )
    return CalendarEvent(
        uid=event_uid(category, followup.id, branding.uid_domain),
        start=followup.due_at,
        end=followup.due_at + TASK_DURATION,
        summary=summary,
        description=description,
        category=category,
    )


def format_shift(
    shift: ShiftRecord, minimal: bool, branding: Branding = DEFAULT_BRANDING
) -> CalendarEvent:
    category = EventCategory.SHIFT
    if minimal:
        summary, description = branding.minimal_summary(category), ""
    else:
        patient = shift.patient_name or "Patient"
        owner = shift.owner_name or "Caregiver"
        summary = f"{branding.summary_prefix} Shift: {patient} - {owner}"
        description = shift.notes or ""
    return CalendarEvent(
        uid=event_uid(category, shift.id, branding.uid_domain),
        start=shift.start_at,
        end=max(shift.end_at, shift.start_at),
        summary=summary,
        description=description,
        category=category,
    )


def format_appointment(
    appointment: AppointmentRecord, minimal: bool, branding: Branding = DEFAULT_BRANDING
) -> CalendarEvent:
    category = EventCategory.APPOINTMENT
    content = appointment.content
    if minimal:
        summary, description, location = branding.minimal_summary(category), "", ""
    else:
        patient = appointment.patient_name or "Patient"
        summary = f"{branding.summary_prefix} Appt: {patient} - {appointment.provider_name}"
        description = _join(content.organization, content.address, content.phone, content.notes)
        location = content.address or ""
    return CalendarEvent(
        uid=event_uid(category, appointment.id, branding.uid_domain),
        start=appointment.appointment_at,
        end=appointment.appointment_at + APPOINTMENT_DURATION,
        summary=summary,
        description=description,
        location=location,
        category=category,
    )


def format_record(
    record: Record, minimal: bool, branding: Branding = DEFAULT_BRANDING
) -> CalendarEvent:
    """Dispatch on record type; follow-ups are checked before plain tasks."""
    if isinstance(record, FollowupRecord):
        return format_followup(record, minimal, branding)
    if isinstance(record, TaskRecord):
        return format_task(record, minimal, branding)
    if isinstance(record, ShiftRecord):
        return format_shift(record, minimal, branding)
    if isinstance(record, AppointmentRecord):
        return format_appointment(record, minimal, branding)
    raise TypeError(f"Unsupported record type: {type(record).__name__}")
