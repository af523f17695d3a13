"""Value objects for the calendar feed pipeline.

Domain records mirror the read-only rows consumed from the app database.
``CalendarEvent`` is the formatter's output and only lives for one request.
"""

from __future__ import annotations

import enum
import json
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

PAST_WINDOW = timedelta(days=7)


class EventCategory(enum.StrEnum):
    """Calendar category tag, also used as the ``CATEGORIES`` value."""

    TASK = "TASK"
    SHIFT = "SHIFT"
    APPOINTMENT = "APPOINTMENT"
    HANDOFF_FOLLOWUP = "HANDOFF_FOLLOWUP"


@dataclass(frozen=True)
class FeedConfig:
    """Sanitized feed configuration.

    ``patient_ids`` is ``None`` for "all patients in the circle".  An empty
    tuple means the allowlist matched nothing and the feed carries no events.
    """

    include_tasks: bool = True
    include_shifts: bool = True
    include_appointments: bool = True
    include_handoff_followups: bool = False
    patient_ids: tuple[UUID, ...] | None = None
    show_minimal_details: bool = True
    lookahead_days: int = 90


@dataclass(frozen=True)
class TokenScope:
    """What a valid feed token grants: one circle plus its raw feed config."""

    token_id: UUID | None
    circle_id: UUID
    feed_config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DateWindow:
    """Inclusive UTC time window used by every event source."""

    start: datetime
    end: datetime

    @classmethod
    def for_lookahead(cls, lookahead_days: int, now: datetime | None = None) -> DateWindow:
        now = now or datetime.now(UTC)
        return cls(start=now - PAST_WINDOW, end=now + timedelta(days=lookahead_days))

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass(frozen=True)
class CalendarEvent:
    """One VEVENT worth of data, already redacted according to the feed policy."""

    uid: str
    start: datetime
    end: datetime
    summary: str
    description: str = ""
    location: str = ""
    category: EventCategory | None = None

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Event {self.uid} ends before it starts")


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


def coerce_datetime(value: object) -> datetime | None:
    """Parse a timestamp into an aware UTC datetime, or None if unusable."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        normalized = value.strip()
        if not normalized:
            return None
        if normalized.endswith("Z"):
            normalized = f"{normalized[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


@dataclass(frozen=True)
class TaskRecord:
    id: UUID
    circle_id: UUID
    title: str
    due_at: datetime
    patient_id: UUID | None = None
    description: str | None = None
    priority: str = "MED"
    status: str = "OPEN"
    patient_name: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> TaskRecord:
        due_at = coerce_datetime(row["due_at"])
        if due_at is None:
            raise ValueError(f"Task {row['id']} has no usable due_at")
        return cls(
            id=row["id"],
            circle_id=row["circle_id"],
            patient_id=row.get("patient_id"),
            title=row["title"],
            description=row.get("description"),
            due_at=due_at,
            priority=row.get("priority") or "MED",
            status=row.get("status") or "OPEN",
            patient_name=row.get("patient_name"),
        )


@dataclass(frozen=True)
class FollowupRecord(TaskRecord):
    """An open task that was created from a published handoff."""

    handoff_id: UUID | None = None
    handoff_title: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> FollowupRecord:
        task = TaskRecord.from_row(row)
        return cls(
            **{f.name: getattr(task, f.name) for f in fields(TaskRecord)},
            handoff_id=row.get("handoff_id"),
            handoff_title=row.get("handoff_title"),
        )


@dataclass(frozen=True)
class ShiftRecord:
    id: UUID
    circle_id: UUID
    start_at: datetime
    end_at: datetime
    patient_id: UUID | None = None
    owner_user_id: UUID | None = None
    status: str = "SCHEDULED"
    notes: str | None = None
    patient_name: str | None = None
    owner_name: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> ShiftRecord:
        start_at = coerce_datetime(row["start_at"])
        end_at = coerce_datetime(row["end_at"])
        if start_at is None or end_at is None:
            raise ValueError(f"Shift {row['id']} has no usable start/end")
        return cls(
            id=row["id"],
            circle_id=row["circle_id"],
            patient_id=row.get("patient_id"),
            owner_user_id=row.get("owner_user_id"),
            start_at=start_at,
            end_at=end_at,
            status=row.get("status") or "SCHEDULED",
            notes=row.get("notes"),
            patient_name=row.get("patient_name"),
            owner_name=row.get("owner_name"),
        )


class AppointmentContent(BaseModel):
    """The subset of a CONTACT binder item's ``content_json`` the feed reads.

    Every field is optional; unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    next_appointment: str | None = Field(default=None, alias="nextAppointment")
    name: str | None = None
    organization: str | None = None
    address: str | None = None
    phone: str | None = None
    notes: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value: object) -> object:
        if value is None or isinstance(value, str):
            return value
        if isinstance(value, int | float) and not isinstance(value, bool):
            return str(value)
        return value

    @classmethod
    def parse(cls, raw: object) -> AppointmentContent:
        """Parse stored JSON (text or already decoded).

        Raises ``ValueError`` for anything that is not a JSON object of the
        expected shape.
        """
        if isinstance(raw, str | bytes):
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as exc:
                raise ValueError(f"invalid JSON: {exc.msg}") from exc
        if not isinstance(raw, Mapping):
            raise ValueError("content is not a JSON object")
        try:
            return cls.model_validate(dict(raw))
        except ValidationError as exc:
            raise ValueError(f"unexpected content shape: {exc.error_count()} error(s)") from exc


@dataclass(frozen=True)
class AppointmentRecord:
    id: UUID
    circle_id: UUID
    title: str
    appointment_at: datetime
    content: AppointmentContent
    patient_id: UUID | None = None
    patient_name: str | None = None

    @property
    def provider_name(self) -> str:
        return self.content.name or self.title
