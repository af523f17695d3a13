"""Event source adapters: windowed, patient-filtered reads for each category.

Every adapter honours the same contract.  ``fetch`` never raises for data
problems: a query error, a timeout or an unreadable row is logged at WARNING,
counted, and contributes nothing, so one broken source cannot blank out a
caregiver's calendar.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, ClassVar, Protocol
from uuid import UUID

from curaknot.core.metrics import FeedMetrics
from curaknot.feed.models import (
    AppointmentContent,
    AppointmentRecord,
    DateWindow,
    EventCategory,
    FeedConfig,
    FollowupRecord,
    ShiftRecord,
    TaskRecord,
    coerce_datetime,
)

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_TIMEOUT_SECONDS = 10.0


class Queryable(Protocol):
    async def fetch(self, query: str, *args: Any, timeout: float | None = None) -> list[Any]: ...


class EventSource(abc.ABC):
    """Base class wrapping a category query with timeout and failure isolation."""

    category: ClassVar[EventCategory]

    def __init__(
        self,
        db: Queryable,
        *,
        timeout_seconds: float = DEFAULT_SOURCE_TIMEOUT_SECONDS,
        metrics: FeedMetrics | None = None,
    ) -> None:
        self._db = db
        self._timeout = timeout_seconds
        self._metrics = metrics or FeedMetrics()

    @abc.abstractmethod
    async def _query(
        self, circle_id: UUID, patient_ids: Sequence[UUID] | None, window: DateWindow
    ) -> list[Mapping[str, Any]]:
        """Run the category query and return raw rows."""

    @abc.abstractmethod
    def _to_record(self, row: Mapping[str, Any], window: DateWindow) -> Any | None:
        """Convert a row; return None to skip it, raise ValueError if malformed."""

    async def fetch(
        self, circle_id: UUID, patient_ids: Sequence[UUID] | None, window: DateWindow
    ) -> list[Any]:
        if patient_ids is not None and not patient_ids:
            return []

        try:
            rows = await asyncio.wait_for(
                self._query(circle_id, patient_ids, window), timeout=self._timeout
            )
        except TimeoutError:
            logger.warning(
                "%s source timed out after %.1fs for circle %s",
                self.category,
                self._timeout,
                circle_id,
            )
            self._metrics.source_failed(self.category)
            return []
        except Exception as exc:
            logger.warning(
                "%s source query failed for circle %s: %s",
                self.category,
                circle_id,
                exc,
                exc_info=True,
            )
            self._metrics.source_failed(self.category)
            return []

        records = []
        for row in rows:
            try:
                record = self._to_record(row, window)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning(
                    "Skipping malformed %s row %s: %s",
                    self.category,
                    _row_id(row),
                    exc,
                )
                self._metrics.source_failed(self.category)
                continue
            if record is not None:
                records.append(record)
        return records


def _row_id(row: Mapping[str, Any]) -> object:
    try:
        return row["id"]
    except (KeyError, TypeError):
        return "<unknown>"


# Matches the follow-up source's join, so each open task lands in exactly one category.
_PUBLISHED_HANDOFF_OF_TASK = (
    "SELECT 1 FROM handoffs h WHERE h.id = t.handoff_id AND h.status = 'PUBLISHED'"
)


def _patient_filter(patient_ids: Sequence[UUID] | None) -> list[UUID] | None:
    return list(patient_ids) if patient_ids is not None else None


class TaskSource(EventSource):
    """Open tasks with a due date inside the window."""

    category = EventCategory.TASK

    def __init__(
        self, db: Queryable, *, exclude_handoff_tasks: bool = False, **kwargs: Any
    ) -> None:
        super().__init__(db, **kwargs)
        self._exclude_handoff_tasks = exclude_handoff_tasks

    async def _query(
        self, circle_id: UUID, patient_ids: Sequence[UUID] | None, window: DateWindow
    ) -> list[Mapping[str, Any]]:
        handoff_clause = (
            f" AND NOT EXISTS ({_PUBLISHED_HANDOFF_OF_TASK})" if self._exclude_handoff_tasks else ""
        )
        return await self._db.fetch(
            "SELECT t.id, t.circle_id, t.patient_id, t.title, t.description, t.due_at,"
            " t.priority, t.status, p.display_name AS patient_name"
            " FROM tasks t"
            " LEFT JOIN patients p ON p.id = t.patient_id"
            " WHERE t.circle_id = $1"
            " AND t.status = 'OPEN'"
            " AND t.due_at IS NOT NULL"
            " AND t.due_at BETWEEN $2 AND $3"
            " AND ($4::uuid[] IS NULL OR t.patient_id = ANY($4::uuid[]))"
            f"{handoff_clause}"
            " ORDER BY t.due_at, t.id",
            circle_id,
            window.start,
            window.end,
            _patient_filter(patient_ids),
        )

    def _to_record(self, row: Mapping[str, Any], window: DateWindow) -> TaskRecord:
        return TaskRecord.from_row(row)


class ShiftSource(EventSource):
    """Scheduled or in-progress shifts starting inside the window."""

    category = EventCategory.SHIFT

    async def _query(
        self, circle_id: UUID, patient_ids: Sequence[UUID] | None, window: DateWindow
    ) -> list[Mapping[str, Any]]:
        return await self._db.fetch(
            "SELECT s.id, s.circle_id, s.patient_id, s.owner_user_id, s.start_at, s.end_at,"
            " s.status, s.notes, p.display_name AS patient_name, u.display_name AS owner_name"
            " FROM care_shifts s"
            " LEFT JOIN patients p ON p.id = s.patient_id"
            " LEFT JOIN users u ON u.id = s.owner_user_id"
            " WHERE s.circle_id = $1"
            " AND s.status IN ('SCHEDULED', 'IN_PROGRESS')"
            " AND s.start_at BETWEEN $2 AND $3"
            " AND ($4::uuid[] IS NULL OR s.patient_id = ANY($4::uuid[]))"
            " ORDER BY s.start_at, s.id",
            circle_id,
            window.start,
            window.end,
            _patient_filter(patient_ids),
        )

    def _to_record(self, row: Mapping[str, Any], window: DateWindow) -> ShiftRecord:
        return ShiftRecord.from_row(row)


class AppointmentSource(EventSource):
    """Active CONTACT binder items whose ``nextAppointment`` falls in the window.

    The appointment time lives inside schemaless JSON, so the window filter
    runs after parsing.  Content that does not parse, or has no usable
    timestamp, is skipped.
    """

    category = EventCategory.APPOINTMENT

    async def _query(
        self, circle_id: UUID, patient_ids: Sequence[UUID] | None, window: DateWindow
    ) -> list[Mapping[str, Any]]:
        return await self._db.fetch(
            "SELECT b.id, b.circle_id, b.patient_id, b.title, b.content_json,"
            " p.display_name AS patient_name"
            " FROM binder_items b"
            " LEFT JOIN patients p ON p.id = b.patient_id"
            " WHERE b.circle_id = $1"
            " AND b.type = 'CONTACT'"
            " AND b.is_active"
            " AND ($2::uuid[] IS NULL OR b.patient_id = ANY($2::uuid[]))"
            " ORDER BY b.id",
            circle_id,
            _patient_filter(patient_ids),
        )

    def _to_record(self, row: Mapping[str, Any], window: DateWindow) -> AppointmentRecord | None:
        content = AppointmentContent.parse(row["content_json"])
        if not content.next_appointment:
            return None
        appointment_at = coerce_datetime(content.next_appointment)
        if appointment_at is None:
            logger.warning(
                "Binder item %s has an unreadable nextAppointment; skipping", row["id"]
            )
            return None
        if not window.contains(appointment_at):
            return None
        return AppointmentRecord(
            id=row["id"],
            circle_id=row["circle_id"],
            patient_id=row.get("patient_id"),
            title=row["title"],
            appointment_at=appointment_at,
            content=content,
            patient_name=row.get("patient_name"),
        )


class HandoffFollowupSource(EventSource):
    """Open tasks created from a published handoff, due inside the window."""

    category = EventCategory.HANDOFF_FOLLOWUP

    async def _query(
        self, circle_id: UUID, patient_ids: Sequence[UUID] | None, window: DateWindow
    ) -> list[Mapping[str, Any]]:
        return await self._db.fetch(
            "SELECT t.id, t.circle_id, t.patient_id, t.title, t.description, t.due_at,"
            " t.priority, t.status, p.display_name AS patient_name,"
            " h.id AS handoff_id, h.title AS handoff_title"
            " FROM tasks t"
            " JOIN handoffs h ON h.id = t.handoff_id"
            " LEFT JOIN patients p ON p.id = t.patient_id"
            " WHERE t.circle_id = $1"
            " AND h.status = 'PUBLISHED'"
            " AND t.status = 'OPEN'"
            " AND t.due_at IS NOT NULL"
            " AND t.due_at BETWEEN $2 AND $3"
            " AND ($4::uuid[] IS NULL OR t.patient_id = ANY($4::uuid[]))"
            " ORDER BY t.due_at, t.id",
            circle_id,
            window.start,
            window.end,
            _patient_filter(patient_ids),
        )

    def _to_record(self, row: Mapping[str, Any], window: DateWindow) -> FollowupRecord:
        return FollowupRecord.from_row(row)


@dataclass
class SourceResults:
    """Records per category, in feed output order."""

    tasks: list[TaskRecord] = field(default_factory=list)
    shifts: list[ShiftRecord] = field(default_factory=list)
    appointments: list[AppointmentRecord] = field(default_factory=list)
    followups: list[FollowupRecord] = field(default_factory=list)

    def ordered(self) -> list[Any]:
        return [*self.tasks, *self.shifts, *self.appointments, *self.followups]

    def __len__(self) -> int:
        return len(self.tasks) + len(self.shifts) + len(self.appointments) + len(self.followups)


def build_sources(
    db: Queryable,
    config: FeedConfig,
    *,
    timeout_seconds: float = DEFAULT_SOURCE_TIMEOUT_SECONDS,
    metrics: FeedMetrics | None = None,
) -> dict[EventCategory, EventSource]:
    """Instantiate the adapters the feed config enables."""
    common: dict[str, Any] = {"timeout_seconds": timeout_seconds, "metrics": metrics}
    sources: dict[EventCategory, EventSource] = {}
    if config.include_tasks:
        sources[EventCategory.TASK] = TaskSource(
            db, exclude_handoff_tasks=config.include_handoff_followups, **common
        )
    if config.include_shifts:
        sources[EventCategory.SHIFT] = ShiftSource(db, **common)
    if config.include_appointments:
        sources[EventCategory.APPOINTMENT] = AppointmentSource(db, **common)
    if config.include_handoff_followups:
        sources[EventCategory.HANDOFF_FOLLOWUP] = HandoffFollowupSource(db, **common)
    return sources


async def gather(
    sources: Mapping[EventCategory, EventSource],
    circle_id: UUID,
    patient_ids: Sequence[UUID] | None,
    window: DateWindow,
) -> SourceResults:
    """Fetch every enabled source concurrently."""
    categories = list(sources)
    fetched = await asyncio.gather(
        *(sources[category].fetch(circle_id, patient_ids, window) for category in categories)
    )
    by_category = dict(zip(categories, fetched, strict=True))
    return SourceResults(
        tasks=by_category.get(EventCategory.TASK, []),
        shifts=by_category.get(EventCategory.SHIFT, []),
        appointments=by_category.get(EventCategory.APPOINTMENT, []),
        followups=by_category.get(EventCategory.HANDOFF_FOLLOWUP, []),
    )
