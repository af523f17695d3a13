"""RFC 5545 text encoding and VCALENDAR document assembly.

Everything here is pure: no I/O and no clock access unless the caller omits
``dtstamp``.  Content lines are collected by :class:`ICalendarBuilder`, which
applies escaping and 75-octet line folding in one place.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import UTC, datetime

from curaknot.feed.models import CalendarEvent

CRLF = "\r\n"
MAX_LINE_OCTETS = 75
DESCRIPTION_MAX_CHARS = 500
ELLIPSIS = "..."
REFRESH_INTERVAL = "PT15M"
DEFAULT_PRODUCT_ID = "-//CuraKnot//Care Calendar//EN"


def escape_ical_text(text: str) -> str:
    """Escape a TEXT property value (RFC 5545 section 3.3.11).

    Backslash goes first so later replacements are not double-escaped.
    """
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\r", "\\n")
        .replace("\n", "\\n")
    )


def truncate_text(text: str, max_length: int = DESCRIPTION_MAX_CHARS) -> str:
    """Cap *text* at *max_length* characters, ending in ``...`` when cut."""
    if len(text) <= max_length:
        return text
    return text[: max_length - len(ELLIPSIS)] + ELLIPSIS


def format_datetime(value: datetime) -> str:
    """Render an instant in UTC basic format, e.g. ``20260301T140000Z``."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y%m%dT%H%M%SZ")


def fold_line(line: str) -> str:
    """Fold a content line so no physical line exceeds 75 octets.

    The first physical line holds up to 75 octets; each continuation line is
    a single space followed by up to 74 octets.  Multi-byte UTF-8 sequences
    are never split.
    """
    if len(line.encode("utf-8")) <= MAX_LINE_OCTETS:
        return line

    parts: list[str] = []
    current: list[str] = []
    current_size = 0
    limit = MAX_LINE_OCTETS
    for char in line:
        size = len(char.encode("utf-8"))
        if current_size + size > limit:
            parts.append("".join(current))
            current = []
            current_size = 0
            limit = MAX_LINE_OCTETS - 1
        current.append(char)
        current_size += size
    parts.append("".join(current))

    return CRLF.join([parts[0], *(f" {part}" for part in parts[1:])])


class ICalendarBuilder:
    """Accumulates content lines and renders them CRLF-terminated.

    Usage::

        builder = ICalendarBuilder()
        builder.begin("VCALENDAR")
        builder.add_text("X-WR-CALNAME", "Family, Smith")
        builder.end("VCALENDAR")
        body = builder.render()
    """

    def __init__(self) -> None:
        self._lines: list[str] = []

    def begin(self, component: str) -> None:
        self._lines.append(f"BEGIN:{component}")

    def end(self, component: str) -> None:
        self._lines.append(f"END:{component}")

    def add(self, name: str, value: str) -> None:
        """Add a property whose value is already in wire form."""
        self._lines.append(fold_line(f"{name}:{value}"))

    def add_text(self, name: str, value: str) -> None:
        """Add a TEXT property, escaping its value first."""
        self.add(name, escape_ical_text(value))

    @property
    def lines(self) -> list[str]:
        return list(self._lines)

    def render(self) -> str:
        return "".join(f"{line}{CRLF}" for line in self._lines)


def add_event(builder: ICalendarBuilder, event: CalendarEvent, dtstamp: datetime) -> None:
    """Append one VEVENT block for *event*."""
    builder.begin("VEVENT")
    builder.add("UID", event.uid)
    builder.add("DTSTAMP", format_datetime(dtstamp))
    builder.add("DTSTART", format_datetime(event.start))
    builder.add("DTEND", format_datetime(event.end))
    builder.add_text("SUMMARY", event.summary)
    if event.description:
        builder.add_text("DESCRIPTION", truncate_text(event.description))
    if event.location:
        builder.add_text("LOCATION", event.location)
    if event.category:
        builder.add("CATEGORIES", str(event.category))
    builder.end("VEVENT")


def serialize(
    calendar_name: str,
    events: Iterable[CalendarEvent],
    *,
    dtstamp: datetime | None = None,
    product_id: str = DEFAULT_PRODUCT_ID,
) -> str:
    """Encode a named calendar and its events as an iCalendar document."""
    stamp = dtstamp or datetime.now(UTC)

    builder = ICalendarBuilder()
    builder.begin("VCALENDAR")
    builder.add("VERSION", "2.0")
    builder.add("PRODID", product_id)
    builder.add("CALSCALE", "GREGORIAN")
    builder.add("METHOD", "PUBLISH")
    builder.add_text("X-WR-CALNAME", calendar_name)
    builder.add("X-WR-TIMEZONE", "UTC")
    builder.add("REFRESH-INTERVAL;VALUE=DURATION", REFRESH_INTERVAL)

    for event in events:
        add_event(builder, event, stamp)

    builder.end("VCALENDAR")
    return builder.render()
