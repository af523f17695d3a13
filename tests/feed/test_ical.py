"""Tests for RFC 5545 text encoding and VCALENDAR assembly."""

from __future__ import annotations

import itertools
import re
from datetime import UTC, datetime, timedelta, timezone

import pytest

from curaknot.feed.ical import (
    CRLF,
    DEFAULT_PRODUCT_ID,
    ICalendarBuilder,
    escape_ical_text,
    fold_line,
    format_datetime,
    serialize,
    truncate_text,
)
from curaknot.feed.models import CalendarEvent, EventCategory
from curaknot.testing.ical import unfold_lines

pytestmark = pytest.mark.unit

DTSTAMP = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _event(**overrides) -> CalendarEvent:
    values = {
        "uid": "task-1@curaknot.app",
        "start": datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
        "end": datetime(2026, 3, 2, 9, 30, tzinfo=UTC),
        "summary": "CK: Refill prescription",
        "category": EventCategory.TASK,
    }
    values.update(overrides)
    return CalendarEvent(**values)


# ---------------------------------------------------------------------------
# Escaping and truncation
# ---------------------------------------------------------------------------

_SPECIAL_PIECES = ("\\", ";", ",", "\r\n", "\r", "\n")


def _unescape_ical_text(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        escaped = next(chars)
        assert escaped in "\\;,nN", f"unknown escape \\{escaped}"
        out.append("\n" if escaped in "nN" else escaped)
    return "".join(out)


class TestEscapeIcalText:
    def test_escapes_reserved_characters(self):
        assert escape_ical_text("a;b,c") == r"a\;b\,c"

    def test_backslash_escaped_first(self):
        assert escape_ical_text(r"C:\notes;x") == r"C:\\notes\;x"

    def test_newlines_become_literal_backslash_n(self):
        assert escape_ical_text("one\ntwo\r\nthree\rfour") == "one\\ntwo\\nthree\\nfour"

    def test_plain_text_unchanged(self):
        assert escape_ical_text("Dr. Patel at 10am") == "Dr. Patel at 10am"

    def test_colon_is_not_escaped(self):
        assert escape_ical_text("Patient: Mom") == "Patient: Mom"

    @pytest.mark.parametrize("pieces", list(itertools.product(_SPECIAL_PIECES, repeat=3)))
    def test_reserved_sequences_round_trip(self, pieces):
        text = "x" + "".join(pieces) + "y"
        escaped = escape_ical_text(text)

        assert _unescape_ical_text(escaped) == text.replace("\r\n", "\n").replace("\r", "\n")
        bare = re.sub(r"\\.", "", escaped)
        assert not set(bare) & {";", ",", "\\", "\r", "\n"}


class TestTruncateText:
    def test_short_text_unchanged(self):
        assert truncate_text("hello") == "hello"

    def test_exactly_at_limit_unchanged(self):
        text = "x" * 500
        assert truncate_text(text) == text

    def test_over_limit_is_cut_with_ellipsis(self):
        result = truncate_text("x" * 501)
        assert len(result) == 500
        assert result.endswith("...")
        assert result[:497] == "x" * 497


class TestFormatDatetime:
    def test_utc_basic_format(self):
        assert format_datetime(datetime(2026, 3, 1, 14, 0, tzinfo=UTC)) == "20260301T140000Z"

    def test_offset_converted_to_utc(self):
        eastern = timezone(timedelta(hours=-5))
        value = datetime(2026, 3, 1, 9, 30, 15, tzinfo=eastern)
        assert format_datetime(value) == "20260301T143015Z"

    def test_naive_treated_as_utc(self):
        assert format_datetime(datetime(2026, 1, 2, 3, 4, 5)) == "20260102T030405Z"


# ---------------------------------------------------------------------------
# Line folding
# ---------------------------------------------------------------------------


class TestFoldLine:
    def test_short_line_not_folded(self):
        line = "SUMMARY:" + "a" * 67
        assert len(line) == 75
        assert fold_line(line) == line

    def test_long_ascii_line_folded_at_75_octets(self):
        line = "DESCRIPTION:" + "a" * 200
        folded = fold_line(line)
        physical = folded.split(CRLF)
        assert len(physical[0].encode()) == 75
        for continuation in physical[1:]:
            assert continuation.startswith(" ")
            assert len(continuation.encode()) <= 75
        assert "".join(p[1:] if i else p for i, p in enumerate(physical)) == line

    def test_multibyte_characters_never_split(self):
        line = "SUMMARY:" + "é" * 100
        folded = fold_line(line)
        for physical in folded.split(CRLF):
            assert len(physical.encode("utf-8")) <= 75
            # Would raise if a UTF-8 sequence had been cut in half.
            physical.encode("utf-8").decode("utf-8")
        assert unfold_lines(folded + CRLF) == [line]

    def test_emoji_counted_by_octets(self):
        line = "SUMMARY:" + "\U0001f48a" * 30
        for physical in fold_line(line).split(CRLF):
            assert len(physical.encode("utf-8")) <= 75


class TestICalendarBuilder:
    def test_render_terminates_every_line_with_crlf(self):
        builder = ICalendarBuilder()
        builder.begin("VCALENDAR")
        builder.add_text("X-WR-CALNAME", "Family, Smith")
        builder.end("VCALENDAR")
        assert builder.render() == (
            "BEGIN:VCALENDAR\r\nX-WR-CALNAME:Family\\, Smith\r\nEND:VCALENDAR\r\n"
        )

    def test_add_does_not_escape(self):
        builder = ICalendarBuilder()
        builder.add("REFRESH-INTERVAL;VALUE=DURATION", "PT15M")
        assert builder.lines == ["REFRESH-INTERVAL;VALUE=DURATION:PT15M"]


# ---------------------------------------------------------------------------
# Document serialization
# ---------------------------------------------------------------------------


class TestSerialize:
    def test_empty_calendar_is_valid_document(self):
        body = serialize("CuraKnot - Smith Family", [], dtstamp=DTSTAMP)
        lines = unfold_lines(body)
        assert lines == [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            f"PRODID:{DEFAULT_PRODUCT_ID}",
            "CALSCALE:GREGORIAN",
            "METHOD:PUBLISH",
            "X-WR-CALNAME:CuraKnot - Smith Family",
            "X-WR-TIMEZONE:UTC",
            "REFRESH-INTERVAL;VALUE=DURATION:PT15M",
            "END:VCALENDAR",
        ]
        assert "VEVENT" not in body

    def test_every_line_crlf_and_no_blank_lines(self):
        body = serialize("Circle", [_event(), _event(uid="task-2@curaknot.app")], dtstamp=DTSTAMP)
        assert body.endswith(CRLF)
        assert "\n" not in body.replace(CRLF, "")
        assert CRLF + CRLF not in body

    def test_physical_lines_within_75_octets(self):
        event = _event(summary="S" * 300, description="d" * 450, location="L" * 120)
        body = serialize("Circle", [event], dtstamp=DTSTAMP)
        for physical in body.split(CRLF)[:-1]:
            assert len(physical.encode("utf-8")) <= 75

    def test_event_block_contents(self):
        event = _event(description="Line one\nLine two", location="12 Elm St, Springfield")
        lines = unfold_lines(serialize("Circle", [event], dtstamp=DTSTAMP))
        start = lines.index("BEGIN:VEVENT")
        end = lines.index("END:VEVENT")
        assert lines[start + 1 : end] == [
            "UID:task-1@curaknot.app",
            "DTSTAMP:20260301T120000Z",
            "DTSTART:20260302T090000Z",
            "DTEND:20260302T093000Z",
            "SUMMARY:CK: Refill prescription",
            "DESCRIPTION:Line one\\nLine two",
            "LOCATION:12 Elm St\\, Springfield",
            "CATEGORIES:TASK",
        ]

    def test_empty_description_and_location_omitted(self):
        lines = unfold_lines(serialize("Circle", [_event()], dtstamp=DTSTAMP))
        assert not any(line.startswith("DESCRIPTION") for line in lines)
        assert not any(line.startswith("LOCATION") for line in lines)

    def test_description_truncated_to_500_characters(self):
        event = _event(description="x" * 800)
        lines = unfold_lines(serialize("Circle", [event], dtstamp=DTSTAMP))
        description = next(line for line in lines if line.startswith("DESCRIPTION:"))
        value = description.removeprefix("DESCRIPTION:")
        assert len(value) == 500
        assert value.endswith("...")

    def test_calendar_name_escaped(self):
        lines = unfold_lines(serialize("Smith; Jones, Family", [], dtstamp=DTSTAMP))
        assert r"X-WR-CALNAME:Smith\; Jones\, Family" in lines

    def test_custom_product_id(self):
        body = serialize("Circle", [], dtstamp=DTSTAMP, product_id="-//Acme//Care Calendar//EN")
        assert "PRODID:-//Acme//Care Calendar//EN\r\n" in body

    def test_events_keep_input_order(self):
        events = [_event(uid=f"task-{i}@curaknot.app") for i in range(3)]
        lines = unfold_lines(serialize("Circle", events, dtstamp=DTSTAMP))
        uids = [line for line in lines if line.startswith("UID:")]
        assert uids == [f"UID:task-{i}@curaknot.app" for i in range(3)]

    def test_dtstamp_defaults_to_now(self):
        before = datetime.now(UTC).replace(microsecond=0)
        lines = unfold_lines(serialize("Circle", [_event()]))
        stamp = next(line for line in lines if line.startswith("DTSTAMP:"))
        parsed = datetime.strptime(stamp[len("DTSTAMP:") :], "%Y%m%dT%H%M%SZ").replace(tzinfo=UTC)
        assert parsed >= before


class TestCalendarEvent:
    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError, match="ends before it starts"):
            _event(end=datetime(2026, 3, 2, 8, 0, tzinfo=UTC))

    def test_zero_length_event_allowed(self):
        start = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
        assert _event(start=start, end=start).end == start
