from __future__ import annotations

from datetime import datetime, timedelta, timezone

from calsync.schemas.calendar_events import BusyInterval
from calsync.services.availability.availability_service import is_slot_free
from calsync.utils import ical_codec

WINDOW_START = datetime(2024, 1, 1, tzinfo=timezone.utc)
WINDOW_END = datetime(2024, 2, 1, tzinfo=timezone.utc)


def _calendar(*events: str, header: str = "") -> str:
    body = "\r\n".join(events)
    return (
        "BEGIN:VCALENDAR\r\nVERSION:2.0\r\nPRODID:-//Example Corp//Cal//EN\r\n"
        f"{header}{body}\r\nEND:VCALENDAR\r\n"
    )


def test_escape_text_handles_separators_and_every_newline_form():
    assert ical_codec.escape_text("a,b;c\\d") == "a\\,b\\;c\\\\d"
    assert ical_codec.escape_text("one\r\ntwo\rthree\nfour") == "one\\ntwo\\nthree\\nfour"
    assert ical_codec.escape_text(None) == ""


def test_unescape_reverses_escape():
    original = "Cut, colour; style\nBring photos \\ refs"
    assert ical_codec.unescape_text(ical_codec.escape_text(original)) == original


def test_generate_event_emits_required_fields_and_alarms():
    content = ical_codec.generate_event(
        uid="booking-1@example.com",
        start=datetime(2024, 1, 5, 14, 0, tzinfo=timezone.utc),
        end=datetime(2024, 1, 5, 15, 30, tzinfo=timezone.utc),
        summary="Haircut - Ada",
        description="Service: Haircut",
        location="12 Main Street",
        organizer_email="bookings@example.com",
        attendee=ical_codec.Attendee(email="ada@example.com", name="Ada Lovelace"),
        reminder_minutes=[15, 60],
        now=datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc),
    )

    lines = content.split("\r\n")
    assert content.endswith("\r\n")
    assert "UID:booking-1@example.com" in lines
    assert "DTSTAMP:20240101T090000Z" in lines
    assert "DTSTART:20240105T140000Z" in lines
    assert "DTEND:20240105T153000Z" in lines
    assert "LOCATION:12 Main Street" in lines
    assert "ORGANIZER:mailto:bookings@example.com" in lines
    assert "ATTENDEE;CN=Ada Lovelace:mailto:ada@example.com" in lines
    assert lines.count("BEGIN:VALARM") == 2
    assert "TRIGGER:-PT15M" in lines
    assert "TRIGGER:-PT60M" in lines


def test_generated_event_parses_back_to_same_instants():
    start = datetime(2024, 1, 10, 8, 15, tzinfo=timezone.utc)
    end = start + timedelta(minutes=50)
    content = ical_codec.generate_event(
        uid="booking-2@example.com",
        start=start,
        end=end,
        summary="Colour, cut; style",
        reminder_minutes=[30],
    )

    events = ical_codec.parse_events(content, WINDOW_START, WINDOW_END)

    assert len(events) == 1
    event = events[0]
    assert (event.start, event.end, event.all_day) == (start, end, False)
    assert event.uid == "booking-2@example.com"
    assert event.summary == "Colour, cut; style"


def test_all_day_event_is_flagged_and_never_blocks_a_slot():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:holiday",
        "SUMMARY:New Year",
        "DTSTART;VALUE=DATE:20240101",
        "DTEND;VALUE=DATE:20240102",
        "END:VEVENT",
    )

    events = ical_codec.parse_events(data, WINDOW_START, WINDOW_END)

    assert len(events) == 1
    assert events[0].all_day is True
    interval = BusyInterval(id=events[0].uid, start=events[0].start, end=events[0].end, all_day=True)
    assert is_slot_free(
        [interval],
        datetime(2024, 1, 1, 10, tzinfo=timezone.utc),
        datetime(2024, 1, 1, 11, tzinfo=timezone.utc),
    )


def test_tzid_parameter_converts_local_time_to_utc():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:berlin",
        "DTSTART;TZID=Europe/Berlin:20240115T100000",
        "DTEND;TZID=Europe/Berlin:20240115T110000",
        "END:VEVENT",
    )

    event = ical_codec.parse_events(data, WINDOW_START, WINDOW_END)[0]

    assert event.start == datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)
    assert event.end == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def test_floating_times_use_the_calendar_timezone():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:floating",
        "DTSTART:20240115T100000",
        "DTEND:20240115T110000",
        "END:VEVENT",
        header="X-WR-TIMEZONE:America/New_York\r\n",
    )

    event = ical_codec.parse_events(data, WINDOW_START, WINDOW_END)[0]

    assert event.start == datetime(2024, 1, 15, 15, 0, tzinfo=timezone.utc)


def test_zone_names_that_are_directories_fall_back_instead_of_failing_the_feed():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:a",
        "DTSTART;TZID=America:20240110T100000",
        "DTEND;TZID=America:20240110T110000",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:b",
        "DTSTART:20240112T090000Z",
        "DTEND:20240112T100000Z",
        "END:VEVENT",
    )

    events = {event.uid: event for event in ical_codec.parse_events(data, WINDOW_START, WINDOW_END)}

    assert set(events) == {"a", "b"}
    assert events["a"].start == datetime(2024, 1, 10, 10, 0, tzinfo=timezone.utc)
    assert events["b"].start == datetime(2024, 1, 12, 9, 0, tzinfo=timezone.utc)


def test_directory_calendar_timezone_falls_back_to_utc():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:floating",
        "DTSTART:20240115T100000",
        "DTEND:20240115T110000",
        "END:VEVENT",
        header="X-WR-TIMEZONE:Etc\r\n",
    )

    event = ical_codec.parse_events(data, WINDOW_START, WINDOW_END)[0]

    assert event.start == datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def test_parser_unfolds_lines_and_ignores_alarm_properties():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:folded",
        "SUMMARY:Quarterly planning with the",
        "  whole team",
        "DTSTART:20240120T090000Z",
        "DTEND:20240120T100000Z",
        "BEGIN:VALARM",
        "SUMMARY:Reminder text",
        "TRIGGER:-PT15M",
        "END:VALARM",
        "END:VEVENT",
    )

    events = ical_codec.parse_events(data, WINDOW_START, WINDOW_END)

    assert events[0].summary == "Quarterly planning with the whole team"


def test_parser_skips_incomplete_events_and_respects_the_window():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:no-end",
        "DTSTART:20240110T090000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "UID:outside",
        "DTSTART:20240310T090000Z",
        "DTEND:20240310T100000Z",
        "END:VEVENT",
        "BEGIN:VEVENT",
        "DTSTART:20240111T090000Z",
        "DTEND:20240111T100000Z",
        "END:VEVENT",
    )

    events = ical_codec.parse_events(data, WINDOW_START, WINDOW_END)

    assert [event.uid for event in events] == ["event-3"]
    assert events[0].summary == "Busy"


def test_transparent_events_are_not_busy():
    data = _calendar(
        "BEGIN:VEVENT",
        "UID:free",
        "DTSTART:20240112T090000Z",
        "DTEND:20240112T100000Z",
        "TRANSP:TRANSPARENT",
        "END:VEVENT",
    )

    assert ical_codec.parse_events(data, WINDOW_START, WINDOW_END)[0].busy is False


def test_calendar_metadata_extraction():
    named = _calendar(header="X-WR-CALNAME:Team\\, Shared\r\nX-WR-TIMEZONE:Europe/Paris\r\n")
    assert ical_codec.extract_calendar_name(named) == "Team, Shared"
    assert ical_codec.extract_timezone(named) == "Europe/Paris"

    unnamed = _calendar()
    assert ical_codec.extract_calendar_name(unnamed) == "Example Corp Cal EN"
    assert ical_codec.extract_timezone(unnamed) == "UTC"

    assert ical_codec.is_calendar_document(unnamed)
    assert not ical_codec.is_calendar_document("<html>Not found</html>")
    assert not ical_codec.is_calendar_document("")
