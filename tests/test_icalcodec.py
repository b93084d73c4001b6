import datetime as dt
from zoneinfo import ZoneInfo

import pytest
from icalendar import Calendar

from icalcodec import (
    CalendarEvent,
    ICalDecodeError,
    SourceLocator,
    decode,
    encode,
    filter_attendees,
    generate_uid,
    parse_datetime,
)

UTC = dt.timezone.utc
NOW = dt.datetime(2025, 7, 14, 12, 0, tzinfo=UTC)


def _event(**overrides) -> CalendarEvent:
    values = dict(
        start=dt.datetime(2025, 7, 15, 14, 0, tzinfo=UTC),
        end=dt.datetime(2025, 7, 15, 15, 0, tzinfo=UTC),
        summary="Quarterly review; budget, hiring",
        description="Agenda:\n1. Numbers\n2. C:\\plans",
        location="Room 4, North wing",
        attendees=("real.person@acme.io", "ops@acme.io"),
    )
    values.update(overrides)
    return CalendarEvent(**values)


SAMPLE = "\r\n".join([
    "BEGIN:VCALENDAR",
    "VERSION:2.0",
    "BEGIN:VTIMEZONE",
    "TZID:Europe/Berlin",
    "BEGIN:STANDARD",
    "DTSTART:19701025T030000",
    "END:STANDARD",
    "END:VTIMEZONE",
    "BEGIN:VEVENT",
    "UID:abc-123@acme.io",
    "SUMMARY:Design sync",
    "DTSTART:20250715T143000Z",
    "DTEND:20250715T144500Z",
    "DESCRIPTION:First line\\nsecond line with a long tail that the server chose",
    "  to fold here",
    "LOCATION:Room 7\\, 2nd floor",
    "RRULE:FREQ=WEEKLY;BYDAY=TU",
    "X-APPLE-TRAVEL-ADVISORY-BEHAVIOR:AUTOMATIC",
    "ATTENDEE;CN=Dana;PARTSTAT=ACCEPTED:mailto:dana@acme.io",
    "BEGIN:VALARM",
    "ACTION:DISPLAY",
    "DESCRIPTION:Reminder",
    "TRIGGER:-PT15M",
    "END:VALARM",
    "END:VEVENT",
    "END:VCALENDAR",
])


def test_decode_reads_known_properties() -> None:
    event = decode(SAMPLE)
    assert event.uid == "abc-123@acme.io"
    assert event.summary == "Design sync"
    assert event.start == dt.datetime(2025, 7, 15, 14, 30, tzinfo=UTC)
    assert event.end == dt.datetime(2025, 7, 15, 14, 45, tzinfo=UTC)
    assert event.location == "Room 7, 2nd floor"
    assert event.recurrence_rule == "FREQ=WEEKLY;BYDAY=TU"
    assert event.attendees == ("dana@acme.io",)


def test_decode_unfolds_continuation_lines() -> None:
    event = decode(SAMPLE)
    # one leading space is the fold marker, the second is content
    assert event.description == "First line\nsecond line with a long tail that the server chose to fold here"


def test_decode_ignores_nested_and_timezone_components() -> None:
    event = decode(SAMPLE)
    assert "Reminder" not in event.description
    assert event.start.year == 2025


def test_decode_accepts_bare_lf_and_keeps_locator() -> None:
    locator = SourceLocator("https://dav.acme.io/work/abc.ics", '"etag-1"')
    event = decode(SAMPLE.replace("\r\n", "\n"), locator=locator)
    assert event.summary == "Design sync"
    assert event.source_locator == locator


def test_decode_date_only_is_midnight_in_default_zone() -> None:
    zone = ZoneInfo("America/New_York")
    raw = "BEGIN:VEVENT\r\nUID:holiday\r\nDTSTART;VALUE=DATE:20250704\r\nDTEND;VALUE=DATE:20250705\r\nEND:VEVENT"
    event = decode(raw, default_tz=zone)
    assert event.start == dt.datetime(2025, 7, 4, tzinfo=zone)
    assert event.end == dt.datetime(2025, 7, 5, tzinfo=zone)


def test_decode_honours_tzid_on_local_times() -> None:
    raw = "BEGIN:VEVENT\nUID:x\nDTSTART;TZID=Europe/Berlin:20250715T090000\nEND:VEVENT"
    event = decode(raw)
    assert event.start == dt.datetime(2025, 7, 15, 7, 0, tzinfo=UTC)


@pytest.mark.parametrize("tzid", ["America", "Not/AZone", "../etc"])
def test_decode_falls_back_to_default_zone_for_unusable_tzid(tzid: str) -> None:
    zone = ZoneInfo("Asia/Jakarta")
    raw = f"BEGIN:VEVENT\nUID:x\nDTSTART;TZID={tzid}:20250715T090000\nEND:VEVENT"
    event = decode(raw, default_tz=zone)
    assert event.start == dt.datetime(2025, 7, 15, 9, 0, tzinfo=zone)



def test_decode_without_dtend_ends_at_start() -> None:
    raw = "BEGIN:VEVENT\nUID:x\nDTSTART:20250715T090000Z\nEND:VEVENT"
    event = decode(raw)
    assert event.end == event.start


def test_decode_without_dtstart_is_rejected() -> None:
    with pytest.raises(ICalDecodeError):
        decode("BEGIN:VEVENT\nUID:x\nSUMMARY:Orphan\nEND:VEVENT")
    with pytest.raises(ICalDecodeError):
        decode("BEGIN:VEVENT\nUID:x\nDTSTART:not a date\nEND:VEVENT")


def test_parse_datetime_forms() -> None:
    assert parse_datetime("20250715T143000Z") == dt.datetime(2025, 7, 15, 14, 30, tzinfo=UTC)
    assert parse_datetime("2025-07-15T14:30:00+02:00") == dt.datetime(2025, 7, 15, 12, 30, tzinfo=UTC)
    assert parse_datetime("20251340T000000Z") is None
    assert parse_datetime("") is None


def test_encode_layout() -> None:
    text = encode(_event(uid="fixed-uid@acme.io"), "owner@acme.io", now=NOW)
    lines = text.replace("\r\n ", "").splitlines()
    assert lines[:5] == ["BEGIN:VCALENDAR", "VERSION:2.0", "PRODID:-//CalDAV Scheduler//EN",
                         "CALSCALE:GREGORIAN", "BEGIN:VEVENT"]
    assert lines[-2:] == ["END:VEVENT", "END:VCALENDAR"]
    assert "UID:fixed-uid@acme.io" in lines
    assert "ORGANIZER;CN=owner@acme.io:mailto:owner@acme.io" in lines
    assert "DTSTART:20250715T140000Z" in lines
    assert "DTEND:20250715T150000Z" in lines
    assert "SUMMARY:Quarterly review\\; budget\\, hiring" in lines
    assert "STATUS:CONFIRMED" in lines
    for name in ("DTSTAMP", "CREATED", "LAST-MODIFIED"):
        assert f"{name}:20250714T120000Z" in lines
    attendee_lines = [line for line in lines if line.startswith("ATTENDEE")]
    assert len(attendee_lines) == 2
    assert attendee_lines[0].endswith(":mailto:real.person@acme.io")
    assert "\n" not in text.replace("\r\n", "")


def test_encode_skips_empty_optional_text_and_strips_carriage_returns() -> None:
    text = encode(_event(summary="", description="one\r\ntwo", location=""), "owner@acme.io", now=NOW)
    assert "SUMMARY:" not in text
    assert "LOCATION:" not in text
    assert "DESCRIPTION:one\\ntwo" in text


def test_encode_generates_uid_when_missing() -> None:
    text = encode(_event(uid=""), "owner@acme.io", now=NOW)
    uid_line = next(line for line in text.split("\r\n") if line.startswith("UID:"))
    assert uid_line.endswith("@caldav-scheduler")


def test_encode_folds_long_lines() -> None:
    text = encode(_event(description="ü" * 120 + " tail"), "owner@acme.io", now=NOW)
    for line in text.split("\r\n"):
        assert len(line.encode("utf-8")) <= 75
    assert decode(text).description == "ü" * 120 + " tail"


def test_encoded_text_is_valid_icalendar() -> None:
    text = encode(_event(uid="fixed-uid@acme.io"), "owner@acme.io", now=NOW)
    calendar = Calendar.from_ical(text)
    events = list(calendar.walk("VEVENT"))
    assert len(events) == 1
    parsed = events[0]
    assert str(parsed.get("summary")) == "Quarterly review; budget, hiring"
    assert str(parsed.get("location")) == "Room 4, North wing"
    assert parsed.decoded("dtstart") == dt.datetime(2025, 7, 15, 14, 0, tzinfo=UTC)


def test_round_trip_recovers_event_fields() -> None:
    expected = _event(description="  indented notes", location="Room 4 ", summary=" Stand-up")
    decoded = decode(encode(expected, "owner@acme.io", now=NOW))
    assert decoded.summary == expected.summary
    assert decoded.description == expected.description
    assert decoded.location == expected.location
    assert decoded.start == expected.start
    assert decoded.end == expected.end
    assert decoded.attendees == expected.attendees


def test_generate_uid_shape() -> None:
    first, second = generate_uid(), generate_uid()
    assert first != second
    stamp, _, rest = first.partition("-")
    assert stamp.isdigit()
    assert rest.endswith("@caldav-scheduler")


def test_filter_attendees_drops_placeholders() -> None:
    assert filter_attendees(["john@example.com", "real.person@acme.io"]) == ["real.person@acme.io"]


def test_filter_attendees_rules() -> None:
    given = [
        " dana@acme.io ",
        "not-an-address",
        "",
        "someone@test.com",
        "TEST@acme.io",
        "admin@acme.io",
        "lee@company.com",
        "dana@acme.io",
    ]
    assert filter_attendees(given) == ["dana@acme.io", "dana@acme.io"]


def test_round_trip_keeps_default_text_fields() -> None:
    expected = _event()
    decoded = decode(encode(expected, "owner@acme.io", now=NOW))
    assert (decoded.summary, decoded.description, decoded.location) == (
        expected.summary, expected.description, expected.location)


def test_encode_quotes_parameters_with_separators() -> None:
    odd = 'ops;team,leads:on-call@acme.io'
    text = encode(_event(attendees=(odd,)), 'owner;admin@acme.io', now=NOW)
    lines = text.replace("\r\n ", "").splitlines()
    assert f'ATTENDEE;CN="{odd}";' in next(line for line in lines if line.startswith("ATTENDEE"))
    assert 'ORGANIZER;CN="owner;admin@acme.io":mailto:owner;admin@acme.io' in lines

    parsed = next(iter(Calendar.from_ical(text).walk("VEVENT")))
    assert str(parsed.get("attendee")) == f"mailto:{odd}"
    assert decode(text).attendees == (odd,)
