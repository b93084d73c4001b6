"""
iCalendar (RFC 5545) codec for single VEVENT objects.

Decoding leans on ``icalendar``'s content line parser for unfolding and
for splitting each line into name, parameters and unescaped value.  The
lines are then fed to a builder keyed on the property name; properties
the builder does not know about are ignored, so loose server output
never fails more than the one object it appears in.

Encoding builds a ``Calendar`` holding one ``Event`` with ``icalendar``
and serialises it, which takes care of TEXT escaping, parameter quoting,
CRLF line endings and 75 octet line folding.
"""

from __future__ import annotations

import datetime as dt
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser
from icalendar import Calendar as ICalendarCalendar
from icalendar import Event as ICalendarEvent
from icalendar import vRecur
from icalendar.parser import Contentlines


PRODID = "-//CalDAV Scheduler//EN"
UID_DOMAIN = "caldav-scheduler"

_COMPACT_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})T(\d{2})(\d{2})(\d{2})(Z?)$")
_DATE_RE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")

# Addresses a language model tends to invent when it has no real attendee.
PLACEHOLDER_DOMAINS = ('example.com', 'example.org', 'test.com', 'domain.com', 'company.com', 'email.com')
PLACEHOLDER_LOCAL_PARTS = ('john@', 'jane@', 'user@', 'test@', 'admin@', 'demo@')


class ICalDecodeError(ValueError):
    """Raised when a calendar object cannot be turned into a usable event."""


@dataclass(frozen=True)
class SourceLocator:
    """Where an event lives in the remote store."""

    url: str
    version_tag: str = ''


@dataclass(frozen=True)
class CalendarEvent:
    start: dt.datetime
    end: dt.datetime
    summary: str = ''
    description: str = ''
    location: str = ''
    uid: str = ''
    recurrence_rule: Optional[str] = None
    attendees: Tuple[str, ...] = ()
    source_locator: Optional[SourceLocator] = field(default=None, compare=False)


def generate_uid() -> str:
    """Millisecond timestamp plus a random suffix; unique enough, not guaranteed."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)[:7]}@{UID_DOMAIN}"


def filter_attendees(addresses: Iterable[str]) -> List[str]:
    """
    Drop attendee addresses that are obviously fabricated.

    An address must contain ``@``.  Addresses at a placeholder domain
    (``example.com`` and friends) or with a placeholder local part
    (``john@``, ``test@``...) are dropped.  Order is kept and
    duplicates are not removed.
    """
    accepted: List[str] = []
    for raw in addresses or []:
        address = (raw or '').strip()
        if not address or '@' not in address:
            continue
        lowered = address.lower()
        if any(lowered.endswith(domain) for domain in PLACEHOLDER_DOMAINS):
            continue
        if any(lowered.startswith(prefix) for prefix in PLACEHOLDER_LOCAL_PARTS):
            continue
        accepted.append(address)
    return accepted


# ---------------------------------------------------------------------------
#  Decoding
# ---------------------------------------------------------------------------

def _param(params: Dict[str, object], name: str) -> str:
    value = params.get(name) or ''
    if isinstance(value, (list, tuple)):
        value = value[0] if value else ''
    return str(value).strip()


def _zone_for(params: Dict[str, object], default_tz: dt.tzinfo) -> dt.tzinfo:
    tzid = _param(params, 'TZID')
    if not tzid:
        return default_tz
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        # "America" and friends are directories in the tz database
        return default_tz


def parse_datetime(value: str, params: Optional[Dict[str, object]] = None,
                   default_tz: dt.tzinfo = dt.timezone.utc) -> Optional[dt.datetime]:
    """
    Parse a DTSTART/DTEND value into an aware datetime.

    ``YYYYMMDDTHHMMSSZ`` is UTC.  The same form without ``Z`` uses the
    ``TZID`` parameter when it names a known zone, else ``default_tz``.
    ``VALUE=DATE`` values (``YYYYMMDD``) are midnight in ``default_tz``.
    Anything else is handed to dateutil; None if that fails too.
    """
    params = params or {}
    text = (value or '').strip()
    if not text:
        return None

    date_match = _DATE_RE.match(text)
    if date_match and _param(params, 'VALUE').upper() in ('', 'DATE'):
        year, month, day = (int(g) for g in date_match.groups())
        try:
            return dt.datetime(year, month, day, tzinfo=default_tz)
        except ValueError:
            return None

    compact = _COMPACT_RE.match(text)
    if compact:
        parts = [int(g) for g in compact.groups()[:6]]
        tz = dt.timezone.utc if compact.group(7) else _zone_for(params, default_tz)
        try:
            return dt.datetime(*parts, tzinfo=tz)
        except ValueError:
            return None

    try:
        parsed = date_parser.parse(text)
    except (ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_zone_for(params, default_tz))
    return parsed


def decode(raw: str, default_tz: dt.tzinfo = dt.timezone.utc,
           locator: Optional[SourceLocator] = None) -> CalendarEvent:
    """
    Decode the first VEVENT found in ``raw``.

    Raises :class:`ICalDecodeError` when the text cannot be split into
    content lines or there is no usable DTSTART.  A missing or
    unparsable DTEND makes the event end when it starts.  TEXT values
    keep their surrounding whitespace.
    """
    try:
        lines = Contentlines.from_ical(raw or '')
    except ValueError as exc:
        raise ICalDecodeError(f"not iCalendar text: {exc}") from exc

    fields: Dict[str, str] = {}
    attendees: List[str] = []
    start: Optional[dt.datetime] = None
    end: Optional[dt.datetime] = None
    components: List[str] = []

    for line in lines:
        if not line:
            continue
        try:
            name, params, value = line.parts()
        except ValueError:
            continue
        name = name.upper()
        if name == 'BEGIN':
            components.append(value.strip().upper())
            continue
        if name == 'END':
            if components and components.pop() == 'VEVENT':
                break
            continue
        # VALARM and VTIMEZONE reuse DTSTART/DESCRIPTION; only VEVENT (or a bare property list) counts
        if components and components[-1] != 'VEVENT':
            continue

        if name in ('SUMMARY', 'DESCRIPTION', 'LOCATION'):
            fields[name] = value
        elif name in ('UID', 'RRULE'):
            fields[name] = value.strip()
        elif name == 'DTSTART':
            start = parse_datetime(value, params, default_tz)
        elif name == 'DTEND':
            end = parse_datetime(value, params, default_tz)
        elif name == 'ATTENDEE':
            address = value.strip()
            if address.lower().startswith('mailto:'):
                address = address[len('mailto:'):]
            if address:
                attendees.append(address)

    if start is None:
        raise ICalDecodeError(f"event {fields.get('UID', '')!r} has no usable DTSTART")

    return CalendarEvent(
        start=start,
        end=end or start,
        summary=fields.get('SUMMARY', ''),
        description=fields.get('DESCRIPTION', ''),
        location=fields.get('LOCATION', ''),
        uid=fields.get('UID', ''),
        recurrence_rule=fields.get('RRULE'),
        attendees=tuple(attendees),
        source_locator=locator,
    )


# ---------------------------------------------------------------------------
#  Encoding
# ---------------------------------------------------------------------------

def _utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def _text(value: str) -> str:
    return value.replace('\r', '')


def encode(event: CalendarEvent, organizer_email: str, now: Optional[dt.datetime] = None) -> str:
    """
    Serialise ``event`` as a VCALENDAR text blob.

    ``event.uid`` is used when set, otherwise a fresh UID is generated.
    Times are written in UTC.  Attendees are written as given; filter
    them with :func:`filter_attendees` first.
    """
    stamp = _utc(now or dt.datetime.now(dt.timezone.utc))

    cal_component = ICalendarCalendar()
    cal_component.add('version', '2.0')
    cal_component.add('prodid', PRODID)
    cal_component.add('calscale', 'GREGORIAN')

    event_component = ICalendarEvent()
    event_component.add('uid', event.uid or generate_uid())
    event_component.add('organizer', f"mailto:{organizer_email}", parameters={'CN': organizer_email})
    if event.summary:
        event_component.add('summary', _text(event.summary))
    event_component.add('dtstart', _utc(event.start))
    event_component.add('dtend', _utc(event.end))
    if event.description:
        event_component.add('description', _text(event.description))
    if event.location:
        event_component.add('location', _text(event.location))
    if event.recurrence_rule:
        event_component.add('rrule', vRecur.from_ical(event.recurrence_rule))
    for address in event.attendees:
        event_component.add('attendee', f"mailto:{address}", parameters={
            'CN': address,
            'ROLE': 'REQ-PARTICIPANT',
            'PARTSTAT': 'NEEDS-ACTION',
            'RSVP': 'TRUE',
        })
    event_component.add('status', 'CONFIRMED')
    event_component.add('dtstamp', stamp)
    event_component.add('created', stamp)
    event_component.add('last-modified', stamp)

    cal_component.add_component(event_component)
    return cal_component.to_ical().decode('utf-8')
