"""
Relative date phrases to concrete time ranges.

The calendar tools accept loose, human phrasing for both the window to
read ("today", "next week", "next 10 days") and for the start/end of a
proposed event ("tomorrow 2pm", "next Monday 10:30 AM").  This module
turns such phrases into timezone-aware datetimes.

All arithmetic happens on the wall-clock fields of the reference
instant, so the caller controls the calendar by choosing which zone the
reference lives in.  Nothing here raises on bad input: an unrecognised
range phrase yields the default seven day window and an unrecognised
point phrase yields the reference itself.
"""

from __future__ import annotations

import datetime as dt
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from dateutil import parser as date_parser


DEFAULT_WINDOW_DAYS = 7

_WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')

_NEXT_DAYS_RE = re.compile(r"next (\d+) days?")
_NEXT_WEEKDAY_RE = re.compile(r"next\s+(" + "|".join(_WEEKDAYS) + r")")
_TIME_OF_DAY_RE = re.compile(r"(\d{1,2}):?(\d{2})?\s*(am|pm)?", re.IGNORECASE)


@dataclass(frozen=True)
class TimeRange:
    """A span of time, inclusive start and exclusive end for overlap checks."""

    start: dt.datetime
    end: dt.datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"time range ends before it starts: {self.start} > {self.end}")

    def contains(self, instant: dt.datetime) -> bool:
        """True when ``instant`` falls within the range, both ends included."""
        return self.start <= instant <= self.end


def _start_of_day(value: dt.datetime) -> dt.datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(value: dt.datetime) -> dt.datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def _month_start(year: int, month: int, like: dt.datetime) -> dt.datetime:
    while month > 12:
        year += 1
        month -= 12
    return _start_of_day(like.replace(year=year, month=month, day=1))


def _week_start(value: dt.datetime) -> dt.datetime:
    # weekday() is Monday=0, so a Sunday belongs to the week that began six days earlier
    return _start_of_day(value - dt.timedelta(days=value.weekday()))


def day_range(instant: dt.datetime) -> TimeRange:
    """The whole calendar day (in ``instant``'s zone) containing ``instant``."""
    return TimeRange(_start_of_day(instant), _end_of_day(instant))


def resolve(phrase: str, reference: dt.datetime) -> TimeRange:
    """
    Resolve a range phrase relative to ``reference``.

    Phrases are matched case-insensitively as substrings, first match
    wins, in this order: ``today``, ``tomorrow``, ``this week``,
    ``next week``, ``this month``, ``next month``, ``next N day(s)``.
    Weeks run Monday 00:00 to Sunday 23:59:59.999.  Anything else
    resolves to the default window: midnight of the reference day
    through the end of the day seven days later.
    """
    text = (phrase or '').lower().strip()

    if 'today' in text:
        return day_range(reference)

    if 'tomorrow' in text:
        return day_range(reference + dt.timedelta(days=1))

    if 'this week' in text or 'next week' in text:
        start = _week_start(reference)
        if 'this week' not in text:
            start = start + dt.timedelta(days=7)
        end = _end_of_day(start + dt.timedelta(days=6))
        return TimeRange(start, end)

    if 'this month' in text or 'next month' in text:
        offset = 0 if 'this month' in text else 1
        start = _month_start(reference.year, reference.month + offset, reference)
        following = _month_start(reference.year, reference.month + offset + 1, reference)
        end = _end_of_day(following - dt.timedelta(days=1))
        return TimeRange(start, end)

    days = DEFAULT_WINDOW_DAYS
    match = _NEXT_DAYS_RE.search(text)
    if match:
        days = int(match.group(1))
    try:
        last_day = reference + dt.timedelta(days=days)
    except OverflowError:
        # past datetime.max
        last_day = reference + dt.timedelta(days=DEFAULT_WINDOW_DAYS)
    return TimeRange(_start_of_day(reference), _end_of_day(last_day))


def parse_time_of_day(text: str) -> Optional[Tuple[int, int]]:
    """
    Pull the first clock time out of ``text`` as ``(hour, minute)``.

    Accepts ``H``, ``H:MM`` and ``HMM`` with an optional ``am``/``pm``
    suffix.  ``12am`` is midnight; ``12pm`` and a bare ``12`` are noon.  Returns None
    when no time is present or the result is not a valid clock time.
    """
    match = _TIME_OF_DAY_RE.search(text or '')
    if not match:
        return None
    hours = int(match.group(1))
    minutes = int(match.group(2) or 0)
    meridiem = (match.group(3) or '').lower()
    if meridiem == 'pm' and hours != 12:
        hours += 12
    elif meridiem == 'am' and hours == 12:
        hours = 0
    if hours > 23 or minutes > 59:
        return None
    return hours, minutes


def _apply_time_of_day(value: dt.datetime, phrase: str) -> dt.datetime:
    clock = parse_time_of_day(phrase)
    if clock is None:
        return value
    hours, minutes = clock
    return value.replace(hour=hours, minute=minutes, second=0, microsecond=0)


def resolve_point(phrase: str, reference: dt.datetime) -> dt.datetime:
    """
    Resolve a single instant such as an event start or end.

    Recognises ``tomorrow [time]`` and ``next <weekday> [time]``.  A
    weekday that matches the reference's own weekday means a week from
    now.  Other input goes through ``dateutil``'s parser with missing
    fields taken from the reference; a naive result is placed in the
    reference's zone.  Input that still cannot be understood returns
    ``reference`` unchanged.
    """
    text = (phrase or '').lower().strip()

    if 'tomorrow' in text:
        return _apply_time_of_day(reference + dt.timedelta(days=1), phrase)

    match = _NEXT_WEEKDAY_RE.search(text)
    if match:
        target = _WEEKDAYS.index(match.group(1))
        ahead = (target - reference.weekday()) % 7 or 7
        return _apply_time_of_day(reference + dt.timedelta(days=ahead), phrase)

    if not text:
        return reference
    try:
        parsed = date_parser.parse(phrase, default=reference.replace(tzinfo=None))
    except (ValueError, OverflowError):
        return reference
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=reference.tzinfo)
    return parsed
