"""Half-open interval overlap checks between a proposed slot and existing events."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from icalcodec import CalendarEvent
from timeranges import TimeRange


@dataclass(frozen=True)
class ConflictResult:
    has_conflict: bool
    overlapping: Tuple[CalendarEvent, ...] = ()


def overlaps(a: TimeRange, b: TimeRange) -> bool:
    """
    True when ``[a.start, a.end)`` and ``[b.start, b.end)`` share time.

    Back-to-back ranges that only touch at a boundary do not overlap.
    """
    return a.start < b.end and a.end > b.start


def find_conflicts(proposed: TimeRange, candidates: Iterable[CalendarEvent]) -> ConflictResult:
    """Return the candidates overlapping ``proposed``, keeping their order."""
    hits = tuple(
        event for event in candidates
        if overlaps(proposed, TimeRange(event.start, max(event.start, event.end)))
    )
    return ConflictResult(has_conflict=bool(hits), overlapping=hits)
