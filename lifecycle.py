"""
Event lifecycle: list, check conflicts, create and delete.

Each public method of :class:`EventLifecycleManager` is one complete
operation.  It validates its input, opens a fresh connection through
the injected :class:`~calstore.CalendarStoreClient`, does its work as a
sequential chain of store calls and returns one of the result values in
:mod:`results`.  Nothing is cached between operations and no exception
escapes a public method.
"""

from __future__ import annotations

import datetime as dt
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pydantic

from calstore import CalendarStoreClient, Connection, StoreCredentials
from conflicts import ConflictResult, find_conflicts
from icalcodec import (
    CalendarEvent,
    SourceLocator,
    decode,
    encode,
    filter_attendees,
    generate_uid,
)
from results import (
    Conflict,
    Failure,
    Invalid,
    NotFound,
    NotFoundError,
    Ok,
    OperationResult,
    SchedulerError,
    StoreConnectionError,
    ValidationError,
)
from timeranges import TimeRange, day_range, resolve, resolve_point


log = logging.getLogger("caldav-scheduler.lifecycle")

DEFAULT_TIME_RANGE = "next 7 days"

LIST_HINTS = [
    "Verify your CalDAV URL is correct",
    "Check your email and password credentials",
    "Ensure CalDAV access is enabled in your calendar provider",
    "Some providers require app-specific passwords for CalDAV access",
]
CREATE_HINTS = [
    "Ensure your calendar provider allows event creation via CalDAV",
    "Check if you have write permissions to the calendar",
    "Some providers require specific calendar URLs for writing",
]
DELETE_HINTS = [
    "Ensure you have permission to delete events",
    "Some calendar providers may not support deletion via CalDAV",
    "Try refreshing your calendar view after deletion",
]
AUTH_HINTS = [
    "Authentication failed - check your credentials",
    "For Google: Use an app-specific password, not your regular password",
    "For iCloud: Use an app-specific password from appleid.apple.com",
    "For Outlook: Enable basic authentication or use an app password",
    "Ensure Two-Factor Authentication is properly configured",
]
CONNECTIVITY_HINTS = [
    "Verify your CalDAV URL is correct and accessible",
    "Common CalDAV URLs:",
    "  - Google: https://www.google.com/calendar/dav/",
    "  - iCloud: https://caldav.icloud.com/",
    "  - Outlook: https://outlook.office365.com/",
    "Check network connectivity and firewall settings",
    "Try accessing the CalDAV URL in a browser",
]

NOT_FOUND_SUGGESTION = "Try using 'read_calendar' to list events and find the correct identifier."

Hints = Union[List[str], Callable[[str], List[str]]]


@dataclass(frozen=True)
class RetryPolicy:
    """Connection attempts made by create; backoff is a fixed delay in seconds."""

    max_attempts: int = 3
    backoff: float = 1.0


def format_local(value: dt.datetime, zone: dt.tzinfo) -> str:
    """Render an instant like ``Tue, Jul 15, 2025, 02:00 PM`` in ``zone``."""
    local = value.astimezone(zone)
    return f"{local:%a, %b} {local.day}, {local.year}, {local:%I:%M %p}"


def day_key(value: dt.datetime, zone: dt.tzinfo) -> str:
    """Render the calendar day of an instant like ``Tuesday, July 15, 2025``."""
    local = value.astimezone(zone)
    return f"{local:%A, %B} {local.day}, {local.year}"


def connection_hints(message: str) -> List[str]:
    lowered = (message or '').lower()
    if 'auth' in lowered or '401' in lowered or 'credentials' in lowered:
        return list(AUTH_HINTS)
    return list(CONNECTIVITY_HINTS)


def _utc_iso(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).isoformat()


class EventLifecycleManager:
    """Runs calendar operations against a store client."""

    def __init__(
        self,
        store: CalendarStoreClient,
        retry_policy: Optional[RetryPolicy] = None,
        now: Optional[Callable[[], dt.datetime]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()
        self._now = now or (lambda: dt.datetime.now(dt.timezone.utc))
        self._sleep = sleep

    # ------------------------------------------------------------ Validation

    @staticmethod
    def _credentials(credentials: Optional[Mapping[str, Any]]) -> StoreCredentials:
        values = dict(credentials or {})
        if not all(str(values.get(key) or '').strip() for key in ('server_url', 'username', 'password')):
            raise ValidationError(
                "Calendar credentials not provided. Please provide caldav_url, username, and password."
            )
        if not values.get('auth_method'):
            values.pop('auth_method', None)
        try:
            return StoreCredentials.model_validate(values)
        except pydantic.ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
            )
            raise ValidationError(f"Invalid calendar credentials: {problems}") from exc

    @staticmethod
    def _zone(timezone: Optional[str]) -> ZoneInfo:
        name = (timezone or '').strip()
        if not name:
            raise ValidationError(
                "User timezone not specified. Please provide your timezone (e.g., 'America/New_York', "
                "'Europe/London', 'Asia/Jakarta') for accurate calendar results.",
                requires_timezone=True,
            )
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
            raise ValidationError(
                f"Unknown timezone {name!r}. Use an IANA name such as 'America/New_York'.",
                requires_timezone=True,
            ) from exc

    def _reference(self, zone: dt.tzinfo) -> dt.datetime:
        return self._now().astimezone(zone)

    # ------------------------------------------------------------ Store access

    def _connect(self, creds: StoreCredentials) -> Connection:
        return self.store.connect(str(creds.server_url), creds.username, creds.password, creds.auth_method)

    def _connect_with_retry(self, creds: StoreCredentials) -> Connection:
        attempts = max(1, self.retry_policy.max_attempts)
        attempt = 1
        while True:
            try:
                return self._connect(creds)
            except StoreConnectionError as exc:
                if attempt >= attempts:
                    raise
                log.warning("Connection failed, retrying... (%d attempts left): %s", attempts - attempt, exc)
                self._sleep(self.retry_policy.backoff)
                attempt += 1

    def _first_calendar(self, connection: Connection) -> Any:
        calendars = self.store.list_calendars(connection)
        if not calendars:
            raise NotFoundError("No calendars found")
        return calendars[0]

    def _decode_all(self, objects: Iterable[Any], zone: dt.tzinfo) -> Iterable[CalendarEvent]:
        for obj in objects:
            try:
                yield decode(obj.raw, zone, SourceLocator(obj.locator, obj.version_tag))
            except Exception as exc:
                log.warning("Skipping calendar object %s: %s", obj.locator, exc)

    def _events_in(self, calendar: Any, window: TimeRange, zone: dt.tzinfo) -> List[CalendarEvent]:
        """Events starting inside ``window``, sorted by start."""
        objects = self.store.fetch_objects(calendar, window)
        # servers are loose about range queries, so check again
        events = [event for event in self._decode_all(objects, zone) if window.contains(event.start)]
        events.sort(key=lambda event: event.start)
        return events

    def _conflicts_for(self, connection: Connection, proposed: TimeRange, zone: dt.tzinfo) -> ConflictResult:
        calendar = self._first_calendar(connection)
        same_day = self._events_in(calendar, day_range(proposed.start.astimezone(zone)), zone)
        return find_conflicts(proposed, same_day)

    def _proposal(self, zone: dt.tzinfo, start_time: str, end_time: str) -> Tuple[dt.datetime, dt.datetime]:
        reference = self._reference(zone)
        return resolve_point(start_time, reference), resolve_point(end_time, reference)

    # ------------------------------------------------------------ Rendering

    @staticmethod
    def _event_view(event: CalendarEvent, zone: dt.tzinfo) -> Dict[str, Any]:
        return {
            "summary": event.summary or "No Title",
            "description": event.description,
            "start_utc": _utc_iso(event.start),
            "end_utc": _utc_iso(event.end),
            "location": event.location,
            "uid": event.uid,
            "recurrence_rule": event.recurrence_rule,
            "start_local": format_local(event.start, zone),
            "end_local": format_local(event.end, zone),
        }

    @staticmethod
    def _conflict_view(event: CalendarEvent, zone: dt.tzinfo) -> Dict[str, Any]:
        return {
            "summary": event.summary or "No Title",
            "start_local": format_local(event.start, zone),
            "end_local": format_local(event.end, zone),
            "uid": event.uid,
        }

    def _conflict_result(self, summary: str, proposed: TimeRange, check: ConflictResult,
                         zone: dt.tzinfo) -> Conflict:
        conflicts = [self._conflict_view(event, zone) for event in check.overlapping]
        proposed_view = {
            "summary": summary,
            "start_local": format_local(proposed.start, zone),
            "end_local": format_local(proposed.end, zone),
        }
        listing = "\n".join(
            f'- "{c["summary"]}" from {c["start_local"]} to {c["end_local"]}' for c in conflicts
        )
        message = (
            "Calendar Conflict Detected\n\n"
            "I found the following conflicting event(s) at the requested time:\n"
            f"{listing}\n\n"
            f'Your proposed event: "{summary}" from {proposed_view["start_local"]} to {proposed_view["end_local"]}\n\n'
            "Would you like me to:\n"
            '1. Create anyway (double-book the time slot) - say "create anyway" or "force create"\n'
            "2. Choose a different time - suggest another time\n"
            "3. Cancel the event creation\n\n"
            "Please let me know how you'd like to proceed."
        )
        return Conflict(conflicts=conflicts, proposed_event=proposed_view, message=message)

    # ------------------------------------------------------------ Boundary

    def _guard(self, label: str, hints: Hints, run: Callable[[], OperationResult]) -> OperationResult:
        try:
            return run()
        except ValidationError as exc:
            return Invalid(str(exc), requires_timezone=exc.requires_timezone)
        except NotFoundError as exc:
            return NotFound(str(exc), suggestion=exc.suggestion)
        except SchedulerError as exc:
            log.error("Error during %s: %s", label, exc)
            message = str(exc) or "Unknown error"
        except Exception as exc:
            log.exception("Unexpected error during %s", label)
            message = str(exc) or "Unknown error"
        return Failure(message, troubleshooting=hints(message) if callable(hints) else list(hints))

    # ------------------------------------------------------------ Operations

    def list_events(self, credentials: Optional[Mapping[str, Any]], timezone: Optional[str],
                    time_range: str = DEFAULT_TIME_RANGE) -> OperationResult:
        """
        List events whose start falls in the window described by ``time_range``.

        The payload carries each event in UTC and in the caller's zone,
        the same events grouped by local calendar day, and the resolved
        query window.
        """
        def _run() -> OperationResult:
            creds = self._credentials(credentials)
            zone = self._zone(timezone)
            description = time_range or DEFAULT_TIME_RANGE
            window = resolve(description, self._reference(zone))
            log.info("Calendar query %r: %s to %s (%s)", description, window.start.isoformat(),
                     window.end.isoformat(), zone.key)

            connection = self._connect(creds)
            calendar = self._first_calendar(connection)
            events = self._events_in(calendar, window, zone)

            views = [self._event_view(event, zone) for event in events]
            by_day: Dict[str, List[Dict[str, Any]]] = {}
            for event, view in zip(events, views):
                by_day.setdefault(day_key(event.start, zone), []).append(view)
            return Ok({
                "count": len(views),
                "events": views,
                "events_by_day": by_day,
                "timezone": zone.key,
                "query_range": {
                    "start": window.start.isoformat(),
                    "end": window.end.isoformat(),
                    "description": description,
                },
                "provider": str(creds.server_url),
                "timestamp": _utc_iso(self._now()),
            })

        return self._guard("read calendar", LIST_HINTS, _run)

    def check_conflicts(self, credentials: Optional[Mapping[str, Any]], timezone: Optional[str],
                        start_time: str, end_time: str) -> OperationResult:
        """Report events on the proposed start's day that overlap ``[start, end)``."""
        def _run() -> OperationResult:
            creds = self._credentials(credentials)
            zone = self._zone(timezone)
            start, end = self._proposal(zone, start_time, end_time)
            if end < start:
                raise ValidationError("End time must not be before start time")
            proposed = TimeRange(start, end)

            check = self._conflicts_for(self._connect(creds), proposed, zone)
            return Ok({
                "has_conflicts": check.has_conflict,
                "conflicts": [self._conflict_view(event, zone) for event in check.overlapping],
                "proposed_event": {
                    "start_local": format_local(start, zone),
                    "end_local": format_local(end, zone),
                },
            })

        return self._guard("conflict check", LIST_HINTS, _run)

    def create_event(
        self,
        credentials: Optional[Mapping[str, Any]],
        timezone: Optional[str],
        summary: str,
        start_time: str,
        end_time: str,
        description: str = "",
        location: str = "",
        attendees: Optional[List[str]] = None,
        force_create: bool = False,
    ) -> OperationResult:
        """
        Create an event unless it collides with existing ones.

        Without ``force_create`` the proposed slot is checked first and
        a :class:`~results.Conflict` is returned instead of writing when
        anything overlaps.  A failed check is logged and does not block
        creation.  The write itself connects with the retry policy.
        """
        def _run() -> OperationResult:
            creds = self._credentials(credentials)
            zone = self._zone(timezone)
            title = (summary or '').strip()
            if not title:
                raise ValidationError("Event summary is required")
            start, end = self._proposal(zone, start_time, end_time)
            if end <= start:
                raise ValidationError("End time must be after start time")
            proposed = TimeRange(start, end)

            if not force_create:
                try:
                    check = self._conflicts_for(self._connect(creds), proposed, zone)
                except SchedulerError as exc:
                    log.warning("Conflict check failed, proceeding with creation: %s", exc)
                else:
                    if check.has_conflict:
                        log.info("Not creating %r: %d conflicting event(s)", title, len(check.overlapping))
                        return self._conflict_result(title, proposed, check, zone)

            connection = self._connect_with_retry(creds)
            calendar = self._first_calendar(connection)
            accepted = filter_attendees(attendees or [])
            event = CalendarEvent(
                start=start,
                end=end,
                summary=title,
                description=description or '',
                location=location or '',
                uid=generate_uid(),
                attendees=tuple(accepted),
            )
            self.store.create_object(calendar, f"{event.uid}.ics", encode(event, creds.username, now=self._now()))
            log.info("Created event %s (%r)", event.uid, title)

            message = f'Event "{title}" created successfully'
            if force_create:
                message += " (forced creation with conflicts)"
            if accepted:
                message += f" with {len(accepted)} attendee(s)"
            return Ok({
                "message": message,
                "event": {
                    "uid": event.uid,
                    "summary": title,
                    "start_local": format_local(start, zone),
                    "end_local": format_local(end, zone),
                    "description": event.description,
                    "location": event.location,
                    "attendees": accepted,
                    "timezone": zone.key,
                },
                "provider": str(creds.server_url),
                "timestamp": _utc_iso(self._now()),
            })

        return self._guard("create event", CREATE_HINTS, _run)

    def delete_event(self, credentials: Optional[Mapping[str, Any]], timezone: Optional[str],
                     identifier: str) -> OperationResult:
        """
        Delete the first event, in store order, whose UID equals
        ``identifier`` or whose title contains it (case-insensitive).
        """
        def _run() -> OperationResult:
            creds = self._credentials(credentials)
            zone = self._zone(timezone)
            wanted = (identifier or '').strip()
            if not wanted:
                raise ValidationError("Provide an event UID or a unique part of the event title")

            connection = self._connect(creds)
            calendar = self._first_calendar(connection)
            needle = wanted.lower()
            target: Optional[CalendarEvent] = None
            for event in self._decode_all(self.store.fetch_objects(calendar), zone):
                if event.uid == wanted or needle in event.summary.lower():
                    target = event
                    break
            if target is None or target.source_locator is None:
                raise NotFoundError(
                    f'Event "{wanted}" not found. Please provide the exact event UID or a unique part '
                    "of the event title.",
                    suggestion=NOT_FOUND_SUGGESTION,
                )

            locator = target.source_locator
            tag = locator.version_tag if self.store.supports_conditional_delete else ''
            self.store.delete_object(connection, locator.url, tag)
            log.info("Deleted event %s (%r)", target.uid, target.summary)
            return Ok({
                "message": f'Event "{target.summary}" deleted successfully',
                "deleted_event": {
                    "summary": target.summary,
                    "start_local": format_local(target.start, zone),
                    "uid": target.uid,
                },
                "timestamp": _utc_iso(self._now()),
            })

        return self._guard("delete event", DELETE_HINTS, _run)

    def test_connection(self, credentials: Optional[Mapping[str, Any]]) -> OperationResult:
        """Log in and list calendars; useful for debugging credentials."""
        def _run() -> OperationResult:
            creds = self._credentials(credentials)
            connection = self._connect(creds)
            calendars = self.store.list_calendars(connection)
            return Ok({
                "message": "Calendar connection successful!",
                "config": {
                    "server_url": str(creds.server_url),
                    "username": creds.username,
                    "auth_method": creds.auth_method,
                    "calendars_found": len(calendars),
                },
                "calendars": [
                    {
                        "display_name": getattr(cal, 'name', None) or "Default Calendar",
                        "url": str(getattr(cal, 'url', '')),
                    }
                    for cal in calendars
                ],
                "timestamp": _utc_iso(self._now()),
            })

        return self._guard("connection test", connection_hints, _run)
