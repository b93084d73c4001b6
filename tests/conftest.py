import datetime as dt
from typing import Any, Callable, List, Optional, Tuple

import pytest

from calstore import CalendarStoreClient, Connection, StoredObject
from results import StoreConnectionError
from timeranges import TimeRange


CREDENTIALS = {
    "server_url": "https://caldav.acme.io/dav",
    "username": "owner@acme.io",
    "password": "app-password",
}

# Monday 2025-07-14, noon UTC
FIXED_NOW = dt.datetime(2025, 7, 14, 12, 0, tzinfo=dt.timezone.utc)


def _stamp(value: dt.datetime) -> str:
    return value.astimezone(dt.timezone.utc).strftime('%Y%m%dT%H%M%SZ')


def build_ics(uid: str, summary: str, start: Optional[dt.datetime], end: Optional[dt.datetime] = None,
              extra: Tuple[str, ...] = ()) -> str:
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Tests//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
    ]
    if start is not None:
        lines.append(f"DTSTART:{_stamp(start)}")
    if end is not None:
        lines.append(f"DTEND:{_stamp(end)}")
    lines.extend(extra)
    lines += ["END:VEVENT", "END:VCALENDAR"]
    return "\r\n".join(lines)


class FakeCalendar:
    def __init__(self, name: str = "Work") -> None:
        self.name = name
        self.url = f"https://caldav.acme.io/dav/{name.lower()}/"


class FakeStore(CalendarStoreClient):
    """Records every call; fetch ignores the range so range filtering is exercised."""

    def __init__(self, objects: Optional[List[StoredObject]] = None,
                 calendars: Optional[List[Any]] = None, connect_failures: int = 0,
                 connect_error: str = "Connection refused") -> None:
        self.objects = list(objects or [])
        self.calendars = [FakeCalendar()] if calendars is None else calendars
        self.connect_failures = connect_failures
        self.connect_error = connect_error
        self.connect_calls: List[Tuple[str, str, str]] = []
        self.fetch_calls: List[Optional[TimeRange]] = []
        self.created: List[Tuple[Any, str, str]] = []
        self.deleted: List[Tuple[str, str]] = []

    def add(self, uid: str, summary: str, start: Optional[dt.datetime], end: Optional[dt.datetime] = None,
            extra: Tuple[str, ...] = (), version_tag: str = '') -> None:
        self.objects.append(StoredObject(
            raw=build_ics(uid, summary, start, end, extra),
            locator=f"https://caldav.acme.io/dav/work/{uid}.ics",
            version_tag=version_tag,
        ))

    def connect(self, server_url: str, username: str, password: str, auth_method: str = "Basic") -> Connection:
        self.connect_calls.append((server_url, username, auth_method))
        if self.connect_failures:
            self.connect_failures -= 1
            raise StoreConnectionError(self.connect_error)
        return Connection(client=None, principal=None, server_url=server_url, username=username)

    def list_calendars(self, connection: Connection) -> List[Any]:
        return list(self.calendars)

    def fetch_objects(self, calendar: Any, time_range: Optional[TimeRange] = None) -> List[StoredObject]:
        self.fetch_calls.append(time_range)
        return list(self.objects)

    def create_object(self, calendar: Any, filename: str, raw: str) -> None:
        self.created.append((calendar, filename, raw))

    def delete_object(self, connection: Connection, locator: str, version_tag: str = '') -> None:
        self.deleted.append((locator, version_tag))


@pytest.fixture()
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture()
def credentials() -> dict:
    return dict(CREDENTIALS)


@pytest.fixture()
def make_store() -> Callable[..., FakeStore]:
    return FakeStore


@pytest.fixture()
def fixed_now() -> dt.datetime:
    return FIXED_NOW


@pytest.fixture()
def ics() -> Callable[..., str]:
    return build_ics
