"""
Calendar store client: the only code that talks to the network.

``CalendarStoreClient`` is the narrow interface the lifecycle manager
depends on.  ``CaldavStoreClient`` implements it on top of the
``caldav`` package.  A ``Connection`` is an explicit value returned by
``connect`` and passed to every later call; nothing is cached at module
level.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Literal, Optional

from caldav import Event as CaldavEvent
from caldav.davclient import DAVClient
from caldav.elements import dav
from caldav.lib import error as caldav_error
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field

from results import StoreConnectionError, StoreError
from timeranges import TimeRange


log = logging.getLogger("caldav-scheduler.store")


class StoreCredentials(BaseModel):
    """Where and how to log in to a CalDAV server."""

    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    server_url: AnyHttpUrl = Field(..., description="CalDAV server URL")
    username: str = Field(..., min_length=1, description="Account name, usually the email address")
    password: str = Field(..., min_length=1, description="Password or app-specific password")
    auth_method: Literal["Basic", "Digest"] = Field(default="Basic")


@dataclass(frozen=True)
class Connection:
    """An authenticated session with the store."""

    client: Any
    principal: Any
    server_url: str
    username: str


@dataclass(frozen=True)
class StoredObject:
    """One raw calendar object as the store returned it."""

    raw: str
    locator: str
    version_tag: str = ''


class CalendarStoreClient:
    """Operations the scheduler needs from a remote calendar store."""

    # whether delete_object honours a version tag (If-Match)
    supports_conditional_delete = False

    def connect(self, server_url: str, username: str, password: str, auth_method: str = "Basic") -> Connection:
        raise NotImplementedError

    def list_calendars(self, connection: Connection) -> List[Any]:
        raise NotImplementedError

    def fetch_objects(self, calendar: Any, time_range: Optional[TimeRange] = None) -> List[StoredObject]:
        raise NotImplementedError

    def create_object(self, calendar: Any, filename: str, raw: str) -> None:
        raise NotImplementedError

    def delete_object(self, connection: Connection, locator: str, version_tag: str = '') -> None:
        raise NotImplementedError


def _etag(obj: Any) -> str:
    props = getattr(obj, 'props', None) or {}
    return str(props.get(dav.GetEtag.tag, '') or '')


class CaldavStoreClient(CalendarStoreClient):
    """CalendarStoreClient backed by ``caldav.DAVClient``."""

    supports_conditional_delete = True

    def connect(self, server_url: str, username: str, password: str, auth_method: str = "Basic") -> Connection:
        try:
            client = DAVClient(
                url=server_url,
                username=username,
                password=password,
                auth_type=auth_method.lower(),
            )
            principal = client.principal()
        except caldav_error.AuthorizationError as exc:
            log.error("CalDAV authentication failed for %s: %s", server_url, exc)
            raise StoreConnectionError(f"Authentication failed (401): {exc}") from exc
        except Exception as exc:
            log.error("CalDAV connection error for %s: %s", server_url, exc)
            raise StoreConnectionError(str(exc) or exc.__class__.__name__) from exc
        return Connection(client=client, principal=principal, server_url=server_url, username=username)

    def list_calendars(self, connection: Connection) -> List[Any]:
        try:
            return list(connection.principal.calendars())
        except Exception as exc:
            log.error("CalDAV list calendars error: %s", exc)
            raise StoreError(f"Could not list calendars: {exc}") from exc

    def fetch_objects(self, calendar: Any, time_range: Optional[TimeRange] = None) -> List[StoredObject]:
        try:
            if time_range is None:
                found = calendar.events()
            else:
                found = calendar.search(event=True, start=time_range.start, end=time_range.end, expand=False)
        except Exception as exc:
            log.error("CalDAV fetch error: %s", exc)
            raise StoreError(f"Could not fetch calendar objects: {exc}") from exc
        out: List[StoredObject] = []
        for obj in found:
            out.append(StoredObject(raw=obj.data or '', locator=str(obj.url), version_tag=_etag(obj)))
        return out

    def create_object(self, calendar: Any, filename: str, raw: str) -> None:
        try:
            event = CaldavEvent(client=calendar.client, url=calendar.url.join(filename), data=raw, parent=calendar)
            event.save()
        except Exception as exc:
            log.error("CalDAV create error: %s", exc)
            raise StoreError(f"Could not create {filename}: {exc}") from exc

    def delete_object(self, connection: Connection, locator: str, version_tag: str = '') -> None:
        # an empty tag means an unconditional DELETE
        headers = {"If-Match": version_tag} if version_tag else {}
        try:
            response = connection.client.request(locator, "DELETE", "", headers)
        except Exception as exc:
            log.error("CalDAV delete error: %s", exc)
            raise StoreError(f"Could not delete {locator}: {exc}") from exc
        if response.status not in (200, 204, 404):
            raise StoreError(f"Delete of {locator} failed with HTTP {response.status}")
