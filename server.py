"""
MCP Server for CalDAV Scheduling
================================

This module exposes a CalDAV calendar as a small set of scheduling
tools over the Model Context Protocol.  The server uses the `fastmcp`
framework to handle the protocol machinery.  Each function decorated
with `@mcp.tool()` becomes a callable tool and is automatically
registered with the MCP runtime.

**Prerequisites**

* `fastmcp` - simplifies building MCP servers and clients.
* `caldav` - a CalDAV client used for calendar operations.
* `python-dotenv` - loads environment variables from a `.env` file.
* `python-dateutil` and `pydantic` - date parsing and input validation.

```bash
pip install -e .
```

**Functionality**

* ``read_calendar`` - list events for a relative window such as
  ``"today"``, ``"this week"`` or ``"next 10 days"``, grouped by day in
  the user's timezone.
* ``check_calendar_conflicts`` - report events overlapping a proposed
  slot.
* ``create_calendar_event`` - create an event after checking for
  conflicts; returns a conflict report instead of writing when the slot
  is taken.
* ``force_create_calendar_event`` - create even when the slot is taken.
* ``delete_calendar_event`` - delete an event by UID or by part of its
  title.
* ``test_calendar_connection`` - log in and list calendars.

Credentials and the user's timezone may be passed with every call or
configured once through environment variables (see below).  Every
call opens a fresh connection; nothing is shared between calls.

All tools return their results as structured content (JSON objects)
under the ``structuredContent`` field of the MCP tool result, with a
short human-readable summary in the ``content`` field.

**Security considerations**

Keep this server private.  A CalDAV password grants full read/write
access to your calendar.  When deploying, place the server behind an
HTTPS reverse proxy and enable authentication.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from fastmcp import FastMCP
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from calstore import CaldavStoreClient, CalendarStoreClient
from lifecycle import DEFAULT_TIME_RANGE, EventLifecycleManager, RetryPolicy
from results import Ok, OperationResult


# ---------------------------------------------------------------------------
#  Configuration
#
# Environment variables are loaded from a .env file located next to this
# script.  None of them are required: anything missing must then be
# supplied as a tool argument, and a call without credentials or a
# timezone returns a validation error instead of touching the network.
# ---------------------------------------------------------------------------

load_dotenv(dotenv_path=Path(__file__).with_name(".env"), override=True)

CALDAV_URL: str = os.environ.get("CALDAV_URL", "").strip()
CALDAV_USERNAME: str = os.environ.get("CALDAV_USERNAME", "").strip()
CALDAV_PASSWORD: str = os.environ.get("CALDAV_PASSWORD", "").strip()
CALDAV_AUTH_METHOD: str = os.environ.get("CALDAV_AUTH_METHOD", "Basic").strip() or "Basic"
DEFAULT_TZID: str = os.environ.get("TZID", "").strip()

# Store connection retries used when creating events.
CONNECT_ATTEMPTS: int = max(1, int(os.environ.get("CONNECT_ATTEMPTS", "3")))
CONNECT_BACKOFF_SECONDS: float = max(0.0, float(os.environ.get("CONNECT_BACKOFF_SECONDS", "1.0")))

SERVER_HOST: str = os.environ.get("HOST", "127.0.0.1").strip()
SERVER_PORT: int = int(os.environ.get("PORT", "8000"))


logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
log = logging.getLogger("caldav-scheduler")


# ---------------------------------------------------------------------------
#  MCP Server
# ---------------------------------------------------------------------------

mcp = FastMCP("caldav-scheduler", instructions=(
    "This server reads and writes a CalDAV calendar.  Time ranges accept "
    "phrases such as 'today', 'tomorrow', 'this week', 'next week', "
    "'this month', 'next month' or 'next 10 days'.  Event times accept "
    "'tomorrow 2pm', 'next Monday 10:30 AM' or ISO 8601 date-times.  "
    "Always pass the user's IANA timezone.  Creating an event checks for "
    "conflicts first; only force-create after the user agrees to "
    "double-book."
))


@mcp.custom_route("/health", methods=["GET"])
async def health(_: Request) -> PlainTextResponse:
    """Simple health check for infrastructure monitoring."""
    return PlainTextResponse("OK")


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def _store_client() -> CalendarStoreClient:
    """Store client factory; a new client for every call."""
    return CaldavStoreClient()


def _manager() -> EventLifecycleManager:
    policy = RetryPolicy(max_attempts=CONNECT_ATTEMPTS, backoff=CONNECT_BACKOFF_SECONDS)
    return EventLifecycleManager(_store_client(), retry_policy=policy)


def _credentials(
    caldav_url: Optional[str],
    username: Optional[str],
    password: Optional[str],
    auth_method: Optional[str],
) -> Dict[str, Any]:
    """Merge tool arguments over the environment defaults."""
    return {
        "server_url": caldav_url or CALDAV_URL,
        "username": username or CALDAV_USERNAME,
        "password": password or CALDAV_PASSWORD,
        "auth_method": auth_method or CALDAV_AUTH_METHOD,
    }


def _tool_result(payload: Dict[str, Any], *, text: Optional[str] = None) -> ToolResult:
    """Create a ToolResult that keeps both summary text and JSON detail."""
    blocks: List[TextContent] = []
    if text:
        blocks.append(TextContent(type="text", text=text))
    blocks.append(TextContent(type="text", text=json.dumps(payload, indent=2, sort_keys=True, default=str)))
    return ToolResult(content=blocks, structured_content=payload)


def _operation_result(result: OperationResult, ok_text: str) -> ToolResult:
    payload = result.to_dict()
    if isinstance(result, Ok):
        return _tool_result(payload, text=ok_text)
    return _tool_result(payload, text=payload.get("message") or payload.get("error"))


# ---------------------------------------------------------------------------
#  Calendar Tools
# ---------------------------------------------------------------------------

@mcp.tool()
def read_calendar(
    time_range: str = DEFAULT_TIME_RANGE,
    user_timezone: Optional[str] = None,
    caldav_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auth_method: Optional[str] = None,
) -> ToolResult:
    """
    Read calendar events for a time range.

    Args:
        time_range: ``"today"``, ``"tomorrow"``, ``"this week"``,
            ``"next week"``, ``"this month"``, ``"next month"`` or
            ``"next N days"``.  Anything else means the next 7 days.
        user_timezone: IANA timezone of the user (e.g.
            ``"America/New_York"``).  Required unless ``TZID`` is set.
        caldav_url: CalDAV server URL, defaults to ``CALDAV_URL``.
        username: Account name, defaults to ``CALDAV_USERNAME``.
        password: Password or app-specific password, defaults to
            ``CALDAV_PASSWORD``.
        auth_method: ``"Basic"`` or ``"Digest"``.

    Returns ``events`` (each with ``summary``, ``description``,
    ``start_utc``, ``end_utc``, ``start_local``, ``end_local``,
    ``location``, ``uid`` and ``recurrence_rule``), ``events_by_day``
    keyed by local date, ``timezone`` and ``query_range``.
    """
    result = _manager().list_events(
        _credentials(caldav_url, username, password, auth_method),
        user_timezone or DEFAULT_TZID,
        time_range,
    )
    count = result.payload.get("count", 0) if isinstance(result, Ok) else 0
    return _operation_result(result, f"{count} event(s)")


@mcp.tool()
def check_calendar_conflicts(
    start_time: str,
    end_time: str,
    user_timezone: Optional[str] = None,
    caldav_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auth_method: Optional[str] = None,
) -> ToolResult:
    """
    Check whether a proposed time slot overlaps existing events.

    Events that merely touch the slot (one ends exactly when the other
    starts) are not conflicts.  Returns ``has_conflicts``, the
    ``conflicts`` list and the ``proposed_event`` in local time.
    """
    result = _manager().check_conflicts(
        _credentials(caldav_url, username, password, auth_method),
        user_timezone or DEFAULT_TZID,
        start_time,
        end_time,
    )
    has_conflicts = isinstance(result, Ok) and result.payload.get("has_conflicts")
    return _operation_result(result, "conflicts found" if has_conflicts else "no conflicts")


def _create(
    summary: str,
    start_time: str,
    end_time: str,
    description: str,
    location: str,
    attendees: Optional[List[str]],
    user_timezone: Optional[str],
    force_create: bool,
    caldav_url: Optional[str],
    username: Optional[str],
    password: Optional[str],
    auth_method: Optional[str],
) -> ToolResult:
    result = _manager().create_event(
        _credentials(caldav_url, username, password, auth_method),
        user_timezone or DEFAULT_TZID,
        summary,
        start_time,
        end_time,
        description=description,
        location=location,
        attendees=attendees,
        force_create=force_create,
    )
    ok_text = result.payload.get("message", "") if isinstance(result, Ok) else ""
    return _operation_result(result, ok_text)


@mcp.tool()
def create_calendar_event(
    summary: str,
    start_time: str,
    end_time: str,
    description: str = "",
    location: str = "",
    attendees: Optional[List[str]] = None,
    user_timezone: Optional[str] = None,
    force_create: bool = False,
    caldav_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auth_method: Optional[str] = None,
) -> ToolResult:
    """
    Create a calendar event, checking for conflicts first.

    ``start_time`` and ``end_time`` accept ``"tomorrow 2pm"``,
    ``"next Monday 10:30 AM"`` or ISO date-times.  When the slot
    overlaps existing events nothing is written and the result has
    ``status="conflict"`` with the conflicting events and a message
    asking the user to create anyway, pick another time or cancel.

    Attendee addresses at placeholder domains such as ``example.com``
    are dropped.
    """
    return _create(summary, start_time, end_time, description, location, attendees,
                   user_timezone, force_create, caldav_url, username, password, auth_method)


@mcp.tool()
def force_create_calendar_event(
    summary: str,
    start_time: str,
    end_time: str,
    description: str = "",
    location: str = "",
    attendees: Optional[List[str]] = None,
    user_timezone: Optional[str] = None,
    caldav_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auth_method: Optional[str] = None,
) -> ToolResult:
    """
    Create a calendar event even if it double-books the slot.

    Use only after the user explicitly chose to override a conflict.
    """
    return _create(summary, start_time, end_time, description, location, attendees,
                   user_timezone, True, caldav_url, username, password, auth_method)


@mcp.tool()
def delete_calendar_event(
    event_identifier: str,
    user_timezone: Optional[str] = None,
    caldav_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auth_method: Optional[str] = None,
) -> ToolResult:
    """
    Delete a calendar event by UID or by part of its title.

    The first event in server order whose UID equals the identifier or
    whose title contains it (ignoring case) is deleted.  Use
    ``read_calendar`` first to find a precise identifier.
    """
    result = _manager().delete_event(
        _credentials(caldav_url, username, password, auth_method),
        user_timezone or DEFAULT_TZID,
        event_identifier,
    )
    ok_text = result.payload.get("message", "") if isinstance(result, Ok) else ""
    return _operation_result(result, ok_text)


@mcp.tool()
def test_calendar_connection(
    caldav_url: Optional[str] = None,
    username: Optional[str] = None,
    password: Optional[str] = None,
    auth_method: Optional[str] = None,
) -> ToolResult:
    """
    Log in to the CalDAV server and list its calendars.

    Use this to debug calendar issues.  Failures include
    troubleshooting hints for authentication or connectivity problems.
    """
    result = _manager().test_connection(_credentials(caldav_url, username, password, auth_method))
    count = len(result.payload.get("calendars", [])) if isinstance(result, Ok) else 0
    return _operation_result(result, f"{count} calendar(s)")


# ---------------------------------------------------------------------------
#  Server entry point
# ---------------------------------------------------------------------------

if __name__ == '__main__':
    log.info("Starting MCP HTTP server on %s:%d (CalDAV=%s)", SERVER_HOST, SERVER_PORT, CALDAV_URL or "<per call>")
    mcp.run(transport="http", host=SERVER_HOST, port=SERVER_PORT)
