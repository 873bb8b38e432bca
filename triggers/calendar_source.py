"""
Google Calendar delta source and trigger routing.

Lists event changes for the credential's primary calendar using the
Calendar API sync token as cursor.  ``googleapiclient`` is synchronous,
so requests run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from config.settings import config
from triggers.errors import CursorInvalidError, ProviderRequestError, http_status
from triggers.registry import EVENT_CANCELLED, NEW_EVENT
from utils.schemas import CredentialRecord, EventPage

logger = logging.getLogger(__name__)

CLASS_NEW = "new"
CLASS_CANCELLED = "cancelled"

_ACTIVE_STATUSES = ("confirmed", "active")


# ── Source ──────────────────────────────────────────────────────────────


class CalendarEventSource:
    def __init__(self, calendar_id: str = "primary", max_pages: int = 20):
        """
        ``max_pages`` caps incremental listings only.  A full listing must
        reach ``nextSyncToken`` or the calendar could never be bootstrapped.
        """
        self.calendar_id = calendar_id
        self.max_pages = max_pages

    def _build_service(self, access_token: str):
        creds = Credentials(token=access_token)
        return build("calendar", "v3", credentials=creds, cache_discovery=False)

    async def list_changes(
        self,
        credential: CredentialRecord,
        cursor: Optional[str],
        page_size: int,
    ) -> EventPage:
        """
        Return events changed since ``cursor`` (all events when ``None``)
        and the next sync token.

        Raises ``CursorInvalidError`` on HTTP 410 / sync-token rejection and
        ``ProviderRequestError`` for any other API failure, or when no sync
        token could be obtained.
        """
        service = await asyncio.to_thread(self._build_service, credential.access_token)
        return await asyncio.to_thread(self._list_all_pages, service, cursor, page_size)

    def _list_all_pages(self, service, cursor: Optional[str], page_size: int) -> EventPage:
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None

        pages = 0
        while True:
            if cursor and pages >= self.max_pages:
                raise ProviderRequestError(
                    f"Calendar delta exceeded {self.max_pages} page(s) without a sync token"
                )
            pages += 1
            params: Dict[str, Any] = {
                "calendarId": self.calendar_id,
                "maxResults": page_size,
            }
            if cursor:
                params["syncToken"] = cursor
            if page_token:
                params["pageToken"] = page_token

            try:
                response = service.events().list(**params).execute()
            except HttpError as exc:
                status = http_status(exc)
                if status == 410 or (cursor and "syncToken" in str(exc)):
                    raise CursorInvalidError(str(exc)) from exc
                raise ProviderRequestError(
                    f"Calendar API error {status}: {exc}", status_code=status
                ) from exc

            items.extend(response.get("items", []))
            if response.get("nextSyncToken"):
                if pages > 1:
                    logger.debug("Calendar listing took %d pages", pages)
                return EventPage(items=items, next_cursor=response["nextSyncToken"])
            page_token = response.get("nextPageToken")
            if not page_token:
                raise ProviderRequestError("Calendar listing ended without a sync token")


# ── Routing ─────────────────────────────────────────────────────────────


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC 3339 timestamp as returned by the Calendar API."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_event_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    start = event.get("start") or {}
    end = event.get("end") or {}
    return {
        "eventId": event.get("id"),
        "summary": event.get("summary"),
        "description": event.get("description"),
        "location": event.get("location"),
        "start": start.get("dateTime") or start.get("date"),
        "end": end.get("dateTime") or end.get("date"),
        "link": event.get("htmlLink"),
    }


def cancelled_event_payload(event: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "eventId": event.get("id"),
        "summary": event.get("summary"),
    }


class CalendarRouting:
    """Maps Calendar event changes to the new-event and event-cancelled triggers."""

    def __init__(
        self,
        new_event_kind: str = NEW_EVENT,
        cancelled_kind: str = EVENT_CANCELLED,
        recency_window: Optional[float] = None,
    ):
        self.new_event_kind = new_event_kind
        self.cancelled_kind = cancelled_kind
        self.recency_window = timedelta(
            seconds=config.recency_window_seconds if recency_window is None else recency_window
        )

    @property
    def kinds(self) -> Tuple[str, ...]:
        return (self.new_event_kind, self.cancelled_kind)

    def classify(self, event: Dict[str, Any], now: datetime) -> Optional[str]:
        """
        ``"new"`` for an active event created within the recency window,
        ``"cancelled"`` for a cancelled one, otherwise ``None``.
        """
        status = event.get("status")
        if status == "cancelled":
            return CLASS_CANCELLED
        if status in _ACTIVE_STATUSES:
            created = parse_timestamp(event.get("created"))
            if created is not None and now - created < self.recency_window:
                return CLASS_NEW
        return None

    def route(self, event: Dict[str, Any], now: datetime) -> Optional[Tuple[str, Dict[str, Any]]]:
        classification = self.classify(event, now)
        if classification == CLASS_NEW:
            return self.new_event_kind, new_event_payload(event)
        if classification == CLASS_CANCELLED:
            return self.cancelled_kind, cancelled_event_payload(event)
        return None

    def matches(self, payload: Dict[str, Any], trigger_config: Dict[str, Any]) -> bool:
        return True
