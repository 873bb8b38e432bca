"""
Gmail history source and trigger routing.

The cursor is a mailbox ``historyId``.  Without one the source reads the
current id from the profile and returns nothing, so mail already in the
inbox never fires.  With one it walks ``users.history.list`` for
``messageAdded`` records and fetches each new message in full.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from email.utils import parseaddr
from typing import Any, Dict, List, Optional, Tuple

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from triggers.errors import CursorInvalidError, ProviderRequestError, http_status
from triggers.registry import RECEIVE_EMAIL
from utils.schemas import CredentialRecord, EventPage

logger = logging.getLogger(__name__)


# ── Source ──────────────────────────────────────────────────────────────


class GmailHistorySource:
    def __init__(self, max_pages: int = 20, skip_header: Optional[str] = None):
        """
        Parameters
        ----------
        max_pages   : cap on history pages followed in one listing.
        skip_header : messages carrying this header were sent by a workflow
                      and are not reported.
        """
        self.max_pages = max_pages
        self.skip_header = skip_header.lower() if skip_header else None

    def _build_service(self, access_token: str):
        creds = Credentials(token=access_token)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    async def list_changes(
        self,
        credential: CredentialRecord,
        cursor: Optional[str],
        page_size: int,
    ) -> EventPage:
        """
        Return messages added since ``cursor`` and the mailbox's current
        history id.

        Raises ``CursorInvalidError`` when Gmail no longer knows the history
        id (HTTP 404) and ``ProviderRequestError`` for any other failure.
        """
        service = await asyncio.to_thread(self._build_service, credential.access_token)
        profile = await asyncio.to_thread(self._get_profile, service)
        if not cursor:
            history_id = profile.get("historyId")
            if not history_id:
                raise ProviderRequestError("Gmail profile has no historyId")
            return EventPage(items=[], next_cursor=str(history_id))

        message_ids, next_cursor = await asyncio.to_thread(
            self._list_history, service, cursor, page_size
        )
        own_address = (profile.get("emailAddress") or "").lower()

        items: List[Dict[str, Any]] = []
        for message_id in message_ids:
            message = await asyncio.to_thread(self._get_message, service, message_id)
            if message is None or self._should_skip(message, own_address):
                continue
            items.append(message)
        return EventPage(items=items, next_cursor=next_cursor)

    def _get_profile(self, service) -> Dict[str, Any]:
        try:
            return service.users().getProfile(userId="me").execute()
        except HttpError as exc:
            status = http_status(exc)
            raise ProviderRequestError(
                f"Gmail API error {status}: {exc}", status_code=status
            ) from exc

    def _list_history(self, service, cursor: str, page_size: int) -> Tuple[List[str], str]:
        message_ids: List[str] = []
        seen = set()
        page_token: Optional[str] = None
        history_id: Optional[str] = None

        for _ in range(self.max_pages):
            params: Dict[str, Any] = {
                "userId": "me",
                "startHistoryId": cursor,
                "historyTypes": ["messageAdded"],
                "maxResults": page_size,
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                response = service.users().history().list(**params).execute()
            except HttpError as exc:
                status = http_status(exc)
                if status == 404:
                    raise CursorInvalidError(str(exc)) from exc
                raise ProviderRequestError(
                    f"Gmail API error {status}: {exc}", status_code=status
                ) from exc

            for record in response.get("history", []):
                for added in record.get("messagesAdded", []):
                    message_id = (added.get("message") or {}).get("id")
                    if message_id and message_id not in seen:
                        seen.add(message_id)
                        message_ids.append(message_id)

            if response.get("historyId"):
                history_id = str(response["historyId"])
            page_token = response.get("nextPageToken")
            if not page_token:
                if not history_id:
                    raise ProviderRequestError("Gmail history listing returned no historyId")
                return message_ids, history_id

        raise ProviderRequestError(
            f"Gmail history exceeded {self.max_pages} page(s) from {cursor}"
        )

    def _get_message(self, service, message_id: str) -> Optional[Dict[str, Any]]:
        try:
            return (
                service.users()
                .messages()
                .get(userId="me", id=message_id, format="full")
                .execute()
            )
        except HttpError as exc:
            status = http_status(exc)
            if status == 404:
                # Deleted between the history read and the fetch.
                logger.debug("Gmail message %s no longer exists", message_id)
                return None
            raise ProviderRequestError(
                f"Gmail API error {status}: {exc}", status_code=status
            ) from exc

    def _should_skip(self, message: Dict[str, Any], own_address: str) -> bool:
        headers = _header_map(message)
        if self.skip_header and self.skip_header in headers:
            return True
        sender = parseaddr(headers.get("from", ""))[1].lower()
        return bool(own_address) and sender == own_address


# ── Parsing ─────────────────────────────────────────────────────────────


def _header_map(message: Dict[str, Any]) -> Dict[str, str]:
    """Lower-cased header name → value."""
    return {
        h["name"].lower(): h["value"]
        for h in message.get("payload", {}).get("headers", [])
        if "name" in h and "value" in h
    }


def _decode(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode(errors="replace")


def _walk_parts(part: Dict[str, Any], found: Dict[str, Any]) -> None:
    mime_type = part.get("mimeType", "")
    body = part.get("body", {})
    if part.get("filename") and body.get("attachmentId"):
        found["attachments"].append(
            {
                "filename": part["filename"],
                "mimeType": mime_type,
                "size": body.get("size", 0),
                "attachmentId": body["attachmentId"],
            }
        )
    elif body.get("data"):
        if mime_type == "text/html":
            found["html"] = found["html"] or _decode(body["data"])
        elif mime_type in ("text/plain", ""):
            found["text"] = found["text"] or _decode(body["data"])
    for child in part.get("parts", []):
        _walk_parts(child, found)


def parse_message(message: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten a Gmail ``format=full`` message into a trigger payload."""
    headers = _header_map(message)
    found: Dict[str, Any] = {"text": "", "html": "", "attachments": []}
    _walk_parts(message.get("payload", {}), found)

    return {
        "messageId": message.get("id"),
        "threadId": message.get("threadId"),
        "from": headers.get("from", ""),
        "to": headers.get("to", ""),
        "subject": headers.get("subject", ""),
        "date": headers.get("date", ""),
        "body": found["text"] or message.get("snippet", ""),
        "htmlBody": found["html"],
        "attachments": found["attachments"],
        "labelIds": message.get("labelIds", []),
        "historyId": message.get("historyId"),
    }


# ── Routing ─────────────────────────────────────────────────────────────


class GmailRouting:
    """Every new message fires ``gmail:receive-email``, filtered per workflow."""

    kinds: Tuple[str, ...] = (RECEIVE_EMAIL,)

    def route(self, message: Dict[str, Any], now) -> Optional[Tuple[str, Dict[str, Any]]]:
        return RECEIVE_EMAIL, parse_message(message)

    def matches(self, payload: Dict[str, Any], trigger_config: Dict[str, Any]) -> bool:
        """
        ``from`` and ``subject`` are case-insensitive substring filters;
        ``labelIds`` must all be present on the message.
        """
        for field in ("from", "subject"):
            wanted = trigger_config.get(field)
            if wanted and str(wanted).lower() not in (payload.get(field) or "").lower():
                return False
        labels = trigger_config.get("labelIds") or []
        if isinstance(labels, str):
            labels = [labels]
        return set(labels).issubset(payload.get("labelIds") or [])
