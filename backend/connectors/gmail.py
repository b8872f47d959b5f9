"""
Gmail connector implementation via Google Gmail API.

Responsibilities:
- List messages after a point in time (``after:<epoch>`` search)
- Fetch message details concurrently for each listed page
- Parse headers/body into GmailThread records

The cursor carries the ``after`` epoch together with Gmail's ``pageToken``
so a resumed run keeps querying the same window it started with.
"""

import base64
import logging
from datetime import datetime, timedelta
from email.utils import getaddresses, parseaddr
from typing import Any, Optional

from config import settings
from connectors.base import BaseConnector
from connectors.errors import Err, Ok, Result
from connectors.models import Credential, DealPage, GmailThread
from connectors.registry import AuthType, ConnectorMeta, ConnectorScope

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"
GMAIL_PAGE_SIZE = 100


def encode_cursor(after_epoch: int, page_token: str) -> str:
    return f"{after_epoch}|{page_token}"


def decode_cursor(cursor: str) -> tuple[int, str]:
    after, _, page_token = cursor.partition("|")
    return int(after), page_token


class GmailConnector(BaseConnector):
    """Connector for Gmail mailboxes."""

    source_system = "gmail"
    meta = ConnectorMeta(
        name="Gmail",
        slug="gmail",
        auth_type=AuthType.OAUTH2,
        scope=ConnectorScope.USER,
        entity_types=["emails"],
        oauth_scopes=[
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/userinfo.email",
        ],
        single_contact=True,
        description="Gmail – mailbox ingest",
    )

    async def fetch_page(
        self,
        credential: Credential,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> Result[DealPage]:
        if cursor:
            after_epoch, page_token = decode_cursor(cursor)
        else:
            if since is None:
                since = datetime.utcnow() - timedelta(days=settings.SYNC_INITIAL_WINDOW_DAYS)
            after_epoch = int((since - datetime(1970, 1, 1)).total_seconds())
            page_token = ""

        params: dict[str, Any] = {"q": f"after:{after_epoch}", "maxResults": GMAIL_PAGE_SIZE}
        if page_token:
            params["pageToken"] = page_token

        result = await self._make_request(
            credential, "GET", f"{GMAIL_API_BASE}/users/me/messages", params=params
        )
        if isinstance(result, Err):
            return result
        data: dict[str, Any] = result.value

        message_ids: list[str] = [m["id"] for m in data.get("messages", []) if m.get("id")]
        details = await self._fan_out(
            [self._get_message_detail(credential, mid) for mid in message_ids],
            stage="message_detail",
        )

        threads: list[GmailThread] = []
        skipped = 0
        for detail in details:
            if detail is None:
                continue
            thread = self._validate(GmailThread, parse_message(detail))
            if thread is None:
                skipped += 1
            else:
                threads.append(thread)

        next_token: Optional[str] = data.get("nextPageToken")
        next_cursor = encode_cursor(after_epoch, next_token) if next_token else None
        return Ok(DealPage(items=threads, next_cursor=next_cursor, skipped=skipped))

    async def _get_message_detail(self, credential: Credential, message_id: str) -> dict[str, Any]:
        """Get full message details."""
        result = await self._make_request(
            credential,
            "GET",
            f"{GMAIL_API_BASE}/users/me/messages/{message_id}",
            params={"format": "full"},
        )
        if isinstance(result, Err):
            raise result.error
        return result.value


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_plain_text(part: dict[str, Any]) -> Optional[str]:
    if part.get("mimeType") == "text/plain" and (part.get("body") or {}).get("data"):
        return _decode_body(part["body"]["data"])
    for child in part.get("parts") or []:
        text = _find_plain_text(child)
        if text:
            return text
    return None


def parse_message(gmail_msg: dict[str, Any]) -> dict[str, Any]:
    """Transform a Gmail API message into GmailThread fields."""
    payload: dict[str, Any] = gmail_msg.get("payload") or {}
    header_dict: dict[str, str] = {}
    for header in payload.get("headers", []):
        header_dict[header.get("name", "").lower()] = header.get("value", "")

    from_name, from_email = parseaddr(header_dict.get("from", ""))

    body_text: Optional[str] = None
    if (payload.get("body") or {}).get("data"):
        body_text = _decode_body(payload["body"]["data"])
    else:
        body_text = _find_plain_text(payload)

    received_at: Optional[datetime] = None
    internal_date = gmail_msg.get("internalDate")
    if internal_date:
        try:
            # internalDate is in milliseconds
            received_at = datetime(1970, 1, 1) + timedelta(milliseconds=int(internal_date))
        except (ValueError, TypeError):
            received_at = None

    return {
        "id": gmail_msg.get("id"),
        "thread_id": gmail_msg.get("threadId"),
        "subject": header_dict.get("subject") or None,
        "from_email": from_email.lower() or None,
        "from_name": from_name.strip("\"'") or None,
        "to_emails": [addr.lower() for _, addr in getaddresses([header_dict.get("to", "")]) if addr],
        "cc_emails": [addr.lower() for _, addr in getaddresses([header_dict.get("cc", "")]) if addr],
        "snippet": gmail_msg.get("snippet") or None,
        "body_text": body_text,
        "received_at": received_at,
        "labels": gmail_msg.get("labelIds") or [],
    }
