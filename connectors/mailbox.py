"""
Read-only Gmail mailbox access for the sync job.

Builds a ``googleapiclient`` service from a per-user access token.  All
client calls are synchronous, so they are offloaded with
``asyncio.to_thread()`` to keep the event loop free while a batch run
is syncing several users at once.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from datetime import date
from typing import Any, Dict, List

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build

from utils.schemas import MailMessage

logger = logging.getLogger(__name__)

_ORDER_SUBJECTS = (
    "subject:order",
    "subject:confirmation",
    "subject:receipt",
    "subject:purchase",
    'subject:"your order"',
    'subject:"order confirmation"',
)

_TAG_RE = re.compile(r"<[^>]*>")
_WS_RE = re.compile(r"\s+")


def order_search_query(after: date) -> str:
    """Gmail search for order-like messages received after *after*."""
    return f"after:{after.strftime('%Y/%m/%d')} ({' OR '.join(_ORDER_SUBJECTS)})"


def _decode(data: str) -> str:
    return base64.urlsafe_b64decode(data).decode(errors="replace")


def _extract_body(part: Dict[str, Any]) -> str:
    mime_type = part.get("mimeType", "")
    data = part.get("body", {}).get("data")
    if mime_type == "text/plain" and data:
        return _decode(data)
    if mime_type == "text/html" and data:
        return _WS_RE.sub(" ", _TAG_RE.sub(" ", _decode(data))).strip()
    if part.get("parts"):
        return "\n".join(_extract_body(p) for p in part["parts"])
    return ""


def parse_message(msg: Dict[str, Any]) -> MailMessage:
    """Extract the fields the order extractor needs from a Gmail message resource."""
    payload = msg.get("payload", {})
    headers = {h["name"].lower(): h["value"] for h in payload.get("headers", [])}
    body = _extract_body(payload) or msg.get("snippet", "")
    return MailMessage(
        id=msg.get("id", ""),
        thread_id=msg.get("threadId"),
        sender=headers.get("from", ""),
        subject=headers.get("subject", ""),
        date=headers.get("date", ""),
        body=body[:5000],
    )


class GmailMailbox:
    def __init__(self, service: Any):
        self._service = service

    @classmethod
    async def open(cls, access_token: str) -> "GmailMailbox":
        # discovery does network I/O
        creds = Credentials(token=access_token)
        service = await asyncio.to_thread(
            build, "gmail", "v1", credentials=creds, cache_discovery=False,
        )
        return cls(service)

    async def search(self, query: str, max_results: int = 50) -> List[str]:
        """Return message ids matching a Gmail search query."""
        results = await asyncio.to_thread(
            self._service.users()
            .messages()
            .list(userId="me", q=query, maxResults=min(max_results, 500))
            .execute
        )
        ids = [m["id"] for m in results.get("messages", []) if m.get("id")]
        logger.debug("Gmail search %r → %d message(s)", query, len(ids))
        return ids

    async def fetch(self, message_id: str) -> MailMessage:
        msg = await asyncio.to_thread(
            self._service.users()
            .messages()
            .get(userId="me", id=message_id, format="full")
            .execute
        )
        return parse_message(msg)
