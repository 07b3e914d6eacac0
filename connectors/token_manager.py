"""
Token manager — upsert / refresh / delete per-user mailbox connections.

All functions take the caller's ``AsyncSession`` and only flush; the
caller's transaction decides when the writes become visible.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.base import BaseConnector
from connectors.encryption import decrypt_token, encrypt_token
from core.errors import UpstreamError
from database.helpers import get_connection, to_uuid
from database.models import EmailConnection

logger = logging.getLogger(__name__)

_REFRESH_BUFFER = timedelta(seconds=120)
_DEFAULT_EXPIRES_IN = 3600


def _expiry_from(grant: Dict[str, Any], now: datetime) -> datetime:
    return now + timedelta(seconds=int(grant.get("expires_in") or _DEFAULT_EXPIRES_IN))


async def store_connection(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    provider: str,
    email_address: str,
    grant: Dict[str, Any],
    *,
    now: Optional[datetime] = None,
) -> EmailConnection:
    """
    Insert or update the single connection row for ``(user_id, provider)``.

    Re-connecting resets the sync state: ``sync_enabled=True`` and
    ``last_sync_at=None``.
    """
    now = now or datetime.now(timezone.utc)
    uid = to_uuid(user_id)
    conn = await get_connection(session, uid, provider)
    if conn is None:
        conn = EmailConnection(user_id=uid, provider=provider)
        session.add(conn)
        logger.info("Creating %s connection for user %s", provider, uid)
    else:
        logger.info("Updating %s connection for user %s", provider, uid)

    conn.email_address = email_address
    conn.access_token = encrypt_token(grant["access_token"])
    conn.refresh_token = encrypt_token(grant["refresh_token"])
    conn.token_expires_at = _expiry_from(grant, now)
    conn.sync_enabled = True
    conn.last_sync_at = None
    conn.updated_at = now
    await session.flush()
    return conn


async def get_active_token(
    session: AsyncSession,
    conn: EmailConnection,
    connector: BaseConnector,
    *,
    now: Optional[datetime] = None,
) -> str:
    """
    Return a usable access token for *conn*, refreshing it first if it
    expires within the next two minutes.

    Raises ``UpstreamError`` when a refresh is needed and fails.
    """
    now = now or datetime.now(timezone.utc)
    if conn.token_expires_at and conn.token_expires_at > now + _REFRESH_BUFFER:
        return decrypt_token(conn.access_token)

    refresh_token = decrypt_token(conn.refresh_token or "")
    if not refresh_token:
        raise UpstreamError("Gmail token expired and no refresh token is stored")

    try:
        refreshed = await connector.refresh_access_token(refresh_token)
    except Exception as exc:
        logger.warning("Token refresh failed for %s/%s: %s", conn.provider, conn.user_id, exc)
        raise UpstreamError("Failed to refresh Gmail token") from exc

    conn.access_token = encrypt_token(refreshed["access_token"])
    conn.token_expires_at = _expiry_from(refreshed, now)
    # Google may rotate refresh tokens
    if refreshed.get("refresh_token"):
        conn.refresh_token = encrypt_token(refreshed["refresh_token"])
    await session.flush()
    logger.info("Refreshed %s token for user %s", conn.provider, conn.user_id)
    return refreshed["access_token"]


async def delete_connection(
    session: AsyncSession,
    user_id: str | uuid.UUID,
    provider: str,
) -> Optional[str]:
    """
    Delete the connection row, returning its decrypted access token (for
    revocation) or None if there was no row.
    """
    conn = await get_connection(session, user_id, provider)
    if conn is None:
        return None
    token = decrypt_token(conn.access_token)
    await session.execute(
        delete(EmailConnection).where(
            EmailConnection.user_id == conn.user_id,
            EmailConnection.provider == provider,
        )
    )
    await session.flush()
    return token
