"""
OAuth connection manager — binds a user to a Gmail mailbox.

The redirect round trip carries a signed, self-describing state token
``base64(json{user_id, issued_at}) + "." + hmac`` instead of server-side
session storage.  Tokens older than the configured TTL (5 minutes) are
rejected.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from config.settings import config
from connectors.base import BaseConnector
from connectors.gmail import GmailConnector
from connectors.token_manager import delete_connection, store_connection
from core.errors import (
    ExpiredAuthorization,
    InvalidCallback,
    UpstreamAuthError,
    UpstreamLookupError,
)
from core.notifications import NotificationEngine
from database.helpers import ensure_user_exists, get_connection, to_uuid
from database.store import Store
from utils.background import BackgroundTasks, background_tasks
from utils.schemas import ConnectionStatus, ConnectResult, NotificationType

logger = logging.getLogger(__name__)

InitialSync = Callable[[uuid.UUID], Awaitable[object]]


# ── State token helpers ────────────────────────────────────────────────


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()[:32]


def _epoch_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def create_state(user_id: str | uuid.UUID, issued_at: datetime, secret: str) -> str:
    """Encode ``{user_id, issued_at}`` (milliseconds) as a signed state token."""
    raw = json.dumps({"user_id": str(user_id), "issued_at": _epoch_ms(issued_at)}).encode()
    return base64.urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret)


def verify_state(state: str, now: datetime, secret: str, ttl_seconds: int) -> str:
    """
    Return the user id carried by *state*.

    Raises ``InvalidCallback`` if the token is malformed or its signature
    does not match, ``ExpiredAuthorization`` if it is older than
    *ttl_seconds*.
    """
    try:
        encoded, signature = state.split(".", 1)
        raw = base64.urlsafe_b64decode(encoded.encode())
        payload = json.loads(raw)
        user_id = str(payload["user_id"])
        issued_at = int(payload["issued_at"])
    except (ValueError, KeyError, TypeError, binascii.Error) as exc:
        logger.info("Malformed OAuth state: %s", exc)
        raise InvalidCallback() from exc

    if not hmac.compare_digest(signature.encode(), _sign(raw, secret).encode()):
        logger.warning("OAuth state signature mismatch")
        raise InvalidCallback()
    if _epoch_ms(now) - issued_at > ttl_seconds * 1000:
        raise ExpiredAuthorization()
    return user_id


# ── Manager ────────────────────────────────────────────────────────────


class ConnectionManager:
    def __init__(
        self,
        store: Store,
        *,
        connector: Optional[BaseConnector] = None,
        initial_sync: Optional[InitialSync] = None,
        tasks: Optional[BackgroundTasks] = None,
        clock: Optional[Callable[[], datetime]] = None,
        state_secret: Optional[str] = None,
        state_ttl_seconds: Optional[int] = None,
    ):
        """
        Parameters
        ----------
        store        : store capability used for every write.
        connector    : mailbox provider; Gmail by default.
        initial_sync : coroutine function run in the background after a
                       successful connection.  Its failures are only logged.
        tasks        : background task holder; the process-wide one by default.
        """
        self.store = store
        self.connector = connector or GmailConnector()
        self._initial_sync = initial_sync
        self._tasks = tasks or background_tasks
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._secret = state_secret or config.oauth_state_secret
        self._ttl = state_ttl_seconds or config.oauth_state_ttl_seconds

    @property
    def provider(self) -> str:
        return self.connector.provider_name

    def initiate_connection(self, user_id: str | uuid.UUID) -> str:
        """Authorization URL carrying a fresh state token for *user_id*."""
        state = create_state(to_uuid(user_id), self._clock(), self._secret)
        return self.connector.get_auth_url(state)

    async def complete_connection(self, code: Optional[str], state: Optional[str]) -> ConnectResult:
        if not code or not state:
            raise InvalidCallback()
        state_user = verify_state(state, self._clock(), self._secret, self._ttl)
        try:
            user_id = uuid.UUID(state_user)
        except ValueError as exc:
            raise InvalidCallback() from exc

        try:
            grant = await self.connector.exchange_code(code)
        except Exception as exc:
            logger.error("Code exchange failed: %s", exc)
            raise UpstreamAuthError("Failed to get tokens") from exc
        if not grant.get("access_token") or not grant.get("refresh_token"):
            raise UpstreamAuthError("Failed to get tokens")

        try:
            email_address = await self.connector.get_account_email(grant["access_token"])
        except Exception as exc:
            logger.error("Mailbox address lookup failed: %s", exc)
            raise UpstreamLookupError("Failed to get email address") from exc
        if not email_address:
            raise UpstreamLookupError("Failed to get email address")

        async with self.store.transaction() as session:
            await ensure_user_exists(session, user_id)
            await store_connection(
                session, user_id, self.provider, email_address, grant, now=self._clock(),
            )
            await NotificationEngine(session, clock=self._clock).notify(
                user_id,
                NotificationType.GMAIL_CONNECTED,
                f"{self.connector.display_name} connected!",
                f"Your {self.connector.display_name} account ({email_address}) is now connected. "
                "We'll automatically detect your orders.",
                action_url="/settings",
            )

        logger.info("OAuth connected: user=%s provider=%s account=%s", user_id, self.provider, email_address)
        if self._initial_sync is not None:
            self._tasks.spawn(self._initial_sync(user_id), name=f"initial-sync:{user_id}")
        return ConnectResult(user_id=str(user_id), email_address=email_address)

    async def disconnect(self, user_id: str | uuid.UUID) -> bool:
        """
        Remove the user's connection.  Returns False when there was none;
        that is not an error.
        """
        uid = to_uuid(user_id)
        async with self.store.transaction() as session:
            token = await delete_connection(session, uid, self.provider)
        if token is None:
            return False

        logger.info("Disconnected %s for user %s", self.provider, uid)
        if token:
            self._tasks.spawn(self._revoke(token), name=f"revoke:{uid}")
        return True

    async def _revoke(self, token: str) -> None:
        try:
            revoked = await self.connector.revoke_token(token)
        except Exception as exc:
            logger.warning("Token revocation failed for %s: %s", self.provider, exc)
            return
        if not revoked:
            logger.info("%s did not confirm token revocation", self.provider)

    async def connection_status(self, user_id: str | uuid.UUID) -> ConnectionStatus:
        async with self.store.read() as session:
            conn = await get_connection(session, user_id, self.provider)
        if conn is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=True,
            email_address=conn.email_address,
            last_sync_at=conn.last_sync_at,
            sync_enabled=conn.sync_enabled,
        )
