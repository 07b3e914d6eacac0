"""
GmailConnector — Google OAuth2 web flow with read-only Gmail access.

Only the token endpoint, userinfo and revocation are called here; message
access goes through ``connectors.mailbox`` with the resulting token.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import urlencode

import httpx

from config.settings import config
from connectors.base import BaseConnector

logger = logging.getLogger(__name__)

_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

_HTTP_TIMEOUT = 15.0


class GoogleTokenError(Exception):
    """The token endpoint answered with an OAuth error payload."""


async def _token_request(form: Dict[str, str]) -> Dict[str, Any]:
    form = {
        "client_id": config.google_client_id,
        "client_secret": config.google_client_secret,
        **form,
    }
    async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
        resp = await client.post(_GOOGLE_TOKEN_URL, data=form)
    if resp.status_code >= 400:
        try:
            body = resp.json()
        except ValueError:
            body = {}
        reason = body.get("error_description") or body.get("error") or f"HTTP {resp.status_code}"
        logger.warning("Google token endpoint rejected %s: %s", form.get("grant_type"), reason)
        raise GoogleTokenError(reason)
    return resp.json()


class GmailConnector(BaseConnector):
    @property
    def provider_name(self) -> str:
        return "gmail"

    @property
    def display_name(self) -> str:
        return "Gmail"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/gmail.readonly",
            "https://www.googleapis.com/auth/userinfo.email",
        ]

    def is_configured(self) -> bool:
        return bool(config.google_client_id and config.google_client_secret)

    def redirect_uri(self) -> str:
        return f"{config.oauth_redirect_base}/api/v1/auth/google/callback"

    def get_auth_url(self, state: str) -> str:
        query = urlencode(
            {
                "client_id": config.google_client_id,
                "redirect_uri": self.redirect_uri(),
                "response_type": "code",
                "scope": " ".join(self.scopes),
                # offline + consent so Google always returns a refresh token
                "access_type": "offline",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{_GOOGLE_AUTH_URL}?{query}"

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        data = await _token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri(),
            }
        )
        return {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_in": data.get("expires_in"),
        }

    async def get_account_email(self, access_token: str) -> str:
        async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
            resp = await client.get(
                _GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        resp.raise_for_status()
        return resp.json().get("email") or ""

    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        data = await _token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )
        if not data.get("access_token"):
            raise GoogleTokenError("refresh response carried no access_token")
        return {
            "access_token": data["access_token"],
            "expires_in": data.get("expires_in", 3600),
            # present only when Google rotates the refresh token
            "refresh_token": data.get("refresh_token"),
        }

    async def revoke_token(self, token: str) -> bool:
        async with httpx.AsyncClient(timeout=_HTTP_TIMEOUT) as client:
            resp = await client.post(
                _GOOGLE_REVOKE_URL,
                params={"token": token},
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        return resp.status_code == 200
