"""
FastAPI dependencies for authentication.

The session token arrives either as ``Authorization: Bearer <token>`` or,
for top-level browser navigations such as the Gmail connect link, in the
session cookie.  The header wins when both are present.

``get_current_user_id`` guards every user-facing route: a missing or
invalid token is an ``Unauthorized`` error, rendered as
``401 {"error": ...}`` by the app's error handlers.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Depends
from fastapi.security import APIKeyCookie, HTTPAuthorizationCredentials, HTTPBearer

from auth.jwt import verify_token
from config.settings import config
from core.errors import Unauthorized

_bearer_scheme = HTTPBearer(auto_error=False)
_cookie_scheme = APIKeyCookie(name=config.session_cookie_name, auto_error=False)


async def get_session_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
    cookie: Optional[str] = Depends(_cookie_scheme),
) -> Optional[str]:
    """Raw session token from the Bearer header or the session cookie."""
    if credentials is not None and credentials.credentials:
        return credentials.credentials
    return cookie or None


async def get_current_user_id(token: Optional[str] = Depends(get_session_token)) -> str:
    """
    Verify the session token, returning the authenticated ``user_id``
    (UUID string).
    """
    if not token:
        raise Unauthorized("Unauthorized")
    return verify_token(token)
