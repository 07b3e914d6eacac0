"""
Google OAuth routes — start the consent flow and receive its callback.

Route prefix: /api/v1/auth/google

Both routes answer with redirects to the frontend's settings page; the
outcome is carried in its ``success`` / ``error`` query parameter.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse

from api.dependencies import get_connection_manager
from auth.dependencies import get_session_token
from auth.jwt import verify_token
from config.settings import config
from core.errors import AppError
from core.oauth_manager import ConnectionManager

logger = logging.getLogger(__name__)

router = APIRouter(tags=["google-auth"])


def _settings_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(f"{config.app_url}/settings?{urlencode(params)}", status_code=307)


@router.get("/connect")
async def connect(
    token: Optional[str] = Depends(get_session_token),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> RedirectResponse:
    """Redirect the signed-in user to Google's consent screen."""
    if not token:
        return RedirectResponse(f"{config.app_url}/login", status_code=307)
    try:
        user_id = verify_token(token)
    except AppError:
        return RedirectResponse(f"{config.app_url}/login", status_code=307)

    if not manager.connector.is_configured():
        logger.error("Google OAuth client credentials are not configured")
        return _settings_redirect(error="Google OAuth is not configured")
    try:
        auth_url = manager.initiate_connection(user_id)
    except Exception as exc:
        logger.error("Google connect failed for user %s: %s", user_id, exc)
        return _settings_redirect(error="Failed to connect to Google")
    return RedirectResponse(auth_url, status_code=307)


@router.get("/callback")
async def callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    manager: ConnectionManager = Depends(get_connection_manager),
) -> RedirectResponse:
    """
    Google redirects here after consent.  Never answers with a 5xx:
    every failure becomes ``/settings?error=...``.
    """
    if error:
        logger.warning("Google OAuth error: %s", error)
        return _settings_redirect(error="Google authorization was denied")

    try:
        await manager.complete_connection(code, state)
    except AppError as exc:
        logger.warning("Google callback failed: %s", exc.message)
        return _settings_redirect(error=exc.message)
    except Exception as exc:
        logger.exception("Google callback error")
        return _settings_redirect(error=str(exc) or "Failed to connect Gmail")

    return _settings_redirect(success="Gmail connected successfully")
