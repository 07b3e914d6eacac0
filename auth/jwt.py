"""
Session token creation and verification.

Tokens are base64-encoded JSON payloads signed with HMAC-SHA256 and carry
the authenticated ``user_id``.  The secret is ``config.jwt_secret``
(env var: ``JWT_SECRET``).
"""

from __future__ import annotations

import binascii
import hashlib
import hmac
import json
import time
from base64 import urlsafe_b64decode, urlsafe_b64encode
from typing import Optional

from config.settings import config
from core.errors import Unauthorized


def _sign(raw: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw, hashlib.sha256).hexdigest()


def create_token(
    user_id: str,
    *,
    secret: Optional[str] = None,
    expires_in: Optional[int] = None,
    now: Optional[float] = None,
) -> str:
    """Create a signed token containing ``user_id`` and expiry."""
    secret = secret or config.jwt_secret
    issued = time.time() if now is None else now
    payload = {
        "user_id": str(user_id),
        "exp": int(issued) + (expires_in if expires_in is not None else config.jwt_expiry_seconds),
    }
    raw = json.dumps(payload).encode()
    return urlsafe_b64encode(raw).decode() + "." + _sign(raw, secret)


def verify_token(token: str, *, secret: Optional[str] = None, now: Optional[float] = None) -> str:
    """
    Verify *token* and return its ``user_id``.

    Raises ``Unauthorized`` on malformed, forged or expired tokens.
    """
    secret = secret or config.jwt_secret
    try:
        encoded, signature = token.split(".", 1)
        raw = urlsafe_b64decode(encoded.encode())
        payload = json.loads(raw)
    except (ValueError, binascii.Error) as exc:
        raise Unauthorized("Invalid token") from exc

    if not hmac.compare_digest(signature.encode(), _sign(raw, secret).encode()):
        raise Unauthorized("Invalid token")
    current = time.time() if now is None else now
    exp = payload.get("exp") if isinstance(payload, dict) else None
    if not isinstance(exp, (int, float)) or exp < current:
        raise Unauthorized("Token expired")
    user_id = payload.get("user_id")
    if not user_id:
        raise Unauthorized("Invalid token")
    return str(user_id)
