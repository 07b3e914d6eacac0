"""
Token encryption for OAuth tokens stored in ``email_connections``.

Fernet (AES-128-CBC + HMAC-SHA256) from ``cryptography``.  The key comes
from ``TOKEN_ENCRYPTION_KEY``; without one, tokens are stored as
plaintext and a warning is logged once.  Generate a key with::

    python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from config.settings import config

logger = logging.getLogger(__name__)


class TokenCipher:
    """Encrypts tokens when a key is configured, passes them through otherwise."""

    def __init__(self, key: str = ""):
        self._fernet: Optional[Fernet] = None
        if not key:
            logger.warning(
                "TOKEN_ENCRYPTION_KEY not set — Gmail tokens will be stored as plaintext."
            )
            return
        try:
            self._fernet = Fernet(key.encode())
            logger.info("Token encryption enabled (Fernet)")
        except (ValueError, TypeError) as exc:
            logger.error("Invalid TOKEN_ENCRYPTION_KEY, storing tokens as plaintext: %s", exc)

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None or not plaintext:
            return plaintext
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a stored token.

        Tokens written before encryption was enabled are not valid Fernet
        tokens and are returned unchanged.
        """
        if self._fernet is None or not ciphertext:
            return ciphertext
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken:
            return ciphertext


@lru_cache(maxsize=1)
def default_cipher() -> TokenCipher:
    return TokenCipher(config.token_encryption_key)


def encrypt_token(plaintext: str) -> str:
    return default_cipher().encrypt(plaintext)


def decrypt_token(ciphertext: str) -> str:
    return default_cipher().decrypt(ciphertext)
