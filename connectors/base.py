"""
BaseConnector — abstract interface for mailbox OAuth2 connectors.

The connection manager only talks to this interface, so tests can hand
it a fake provider and a second mailbox provider can be added without
touching the pipeline.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List


class BaseConnector(ABC):
    """Abstract base for all mailbox OAuth2 connectors."""

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique slug stored in ``email_connections.provider``."""
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        """OAuth scopes required by this connector."""
        ...

    # ── OAuth flow ──────────────────────────────────────────────────────

    @abstractmethod
    def get_auth_url(self, state: str) -> str:
        """
        Build the provider's OAuth2 authorization URL.

        Parameters
        ----------
        state : str
            Signed state token carrying the user id and issue time.
        """
        ...

    @abstractmethod
    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """
        Exchange the authorization code for tokens.

        Returns
        -------
        dict with keys ``access_token``, ``refresh_token`` and
        ``expires_in`` (seconds); either token may be missing.
        """
        ...

    @abstractmethod
    async def get_account_email(self, access_token: str) -> str:
        """Return the mailbox address for the token, or ``""`` if unknown."""
        ...

    @abstractmethod
    async def refresh_access_token(self, refresh_token: str) -> Dict[str, Any]:
        """
        Refresh an expired access token.

        Returns
        -------
        dict with keys: access_token, expires_in, (optional) refresh_token
        """
        ...

    async def revoke_token(self, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    def is_configured(self) -> bool:
        return True
