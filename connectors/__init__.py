"""
connectors — mailbox OAuth integration.

Provides:
  • OAuth2 auth-URL generation and code → token exchange
  • Per-connection token refresh and storage
  • Fernet encryption of tokens at rest
  • Read-only Gmail message access for the sync job

Each provider is a subclass of BaseConnector; Gmail is the only one.
"""
