"""
Application error taxonomy.

Every error carries the HTTP status it maps to; ``api.middleware``
renders them as ``{"error": message}``.  OAuth state problems are the
exception: the callback route turns them into a redirect instead.
"""

from __future__ import annotations


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.message = message or self.__class__.__name__
        if status_code is not None:
            self.status_code = status_code


class Unauthorized(AppError):
    status_code = 401


class ValidationError(AppError):
    status_code = 400


class InvalidInput(ValidationError):
    pass


class NoValidFields(ValidationError):
    def __init__(self, message: str = "No valid fields to update"):
        super().__init__(message)


class NotFound(AppError):
    status_code = 404


# ── OAuth callback ─────────────────────────────────────────────────────


class OAuthCallbackError(AppError):
    status_code = 400


class ExpiredAuthorization(OAuthCallbackError):
    def __init__(self, message: str = "Authorization expired"):
        super().__init__(message)


class InvalidCallback(OAuthCallbackError):
    def __init__(self, message: str = "Invalid callback parameters"):
        super().__init__(message)


# ── Upstream (Google) ──────────────────────────────────────────────────


class UpstreamError(AppError):
    status_code = 500


class UpstreamAuthError(UpstreamError):
    pass


class UpstreamLookupError(UpstreamError):
    pass


class InternalError(AppError):
    status_code = 500
