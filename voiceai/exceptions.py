"""
Exception hierarchy for the dashboard service.

Each class carries the HTTP status the API layer answers with, so route
handlers can simply raise and let the registered handler translate.
"""

from __future__ import annotations

from typing import Optional


class DashboardError(Exception):
    """Base exception for all dashboard errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""


class ConfigurationError(DashboardError):
    """A required setting (credentials, base URL) is missing."""

    status_code = 503


class StoreUnavailableError(DashboardError):
    """The document store is not connected or cannot be reached."""

    status_code = 503


class AuthError(DashboardError):
    """Missing, expired or invalid bearer token."""

    status_code = 401


class ForbiddenError(DashboardError):
    """Authenticated, but not allowed to touch another tenant's data."""

    status_code = 403


class NotFoundError(DashboardError):
    """Requested document does not exist."""

    status_code = 404


class ValidationError(DashboardError):
    """Request data failed validation."""

    status_code = 400


class FetchError(DashboardError):
    """A store query failed; the caller decides whether to retry."""

    status_code = 502


class KeyEncryptionError(DashboardError):
    """API key could not be encrypted or decrypted."""

    status_code = 500


class InvalidFeedOperation(DashboardError):
    """Operation not allowed in the feed's mode."""

    status_code = 409


class BackendError(DashboardError):
    """Non-2xx response from a backend function."""

    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body
