from __future__ import annotations

from typing import Any, Dict, Optional


class LeadImportError(Exception):
    """Base exception for all lead-import API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)


class NotConnectedError(LeadImportError):
    """No usable Google account connection for the caller."""
    def __init__(
        self,
        message: str = "No Google connection. Please connect your Google account first.",
        **kwargs,
    ):
        super().__init__(message, status_code=400, code="not_connected", **kwargs)


class InvalidStateError(LeadImportError):
    """OAuth state token is unknown, expired, or already used."""
    def __init__(self, message: str = "OAuth state is invalid or expired", **kwargs):
        super().__init__(message, status_code=400, code="invalid_state", **kwargs)


class ExchangeFailedError(LeadImportError):
    """The provider rejected the authorization code."""
    def __init__(self, message: str = "Failed to exchange authorization code", **kwargs):
        super().__init__(message, status_code=400, code="token_exchange_failed", **kwargs)


class ValidationError(LeadImportError):
    def __init__(self, message: str = "Validation error", **kwargs):
        super().__init__(message, status_code=422, code="validation_error", **kwargs)


class ExternalServiceError(LeadImportError):
    """Spreadsheet read, list, or refresh failure."""
    def __init__(self, message: str = "External service error", **kwargs):
        kwargs.setdefault("code", "external_service_error")
        super().__init__(message, status_code=502, **kwargs)


class NotFoundError(LeadImportError):
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, code="not_found", **kwargs)


class AuthenticationError(LeadImportError):
    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, status_code=401, code="unauthenticated", **kwargs)


class AuthorizationError(LeadImportError):
    def __init__(self, message: str = "Owner or Admin role required", **kwargs):
        super().__init__(message, status_code=403, code="forbidden", **kwargs)


class ConfigurationError(LeadImportError):
    def __init__(self, message: str = "Google OAuth credentials not configured", **kwargs):
        super().__init__(message, status_code=503, code="not_configured", **kwargs)
