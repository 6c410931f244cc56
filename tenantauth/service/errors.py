from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the JSON error envelope:
    - unauthorized (401)
    - not_found (404)
    - validation_error (400)
    - not_configured (400)
    - conflict (409)
    - server_error (500)
    - upstream_error (502)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource is in a conflicting state, e.g. 2FA already enabled (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EntropyError(ServerError):
    """The random source could not produce bytes; the request must abort."""
    pass


class UpstreamError(ServiceError):
    """An external identity provider failed, timed out or returned garbage (502)."""
    status_code = 502
    error_code = "upstream_error"


class ProviderNotConfiguredError(ServiceError):
    """Identity provider is unknown, disabled or lacks credentials (400)."""
    status_code = 400
    error_code = "not_configured"


class OAuthError(Exception):
    """Protocol error rendered as an RFC 6749 error body.

    ``oauth_error`` is one of invalid_request, invalid_client, invalid_grant,
    unauthorized_client, unsupported_grant_type, unsupported_response_type,
    invalid_scope or access_denied.
    """

    def __init__(
        self,
        oauth_error: str,
        description: str,
        *,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(description)
        self.oauth_error = oauth_error
        self.description = description
        if status_code is None:
            status_code = 401 if oauth_error == "invalid_client" else 400
        self.status_code = status_code


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "EntropyError",
    "UpstreamError",
    "ProviderNotConfiguredError",
    "OAuthError",
]
