from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error / invalid_code (400)
    - provider_unavailable (503)
    - server_error (500)
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


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class InvalidExchangeCodeError(BadRequestError):
    """Exchange code is unknown, expired or already redeemed (400)."""
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid or expired code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient scope or resource ownership (403)."""
    status_code = 403
    error_code = "forbidden"


class LastIdentityError(ForbiddenError):
    """Removing the identity would leave the account without a way to sign in."""

    def __init__(
        self,
        message: str = "You must set a password before disconnecting your last OAuth identity.",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or identity linked elsewhere (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        detail = {**(kwargs.pop("detail", None) or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ProviderUnavailableError(ServiceError):
    """OAuth provider is unknown, disabled or missing credentials (503)."""
    status_code = 503
    error_code = "provider_unavailable"

    def __init__(self, message: str = "Provider unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "InvalidExchangeCodeError",
    "AuthenticationError",
    "ForbiddenError",
    "LastIdentityError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ProviderUnavailableError",
    "ServerError",
]
