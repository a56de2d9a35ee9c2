from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - token_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - service_unavailable (503)
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


class InvalidTokenError(AuthenticationError):
    """Token is malformed, mis-signed, or carries the wrong claims (401)."""
    pass


class TokenExpiredError(AuthenticationError):
    """Token signature is valid but it has expired (401).

    Clients react to this code by refreshing instead of forcing a re-login.
    """
    error_code = "token_expired"


class AuthorizationError(ServiceError):
    """Access denied - insufficient role (403)."""
    status_code = 403
    error_code = "forbidden"


ForbiddenError = AuthorizationError


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate email or phone (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("retry_after", retry_after)
        super().__init__(message, detail=detail, **kwargs)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CacheUnavailableError(ServiceError):
    """Session cache could not be reached after retries (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "Session store temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "AuthorizationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "CacheUnavailableError",
]
