from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """An auth failure on its way to the HTTP envelope.

    Raised by ``Failure.unwrap()`` and by the route layer. ``status_code`` and
    ``error_code`` pick the envelope; ``headers`` are added to the response.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Missing, invalid or rejected credentials (401)."""

    status_code = 401
    error_code = "unauthorized"

    @property
    def headers(self) -> Dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class NotFoundError(ServiceError):
    """A verified token names an account that no longer exists (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many credential attempts for one email and client (429)."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, detail: Optional[dict] = None):
        super().__init__(message, detail={**(detail or {}), "retry_after": retry_after})
        self.retry_after = retry_after

    @property
    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(max(1, self.retry_after))}


class ServiceUnavailableError(ServiceError):
    """A backing store or the hash pool could not answer in time (503)."""

    status_code = 503
    error_code = "unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServiceUnavailableError",
]
