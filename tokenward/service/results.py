"""Typed outcomes returned by the auth operations.

Every public operation returns ``Ok(value)`` or ``Failure(reason)`` instead of
raising, so a caller has to look at the result before it can use the value.
The route layer calls ``unwrap()``, which raises the matching ``ServiceError``
with a deliberately generic message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Generic, TypeVar, Union

from tokenward.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
)

T = TypeVar("T")


class FailureReason(str, Enum):
    VALIDATION_FAILURE = "validation_failure"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_REFRESH = "invalid_refresh"
    INVALID_TOKEN = "invalid_token"
    MISSING_TOKEN = "missing_token"
    EMAIL_TAKEN = "email_taken"
    UNKNOWN_SUBJECT = "unknown_subject"
    NO_VERIFIED_EMAIL = "no_verified_email"
    UNAVAILABLE = "unavailable"


# (exception class, caller-facing message); never more specific than this
_ERROR_MAP: dict[FailureReason, tuple[type[ServiceError], str]] = {
    FailureReason.VALIDATION_FAILURE: (ValidationError, "invalid request"),
    FailureReason.INVALID_CREDENTIALS: (AuthenticationError, "invalid credentials"),
    FailureReason.INVALID_REFRESH: (AuthenticationError, "invalid refresh token"),
    FailureReason.INVALID_TOKEN: (AuthenticationError, "invalid token"),
    FailureReason.MISSING_TOKEN: (AuthenticationError, "authentication required"),
    FailureReason.EMAIL_TAKEN: (ConflictError, "email already registered"),
    FailureReason.UNKNOWN_SUBJECT: (NotFoundError, "account not found"),
    FailureReason.NO_VERIFIED_EMAIL: (
        ValidationError,
        "identity provider did not supply a verified email",
    ),
    FailureReason.UNAVAILABLE: (
        ServiceUnavailableError,
        "service temporarily unavailable",
    ),
}


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T
    ok: bool = field(default=True, init=False)

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Failure:
    reason: FailureReason
    detail: dict = field(default_factory=dict)
    ok: bool = field(default=False, init=False)

    def to_error(self) -> ServiceError:
        error_cls, message = _ERROR_MAP[self.reason]
        return error_cls(message, detail=self.detail)

    def unwrap(self):
        raise self.to_error()


Outcome = Union[Ok[T], Failure]


__all__ = ["FailureReason", "Ok", "Failure", "Outcome"]
