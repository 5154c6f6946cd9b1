from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from tokenward.logging import get_logger
from tokenward.service.results import Failure, FailureReason, Ok, Outcome
from tokenward.service.tokens import TokenCodec, TokenError, TokenKind
from tokenward.storage.bounded import bounded_thread
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.identity import IdentityStore
from tokenward.storage.models import Identity

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """The resolved caller. Handlers read it; nothing may change it."""

    subject_id: str
    email: str
    # record loaded during authentication
    identity: Optional[Identity] = field(default=None, compare=False, repr=False)


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.strip().partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        return None
    return token


class AuthenticationGate:
    def __init__(
        self, codec: TokenCodec, identities: IdentityStore, *, timeout: float = 5.0
    ) -> None:
        self.codec = codec
        self.identities = identities
        self.timeout = timeout

    async def authenticate(self, authorization: Optional[str]) -> Outcome[AuthContext]:
        token = extract_bearer(authorization)
        if token is None:
            return Failure(FailureReason.MISSING_TOKEN)
        try:
            claims = self.codec.verify(token, TokenKind.ACCESS)
        except TokenError as exc:
            logger.info("access_token_rejected", reason=type(exc).__name__)
            return Failure(FailureReason.INVALID_TOKEN)
        try:
            identity = await bounded_thread(
                self.identities.find_by_id,
                claims.subject,
                timeout=self.timeout,
                backend=self.identities.backend,
                operation="find_by_id",
            )
        except StoreUnavailable:
            return Failure(FailureReason.UNAVAILABLE)
        if identity is None:
            # token outlived the account it was issued to
            logger.info("access_token_unknown_subject", user_id=claims.subject)
            return Failure(FailureReason.UNKNOWN_SUBJECT)
        return Ok(
            AuthContext(subject_id=identity.id, email=identity.email, identity=identity)
        )


__all__ = ["AuthContext", "AuthenticationGate", "extract_bearer"]
