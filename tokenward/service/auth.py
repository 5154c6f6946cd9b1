from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.issuer import RefreshRejected, TokenIssuer, TokenPair
from tokenward.service.linker import (
    ExternalAssertion,
    ExternalIdentityLinker,
    NoVerifiedEmail,
)
from tokenward.service.passwords import CredentialVerifier
from tokenward.service.results import Failure, FailureReason, Ok, Outcome
from tokenward.service.tokens import TokenClaims, TokenError, TokenKind
from tokenward.storage.bounded import bounded_thread
from tokenward.storage.errors import ConstraintViolation, StoreUnavailable
from tokenward.storage.identity import IdentityStore
from tokenward.storage.models import Identity, normalize_email

logger = get_logger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128


@dataclass(frozen=True)
class AuthResult:
    identity: Identity
    tokens: TokenPair

    def to_dict(self) -> dict:
        return {"user": self.identity.public_view(), "tokens": self.tokens.to_dict()}


def validate_registration(email: str, password: str, name: str) -> Optional[dict]:
    """Return a field-level problem description, or ``None`` when acceptable."""
    if not email or not EMAIL_PATTERN.match(email.strip()):
        return {"field": "email", "message": "invalid email"}
    if not password or not (MIN_PASSWORD_LENGTH <= len(password) <= MAX_PASSWORD_LENGTH):
        return {
            "field": "password",
            "message": f"password must be {MIN_PASSWORD_LENGTH}-{MAX_PASSWORD_LENGTH} characters",
        }
    if not name or not name.strip():
        return {"field": "name", "message": "name is required"}
    return None


class AuthService:
    """Route-facing auth operations. Each one returns an ``Outcome``."""

    def __init__(
        self,
        identities: IdentityStore,
        issuer: TokenIssuer,
        passwords: CredentialVerifier,
        settings: Settings,
        *,
        linker: Optional[ExternalIdentityLinker] = None,
    ) -> None:
        self.identities = identities
        self.issuer = issuer
        self.passwords = passwords
        self.settings = settings
        self.timeout = settings.store_timeout_seconds
        self.linker = linker or ExternalIdentityLinker(identities, timeout=self.timeout)
        self.logger = logger

    async def _identity_call(self, operation: str, *args, **kwargs):
        return await bounded_thread(
            getattr(self.identities, operation),
            *args,
            timeout=self.timeout,
            backend=self.identities.backend,
            operation=operation,
            **kwargs,
        )

    async def register(self, email: str, password: str, name: str) -> Outcome[AuthResult]:
        if not self.settings.allow_signup:
            return Failure(FailureReason.VALIDATION_FAILURE, {"message": "signup disabled"})
        problem = validate_registration(email, password, name)
        if problem:
            return Failure(FailureReason.VALIDATION_FAILURE, problem)
        email = normalize_email(email)
        try:
            if await self._identity_call("find_by_email", email):
                return Failure(FailureReason.EMAIL_TAKEN)
            password_hash = await self.passwords.hash_async(password)
            try:
                identity = await self._identity_call(
                    "create", email, name.strip(), password_hash=password_hash
                )
            except ConstraintViolation:
                # lost a race with a concurrent registration
                return Failure(FailureReason.EMAIL_TAKEN)
            tokens = await self.issuer.issue(identity.id, identity.email)
        except (StoreUnavailable, asyncio.TimeoutError):
            return Failure(FailureReason.UNAVAILABLE)
        self.logger.info("user_registered", user_id=identity.id)
        return Ok(AuthResult(identity=identity, tokens=tokens))

    async def login(self, email: str, password: str) -> Outcome[AuthResult]:
        try:
            identity = await self._identity_call("find_by_email", email or "")
            password_hash = identity.password_hash if identity else None
            # runs a dummy verification when there is no hash
            valid = await self.passwords.verify_async(password or "", password_hash)
            if not identity or not valid:
                self.logger.info("login_failed")
                return Failure(FailureReason.INVALID_CREDENTIALS)
            await self._maybe_rehash(identity, password)
            tokens = await self.issuer.issue(identity.id, identity.email)
        except (StoreUnavailable, asyncio.TimeoutError):
            return Failure(FailureReason.UNAVAILABLE)
        self.logger.info("login_succeeded", user_id=identity.id)
        return Ok(AuthResult(identity=identity, tokens=tokens))

    async def _maybe_rehash(self, identity: Identity, password: str) -> None:
        if not identity.password_hash or not self.passwords.needs_rehash(identity.password_hash):
            return
        try:
            new_hash = await self.passwords.hash_async(password)
            await self._identity_call("update", identity.id, {"password_hash": new_hash})
        except (StoreUnavailable, asyncio.TimeoutError) as exc:
            # the old hash still verifies; try again on the next login
            self.logger.warning(
                "password_rehash_failed", user_id=identity.id, error=type(exc).__name__
            )
            return
        self.logger.info("password_rehashed", user_id=identity.id)

    async def refresh(self, refresh_token: str) -> Outcome[TokenPair]:
        try:
            pair = await self.issuer.rotate(refresh_token or "")
            if await self._identity_call("find_by_id", pair.subject) is None:
                # account deleted after the refresh token was issued
                await self.issuer.revoke(pair.subject)
                self.logger.info("refresh_rejected", reason="unknown_subject")
                return Failure(FailureReason.INVALID_REFRESH)
        except RefreshRejected:
            return Failure(FailureReason.INVALID_REFRESH)
        except StoreUnavailable:
            return Failure(FailureReason.UNAVAILABLE)
        return Ok(pair)

    def _claims_of(self, token: str) -> Optional[TokenClaims]:
        for kind in (TokenKind.ACCESS, TokenKind.REFRESH):
            try:
                return self.issuer.codec.verify(token, kind)
            except TokenError:
                continue
        return None

    async def logout(self, token: Optional[str]) -> Ok[bool]:
        """Best effort: the caller always sees success."""
        claims = self._claims_of(token) if token else None
        if claims is None:
            self.logger.info("logout_unresolved_token")
            return Ok(False)
        subject = claims.subject
        try:
            if claims.kind == TokenKind.REFRESH and not await self.issuer.is_live(
                subject, token
            ):
                # a rotated-out refresh token must not end the newer session
                self.logger.info("logout_stale_refresh", user_id=subject)
                return Ok(False)
            await self.issuer.revoke(subject)
        except StoreUnavailable:
            self.logger.warning("logout_revoke_failed", user_id=subject)
            return Ok(False)
        self.logger.info("user_logged_out", user_id=subject)
        return Ok(True)

    async def sign_in_external(self, assertion: ExternalAssertion) -> Outcome[AuthResult]:
        try:
            identity = await self.linker.link(assertion)
            tokens = await self.issuer.issue(identity.id, identity.email)
        except NoVerifiedEmail:
            self.logger.info("external_sign_in_rejected", provider=assertion.provider)
            return Failure(FailureReason.NO_VERIFIED_EMAIL)
        except (ValueError, ConstraintViolation) as exc:
            self.logger.warning(
                "external_sign_in_failed",
                provider=assertion.provider,
                error=str(exc),
            )
            return Failure(FailureReason.VALIDATION_FAILURE)
        except StoreUnavailable:
            return Failure(FailureReason.UNAVAILABLE)
        return Ok(AuthResult(identity=identity, tokens=tokens))


__all__ = ["AuthService", "AuthResult", "validate_registration"]
