from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from tokenward.logging import get_logger
from tokenward.service.tokens import TokenCodec, TokenError, TokenKind
from tokenward.storage.bounded import bounded_call
from tokenward.storage.token_store import TokenStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    subject: str = ""
    token_type: str = "bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_at": self.access_expires_at.isoformat(),
            "refresh_expires_at": self.refresh_expires_at.isoformat(),
        }


class RefreshRejected(Exception):
    """The presented refresh token is not the subject's live token."""


class TokenIssuer:
    """Mints token pairs and drives the refresh store.

    Holds no state of its own; the store is injected at construction.
    """

    def __init__(self, codec: TokenCodec, store: TokenStore, *, timeout: float = 5.0):
        self.codec = codec
        self.store = store
        self.timeout = timeout

    def _mint(self, subject: str, email: str) -> TokenPair:
        access = self.codec.sign(subject, email, TokenKind.ACCESS)
        refresh = self.codec.sign(subject, email, TokenKind.REFRESH)
        now = datetime.now(timezone.utc)
        return TokenPair(
            access_token=access,
            refresh_token=refresh,
            access_expires_at=now + self.codec.ttl_for(TokenKind.ACCESS),
            refresh_expires_at=now + self.codec.ttl_for(TokenKind.REFRESH),
            subject=subject,
        )

    async def _store_call(self, operation: str, awaitable):
        return await bounded_call(
            awaitable,
            timeout=self.timeout,
            backend=self.store.backend,
            operation=operation,
        )

    async def issue(self, subject: str, email: str) -> TokenPair:
        pair = self._mint(subject, email)
        await self._store_call(
            "put",
            self.store.put(
                subject, pair.refresh_token, self.codec.ttl_for(TokenKind.REFRESH)
            ),
        )
        logger.info("tokens_issued", user_id=subject, backend=self.store.backend)
        return pair

    async def rotate(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.codec.verify(refresh_token, TokenKind.REFRESH)
        except TokenError as exc:
            logger.info("refresh_rejected", reason=type(exc).__name__)
            raise RefreshRejected("refresh token rejected") from exc

        pair = self._mint(claims.subject, claims.email)
        swapped = await self._store_call(
            "rotate",
            self.store.rotate(
                claims.subject,
                refresh_token,
                pair.refresh_token,
                self.codec.ttl_for(TokenKind.REFRESH),
            ),
        )
        if not swapped:
            # lost a race, already rotated, or revoked
            logger.warning(
                "refresh_rejected", reason="not_live", user_id=claims.subject
            )
            raise RefreshRejected("refresh token is not the live token")
        logger.info("refresh_rotated", user_id=claims.subject)
        return pair

    async def is_live(self, subject: str, refresh_token: str) -> bool:
        """Read-only check that ``refresh_token`` is the subject's current token."""
        return await self._store_call(
            "validate", self.store.validate(subject, refresh_token)
        )

    async def revoke(self, subject: str) -> None:
        await self._store_call("revoke", self.store.revoke(subject))
        logger.info(
            "refresh_revoked",
            user_id=subject,
            advisory=not self.store.supports_revocation,
        )


__all__ = ["TokenPair", "TokenIssuer", "RefreshRejected"]
