from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from tokenward.config import Settings
from tokenward.logging import get_logger
from tokenward.service.secrets import SecretManager

logger = get_logger(__name__)

_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """A token could not be accepted."""


class TokenSignatureError(TokenError):
    """Malformed token, unexpected algorithm, or signature mismatch."""


class TokenExpiredError(TokenError):
    pass


class TokenKindError(TokenError):
    pass


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    email: str
    kind: TokenKind
    issued_at: int
    expires_at: int
    jti: str
    issuer: str

    @property
    def expires(self) -> datetime:
        return datetime.fromtimestamp(self.expires_at, tz=timezone.utc)

    def to_payload(self) -> dict[str, Any]:
        return {
            "iss": self.issuer,
            "sub": self.subject,
            "email": self.email,
            "kind": self.kind.value,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "jti": self.jti,
        }


class TokenCodec:
    """HS256 JWT signing and verification.

    Each kind is signed with its own key from the ``SecretManager``, so an
    access token never verifies as a refresh token. ``verify`` runs its checks
    in a fixed order: structure and header, signature, issuer and expiry, kind.
    """

    def __init__(
        self,
        secrets: SecretManager,
        *,
        issuer: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        leeway: timedelta = timedelta(seconds=120),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.secrets = secrets
        self.issuer = issuer
        self._ttls = {TokenKind.ACCESS: access_ttl, TokenKind.REFRESH: refresh_ttl}
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = leeway
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, secrets: Optional[SecretManager] = None
    ) -> "TokenCodec":
        return cls(
            secrets or SecretManager.from_settings(settings),
            issuer=settings.jwt_issuer,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(days=settings.refresh_token_ttl_days),
            leeway=timedelta(seconds=settings.clock_skew_leeway_seconds),
        )

    def ttl_for(self, kind: TokenKind) -> timedelta:
        return self._ttls[TokenKind(kind)]

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str, kind: TokenKind) -> str:
        digest = hmac.new(
            self.secrets.key_for(kind), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def sign(
        self,
        subject: str,
        email: str,
        kind: TokenKind,
        *,
        ttl: Optional[timedelta] = None,
    ) -> str:
        kind = TokenKind(kind)
        now = int(self._clock())
        lifetime = ttl if ttl is not None else self.ttl_for(kind)
        claims = TokenClaims(
            subject=subject,
            email=email,
            kind=kind,
            issued_at=now,
            expires_at=now + int(lifetime.total_seconds()),
            jti=str(uuid.uuid4()),
            issuer=self.issuer,
        )
        header_enc = self._encode_segment(
            json.dumps({"alg": _ALGORITHM, "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input, kind)}"

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        expected_kind = TokenKind(expected_kind)
        # header values arrive latin-1 decoded; a JWT is ASCII by construction
        if not isinstance(token, str) or not token.isascii():
            raise TokenSignatureError("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenSignatureError("malformed token") from exc

        # reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenSignatureError("malformed token header") from exc
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm", alg=alg)
            raise TokenSignatureError("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._signature(signing_input, expected_kind)
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            raise TokenSignatureError("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenSignatureError("malformed token payload") from exc
        if not isinstance(payload, dict):
            raise TokenSignatureError("malformed token payload")

        if payload.get("iss") != self.issuer:
            raise TokenError("issuer mismatch")
        try:
            exp_ts = int(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenError("missing expiry") from exc
        if exp_ts <= self._clock() - self._clock_skew_leeway.total_seconds():
            raise TokenExpiredError("token expired")

        if payload.get("kind") != expected_kind.value:
            raise TokenKindError("unexpected token kind")

        subject = payload.get("sub")
        if not subject:
            raise TokenError("missing subject")
        return TokenClaims(
            subject=str(subject),
            email=str(payload.get("email") or ""),
            kind=expected_kind,
            issued_at=int(payload.get("iat") or 0),
            expires_at=exp_ts,
            jti=str(payload.get("jti") or ""),
            issuer=str(payload["iss"]),
        )


__all__ = [
    "TokenKind",
    "TokenClaims",
    "TokenCodec",
    "TokenError",
    "TokenSignatureError",
    "TokenExpiredError",
    "TokenKindError",
]
