"""Unit tests for the token codec and secret manager."""

import base64
import json
from datetime import timedelta

import pytest

from tokenward.service.secrets import SecretManager
from tokenward.service.tokens import (
    TokenCodec,
    TokenError,
    TokenExpiredError,
    TokenKind,
    TokenKindError,
    TokenSignatureError,
)

from conftest import ACCESS_SECRET, REFRESH_SECRET


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def secrets():
    return SecretManager(ACCESS_SECRET, REFRESH_SECRET)


@pytest.fixture
def codec(secrets, clock):
    return TokenCodec(secrets, issuer="tokenward", clock=clock)


def _segments(token: str):
    header, payload, sig = token.split(".")
    pad = lambda s: s + "=" * ((4 - len(s) % 4) % 4)  # noqa: E731
    return (
        json.loads(base64.urlsafe_b64decode(pad(header))),
        json.loads(base64.urlsafe_b64decode(pad(payload))),
        sig,
    )


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestSecretManager:
    def test_keys_are_distinct_per_kind(self, secrets):
        assert secrets.key_for(TokenKind.ACCESS) != secrets.key_for(TokenKind.REFRESH)
        assert secrets.key_for("access") == ACCESS_SECRET.encode()

    def test_rejects_identical_secrets(self):
        with pytest.raises(ValueError):
            SecretManager(ACCESS_SECRET, ACCESS_SECRET)

    def test_repr_hides_material(self, secrets):
        assert ACCESS_SECRET not in repr(secrets)


class TestRoundTrip:
    @pytest.mark.parametrize("kind", [TokenKind.ACCESS, TokenKind.REFRESH])
    def test_verify_returns_signed_claims(self, codec, clock, kind):
        token = codec.sign("user-1", "alice@example.com", kind)

        claims = codec.verify(token, kind)

        assert claims.subject == "user-1"
        assert claims.email == "alice@example.com"
        assert claims.kind == kind
        assert claims.issuer == "tokenward"
        assert claims.expires_at == int(clock.now) + int(codec.ttl_for(kind).total_seconds())

    def test_default_lifetimes(self, codec):
        assert codec.ttl_for(TokenKind.ACCESS) == timedelta(minutes=15)
        assert codec.ttl_for(TokenKind.REFRESH) == timedelta(days=7)

    def test_header_and_payload_shape(self, codec):
        header, payload, _ = _segments(codec.sign("user-1", "a@example.com", TokenKind.ACCESS))

        assert header == {"alg": "HS256", "typ": "JWT"}
        assert set(payload) == {"iss", "sub", "email", "kind", "iat", "exp", "jti"}

    def test_tokens_minted_in_same_second_differ(self, codec):
        first = codec.sign("user-1", "a@example.com", TokenKind.REFRESH)
        second = codec.sign("user-1", "a@example.com", TokenKind.REFRESH)
        assert first != second


class TestVerifyFailures:
    def test_access_token_is_not_a_refresh_token(self, codec):
        token = codec.sign("user-1", "a@example.com", TokenKind.ACCESS)
        # different key per kind: fails at the signature, before the kind check
        with pytest.raises(TokenSignatureError):
            codec.verify(token, TokenKind.REFRESH)

    def test_kind_claim_checked_after_signature(self, codec, secrets):
        # a token signed with the refresh key that claims to be an access token
        header, payload, _ = _segments(codec.sign("user-1", "a@example.com", TokenKind.REFRESH))
        payload["kind"] = "access"
        forged = TokenCodec(secrets, issuer="tokenward", clock=codec._clock)
        signing_input = f"{_b64(header)}.{_b64(payload)}"
        token = f"{signing_input}.{forged._signature(signing_input, TokenKind.REFRESH)}"

        with pytest.raises(TokenKindError):
            codec.verify(token, TokenKind.REFRESH)

    def test_expired_token(self, codec, clock):
        token = codec.sign("user-1", "a@example.com", TokenKind.ACCESS)
        clock.now += timedelta(minutes=15).total_seconds() + 121

        with pytest.raises(TokenExpiredError):
            codec.verify(token, TokenKind.ACCESS)

    def test_expiry_within_leeway_is_accepted(self, codec, clock):
        token = codec.sign("user-1", "a@example.com", TokenKind.ACCESS)
        clock.now += timedelta(minutes=15).total_seconds() + 60

        assert codec.verify(token, TokenKind.ACCESS).subject == "user-1"

    def test_expired_and_tampered_reports_signature(self, codec, clock):
        token = codec.sign("user-1", "a@example.com", TokenKind.ACCESS)
        clock.now += timedelta(days=1).total_seconds()
        tampered = token[:-2] + ("AA" if not token.endswith("AA") else "BB")

        with pytest.raises(TokenSignatureError):
            codec.verify(tampered, TokenKind.ACCESS)

    def test_payload_tampering_breaks_signature(self, codec):
        header, payload, sig = _segments(codec.sign("user-1", "a@example.com", TokenKind.ACCESS))
        payload["sub"] = "user-2"
        token = f"{_b64(header)}.{_b64(payload)}.{sig}"

        with pytest.raises(TokenSignatureError):
            codec.verify(token, TokenKind.ACCESS)

    def test_rejects_none_algorithm(self, codec):
        _, payload, _ = _segments(codec.sign("user-1", "a@example.com", TokenKind.ACCESS))
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(payload)}."

        with pytest.raises(TokenSignatureError):
            codec.verify(token, TokenKind.ACCESS)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.**"])
    def test_malformed_tokens(self, codec, token):
        with pytest.raises(TokenSignatureError):
            codec.verify(token, TokenKind.ACCESS)

    @pytest.mark.parametrize("position", [0, 1, 2])
    def test_non_ascii_segment_is_malformed(self, codec, position):
        segments = codec.sign("user-1", "a@example.com", TokenKind.REFRESH).split(".")
        segments[position] = "éé"

        with pytest.raises(TokenSignatureError):
            codec.verify(".".join(segments), TokenKind.REFRESH)

    def test_wrong_issuer(self, secrets, clock):
        other = TokenCodec(secrets, issuer="someone-else", clock=clock)
        token = other.sign("user-1", "a@example.com", TokenKind.ACCESS)
        codec = TokenCodec(secrets, issuer="tokenward", clock=clock)

        with pytest.raises(TokenError):
            codec.verify(token, TokenKind.ACCESS)

    def test_foreign_secret(self, codec, clock):
        other = TokenCodec(
            SecretManager("x" * 40, "y" * 40), issuer="tokenward", clock=clock
        )
        token = other.sign("user-1", "a@example.com", TokenKind.ACCESS)

        with pytest.raises(TokenSignatureError):
            codec.verify(token, TokenKind.ACCESS)


def test_codec_from_settings(settings):
    codec = TokenCodec.from_settings(settings)
    token = codec.sign("user-9", "z@example.com", TokenKind.REFRESH)
    assert codec.verify(token, TokenKind.REFRESH).subject == "user-9"
