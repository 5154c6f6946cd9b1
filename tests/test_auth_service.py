"""Scenario tests for the route-facing auth operations."""

import asyncio
from datetime import datetime, timezone

import pytest

from tokenward.config import Settings
from tokenward.service.auth import AuthService
from tokenward.service.errors import AuthenticationError, ConflictError
from tokenward.service.issuer import TokenIssuer
from tokenward.service.linker import ExternalAssertion
from tokenward.service.passwords import CredentialVerifier
from tokenward.service.results import FailureReason
from tokenward.service.runtime import get_runtime
from tokenward.service.tokens import TokenCodec, TokenKind
from tokenward.storage.memory import MemoryStore, MemoryTokenStore

from conftest import ACCESS_SECRET, REFRESH_SECRET


class CountingTokenStore(MemoryTokenStore):
    def __init__(self):
        super().__init__()
        self.writes = 0

    async def put(self, subject, token, ttl):
        self.writes += 1
        await super().put(subject, token, ttl)


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def auth(runtime):
    return runtime.auth


async def _register_alice(auth):
    return (await auth.register("alice@example.com", "pw12345678", "Alice")).unwrap()


class TestRegister:
    async def test_register_returns_identity_and_decodable_tokens(self, auth, runtime):
        result = await _register_alice(auth)

        assert result.identity.email == "alice@example.com"
        assert result.identity.name == "Alice"
        access = runtime.codec.verify(result.tokens.access_token, TokenKind.ACCESS)
        refresh = runtime.codec.verify(result.tokens.refresh_token, TokenKind.REFRESH)
        assert access.kind == TokenKind.ACCESS
        assert refresh.kind == TokenKind.REFRESH
        assert access.subject == refresh.subject == result.identity.id
        assert access.expires > datetime.now(timezone.utc)
        assert refresh.expires > access.expires

    async def test_password_is_stored_hashed(self, auth, runtime):
        result = await _register_alice(auth)

        stored = runtime.store.find_by_id(result.identity.id)
        assert stored.password_hash.startswith("$argon2id$")

    async def test_duplicate_email_is_taken_case_insensitively(self, auth):
        await _register_alice(auth)

        outcome = await auth.register("ALICE@example.com", "another-pw-1", "Alice 2")

        assert outcome.reason == FailureReason.EMAIL_TAKEN
        with pytest.raises(ConflictError):
            outcome.unwrap()

    @pytest.mark.parametrize(
        "email,password,name,field",
        [
            ("not-an-email", "pw12345678", "Alice", "email"),
            ("alice@example.com", "short", "Alice", "password"),
            ("alice@example.com", "pw12345678", "  ", "name"),
        ],
    )
    async def test_validation_failures(self, auth, email, password, name, field):
        outcome = await auth.register(email, password, name)

        assert outcome.reason == FailureReason.VALIDATION_FAILURE
        assert outcome.detail["field"] == field

    async def test_signup_can_be_disabled(self, settings):
        settings.allow_signup = False
        service = AuthService(
            MemoryStore(),
            TokenIssuer(TokenCodec.from_settings(settings), MemoryTokenStore()),
            CredentialVerifier.from_settings(settings),
            settings,
        )

        outcome = await service.register("alice@example.com", "pw12345678", "Alice")

        assert outcome.reason == FailureReason.VALIDATION_FAILURE


class TestLogin:
    async def test_register_then_login(self, auth):
        registered = await _register_alice(auth)

        result = (await auth.login("alice@example.com", "pw12345678")).unwrap()

        assert result.identity.id == registered.identity.id

    async def test_login_email_is_case_insensitive(self, auth):
        await _register_alice(auth)

        outcome = await auth.login("  Alice@Example.COM ", "pw12345678")

        assert outcome.ok

    async def test_wrong_password_and_unknown_email_look_the_same(self, auth):
        await _register_alice(auth)

        wrong = await auth.login("alice@example.com", "wrong-password")
        unknown = await auth.login("nobody@example.com", "pw12345678")

        assert wrong.reason == unknown.reason == FailureReason.INVALID_CREDENTIALS
        assert wrong.to_error().message == unknown.to_error().message
        with pytest.raises(AuthenticationError):
            wrong.unwrap()

    async def test_wrong_password_issues_nothing(self, settings):
        tokens = CountingTokenStore()
        identities = MemoryStore()
        service = AuthService(
            identities,
            TokenIssuer(TokenCodec.from_settings(settings), tokens),
            CredentialVerifier.from_settings(settings),
            settings,
        )
        await service.register("alice@example.com", "pw12345678", "Alice")
        writes_before = tokens.writes
        snapshot = dict(tokens.records)

        outcome = await service.login("alice@example.com", "wrong-password")

        assert outcome.reason == FailureReason.INVALID_CREDENTIALS
        assert tokens.writes == writes_before
        assert tokens.records == snapshot

    async def test_external_only_account_cannot_password_login(self, auth):
        await auth.sign_in_external(ExternalAssertion("google", "g-1", "ext@example.com"))

        outcome = await auth.login("ext@example.com", "pw12345678")

        assert outcome.reason == FailureReason.INVALID_CREDENTIALS

    async def test_login_upgrades_outdated_hash(self):
        weak = Settings(
            jwt_secret=ACCESS_SECRET,
            jwt_refresh_secret=REFRESH_SECRET,
            password_time_cost=1,
            password_memory_cost=8,
            password_parallelism=1,
        )
        strong = weak.model_copy(update={"password_time_cost": 2})
        identities = MemoryStore()
        issuer = TokenIssuer(TokenCodec.from_settings(weak), MemoryTokenStore())
        old_hash = CredentialVerifier.from_settings(weak).hash("pw12345678")
        user = identities.create("alice@example.com", "Alice", password_hash=old_hash)
        service = AuthService(
            identities, issuer, CredentialVerifier.from_settings(strong), strong
        )

        assert (await service.login("alice@example.com", "pw12345678")).ok

        upgraded = identities.find_by_id(user.id).password_hash
        assert upgraded != old_hash
        assert "t=2" in upgraded


class TestRefresh:
    async def test_refresh_rotates(self, auth):
        first = (await _register_alice(auth)).tokens

        second = (await auth.refresh(first.refresh_token)).unwrap()

        assert second.refresh_token != first.refresh_token

    async def test_second_use_of_old_refresh_fails(self, auth):
        first = (await _register_alice(auth)).tokens
        await auth.refresh(first.refresh_token)

        outcome = await auth.refresh(first.refresh_token)

        assert outcome.reason == FailureReason.INVALID_REFRESH

    async def test_refresh_after_logout_fails(self, auth):
        tokens = (await _register_alice(auth)).tokens
        assert (await auth.logout(tokens.access_token)).value is True

        outcome = await auth.refresh(tokens.refresh_token)

        assert outcome.reason == FailureReason.INVALID_REFRESH

    async def test_refresh_after_relogin_invalidates_older_token(self, auth):
        old = (await _register_alice(auth)).tokens
        await auth.login("alice@example.com", "pw12345678")

        outcome = await auth.refresh(old.refresh_token)

        assert outcome.reason == FailureReason.INVALID_REFRESH

    async def test_concurrent_refresh_one_winner(self, auth):
        tokens = (await _register_alice(auth)).tokens

        outcomes = await asyncio.gather(
            auth.refresh(tokens.refresh_token), auth.refresh(tokens.refresh_token)
        )

        assert sorted(o.ok for o in outcomes) == [False, True]
        loser = [o for o in outcomes if not o.ok][0]
        assert loser.reason == FailureReason.INVALID_REFRESH

    async def test_non_ascii_signature_is_invalid_refresh(self, auth):
        tokens = (await _register_alice(auth)).tokens
        header, payload, _ = tokens.refresh_token.split(".")

        outcome = await auth.refresh(f"{header}.{payload}.éé")

        assert outcome.reason == FailureReason.INVALID_REFRESH
        assert (await auth.refresh(tokens.refresh_token)).ok

    async def test_refresh_for_deleted_account_fails(self, auth, runtime):
        result = await _register_alice(auth)
        runtime.store.delete(result.identity.id)

        outcome = await auth.refresh(result.tokens.refresh_token)

        assert outcome.reason == FailureReason.INVALID_REFRESH
        assert not await runtime.token_store.validate(result.identity.id, result.tokens.refresh_token)


class TestLogout:
    async def test_logout_with_refresh_token(self, auth):
        tokens = (await _register_alice(auth)).tokens

        assert (await auth.logout(tokens.refresh_token)).value is True
        assert (await auth.refresh(tokens.refresh_token)).reason == FailureReason.INVALID_REFRESH

    @pytest.mark.parametrize("token", [None, "", "garbage"])
    async def test_logout_never_fails(self, auth, token):
        outcome = await auth.logout(token)

        assert outcome.ok
        assert outcome.value is False

    async def test_non_ascii_token_resolves_nothing(self, auth):
        tokens = (await _register_alice(auth)).tokens
        header, payload, _ = tokens.access_token.split(".")

        outcome = await auth.logout(f"{header}.{payload}.éé")

        assert outcome.ok
        assert outcome.value is False
        assert (await auth.refresh(tokens.refresh_token)).ok

    async def test_rotated_out_refresh_token_cannot_end_new_session(self, auth, runtime):
        result = await _register_alice(auth)
        stale = result.tokens.refresh_token
        current = (await auth.refresh(stale)).unwrap()

        outcome = await auth.logout(stale)

        assert outcome.value is False
        assert await runtime.token_store.validate(result.identity.id, current.refresh_token)
        assert (await auth.refresh(current.refresh_token)).ok

    async def test_access_token_logout_still_revokes_after_rotation(self, auth, runtime):
        result = await _register_alice(auth)
        current = (await auth.refresh(result.tokens.refresh_token)).unwrap()

        assert (await auth.logout(result.tokens.access_token)).value is True
        assert not await runtime.token_store.validate(result.identity.id, current.refresh_token)

    async def test_logout_twice(self, auth):
        tokens = (await _register_alice(auth)).tokens

        assert (await auth.logout(tokens.access_token)).ok
        assert (await auth.logout(tokens.access_token)).ok


class TestExternalSignIn:
    async def test_sign_in_external_issues_tokens(self, auth, runtime):
        result = (
            await auth.sign_in_external(ExternalAssertion("providerX", "id123", "a@example.com"))
        ).unwrap()

        assert result.identity.password_hash is None
        claims = runtime.codec.verify(result.tokens.access_token, TokenKind.ACCESS)
        assert claims.subject == result.identity.id

    async def test_no_verified_email(self, auth):
        outcome = await auth.sign_in_external(ExternalAssertion("providerX", "id123", None))

        assert outcome.reason == FailureReason.NO_VERIFIED_EMAIL
        assert outcome.to_error().status_code == 400
