from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tokenward.logging import get_logger
from tokenward.storage.bounded import bounded_thread
from tokenward.storage.errors import ConstraintViolation
from tokenward.storage.identity import IdentityStore
from tokenward.storage.models import Identity, normalize_email

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalAssertion:
    """What an identity provider vouches for after a successful sign-in."""

    provider: str
    provider_id: str
    verified_email: Optional[str]
    display_name: Optional[str] = None


class NoVerifiedEmail(Exception):
    pass


class ExternalIdentityLinker:
    """Find-or-link-or-create for provider assertions.

    The provider id is authoritative: once a link exists, later assertions
    resolve through it even if the provider reports a different email.
    """

    def __init__(self, identities: IdentityStore, *, timeout: float = 5.0) -> None:
        self.identities = identities
        self.timeout = timeout

    async def _call(self, operation: str, *args, **kwargs):
        return await bounded_thread(
            getattr(self.identities, operation),
            *args,
            timeout=self.timeout,
            backend=self.identities.backend,
            operation=operation,
            **kwargs,
        )

    async def _resolve_existing(
        self, assertion: ExternalAssertion, email: str
    ) -> Optional[Identity]:
        linked = await self._call(
            "find_by_link", assertion.provider, assertion.provider_id
        )
        if linked:
            return linked
        existing = await self._call("find_by_email", email)
        if existing:
            merged = await self._call(
                "add_link", existing.id, assertion.provider, assertion.provider_id
            )
            logger.info(
                "external_identity_merged",
                provider=assertion.provider,
                user_id=existing.id,
            )
            return merged
        return None

    async def link(self, assertion: ExternalAssertion) -> Identity:
        if not assertion.provider or not assertion.provider_id:
            raise ValueError("assertion requires provider and provider_id")
        email = normalize_email(assertion.verified_email or "")
        if not email:
            raise NoVerifiedEmail(assertion.provider)

        identity = await self._resolve_existing(assertion, email)
        if identity:
            return identity
        try:
            created = await self._call(
                "create",
                email,
                assertion.display_name,
                link=(assertion.provider, assertion.provider_id),
            )
        except ConstraintViolation:
            # a concurrent sign-in created the account or link first
            identity = await self._resolve_existing(assertion, email)
            if identity is None:
                raise
            return identity
        logger.info(
            "external_identity_created", provider=assertion.provider, user_id=created.id
        )
        return created


__all__ = ["ExternalAssertion", "ExternalIdentityLinker", "NoVerifiedEmail"]
