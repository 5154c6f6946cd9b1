"""Refresh-token persistence strategies.

Every strategy implements the same async contract so the issuer never cares
which one it holds:

- ``put(subject, token, ttl)`` stores the subject's single live token,
  replacing any previous one
- ``validate(subject, token)`` is a read-only check
- ``rotate(subject, old, new, ttl)`` atomically swaps ``old`` for ``new`` and
  returns ``False`` when ``old`` is not the live token
- ``revoke(subject)`` drops the live token; safe to repeat

The stateless strategy satisfies the signatures but not the guarantees: it
cannot revoke and cannot detect a replayed token. It is a separate
consistency class, selected only on purpose.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol

from tokenward.config import RefreshStoreMode, Settings
from tokenward.logging import get_logger

logger = get_logger(__name__)


class TokenStore(Protocol):
    backend: str
    supports_revocation: bool

    async def put(self, subject: str, token: str, ttl: timedelta) -> None: ...

    async def validate(self, subject: str, token: str) -> bool: ...

    async def rotate(
        self, subject: str, old_token: str, new_token: str, ttl: timedelta
    ) -> bool: ...

    async def revoke(self, subject: str) -> None: ...

    async def verify_connection(self) -> None: ...

    async def close(self) -> None: ...


class StatelessTokenStore:
    """No persistence; a refresh token is good until its signature expires."""

    backend = "stateless"
    supports_revocation = False

    async def put(self, subject: str, token: str, ttl: timedelta) -> None:
        return None

    async def validate(self, subject: str, token: str) -> bool:
        return True

    async def rotate(
        self, subject: str, old_token: str, new_token: str, ttl: timedelta
    ) -> bool:
        return True

    async def revoke(self, subject: str) -> None:
        logger.info("refresh_revoke_advisory", subject=subject, backend=self.backend)

    async def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        return None


def build_token_store(settings: Settings, *, pool=None) -> TokenStore:
    """Pick the refresh store once, at startup, from configuration.

    ``pool`` lets the durable strategy share the identity store's Postgres pool.
    """
    mode = settings.refresh_store
    if mode == RefreshStoreMode.STATELESS:
        store: TokenStore = StatelessTokenStore()
    elif mode == RefreshStoreMode.CACHE:
        from tokenward.storage.redis_cache import RedisTokenStore

        store = RedisTokenStore(
            settings.redis_url, socket_timeout=settings.store_timeout_seconds
        )
    elif settings.use_memory_store:
        from tokenward.storage.memory import MemoryTokenStore

        store = MemoryTokenStore()
    else:
        from tokenward.storage.postgres import PostgresTokenStore

        store = PostgresTokenStore(settings.database_url, pool=pool)
    logger.info(
        "token_store_selected",
        mode=mode.value,
        backend=store.backend,
        supports_revocation=store.supports_revocation,
    )
    return store


__all__ = ["TokenStore", "StatelessTokenStore", "build_token_store"]
