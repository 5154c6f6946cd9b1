from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokenward.config import RefreshStoreMode, Settings, get_settings, reset_settings_cache
from tokenward.logging import get_logger
from tokenward.service.auth import AuthService
from tokenward.service.gate import AuthenticationGate
from tokenward.service.issuer import TokenIssuer
from tokenward.service.linker import ExternalIdentityLinker
from tokenward.service.passwords import CredentialVerifier
from tokenward.service.secrets import SecretManager
from tokenward.service.tokens import TokenCodec
from tokenward.storage.bounded import bounded_call, bounded_thread
from tokenward.storage.errors import StoreUnavailable
from tokenward.storage.identity import IdentityStore
from tokenward.storage.memory import MemoryStore
from tokenward.storage.rate_limit import RateLimiter, build_rate_limiter
from tokenward.storage.token_store import TokenStore, build_token_store

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds and owns every auth component for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            refresh_store=self.settings.refresh_store.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store: IdentityStore = MemoryStore()
                pool = None
            else:
                from tokenward.storage.postgres import PostgresStore

                postgres = PostgresStore(self.settings.database_url)
                self.store = postgres
                pool = postgres.pool
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.token_store: TokenStore = build_token_store(self.settings, pool=pool)
        self.rate_limiter: RateLimiter = build_rate_limiter(self.token_store)
        if self.settings.refresh_store == RefreshStoreMode.CACHE:
            logger.info(
                "runtime_token_cache_configured",
                redis_url=_mask_url_password(self.settings.redis_url),
            )

        timeout = self.settings.store_timeout_seconds
        self.secrets = SecretManager.from_settings(self.settings)
        self.codec = TokenCodec.from_settings(self.settings, self.secrets)
        self.passwords = CredentialVerifier.from_settings(self.settings)
        self.issuer = TokenIssuer(self.codec, self.token_store, timeout=timeout)
        self.gate = AuthenticationGate(self.codec, self.store, timeout=timeout)
        self.linker = ExternalIdentityLinker(self.store, timeout=timeout)
        self.auth = AuthService(
            self.store, self.issuer, self.passwords, self.settings, linker=self.linker
        )
        logger.info(
            "runtime_initialized",
            refresh_backend=self.token_store.backend,
            supports_revocation=self.token_store.supports_revocation,
        )

    async def health(self) -> dict:
        timeout = self.settings.store_timeout_seconds
        checks = {}
        try:
            await bounded_thread(
                self.store.verify_connection,
                timeout=timeout,
                backend=self.store.backend,
                operation="verify_connection",
            )
            checks["identity_store"] = "ok"
        except StoreUnavailable:
            checks["identity_store"] = "unavailable"
        try:
            await bounded_call(
                self.token_store.verify_connection(),
                timeout=timeout,
                backend=self.token_store.backend,
                operation="verify_connection",
            )
            checks["token_store"] = "ok"
        except StoreUnavailable:
            checks["token_store"] = "unavailable"
        return checks

    async def close(self) -> None:
        # token store first; the durable strategy may share the identity pool
        try:
            await self.token_store.close()
        except Exception as exc:
            logger.warning("runtime_token_store_close_failed", error=str(exc))
        try:
            await asyncio.to_thread(self.store.close)
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))
        self.passwords.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.passwords.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


async def close_runtime() -> None:
    global runtime
    with _runtime_lock:
        current, runtime = runtime, None
    if current is not None:
        await current.close()


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "close_runtime"]
