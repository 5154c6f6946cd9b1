from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tokenward.config import Settings
from tokenward.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id password hashing on a dedicated worker pool.

    The synchronous ``hash``/``verify`` calls are deliberately slow; request
    handlers use the ``*_async`` variants so one hash never stalls the loop.
    """

    def __init__(
        self,
        *,
        time_cost: Optional[int] = None,
        memory_cost: Optional[int] = None,
        parallelism: Optional[int] = None,
        workers: int = 4,
        timeout: float = 10.0,
    ) -> None:
        cost = {
            key: value
            for key, value in (
                ("time_cost", time_cost),
                ("memory_cost", memory_cost),
                ("parallelism", parallelism),
            )
            if value is not None
        }
        self._pwd_hasher = PasswordHasher(type=Type.ID, **cost)
        self.timeout = timeout
        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="password-hash"
        )
        # verified against when the email is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash("tokenward-dummy-password")

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            time_cost=settings.password_time_cost,
            memory_cost=settings.password_memory_cost,
            parallelism=settings.password_parallelism,
            workers=settings.hash_workers,
            timeout=settings.hash_timeout_seconds,
        )

    def hash(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False

    def burn(self, password: str) -> bool:
        """Spend one verification on the dummy hash; always ``False``."""
        self.verify(password, self._dummy_hash)
        return False

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await asyncio.wait_for(
            loop.run_in_executor(self._executor, func, *args), self.timeout
        )

    async def hash_async(self, password: str) -> str:
        return await self._run(self.hash, password)

    async def verify_async(self, password: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            return await self._run(self.burn, password)
        return await self._run(self.verify, password, password_hash)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = ["CredentialVerifier"]
