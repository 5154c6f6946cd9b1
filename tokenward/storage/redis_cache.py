from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import redis.asyncio as aioredis


class RedisTokenStore:
    """Cache-strategy refresh store: one Redis key per subject with native TTL."""

    backend = "redis"
    supports_revocation = True

    # Atomic compare-and-set: replace the live token only if it is still ``old``
    _ROTATE_SCRIPT = """
local current = redis.call('GET', KEYS[1])
if current and current == ARGV[1] then
  redis.call('SET', KEYS[1], ARGV[2], 'EX', tonumber(ARGV[3]))
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)

    @staticmethod
    def _key(subject: str) -> str:
        return f"auth:refresh:{subject}"

    @staticmethod
    def _ttl_seconds(ttl: timedelta) -> int:
        # Redis rejects zero or negative expirations
        return max(1, int(ttl.total_seconds()))

    async def put(self, subject: str, token: str, ttl: timedelta) -> None:
        await self.client.set(self._key(subject), token, ex=self._ttl_seconds(ttl))

    async def validate(self, subject: str, token: str) -> bool:
        current = await self.client.get(self._key(subject))
        return current is not None and current == token

    async def rotate(
        self, subject: str, old_token: str, new_token: str, ttl: timedelta
    ) -> bool:
        swapped = await self._rotate(
            keys=[self._key(subject)],
            args=[old_token, new_token, self._ttl_seconds(ttl)],
        )
        return bool(int(swapped or 0))

    async def revoke(self, subject: str) -> None:
        await self.client.delete(self._key(subject))

    async def verify_connection(self) -> None:
        await self.client.ping()

    async def close(self) -> None:
        await self.client.aclose()
