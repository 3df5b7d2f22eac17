from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tenantauth.storage.errors import CacheUnavailable


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except (RedisError, OSError) as exc:
        raise CacheUnavailable(f"redis {operation} failed: {exc}") from exc


class RedisCache:
    """Thin Redis wrapper for revocations, login counters and tenant keys."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # INCR and start the window only on the first hit, atomically; returns
    # the new count. A key left without expiry (crash between calls on older
    # deployments) gets one here as well.
    _WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 or redis.call('TTL', KEYS[1]) == -1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return count
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        from redis import Redis

        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            with _translate_errors("ping"):
                sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        with _translate_errors("ping"):
            return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        with _translate_errors("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        with _translate_errors("set"):
            await self.client.set(key, value, ex=ttl_seconds)

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """SET NX EX; True only for the caller that created the key."""
        with _translate_errors("set_if_absent"):
            return bool(await self.client.set(key, value, ex=ttl_seconds, nx=True))

    async def exists(self, key: str) -> bool:
        with _translate_errors("exists"):
            return bool(await self.client.exists(key))

    async def delete(self, key: str) -> int:
        with _translate_errors("delete"):
            return int(await self.client.delete(key))

    async def incr_window(self, key: str, window_seconds: int) -> int:
        with _translate_errors("incr_window"):
            result = await self._window_counter(keys=[key], args=[int(window_seconds)])
        return int(result)

    async def ttl(self, key: str) -> int:
        with _translate_errors("ttl"):
            return int(await self.client.ttl(key))

    async def scan(self, pattern: str) -> List[str]:
        keys: List[str] = []
        with _translate_errors("scan"):
            async for key in self.client.scan_iter(match=pattern, count=500):
                keys.append(key)
        return keys

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
