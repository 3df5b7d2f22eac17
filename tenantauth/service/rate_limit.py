from __future__ import annotations

import math

from tenantauth.logging import get_logger
from tenantauth.storage.common import KeyValueCache

logger = get_logger(__name__)


class LoginRateLimiter:
    """Fixed-window counter of failed logins per (tenant, principal).

    The window starts on the first recorded attempt and is not extended by
    later ones. Once ``max_attempts`` failures are recorded the principal is
    limited until the window expires or ``reset`` is called.
    """

    def __init__(self, cache: KeyValueCache, *, max_attempts: int, window_seconds: int) -> None:
        if max_attempts <= 0 or window_seconds <= 0:
            raise ValueError("max_attempts and window_seconds must be positive")
        self.cache = cache
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds

    @staticmethod
    def key_for(tenant_id: str, principal: str) -> str:
        return f"ratelimit:login:{tenant_id}:{principal.strip().lower()}"

    async def record_attempt(self, tenant_id: str, principal: str) -> int:
        count = await self.cache.incr_window(
            self.key_for(tenant_id, principal), self.window_seconds
        )
        if count == self.max_attempts:
            logger.warning(
                "login_rate_limit_reached", tenant_id=tenant_id, attempts=count
            )
        return count

    async def attempts(self, tenant_id: str, principal: str) -> int:
        raw = await self.cache.get(self.key_for(tenant_id, principal))
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def is_limited(self, tenant_id: str, principal: str) -> bool:
        return await self.attempts(tenant_id, principal) >= self.max_attempts

    async def reset(self, tenant_id: str, principal: str) -> None:
        await self.cache.delete(self.key_for(tenant_id, principal))

    async def retry_after(self, tenant_id: str, principal: str) -> int:
        """Seconds until the window closes, rounded up to whole minutes."""
        ttl = await self.cache.ttl(self.key_for(tenant_id, principal))
        if ttl < 0:
            ttl = self.window_seconds if ttl == -1 else 0
        if ttl == 0:
            return 0
        return math.ceil(ttl / 60) * 60
