from __future__ import annotations

from tenantauth.logging import get_logger
from tenantauth.storage.common import KeyValueCache
from tenantauth.storage.models import TokenKind

logger = get_logger(__name__)

BLACKLIST_PREFIX = "blacklist"


class RevocationRegistry:
    """Shared record of revoked token ids, keyed by kind.

    Entries expire together with the token they revoke, so the registry never
    grows beyond the set of still-valid revoked tokens.
    """

    def __init__(self, cache: KeyValueCache) -> None:
        self.cache = cache

    @staticmethod
    def key_for(kind: TokenKind, token_id: str) -> str:
        return f"{BLACKLIST_PREFIX}:{TokenKind(kind).value}:{token_id}"

    async def revoke(self, kind: TokenKind, token_id: str, remaining_ttl: int) -> bool:
        """Record a revocation; True only for the call that created the entry.

        Used as the atomic claim during refresh rotation: of two concurrent
        callers revoking the same id exactly one gets True.
        """
        if remaining_ttl <= 0:
            # Token already expired; nothing to guard
            return False
        created = await self.cache.set_if_absent(
            self.key_for(kind, token_id), "1", ttl_seconds=int(remaining_ttl)
        )
        if created:
            logger.info("token_revoked", token_kind=TokenKind(kind).value, token_id=token_id)
        return created

    async def is_revoked(self, kind: TokenKind, token_id: str) -> bool:
        return await self.cache.exists(self.key_for(kind, token_id))

    async def sweep(self) -> int:
        """Delete blacklist entries that lost their expiry; returns count removed."""
        removed = 0
        for key in await self.cache.scan(f"{BLACKLIST_PREFIX}:*"):
            ttl = await self.cache.ttl(key)
            if ttl == -1 or ttl == 0:
                removed += await self.cache.delete(key)
        if removed:
            logger.info("revocation_sweep_removed", removed=removed)
        return removed
