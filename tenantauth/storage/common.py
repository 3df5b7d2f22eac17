"""Interfaces shared between the Redis and in-memory key-value backends."""

from __future__ import annotations

from typing import List, Optional, Protocol


class KeyValueCache(Protocol):
    """Operations the auth services need from the shared key-value store.

    TTLs are whole seconds. ``ttl`` follows Redis: -2 when the key is
    missing, -1 when it has no expiry.
    """

    async def ping(self) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...

    async def set_if_absent(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> bool: ...

    async def exists(self, key: str) -> bool: ...

    async def delete(self, key: str) -> int: ...

    async def incr_window(self, key: str, window_seconds: int) -> int: ...

    async def ttl(self, key: str) -> int: ...

    async def scan(self, pattern: str) -> List[str]: ...

    async def close(self) -> None: ...
