from __future__ import annotations

import asyncio
import fnmatch
import math
import time
from typing import Callable, Dict, List, Optional, Tuple


class MemoryCache:
    """Process-local stand-in for RedisCache.

    Mirrors the subset of Redis semantics the auth services rely on: TTLs,
    SET NX, INCR with a window that starts on the first increment, and TTL
    reporting (-2 missing, -1 no expiry). Only safe for a single instance.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        # key -> (value, absolute expiry or None)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + ttl_seconds

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = (str(value), self._expiry(ttl_seconds))

    async def set_if_absent(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (str(value), self._expiry(ttl_seconds))
            return True

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def delete(self, key: str) -> int:
        async with self._lock:
            return 1 if self._data.pop(key, None) is not None else 0

    async def incr_window(self, key: str, window_seconds: int) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._data[key] = ("1", self._expiry(window_seconds))
                return 1
            value, expires_at = entry
            count = int(value) + 1
            self._data[key] = (str(count), expires_at)
            return count

    async def ttl(self, key: str) -> int:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            _, expires_at = entry
            if expires_at is None:
                return -1
            return max(0, math.ceil(expires_at - self._clock()))

    async def scan(self, pattern: str) -> List[str]:
        async with self._lock:
            return [
                key
                for key in list(self._data)
                if fnmatch.fnmatchcase(key, pattern) and self._live(key) is not None
            ]

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()
