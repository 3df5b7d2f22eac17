from __future__ import annotations

import threading

from tenantauth.config import get_settings, reset_settings_cache
from tenantauth.logging import get_logger
from tenantauth.service.auth import AuthService
from tenantauth.service.maintenance import MaintenanceWorker
from tenantauth.storage.common import KeyValueCache
from tenantauth.storage.errors import CacheUnavailable
from tenantauth.storage.memory import MemoryStore
from tenantauth.storage.memory_cache import MemoryCache
from tenantauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_cache=self.settings.use_memory_cache,
            test_mode=self.settings.test_mode,
        )

        self.store = MemoryStore(fs_root=self.settings.credential_store_root)
        self.cache: KeyValueCache = self._build_cache()
        self.auth = AuthService(self.store, self.cache, self.settings)
        self.maintenance = MaintenanceWorker(
            self.auth.revocations,
            self.auth.keys,
            sweep_interval=self.settings.revocation_sweep_interval_seconds,
            rotation_interval=self.settings.key_rotation_check_interval_seconds,
        )
        logger.info(
            "runtime_init_completed",
            cache_type="memory" if isinstance(self.cache, MemoryCache) else "redis",
        )

    def _build_cache(self) -> KeyValueCache:
        if self.settings.use_memory_cache:
            return MemoryCache()
        cache = RedisCache(
            self.settings.redis_url, socket_timeout=self.settings.operation_timeout_seconds
        )
        try:
            cache.verify_connection()
        except CacheUnavailable as exc:
            if not self.settings.test_mode:
                raise RuntimeError(
                    "Redis is required for revocations, rate limits and tenant keys; "
                    "start Redis or set USE_MEMORY_CACHE=true for a single local instance."
                ) from exc
            logger.warning("redis_unavailable_memory_fallback", error=str(exc))
            return MemoryCache()
        return cache

    async def close(self) -> None:
        """Stop background loops and release the cache connection pool."""
        await self.maintenance.stop()
        await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
