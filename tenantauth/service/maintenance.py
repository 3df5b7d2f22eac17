"""Background maintenance for the auth service.

Two loops run independently of request handling:

- revocation sweep: removes blacklist entries that lost their expiry
- key rotation check: rotates tenant keys older than the rotation interval

A failure in one pass is logged and retried on the next tick; it never
stops the loop.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List

from tenantauth.logging import get_logger
from tenantauth.service.keys import TenantKeyStore
from tenantauth.service.revocation import RevocationRegistry

logger = get_logger(__name__)


class MaintenanceWorker:
    def __init__(
        self,
        revocations: RevocationRegistry,
        keys: TenantKeyStore,
        *,
        sweep_interval: float = 3600,
        rotation_interval: float = 86400,
        max_backoff: float = 300,
    ) -> None:
        self.revocations = revocations
        self.keys = keys
        self.sweep_interval = sweep_interval
        self.rotation_interval = rotation_interval
        self.max_backoff = max_backoff
        self._running = False
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start both maintenance loops."""
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._tasks = {
            "revocation_sweep": asyncio.create_task(
                self._run_loop("revocation_sweep", self.sweep_once, self.sweep_interval)
            ),
            "key_rotation": asyncio.create_task(
                self._run_loop("key_rotation", self.rotate_once, self.rotation_interval)
            ),
        }
        logger.info(
            "maintenance_worker_started",
            sweep_interval=self.sweep_interval,
            rotation_interval=self.rotation_interval,
        )

    async def stop(self) -> None:
        """Stop both loops and wait for them to exit."""
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = {}
        logger.info("maintenance_worker_stopped")

    async def sweep_once(self) -> int:
        return await self.revocations.sweep()

    async def rotate_once(self) -> List[str]:
        rotated = await self.keys.rotate_due()
        if rotated:
            logger.info("tenant_keys_rotated", tenants=len(rotated))
        return rotated

    async def _run_loop(
        self, name: str, job: Callable[[], Awaitable[object]], interval: float
    ) -> None:
        consecutive_errors = 0
        while self._running:
            delay = interval
            try:
                await job()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_loop_error",
                    loop=name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Back off on repeated errors, but never wait longer than the interval
                delay = min(interval, self.max_backoff, 2 ** consecutive_errors)
            await asyncio.sleep(delay)
