from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenantauth.logging import get_logger
from tenantauth.service.errors import AuthInfrastructureError, ServiceError
from tenantauth.storage.errors import CacheUnavailable, ConstraintViolation

logger = get_logger(__name__)

T = TypeVar("T")

# Domain outcomes: returned to the caller as-is, never retried or counted
_PASSTHROUGH_ERRORS = (ServiceError, ConstraintViolation)
_TRANSIENT_ERRORS = (CacheUnavailable, asyncio.TimeoutError, ConnectionError, OSError)


class CircuitBreaker:
    """Consecutive-failure breaker shared by all calls through one policy.

    closed -> open after ``failure_threshold`` consecutive failures; open ->
    half-open once ``cooldown_seconds`` have passed, letting one trial call
    through; its outcome closes or re-opens the circuit.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        *,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.cooldown_seconds:
            return self.HALF_OPEN
        return self.OPEN

    def allow(self) -> bool:
        state = self.state
        if state == self.CLOSED:
            return True
        if state == self.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def release(self) -> None:
        """Free a half-open slot whose call ended without an outcome."""
        self._trial_in_flight = False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("circuit_closed")
        self._failures = 0
        self._opened_at = None
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        self._trial_in_flight = False
        if self._opened_at is not None or self._failures >= self.failure_threshold:
            self._opened_at = self._clock()
            logger.warning("circuit_opened", failures=self._failures)


class ResiliencePolicy:
    """Timeout, bounded retry and circuit breaking around backend calls."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.05,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.breaker = breaker or CircuitBreaker()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings) -> "ResiliencePolicy":
        return cls(
            timeout_seconds=settings.operation_timeout_seconds,
            max_retries=settings.operation_max_retries,
            backoff_seconds=settings.operation_backoff_seconds,
            breaker=CircuitBreaker(
                failure_threshold=settings.circuit_failure_threshold,
                cooldown_seconds=settings.circuit_cooldown_seconds,
            ),
        )

    async def run(
        self,
        operation: str,
        factory: Callable[[], Awaitable[T]],
        *,
        retry: bool = True,
    ) -> T:
        """Await ``factory()`` under the policy.

        ``factory`` is called once per attempt. Pass ``retry=False`` for
        non-idempotent claims (e.g. SET NX) where a timed-out first attempt
        may have taken effect.
        """
        attempts = 1 + (self.max_retries if retry else 0)
        last_error: Optional[BaseException] = None
        for attempt in range(attempts):
            if not self.breaker.allow():
                logger.warning("circuit_open_rejected", operation=operation)
                raise AuthInfrastructureError(
                    "auth backend unavailable", detail={"operation": operation}
                )
            try:
                result = await asyncio.wait_for(factory(), timeout=self.timeout_seconds)
            except asyncio.CancelledError:
                self.breaker.release()
                raise
            except _PASSTHROUGH_ERRORS:
                self.breaker.record_success()
                raise
            except _TRANSIENT_ERRORS as exc:
                self.breaker.record_failure()
                last_error = exc
                logger.warning(
                    "backend_call_failed",
                    operation=operation,
                    attempt=attempt + 1,
                    error=type(exc).__name__,
                )
                if attempt + 1 < attempts:
                    await self._sleep(self.backoff_seconds * (2**attempt))
                continue
            except Exception as exc:
                self.breaker.record_failure()
                logger.error("backend_call_error", operation=operation, error=str(exc))
                raise AuthInfrastructureError(
                    "auth backend error", detail={"operation": operation}
                ) from exc
            self.breaker.record_success()
            return result

        raise AuthInfrastructureError(
            "auth backend unavailable", detail={"operation": operation}
        ) from last_error

    async def run_sync(
        self, operation: str, func: Callable[..., T], *args: Any, retry: bool = True, **kwargs: Any
    ) -> T:
        """Run a blocking callable in a worker thread under the policy."""
        return await self.run(
            operation, lambda: asyncio.to_thread(func, *args, **kwargs), retry=retry
        )
