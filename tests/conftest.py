import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before any import that reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("MAINTENANCE_ENABLED", "false")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-automation-only-0001")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-automation-only-0002")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "1024")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantauth.config import Settings  # noqa: E402
from tenantauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from tenantauth.storage.memory_cache import MemoryCache  # noqa: E402


class FakeClock:
    """Manually advanced epoch clock shared by cache, tokens and key store."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def settings():
    """Settings built directly so tests do not depend on the process env."""
    return Settings(
        test_mode=True,
        use_memory_cache=True,
        access_token_secret="Access-Secret_for-Automation-Only-123456789",
        refresh_token_secret="Refresh-Secret_for-Automation-Only-987654321",
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        operation_backoff_seconds=0.0,
        maintenance_enabled=False,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
