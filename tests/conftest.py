import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_SECRET", "test-session-secret-for-testing-only-do-not-use")
os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-testing-only-do-not-use")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from hackguard.service.cookies import CookiePolicy  # noqa: E402
from hackguard.service.csrf import CSRFTokenManager  # noqa: E402
from hackguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from hackguard.service.sessions import SessionManager  # noqa: E402
from hackguard.storage.memory import MemoryCache, MemoryStore  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def csrf(cache, clock):
    return CSRFTokenManager(cache, "csrf-test-secret", clock=clock)


@pytest.fixture
def session_manager(store, csrf, clock):
    return SessionManager(
        store,
        csrf,
        CookiePolicy(),
        ttl_minutes=60,
        absolute_ttl_minutes=24 * 60,
        refresh_threshold_minutes=15,
        clock=clock,
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
