import asyncio
import inspect
import os
import sys
import time
from pathlib import Path

# Configure the environment before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("LOG_JSON", "false")
# argon2 at minimum cost keeps the suite fast
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "8")
os.environ.setdefault("ARGON2_PARALLELISM", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from identitycore.config import Settings, reset_settings_cache  # noqa: E402
from identitycore.service.notifier import DeliveryOutcome  # noqa: E402
from identitycore.service.runtime import Runtime  # noqa: E402
from identitycore.storage.memory import MemoryStore  # noqa: E402

PASSWORD = "Secret123!"


class RecordingNotifier:
    """Notifier double that remembers every delivery."""

    def __init__(self, outcome=None, error=None, delay=0.0):
        self.deliveries = []
        self.delay = delay
        self.outcome = outcome or DeliveryOutcome(sent=True)
        self.error = error

    def deliver(self, recipient, token, context):
        self.deliveries.append((recipient, token, context))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.outcome


async def longest_loop_stall(awaitable, interval=0.01):
    """Await ``awaitable`` while a ticker runs; return the longest gap between ticks."""
    loop = asyncio.get_running_loop()
    gaps = []
    done = asyncio.Event()

    async def ticker():
        last = loop.time()
        while not done.is_set():
            await asyncio.sleep(interval)
            now = loop.time()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    await asyncio.sleep(0)
    try:
        result = await awaitable
    finally:
        done.set()
        await task
    return result, max(gaps, default=0.0)


@pytest.fixture(autouse=True)
def reset_settings():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        redis_url=None,
        use_memory_store=True,
        test_mode=True,
        argon2_time_cost=1,
        argon2_memory_cost=8,
        argon2_parallelism=1,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, store, notifier):
    return Runtime(settings, store=store, notifier=notifier)


@pytest.fixture
def default_role(store):
    return store.create_role("user", "Default role")


@pytest.fixture
def account(runtime, default_role):
    """An active account ``a@x.com`` with the default role."""
    return asyncio.run(runtime.accounts.register("a@x.com", PASSWORD))


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
