import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.pop("STATE_PATH", None)

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authshield.config import Settings  # noqa: E402
from authshield.service.auth import AuthService  # noqa: E402
from authshield.service.runtime import reset_runtime_for_tests  # noqa: E402
from authshield.storage.memory import MemoryStore  # noqa: E402
from authshield.storage.memory_cache import MemoryCache  # noqa: E402

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch clock shared by the cache and the services."""

    def __init__(self, start: float = START):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, notification):
        if self.fail:
            raise ConnectionError("smtp down")
        self.sent.append(notification)
        return True


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def fast_hasher():
    """Cheap argon2 parameters; production defaults make the suite slow."""
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)


@pytest.fixture
def settings():
    return Settings(use_memory_cache=True, test_mode=True)


@pytest.fixture
def auth_service(memory_store, memory_cache, settings, notifier, clock, fast_hasher):
    return AuthService(
        memory_store,
        memory_cache,
        settings,
        notifier=notifier,
        clock=clock,
        password_hasher=fast_hasher,
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
