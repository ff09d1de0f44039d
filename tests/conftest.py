import asyncio
import inspect
import os

# Configure the environment before anything builds the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("USE_MEMORY_CACHE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

from idgate.service.hashing import Argon2Hasher  # noqa: E402
from idgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from idgate.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from idgate.storage.models import utcnow  # noqa: E402


class FakeClock:
    """Controllable clock shared by ``MemoryCache`` (seconds) and ``TokenStore`` (datetime)."""

    def __init__(self):
        self.now = utcnow()

    def __call__(self):
        return self.now

    def seconds(self) -> float:
        return self.now.timestamp()

    def advance(self, delta):
        self.now = self.now + delta


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
    return MemoryCache(clock=clock.seconds)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher():
    # Minimal argon2id cost so the suite stays fast
    return Argon2Hasher(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
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
