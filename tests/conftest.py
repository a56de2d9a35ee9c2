import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Environment must be in place before fixrx settings are read
_test_tmp_dir = tempfile.mkdtemp(prefix="fixrx_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fixrx.app import create_app  # noqa: E402
from fixrx.config import Settings, reset_settings_cache  # noqa: E402
from fixrx.service.runtime import Runtime  # noqa: E402
from fixrx.storage.memory import MemoryStore  # noqa: E402
from fixrx.storage.memory_cache import MemoryCache  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"


class FakeClock:
    """Manually advanced clock shared by caches and limiters in tests."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings(tmp_path):
    """Settings with cheap argon2 parameters and fixed secrets."""
    return Settings(
        jwt_secret="unit-access-secret-0123456789abcdefghijklmnop",
        jwt_refresh_secret="unit-refresh-secret-0123456789abcdefghijklmnop",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        argon2_time_cost=1,
        argon2_memory_cost=1024,
        argon2_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def runtime(settings, store, cache):
    """Fully wired runtime over in-memory store and cache."""
    return Runtime(settings, store=store, cache=cache)


@pytest.fixture
def client(runtime):
    """Test client; the job worker is not started so queued jobs stay inspectable."""
    return TestClient(create_app(runtime))


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
