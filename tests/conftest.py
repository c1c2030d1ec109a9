import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="tokensmith_test_")
os.environ.setdefault("PEM_EXPORT_PATH", os.path.join(_test_tmp_dir, "keys"))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SIGNING_KEY_BITS", "2048")
os.environ.setdefault("PASSWORD_HASH_COST", "1")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from tokensmith.config import Settings, reset_settings_cache  # noqa: E402
from tokensmith.service.auth import AuthService  # noqa: E402
from tokensmith.service.keyring import KeyRing  # noqa: E402
from tokensmith.storage.memory import MemoryStore  # noqa: E402
from tokensmith.storage.redis_cache import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Settings with cheap hashing and small keys so tests stay fast."""
    return Settings(signing_key_bits=2048, password_hash_cost=1)


@pytest.fixture
def keyring(tmp_path):
    ring = KeyRing(tmp_path / "keys", key_size=2048)
    ring.initialize()
    return ring


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def auth_service(memory_store, cache, keyring, settings):
    return AuthService(memory_store, cache, keyring, settings)


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
