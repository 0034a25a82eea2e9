import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything imports the app or runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("HASH_PEPPER", "test-pepper-for-testing-only")
# cheapest argon2 parameters that still exercise the real hasher
os.environ.setdefault("HASH_COST", "1")
os.environ.setdefault("HASH_MEMORY_KIB", "1024")
# no Redis in unit runs; resolver tests inject FakeCache instead
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from authcore.config import Settings  # noqa: E402
from authcore.service.runtime import reset_runtime_for_tests  # noqa: E402


class FakeCache:
    """In-process stand-in for RedisCache that records traffic and can fail on demand."""

    def __init__(self):
        self.entries = {}
        self.ttls = {}
        self.gets = []
        self.sets = []
        self.drops = []
        self.fail_reads = False
        self.fail_writes = False

    async def get_entity(self, kind, entity_id):
        self.gets.append(f"{kind}:{entity_id}")
        if self.fail_reads:
            raise ConnectionError("cache down")
        return self.entries.get(f"{kind}:{entity_id}")

    async def set_entity(self, kind, entity_id, payload, ttl_seconds):
        self.sets.append(f"{kind}:{entity_id}")
        if self.fail_writes:
            raise ConnectionError("cache down")
        self.entries[f"{kind}:{entity_id}"] = dict(payload)
        self.ttls[f"{kind}:{entity_id}"] = ttl_seconds

    async def drop_entity(self, kind, entity_id):
        self.drops.append(f"{kind}:{entity_id}")
        if self.fail_writes:
            raise ConnectionError("cache down")
        self.entries.pop(f"{kind}:{entity_id}", None)

    def verify_connection(self):
        return None

    async def close(self):
        return None


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="unit-test-signing-secret",
        hash_pepper="unit-test-pepper",
        hash_cost=1,
        hash_memory_kib=1024,
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
    )


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
