import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Set env defaults before anything imports settings or configures logging
_test_tmp_dir = tempfile.mkdtemp(prefix="accountcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_CACHE_FALLBACK", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from accountcore.config import Settings  # noqa: E402
from accountcore.service.auth import AuthService  # noqa: E402
from accountcore.service.notifications import NotificationEvent  # noqa: E402
from accountcore.storage.memory import MemoryStore  # noqa: E402
from accountcore.storage.memory_cache import MemoryCache  # noqa: E402

TEST_SECRET = "unit-test-signing-secret-0123456789abcdef"
PASSWORD = "Passw0rd1"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)
        return self.now


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    async def dispatch(self, event, payload):
        self.events.append((event, dict(payload)))

    def payloads(self, event):
        return [payload for recorded, payload in self.events if recorded == event]


def customer_profile(**overrides):
    profile = {"firstName": "Alice", "lastName": "Smith"}
    profile.update(overrides)
    return profile


def provider_profile(**overrides):
    profile = {
        "firstName": "Bob",
        "lastName": "Builder",
        "skills": ["plumbing", "tiling"],
        "experience": 7,
        "hourlyRate": 45.0,
    }
    profile.update(overrides)
    return profile


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    # cheap argon2 parameters keep the suite fast
    return Settings(
        jwt_secret=TEST_SECRET,
        password_hash_time_cost=1,
        password_hash_memory_cost=1024,
        password_hash_parallelism=1,
    )


@pytest.fixture
def memory_store():
    return MemoryStore(encryption_key=TEST_SECRET)


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def auth_service(memory_store, cache, settings, dispatcher, clock):
    return AuthService(memory_store, cache, settings, dispatcher=dispatcher, clock=clock)


@pytest.fixture
def make_account(auth_service, dispatcher):
    """Async helper registering an account and, by default, verifying its email."""

    async def _make(
        email="alice@example.com",
        password=PASSWORD,
        role="customer",
        profile=None,
        verify=True,
    ):
        if profile is None:
            profile = provider_profile() if role == "provider" else customer_profile()
        result = await auth_service.register(email, password, role, profile)
        if verify:
            await auth_service.drain_notifications()
            token = [
                p["token"]
                for p in dispatcher.payloads(NotificationEvent.VERIFICATION_EMAIL)
                if p["account_id"] == result.account_id
            ][-1]
            await auth_service.verify_email(token)
        return result

    return _make


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
