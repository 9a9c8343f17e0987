import asyncio
import inspect
import os
import sys
from pathlib import Path
from typing import List, Tuple

# Settings are read from the environment; keep local .env and real services out of tests
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import fakeredis  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from coursegate.config import Settings, reset_settings_cache  # noqa: E402
from coursegate.service.runtime import Runtime  # noqa: E402
from coursegate.storage.memory import MemoryStore  # noqa: E402
from coursegate.storage.redis_cache import RedisCache  # noqa: E402

TEST_HASH_COST = 4


class RecordingMailer:
    """Stands in for EmailService; keeps every reset link it was asked to send."""

    is_configured = False

    def __init__(self) -> None:
        self.outbox: List[Tuple[str, str]] = []
        self.fail_with: Exception | None = None

    async def send_password_reset_email(self, to_email: str, reset_url: str) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        self.outbox.append((to_email, reset_url))
        return True

    def last_token(self) -> str:
        _, url = self.outbox[-1]
        return url.split("token=", 1)[1]


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        password_hash_cost=TEST_HASH_COST,
        session_cleanup_enabled=False,
        cookie_secure=False,
        frontend_url="https://learn.example.com",
        admin_frontend_url="https://admin.example.com",
        google_client_id="client-id",
        google_client_secret="client-secret",
        google_redirect_uri="https://api.example.com/v1/auth/google/callback",
    )


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return RedisCache("redis://fake", client=redis_client)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def runtime(settings, store, cache, mailer):
    return Runtime(settings, store=store, cache=cache, email=mailer)


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
