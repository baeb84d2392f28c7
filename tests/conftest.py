import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ssoauth.service.auth import AuthService  # noqa: E402
from ssoauth.service.crypto import (  # noqa: E402
    Argon2PasswordHasher,
    HmacTokenSigner,
    RandomTokenGenerator,
)
from ssoauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from ssoauth.storage.memory import MemoryStore  # noqa: E402

TOKEN_TTL = timedelta(hours=1)
REFRESH_TTL = timedelta(hours=24)


class FakeClock:
    """Settable UTC clock injected into the auth service."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def hasher():
    # Minimal work factor keeps the suite fast; production uses Settings values
    return Argon2PasswordHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def signer():
    return HmacTokenSigner(issuer="ssoauth-test")


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def app(memory_store):
    return memory_store.save_app(
        "test-app",
        "Test-Signing-Secret_for-Automation-Only-123456789!",
        token_ttl=TOKEN_TTL,
        refresh_token_ttl=REFRESH_TTL,
        app_id=1,
    )


def build_auth_service(store, *, hasher, signer, clock, **overrides) -> AuthService:
    kwargs = dict(
        account_saver=store,
        account_provider=store,
        app_provider=store,
        session_saver=store,
        session_provider=store,
        hasher=hasher,
        signer=signer,
        token_generator=RandomTokenGenerator(),
        token_ttl=TOKEN_TTL,
        refresh_token_ttl=REFRESH_TTL,
        clock=clock,
    )
    kwargs.update(overrides)
    return AuthService(**kwargs)


@pytest.fixture
def auth_service(memory_store, app, hasher, signer, clock):
    return build_auth_service(memory_store, hasher=hasher, signer=signer, clock=clock)


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
