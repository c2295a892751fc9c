import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Settings are read on first use, so the environment must be ready before imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault(
    "ACCESS_TOKEN_SECRET", "test-access-secret-for-automation-only-0123456789"
)
os.environ.setdefault(
    "REFRESH_TOKEN_SECRET", "test-refresh-secret-for-automation-only-9876543210"
)

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from clinauth.service.audit import AuditTrail, MemoryAuditSink  # noqa: E402
from clinauth.service.auth import AuthService  # noqa: E402
from clinauth.service.lockout import LockoutPolicy  # noqa: E402
from clinauth.service.passwords import Argon2Hasher, PasswordPolicy  # noqa: E402
from clinauth.service.rbac import RBACResolver, default_policy  # noqa: E402
from clinauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from clinauth.service.tokens import TokenCodec  # noqa: E402
from clinauth.storage.memory import MemoryCredentialStore, MemorySessionStore  # noqa: E402

STRONG_PASSWORD = "Str0ng!Passw0rd"
ACCESS_SECRET = "unit-access-secret-0123456789abcdefghijklmnop"
REFRESH_SECRET = "unit-refresh-secret-0123456789abcdefghijklmno"
SESSION_TTL = 7 * 24 * 60 * 60


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def fast_hasher() -> Argon2Hasher:
    """argon2id with minimal cost parameters so tests stay quick."""
    return Argon2Hasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def credentials():
    return MemoryCredentialStore()


@pytest.fixture
def sessions(clock):
    return MemorySessionStore(tombstone_ttl_seconds=SESSION_TTL, clock=clock)


@pytest.fixture
def audit_sink():
    return MemoryAuditSink()


@pytest.fixture
def codec(clock):
    return TokenCodec(
        ACCESS_SECRET,
        REFRESH_SECRET,
        issuer="clinauth",
        audience="clinauth-clients",
        access_ttl_seconds=900,
        refresh_ttl_seconds=SESSION_TTL,
        clock=clock,
    )


@pytest.fixture
def rbac():
    return RBACResolver(default_policy())


@pytest.fixture
def auth_service(credentials, sessions, codec, rbac, audit_sink, clock):
    return AuthService(
        credentials,
        sessions,
        codec,
        rbac,
        fast_hasher(),
        AuditTrail(audit_sink, clock=clock),
        password_policy=PasswordPolicy(),
        lockout=LockoutPolicy(threshold=5, duration=timedelta(minutes=30)),
        session_ttl_seconds=SESSION_TTL,
        store_timeout=1.0,
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
