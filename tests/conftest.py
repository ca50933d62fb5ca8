import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be settled before anything reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from hubauth.config import Settings  # noqa: E402
from hubauth.service.audit import AuditRecorder  # noqa: E402
from hubauth.service.auth import AuthService  # noqa: E402
from hubauth.service.mfa import MFAManager  # noqa: E402
from hubauth.service.passwords import CredentialVerifier  # noqa: E402
from hubauth.service.permissions import PermissionResolver  # noqa: E402
from hubauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from hubauth.service.tokens import TokenService  # noqa: E402
from hubauth.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Correct-Horse-9!"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Unit-Test-Secret-Key_for-Automation-Only-0123456789",
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="unit-test-mfa-key")


@pytest.fixture
def verifier(settings):
    return CredentialVerifier(settings)


@pytest.fixture
def clock():
    """Mutable fake clock; advance with ``clock.now += seconds``."""

    class FakeClock:
        def __init__(self):
            self.now = 1_700_000_000.0

        def __call__(self):
            return self.now

    return FakeClock()


@pytest.fixture
def audit(store, settings):
    return AuditRecorder(store, settings)


@pytest.fixture
def tokens(settings, clock):
    return TokenService(settings, clock=clock)


@pytest.fixture
def mfa(store, settings, verifier, clock):
    return MFAManager(store, settings, verifier, clock=clock)


@pytest.fixture
def resolver(store):
    return PermissionResolver(store)


@pytest.fixture
def auth_service(store, settings, verifier, tokens, mfa, audit, clock):
    return AuthService(
        store,
        None,
        settings,
        verifier=verifier,
        tokens=tokens,
        mfa=mfa,
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def make_account(store, verifier):
    def _make(email="member@example.com", password=STRONG_PASSWORD, **kwargs):
        return store.create_account(email, verifier.hash(password), **kwargs)

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
