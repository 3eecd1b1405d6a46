import asyncio
import inspect
import os
import sys
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

# One key pair for the whole run; generating RSA keys per runtime reset is slow.
_TEST_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_TEST_PRIVATE_PEM = _TEST_PRIVATE_KEY.private_bytes(
    serialization.Encoding.PEM,
    serialization.PrivateFormat.PKCS8,
    serialization.NoEncryption(),
).decode("ascii")
_TEST_PUBLIC_PEM = (
    _TEST_PRIVATE_KEY.public_key()
    .public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    .decode("ascii")
)

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Rate limit counters stay process-local unless a test opts into Redis.
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SMTP_HOST", "")
os.environ.setdefault("JWT_PRIVATE_KEY", _TEST_PRIVATE_PEM)
os.environ.setdefault("JWT_PUBLIC_KEY", _TEST_PUBLIC_PEM)
os.environ.setdefault("JWT_KEY_ID", "test-key")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenwarden.service.keys import KeyStore  # noqa: E402
from tokenwarden.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture(scope="session")
def private_key():
    return _TEST_PRIVATE_KEY


@pytest.fixture(scope="session")
def private_pem():
    return _TEST_PRIVATE_PEM


@pytest.fixture(scope="session")
def public_pem():
    return _TEST_PUBLIC_PEM


@pytest.fixture(scope="session")
def key_store():
    return KeyStore(_TEST_PRIVATE_PEM, _TEST_PUBLIC_PEM, key_id="test-key")


class FakeClock:
    """Settable UTC clock for time-dependent services."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


@pytest.fixture
def clock():
    from datetime import datetime, timezone

    return FakeClock(datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc))


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
