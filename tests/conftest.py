import asyncio
import inspect
import os
import shutil
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="credvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# TestClient talks plain http; a Secure cookie would never be sent back
os.environ.setdefault("COOKIE_SECURE", "false")
# In-process rate limits unless REDIS_URL is exported; Redis buckets outlive a test
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from credvault.service.identity import IdentityResolver  # noqa: E402
from credvault.service.passwords import PasswordHasher  # noqa: E402
from credvault.service.refresh_ledger import RefreshTokenLedger  # noqa: E402
from credvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from credvault.service.temporary_tokens import TemporaryTokenManager  # noqa: E402
from credvault.service.tokens import TokenCodec  # noqa: E402
from credvault.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "unit-test-secret-key-that-is-long-enough-0123"


def _clear_persisted_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_persisted_state()
    reset_runtime_for_tests()
    yield
    _clear_persisted_state()
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


class FakeClock:
    """Manually advanced UTC clock injected into the token components."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def hasher():
    return PasswordHasher()


@pytest.fixture
def codec(clock):
    return TokenCodec(
        TEST_SECRET,
        issuer="credvault",
        audience="credvault-clients",
        clock=clock,
    )


@pytest.fixture
def ledger(store, codec, clock):
    return RefreshTokenLedger(store, codec, clock=clock)


@pytest.fixture
def temporary_tokens(store, clock):
    return TemporaryTokenManager(store, TEST_SECRET, clock=clock)


@pytest.fixture
def identities(store):
    return IdentityResolver(store)
