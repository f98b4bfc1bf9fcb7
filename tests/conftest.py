import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="zentik_auth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("EMAIL_ENABLED", "false")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("PROVIDER_STARTUP_DELAY_SECONDS", "0")
os.environ.setdefault("PROVIDER_STARTUP_BACKOFF_SECONDS", "0")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from argon2 import PasswordHasher  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from zentik_auth.config import Settings  # noqa: E402
from zentik_auth.service.email import EmailService  # noqa: E402
from zentik_auth.service.hashing import SecretHasher  # noqa: E402
from zentik_auth.service.runtime import reset_runtime_for_tests  # noqa: E402
from zentik_auth.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Settings independent of the process environment."""
    return Settings(
        jwt_secret="unit-access-secret",
        jwt_refresh_secret="unit-refresh-secret",
        jwt_access_token_expiration="15m",
        jwt_refresh_token_expiration="7d",
        test_mode=True,
        provider_startup_delay_seconds=0,
        provider_startup_backoff_seconds=0,
        public_backend_url="https://api.zentik.test",
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def hasher():
    """argon2id with minimal cost so tests stay fast."""
    return SecretHasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


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


class RecordingEmail(EmailService):
    """EmailService that keeps messages in memory instead of sending them."""

    def __init__(self, *, fail=False):
        super().__init__()
        self.fail = fail
        self.sent = []

    def _send_email(self, to_email, subject, html_body, text_body):
        if self.fail:
            return False
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return True


@pytest.fixture
def outbox():
    return RecordingEmail()
