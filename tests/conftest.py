import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might build settings
_test_tmp_dir = tempfile.mkdtemp(prefix="claimdesk_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from fastapi.testclient import TestClient  # noqa: E402

from claimdesk.app import create_app  # noqa: E402
from claimdesk.config import Settings, reset_settings_cache  # noqa: E402
from claimdesk.service.runtime import Runtime  # noqa: E402
from claimdesk.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Mutable clock handed to services so tests can move time forward."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        shared_fs_root=str(tmp_path),
    )


@pytest.fixture
def runtime(settings, clock):
    return Runtime(settings, store=MemoryStore(), clock=clock)


@pytest.fixture
def client(runtime):
    """Test client whose lifespan installs ``runtime``."""
    with TestClient(create_app(settings=runtime.settings, runtime=runtime)) as test_client:
        yield test_client
