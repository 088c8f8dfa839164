import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="classgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from classgate.config import Settings, reset_settings_cache  # noqa: E402
from classgate.service.auth import AuthService  # noqa: E402
from classgate.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Vq7#mTz!2Lkp"


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    """Create test settings."""
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=60 * 24,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def auth_service(memory_store, settings):
    """Create auth service for testing."""
    return AuthService(memory_store, settings)


@pytest.fixture
def test_user(memory_store, auth_service):
    """Create an active student with a known password."""
    user = memory_store.create_user(
        "test@example.com", username="testuser", first_name="Tess", last_name="Ter"
    )
    pwd_hash, algo = auth_service.hasher.hash(STRONG_PASSWORD)
    memory_store.save_password(user.id, pwd_hash, algo)
    return user


@pytest.fixture
def admin_user(memory_store, auth_service):
    """Create an active admin with a known password."""
    from classgate.storage.models import Role

    user = memory_store.create_user("root@example.com", username="rootadmin", role=Role.ADMIN)
    pwd_hash, algo = auth_service.hasher.hash(STRONG_PASSWORD)
    memory_store.save_password(user.id, pwd_hash, algo)
    return user


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
