import pytest

from classgate.config import Settings
from classgate.schemas import LoginRequest, RegisterRequest
from classgate.service.runtime import Runtime, _mask_url_password
from classgate.storage.memory import MemoryStore

STRONG_PASSWORD = "Vq7#mTz!2Lkp"


def _settings(tmp_path, **overrides) -> Settings:
    values = {
        "jwt_secret": "Runtime-Secret-Key_for-Automation-Only-1234567890",
        "shared_fs_root": str(tmp_path),
        "test_mode": True,
        "use_memory_store": True,
    }
    values.update(overrides)
    return Settings(**values)


def test_mask_url_password():
    assert _mask_url_password(None) is None
    assert _mask_url_password("redis://localhost:6379/0") == "redis://localhost:6379/0"
    assert (
        _mask_url_password("redis://:hunter2@localhost:6379/0")
        == "redis://:***@localhost:6379/0"
    )
    assert (
        _mask_url_password("postgresql://app:pw@db/classgate")
        == "postgresql://app:***@db/classgate"
    )


def test_test_mode_uses_memory_store_without_cache(tmp_path):
    runtime = Runtime(_settings(tmp_path))
    assert isinstance(runtime.store, MemoryStore)
    assert runtime.cache is None
    assert runtime.auth.store is runtime.store
    assert runtime.auth.sessions is runtime.sessions


def test_missing_redis_without_fallback_is_fatal(tmp_path):
    settings = _settings(tmp_path, test_mode=False, allow_redis_fallback_dev=False)
    with pytest.raises(RuntimeError):
        Runtime(settings)


def test_dev_fallback_allows_missing_redis(tmp_path):
    settings = _settings(tmp_path, test_mode=False, allow_redis_fallback_dev=True)
    assert Runtime(settings).cache is None


def test_unreachable_redis_falls_back_in_test_mode(tmp_path):
    runtime = Runtime(_settings(tmp_path, redis_url="redis://127.0.0.1:1/0"))
    assert runtime.cache is None


def test_explicit_store_is_used(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path), persist=False)
    runtime = Runtime(_settings(tmp_path), store=store)
    assert runtime.store is store


async def test_runtime_wires_a_working_auth_flow(tmp_path):
    runtime = Runtime(_settings(tmp_path))
    registered = await runtime.auth.register(
        RegisterRequest(email="wired@example.com", password=STRONG_PASSWORD, username="wired")
    )
    login = await runtime.auth.login(
        LoginRequest(identifier="wired", password=STRONG_PASSWORD)
    )
    assert login.user.id == registered.user.id

    validation = await runtime.auth.validate_session(login.token)
    assert validation.valid
    access = await runtime.auth.check_access(registered.user.id, "courses", "read")
    assert access.granted

    assert await runtime.auth.logout(login.token)
    await runtime.close()
