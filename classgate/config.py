from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, model_validator

from classgate.logging import get_logger
from classgate.storage.models import Role

logger = get_logger(__name__)

JWT_SECRET_FILE = ".jwt_secret"
_MIN_PERSISTED_SECRET = 32


def env_field(default: Any, env: str, **kwargs):
    """Field bound to an environment variable name, read by ``Settings.from_env``."""
    extra = {**(kwargs.pop("json_schema_extra", None) or {}), "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _env_name(name: str, field) -> str:
    extra = field.json_schema_extra
    if isinstance(extra, dict) and extra.get("env"):
        return extra["env"]
    return name.upper()


def load_or_create_jwt_secret(fs_root: Path) -> str:
    """Return the signing secret kept under ``fs_root``, creating it on first use.

    Tokens must outlive a restart, so a generated secret is written once
    (atomically, mode 0600) and read back by every later process.
    """
    secret_path = fs_root / JWT_SECRET_FILE
    if secret_path.is_file() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))
        else:
            if len(persisted) >= _MIN_PERSISTED_SECRET:
                return persisted

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fs_root.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp")
        with os.fdopen(fd, "w") as handle:
            os.fchmod(handle.fileno(), 0o600)
            handle.write(generated)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the credential, session and access-control engine."""

    database_url: str = env_field("postgresql://localhost:5432/classgate", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/classgate", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Blocking Redis client and in-process fallbacks for test runs.",
    )

    # Tokens and sessions
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("classgate", "JWT_ISSUER")
    jwt_audience: str = env_field("classgate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: PositiveInt = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of access tokens and of the sessions they back",
    )
    remember_me_ttl_minutes: PositiveInt = env_field(24 * 60, "REMEMBER_ME_TTL_MINUTES")
    refresh_token_ttl_minutes: PositiveInt = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")

    # Password policy
    password_min_length: PositiveInt = env_field(8, "PASSWORD_MIN_LENGTH")
    password_max_length: PositiveInt = env_field(128, "PASSWORD_MAX_LENGTH")
    password_require_uppercase: bool = env_field(True, "PASSWORD_REQUIRE_UPPERCASE")
    password_require_lowercase: bool = env_field(True, "PASSWORD_REQUIRE_LOWERCASE")
    password_require_numbers: bool = env_field(True, "PASSWORD_REQUIRE_NUMBERS")
    password_require_special: bool = env_field(True, "PASSWORD_REQUIRE_SPECIAL")

    # Brute-force protection
    max_login_attempts: PositiveInt = env_field(
        5,
        "MAX_LOGIN_ATTEMPTS",
        description="Consecutive failures before an account is locked",
    )
    lockout_duration_minutes: PositiveInt = env_field(30, "LOCKOUT_DURATION_MINUTES")
    ip_throttle_window_minutes: PositiveInt = env_field(15, "IP_THROTTLE_WINDOW_MINUTES")
    ip_throttle_max_attempts: PositiveInt = env_field(5, "IP_THROTTLE_MAX_ATTEMPTS")
    ip_block_minutes: PositiveInt = env_field(30, "IP_BLOCK_MINUTES")
    registration_rate_limit_per_hour: PositiveInt = env_field(
        10, "REGISTRATION_RATE_LIMIT_PER_HOUR"
    )
    reset_rate_limit_per_hour: PositiveInt = env_field(5, "RESET_RATE_LIMIT_PER_HOUR")

    # Account lifecycle
    require_email_verification: bool = env_field(False, "REQUIRE_EMAIL_VERIFICATION")
    default_role: Role = env_field(Role.STUDENT, "DEFAULT_ROLE")
    password_reset_ttl_minutes: PositiveInt = env_field(60, "PASSWORD_RESET_TTL_MINUTES")
    email_verification_ttl_hours: PositiveInt = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS")

    permission_cache_ttl_seconds: int = env_field(
        300,
        "PERMISSION_CACHE_TTL_SECONDS",
        ge=0,
        description="How long resolved role/user grants stay cached",
    )
    storage_timeout_seconds: PositiveFloat = env_field(
        5.0,
        "STORAGE_TIMEOUT_SECONDS",
        description="Default deadline for a single storage call",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment, then ``./.env``."""
        dotenv = dotenv_values(".env")
        values: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            env_name = _env_name(name, field)
            raw = os.environ.get(env_name, dotenv.get(env_name))
            if raw is not None:
                values[name] = raw
        return cls(**values)

    @model_validator(mode="after")
    def _resolve_jwt_secret(self) -> "Settings":
        if not self.jwt_secret:
            self.jwt_secret = load_or_create_jwt_secret(Path(self.shared_fs_root))
        return self


_settings_cache: Settings | None = None


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""
    global _settings_cache
    _settings_cache = None
