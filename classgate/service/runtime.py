from __future__ import annotations

from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from classgate.config import Settings, get_settings
from classgate.logging import get_logger, sanitize_error_message
from classgate.service.attempts import AttemptTracker, RateLimiter
from classgate.service.audit import AuditLog
from classgate.service.auth import AuthService
from classgate.service.passwords import PasswordHasher, PasswordPolicy
from classgate.service.permissions import PermissionCache, PermissionResolver
from classgate.service.sessions import SessionManager
from classgate.service.tokens import TokenIssuer
from classgate.storage.base import AuthStore
from classgate.storage.memory import MemoryStore
from classgate.storage.postgres import PostgresStore
from classgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root: builds the store, the optional cache and every service.

    Nothing here is a process-wide singleton; callers construct a Runtime
    and pass its services where they are needed.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store = store or self._build_store()
        self.cache = self._build_cache()

        self.audit = AuditLog(self.store)
        self.tokens = TokenIssuer(self.settings, self.cache)
        self.attempts = AttemptTracker(self.store, self.settings, self.cache)
        self.rate_limiter = RateLimiter(self.cache)
        self.permissions = PermissionResolver(
            self.store,
            self.audit,
            self.settings,
            PermissionCache(self.settings.permission_cache_ttl_seconds),
        )
        self.sessions = SessionManager(
            self.store, self.tokens, self.audit, self.settings, self.cache
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            cache=self.cache,
            policy=PasswordPolicy.from_settings(self.settings),
            hasher=PasswordHasher(),
            tokens=self.tokens,
            attempts=self.attempts,
            audit=self.audit,
            permissions=self.permissions,
            sessions=self.sessions,
            rate_limiter=self.rate_limiter,
        )
        logger.info("runtime_init_completed", cache_enabled=self.cache is not None)

    def _build_store(self) -> AuthStore:
        use_memory = self.settings.use_memory_store or self.settings.test_mode
        store_type = "memory" if use_memory else "postgres"
        try:
            if use_memory:
                store: AuthStore = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self) -> Optional[Union[RedisCache, SyncRedisCache]]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # sync client in test mode avoids binding to a short-lived event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session revocation, IP throttling and one-time tokens; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; IP blocks, rate limits and "
                "one-time tokens are in-memory only."
            ),
            mode=fallback_mode,
        )
        return None

    async def close(self) -> None:
        if self.cache:
            await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


__all__ = ["Runtime"]
