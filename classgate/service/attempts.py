from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple, Union

from classgate.config import Settings
from classgate.logging import get_logger
from classgate.service.calls import call_cache, call_store
from classgate.service.security import hash_sensitive_data
from classgate.storage.base import AuthStore
from classgate.storage.common import parse_ip_address
from classgate.storage.models import (
    AccountLockout,
    FailedLoginAttempt,
    FailureReason,
    LockoutReason,
)
from classgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _ip_key(ip: Optional[str]) -> Optional[str]:
    normalized = parse_ip_address(ip)
    return hash_sensitive_data(normalized) if normalized else None


class AttemptTracker:
    """Failed-login bookkeeping: IP throttling and account lockout.

    The two mechanisms are independent. IP throttling counts failures from
    an address inside a sliding window and blocks that address for a fixed
    period; account lockout counts consecutive failures on one account.
    ``reset`` only touches the account side.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self._state_lock = threading.Lock()
        # ip digest -> blocked until, used when Redis is unavailable
        self._ip_blocks: dict[str, datetime] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self.settings.ip_throttle_window_minutes)

    @property
    def lockout_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_duration_minutes)

    async def record_failure(
        self,
        identifier: str,
        ip: Optional[str],
        reason: FailureReason,
        user_agent: Optional[str] = None,
    ) -> None:
        attempt = FailedLoginAttempt.new(
            identifier=identifier,
            ip_address=parse_ip_address(ip),
            failure_reason=reason,
            user_agent=user_agent,
        )
        await call_store(self.store.record_failed_attempt, attempt)
        ip_key = _ip_key(ip)
        if not ip_key:
            return
        recent = await call_store(
            self.store.count_failed_attempts,
            since=self._now() - self.window,
            ip_address=attempt.ip_address,
        )
        if recent >= self.settings.ip_throttle_max_attempts:
            await self._block_ip(ip_key)
            logger.warning("ip_blocked", ip_hash=ip_key[:16], recent_failures=recent)

    async def _block_ip(self, ip_key: str) -> None:
        seconds = self.settings.ip_block_minutes * 60
        if self.cache:
            await call_cache(self.cache.set_ip_block, ip_key, seconds)
            return
        with self._state_lock:
            self._ip_blocks[ip_key] = self._now() + timedelta(seconds=seconds)

    async def block_remaining(self, ip: Optional[str]) -> int:
        """Seconds until the address may try again; 0 when it is not blocked."""
        ip_key = _ip_key(ip)
        if not ip_key:
            return 0
        if self.cache:
            remaining = await call_cache(self.cache.get_ip_block_ttl, ip_key)
        else:
            now = self._now()
            with self._state_lock:
                until = self._ip_blocks.get(ip_key)
                if until and until <= now:
                    del self._ip_blocks[ip_key]
                    until = None
            remaining = int((until - now).total_seconds()) + 1 if until else 0
        if remaining > 0:
            return remaining
        recent = await call_store(
            self.store.count_failed_attempts,
            since=self._now() - self.window,
            ip_address=parse_ip_address(ip),
        )
        if recent >= self.settings.ip_throttle_max_attempts:
            # Failures still inside the window; retry once the window slides
            return int(self.window.total_seconds())
        return 0

    async def is_blocked(self, ip: Optional[str]) -> bool:
        return await self.block_remaining(ip) > 0

    async def register_account_failure(self, user_id: str) -> int:
        """Atomically bump the account's failure counter and return the new value."""
        return await call_store(self.store.increment_login_attempts, user_id)

    async def should_lock_account(self, user_id: str, attempts: Optional[int] = None) -> bool:
        if attempts is None:
            user = await call_store(self.store.get_user, user_id)
            attempts = user.login_attempts if user else 0
        return attempts >= self.settings.max_login_attempts

    async def lock(
        self,
        user_id: str,
        reason: LockoutReason = LockoutReason.FAILED_ATTEMPTS,
        *,
        locked_by: Optional[str] = None,
        duration: Optional[timedelta] = None,
        indefinite: bool = False,
    ) -> AccountLockout:
        """Create a lockout, superseding any active one for the account.

        ``duration`` defaults to the configured lockout period. An indefinite
        lockout has no end time and holds until ``reset``.
        """
        now = self._now()
        locked_until = None if indefinite else now + (duration or self.lockout_duration)
        lockout = AccountLockout(
            id=str(uuid.uuid4()),
            user_id=user_id,
            reason=reason,
            locked_at=now,
            locked_until=locked_until,
            locked_by=locked_by,
        )
        created = await call_store(self.store.create_lockout, lockout)
        logger.warning(
            "account_locked",
            user_id=user_id,
            reason=reason.value,
            locked_until=created.locked_until.isoformat() if created.locked_until else None,
        )
        return created

    async def active_lockout(self, user_id: str) -> Optional[AccountLockout]:
        """The lockout in force for ``user_id``; an expired one is retired lazily."""
        lockout = await call_store(self.store.get_active_lockout, user_id)
        if not lockout:
            return None
        if lockout.is_in_force(self._now()):
            return lockout
        # Expired: retire it and give the account a fresh failure budget
        await call_store(self.store.clear_lockout, user_id)
        await call_store(self.store.update_user, user_id, login_attempts=0)
        logger.info("account_lockout_expired", user_id=user_id)
        return None

    async def reset(self, user_id: str) -> None:
        await call_store(self.store.update_user, user_id, login_attempts=0)
        await call_store(self.store.clear_lockout, user_id)


class RateLimiter:
    """Token-bucket limiter backed by Redis, with an in-process fallback."""

    def __init__(self, cache: Optional[RedisCache] = None) -> None:
        self.cache = cache
        self._lock = threading.Lock()
        self._buckets: dict[str, tuple[float, datetime]] = {}

    async def check(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        """Consume ``cost`` tokens for ``key``.

        Returns:
            bool if return_remaining is False, else (allowed, remaining, retry_after)
        """
        if limit <= 0:
            return (True, limit, 0) if return_remaining else True
        if window_seconds <= 0:
            logger.warning(
                "rate_limit_invalid_window",
                key=key,
                window_seconds=window_seconds,
                message="Invalid rate limit window_seconds; defaulting to 60 seconds",
            )
            window_seconds = 60
        if self.cache:
            return await call_cache(
                self.cache.check_rate_limit,
                key,
                limit,
                window_seconds,
                return_remaining=return_remaining,
                cost=cost,
            )
        now = datetime.now(timezone.utc)
        refill_rate = float(limit) / float(window_seconds)
        with self._lock:
            tokens, last_ts = self._buckets.get(key, (float(limit), now))
            elapsed = max(0.0, (now - last_ts).total_seconds())
            tokens = min(float(limit), tokens + elapsed * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now)
            reset_seconds = int((cost - tokens) / refill_rate) + 1 if not allowed else 0
            remaining = int(tokens)
        if return_remaining:
            return (allowed, remaining, reset_seconds)
        return allowed
