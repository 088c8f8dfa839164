"""Unit tests for failed-attempt tracking and the rate limiter.

Tests for:
- IP throttling over a sliding window
- Account lockout threshold and lazy expiry
- Independence of IP and account state
- Token-bucket rate limiting
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from classgate.service.attempts import AttemptTracker, RateLimiter
from classgate.service.calls import storage_deadline
from classgate.storage.errors import StorageError, StorageTimeout
from classgate.storage.models import FailedLoginAttempt, FailureReason, LockoutReason, utcnow


@pytest.fixture
def tracker(memory_store, settings):
    return AttemptTracker(memory_store, settings)


class TestIpThrottle:
    """Tests for address-based throttling."""

    async def test_blocks_after_threshold(self, tracker):
        """The fifth failure from one address blocks it."""
        for _ in range(4):
            await tracker.record_failure("x@example.com", "203.0.113.7", FailureReason.INVALID_CREDENTIALS)
        assert not await tracker.is_blocked("203.0.113.7")

        await tracker.record_failure("y@example.com", "203.0.113.7", FailureReason.INVALID_CREDENTIALS)
        assert await tracker.is_blocked("203.0.113.7")
        remaining = await tracker.block_remaining("203.0.113.7")
        assert 0 < remaining <= 30 * 60 + 1

    async def test_other_addresses_unaffected(self, tracker):
        for _ in range(5):
            await tracker.record_failure("x@example.com", "203.0.113.7", FailureReason.INVALID_CREDENTIALS)
        assert not await tracker.is_blocked("198.51.100.1")

    async def test_addresses_are_normalized(self, tracker):
        """Equivalent spellings of one IPv6 address share a counter."""
        for _ in range(5):
            await tracker.record_failure("x@example.com", "2001:db8::1", FailureReason.INVALID_CREDENTIALS)
        assert await tracker.is_blocked("2001:0db8:0000:0000:0000:0000:0000:0001")

    async def test_no_address_is_never_blocked(self, tracker):
        for _ in range(10):
            await tracker.record_failure("x@example.com", None, FailureReason.INVALID_CREDENTIALS)
        assert not await tracker.is_blocked(None)

    async def test_failures_outside_window_do_not_count(self, tracker, memory_store):
        old = utcnow() - timedelta(minutes=16)
        for _ in range(6):
            attempt = FailedLoginAttempt.new("x@example.com", "203.0.113.9", FailureReason.INVALID_CREDENTIALS)
            attempt.attempt_time = old
            memory_store.record_failed_attempt(attempt)
        assert not await tracker.is_blocked("203.0.113.9")

    async def test_block_marker_goes_to_cache(self, memory_store, settings):
        """With Redis available the block is a TTL key, not process state."""
        cache = AsyncMock()
        cache.get_ip_block_ttl.return_value = 0
        tracker = AttemptTracker(memory_store, settings, cache)
        for _ in range(5):
            await tracker.record_failure("x@example.com", "203.0.113.7", FailureReason.INVALID_CREDENTIALS)
        cache.set_ip_block.assert_awaited()
        _, ttl = cache.set_ip_block.await_args.args
        assert ttl == settings.ip_block_minutes * 60

        cache.get_ip_block_ttl.return_value = 120
        assert await tracker.block_remaining("203.0.113.7") == 120

    async def test_cache_outage_raises_storage_error(self, memory_store, settings):
        """An unreachable Redis surfaces as StorageError, never a raw client error."""
        cache = AsyncMock()
        cache.get_ip_block_ttl.side_effect = RedisConnectionError("Error 111 connecting")
        cache.set_ip_block.side_effect = ConnectionRefusedError(111, "Connection refused")
        tracker = AttemptTracker(memory_store, settings, cache)

        with pytest.raises(StorageError):
            await tracker.block_remaining("203.0.113.7")
        with pytest.raises(StorageError):
            for _ in range(5):
                await tracker.record_failure(
                    "x@example.com", "203.0.113.7", FailureReason.INVALID_CREDENTIALS
                )

    async def test_slow_cache_times_out(self, memory_store, settings):
        async def hang(ip_key):
            await asyncio.sleep(1)
            return 0

        cache = AsyncMock()
        cache.get_ip_block_ttl.side_effect = hang
        tracker = AttemptTracker(memory_store, settings, cache)
        with storage_deadline(0.05):
            with pytest.raises(StorageTimeout):
                await tracker.block_remaining("203.0.113.7")


class TestAccountLockout:
    """Tests for account-scoped lockout."""

    async def test_counter_is_atomic_and_thresholded(self, tracker, test_user):
        counts = [await tracker.register_account_failure(test_user.id) for _ in range(5)]
        assert counts == [1, 2, 3, 4, 5]
        assert not await tracker.should_lock_account(test_user.id, 4)
        assert await tracker.should_lock_account(test_user.id, 5)
        assert await tracker.should_lock_account(test_user.id)

    async def test_lock_and_reset(self, tracker, test_user):
        lockout = await tracker.lock(test_user.id)
        assert lockout.reason == LockoutReason.FAILED_ATTEMPTS
        assert lockout.locked_until - lockout.locked_at == timedelta(minutes=30)
        assert await tracker.active_lockout(test_user.id) is not None

        await tracker.register_account_failure(test_user.id)
        await tracker.reset(test_user.id)
        assert await tracker.active_lockout(test_user.id) is None

    async def test_expired_lockout_is_retired(self, tracker, memory_store, test_user):
        """A lockout past locked_until is cleared lazily with a fresh budget."""
        await tracker.register_account_failure(test_user.id)
        await tracker.lock(test_user.id, duration=timedelta(seconds=-1))
        assert await tracker.active_lockout(test_user.id) is None
        assert memory_store.get_active_lockout(test_user.id) is None
        assert memory_store.get_user(test_user.id).login_attempts == 0

    async def test_new_lock_supersedes_old(self, tracker, memory_store, test_user):
        await tracker.lock(test_user.id)
        second = await tracker.lock(test_user.id, LockoutReason.ADMIN_ACTION, locked_by="admin-1")
        active = memory_store.get_active_lockout(test_user.id)
        assert active.id == second.id
        assert sum(1 for lock in memory_store.lockouts if lock.is_active) == 1

    async def test_reset_leaves_ip_state_alone(self, tracker, test_user):
        """IP throttling and account lockout are independent."""
        for _ in range(5):
            await tracker.record_failure("test@example.com", "203.0.113.7", FailureReason.INVALID_CREDENTIALS)
        await tracker.reset(test_user.id)
        assert await tracker.is_blocked("203.0.113.7")


class TestRateLimiter:
    """Tests for the in-process token bucket."""

    async def test_allows_up_to_limit(self):
        limiter = RateLimiter()
        results = [await limiter.check("k", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_return_remaining(self):
        limiter = RateLimiter()
        allowed, remaining, retry_after = await limiter.check("k", 2, 60, return_remaining=True)
        assert allowed and remaining == 1 and retry_after == 0
        await limiter.check("k", 2, 60)
        allowed, remaining, retry_after = await limiter.check("k", 2, 60, return_remaining=True)
        assert not allowed
        assert retry_after > 0

    async def test_keys_are_independent(self):
        limiter = RateLimiter()
        assert await limiter.check("a", 1, 60)
        assert await limiter.check("b", 1, 60)
        assert not await limiter.check("a", 1, 60)

    async def test_non_positive_limit_disables(self):
        limiter = RateLimiter()
        assert all([await limiter.check("k", 0, 60) for _ in range(10)])

    async def test_invalid_window_defaults(self):
        limiter = RateLimiter()
        assert await limiter.check("k", 1, 0)
        assert not await limiter.check("k", 1, 0)

    async def test_delegates_to_cache(self):
        cache = AsyncMock()
        cache.check_rate_limit.return_value = (False, 0, 42)
        limiter = RateLimiter(cache)
        assert await limiter.check("k", 5, 60, return_remaining=True) == (False, 0, 42)
        cache.check_rate_limit.assert_awaited_once_with(
            "k", 5, 60, return_remaining=True, cost=1
        )

    async def test_cache_outage_raises_storage_error(self):
        cache = AsyncMock()
        cache.check_rate_limit.side_effect = RedisConnectionError("connection reset")
        with pytest.raises(StorageError):
            await RateLimiter(cache).check("k", 5, 60)
