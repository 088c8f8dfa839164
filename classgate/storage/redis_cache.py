from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

KEY_PREFIX = "classgate"

# Token bucket held in one hash: refill by elapsed time, then try to spend
_BUCKET_SCRIPT = """
local bucket = KEYS[1]
local now = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local state = redis.call('HMGET', bucket, 'level', 'updated')
local level = tonumber(state[1]) or capacity
local updated = tonumber(state[2]) or now
level = math.min(capacity, level + math.max(0, now - updated) * rate)

local allowed = 0
local wait = 0
if level >= cost then
  level = level - cost
  allowed = 1
else
  wait = math.ceil((cost - level) / rate)
end

redis.call('HSET', bucket, 'level', level, 'updated', now)
redis.call('EXPIRE', bucket, math.max(1, math.ceil(capacity / rate)))
return {allowed, tostring(level), wait}
"""

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def session_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:session:{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"{KEY_PREFIX}:user_sessions:{user_id}"


def ip_block_key(ip_digest: str) -> str:
    return f"{KEY_PREFIX}:ip_block:{ip_digest}"


def revoked_key(session_id: str) -> str:
    return f"{KEY_PREFIX}:revoked:{session_id}"


def one_time_key(purpose: str, digest: str) -> str:
    return f"{KEY_PREFIX}:once:{purpose}:{digest}"


def rate_key(subject: str) -> str:
    """Hash rate-limit subjects so delimiters inside them cannot collide."""
    return f"{KEY_PREFIX}:rate:{hashlib.sha256(subject.encode()).hexdigest()}"


def ttl_until(expires_at: datetime) -> int:
    """Seconds until an absolute expiry, never less than one."""
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    remaining = (expires_at - datetime.now(timezone.utc)).total_seconds()
    return max(1, int(remaining))


def _bucket_args(limit: int, window_seconds: int, cost: int) -> list:
    return [time.time(), float(limit) / float(window_seconds), limit, max(1, cost)]


def _bucket_result(reply: Sequence, return_remaining: bool) -> RateLimitResult:
    allowed_raw, level_raw, wait_raw = reply
    allowed = int(allowed_raw) == 1
    if not return_remaining:
        return allowed
    return allowed, max(0, int(float(level_raw))), int(wait_raw or 0)


class RedisCache:
    """asyncio Redis client for session revocations, throttles and one-time tokens.

    Revoked session ids are kept until the session could no longer be used,
    so validation can reject them without a store read. Each user's live
    session ids are indexed so ``revoke_user_sessions`` can mark them together.
    The store stays authoritative: a missing entry only means "not known revoked".
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Ping through a throwaway sync client; the async pool stays unbound."""
        client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            client.ping()
        finally:
            client.close()

    async def cache_session(
        self, session_id: str, user_id: str, retained_until: datetime
    ) -> None:
        ttl = ttl_until(retained_until)
        index = user_sessions_key(user_id)
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(session_key(session_id), user_id, ex=ttl)
            pipe.sadd(index, session_id)
            pipe.expire(index, ttl)
            await pipe.execute()

    async def revoke_session(self, session_id: str, ttl_seconds: int) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.set(revoked_key(session_id), "1", ex=max(1, ttl_seconds))
            pipe.delete(session_key(session_id))
            await pipe.execute()

    async def revoke_user_sessions(self, user_id: str, ttl_seconds: int) -> int:
        """Mark every indexed session of a user revoked and return how many there were."""
        index = user_sessions_key(user_id)
        session_ids = await self.client.smembers(index)
        if not session_ids:
            return 0
        async with self.client.pipeline(transaction=True) as pipe:
            for sid in session_ids:
                pipe.set(revoked_key(sid), "1", ex=max(1, ttl_seconds))
            pipe.delete(index, *(session_key(sid) for sid in session_ids))
            await pipe.execute()
        return len(session_ids)

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(revoked_key(session_id)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        reply = await self._bucket(
            keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost)
        )
        return _bucket_result(reply, return_remaining)

    async def set_ip_block(self, ip_digest: str, ttl_seconds: int) -> None:
        await self.client.set(ip_block_key(ip_digest), "1", ex=max(1, ttl_seconds))

    async def get_ip_block_ttl(self, ip_digest: str) -> int:
        """Seconds left on an IP block, 0 when none is in force."""
        return max(0, int(await self.client.ttl(ip_block_key(ip_digest)) or 0))

    async def store_one_time_token(
        self, purpose: str, digest: str, subject: str, ttl_seconds: int
    ) -> None:
        await self.client.set(one_time_key(purpose, digest), subject, ex=max(1, ttl_seconds))

    async def pop_one_time_token(self, purpose: str, digest: str) -> Optional[str]:
        # GETDEL: a token can be redeemed exactly once
        return await self.client.getdel(one_time_key(purpose, digest))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Same surface as RedisCache over a blocking client.

    Used under TEST_MODE, where pytest runs every async test in its own event
    loop and a pooled asyncio client would outlive the loop it was bound to.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._bucket = self.client.register_script(_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def cache_session(
        self, session_id: str, user_id: str, retained_until: datetime
    ) -> None:
        ttl = ttl_until(retained_until)
        index = user_sessions_key(user_id)
        with self.client.pipeline(transaction=True) as pipe:
            pipe.set(session_key(session_id), user_id, ex=ttl)
            pipe.sadd(index, session_id)
            pipe.expire(index, ttl)
            pipe.execute()

    async def revoke_session(self, session_id: str, ttl_seconds: int) -> None:
        with self.client.pipeline(transaction=True) as pipe:
            pipe.set(revoked_key(session_id), "1", ex=max(1, ttl_seconds))
            pipe.delete(session_key(session_id))
            pipe.execute()

    async def revoke_user_sessions(self, user_id: str, ttl_seconds: int) -> int:
        index = user_sessions_key(user_id)
        session_ids = self.client.smembers(index)
        if not session_ids:
            return 0
        with self.client.pipeline(transaction=True) as pipe:
            for sid in session_ids:
                pipe.set(revoked_key(sid), "1", ex=max(1, ttl_seconds))
            pipe.delete(index, *(session_key(sid) for sid in session_ids))
            pipe.execute()
        return len(session_ids)

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(self.client.exists(revoked_key(session_id)))

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        reply = self._bucket(keys=[rate_key(key)], args=_bucket_args(limit, window_seconds, cost))
        return _bucket_result(reply, return_remaining)

    async def set_ip_block(self, ip_digest: str, ttl_seconds: int) -> None:
        self.client.set(ip_block_key(ip_digest), "1", ex=max(1, ttl_seconds))

    async def get_ip_block_ttl(self, ip_digest: str) -> int:
        return max(0, int(self.client.ttl(ip_block_key(ip_digest)) or 0))

    async def store_one_time_token(
        self, purpose: str, digest: str, subject: str, ttl_seconds: int
    ) -> None:
        self.client.set(one_time_key(purpose, digest), subject, ex=max(1, ttl_seconds))

    async def pop_one_time_token(self, purpose: str, digest: str) -> Optional[str]:
        return self.client.getdel(one_time_key(purpose, digest))

    async def close(self) -> None:
        self.client.close()
