"""Unit tests for the session manager.

Tests for:
- Session creation and remember-me lifetimes
- Validation outcomes (revoked, expired, inactive account)
- Single-use refresh rotation
- Bulk revocation and cleanup
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from classgate.service.audit import AuditLog
from classgate.service.sessions import SessionManager
from classgate.service.tokens import TokenIssuer
from classgate.storage.models import AccountStatus, SecurityEventType, utcnow


@pytest.fixture
def manager(memory_store, settings):
    return SessionManager(memory_store, TokenIssuer(settings), AuditLog(memory_store), settings)


def _expire_access(memory_store, session_id):
    memory_store.sessions[session_id].expires_at = utcnow() - timedelta(seconds=1)


def _expire(memory_store, session_id):
    _expire_access(memory_store, session_id)
    memory_store.sessions[session_id].refresh_expires_at = utcnow() - timedelta(seconds=1)


class TestCreateSession:
    """Tests for issuing sessions."""

    async def test_create_and_validate(self, manager, test_user):
        session, token, refresh = await manager.create_session(
            test_user, {"ip_address": "203.0.113.5", "user_agent": "pytest"}
        )
        assert session.token == token
        assert session.refresh_token == refresh
        assert session.ip_address == "203.0.113.5"

        result = await manager.validate(token)
        assert result.valid
        assert result.user.id == test_user.id
        assert result.session.id == session.id

    async def test_default_lifetime(self, manager, test_user):
        session, _, _ = await manager.create_session(test_user)
        lifetime = session.expires_at - session.created_at
        assert lifetime == timedelta(minutes=15)

    async def test_remember_me_lifetime(self, manager, test_user, settings):
        session, _, _ = await manager.create_session(test_user, {"remember_me": True})
        lifetime = session.expires_at - session.created_at
        assert lifetime == timedelta(minutes=settings.remember_me_ttl_minutes)

    async def test_session_mirrored_to_cache(self, memory_store, settings, test_user):
        cache = AsyncMock()
        manager = SessionManager(
            memory_store, TokenIssuer(settings), AuditLog(memory_store), settings, cache
        )
        session, _, _ = await manager.create_session(test_user)
        cache.cache_session.assert_awaited_once_with(
            session.id, test_user.id, session.retained_until
        )
        assert session.retained_until == session.refresh_expires_at

    async def test_cache_failure_does_not_fail_login(self, memory_store, settings, test_user):
        cache = AsyncMock()
        cache.cache_session.side_effect = ConnectionError("redis down")
        cache.is_session_revoked.return_value = False
        manager = SessionManager(
            memory_store, TokenIssuer(settings), AuditLog(memory_store), settings, cache
        )
        _, token, _ = await manager.create_session(test_user)
        assert (await manager.validate(token)).valid


class TestValidate:
    """Tests for validation outcomes."""

    async def test_garbage_token(self, manager):
        result = await manager.validate("not-a-token")
        assert not result.valid
        assert result.reason == "malformed"

    async def test_unknown_session(self, manager, settings, test_user):
        """A well-signed token with no session row is rejected."""
        token = TokenIssuer(settings).issue_access_token(test_user)
        result = await manager.validate(token)
        assert not result.valid
        assert result.reason == "session_not_found"

    async def test_refresh_token_is_not_an_access_token(self, manager, test_user):
        _, _, refresh = await manager.create_session(test_user)
        result = await manager.validate(refresh)
        assert not result.valid
        assert result.reason == "wrong_token_type"

    async def test_revoked_session(self, manager, test_user):
        _, token, _ = await manager.create_session(test_user)
        assert await manager.invalidate(token)
        result = await manager.validate(token)
        assert not result.valid
        assert result.reason == "session_revoked"

    async def test_expired_session_is_retired(self, manager, memory_store, test_user):
        """Expiry is detected lazily and audited."""
        session, token, _ = await manager.create_session(test_user)
        _expire(memory_store, session.id)

        result = await manager.validate(token)
        assert not result.valid
        assert result.reason == "session_expired"
        assert not memory_store.sessions[session.id].is_active
        events = memory_store.list_audit_logs(event_type=SecurityEventType.SESSION_EXPIRED)
        assert len(events) == 1
        assert events[0].session_id == session.id

    async def test_access_expiry_keeps_refresh_window(self, manager, memory_store, test_user):
        """An expired access token still leaves the session refreshable."""
        session, token, refresh = await manager.create_session(test_user)
        _expire_access(memory_store, session.id)

        result = await manager.validate(token)
        assert result.reason == "session_expired"
        assert memory_store.sessions[session.id].is_active

        _, rotated, new_token, _ = await manager.refresh(refresh)
        assert rotated.id != session.id
        assert (await manager.validate(new_token)).valid

    async def test_cached_revocation_rejects_before_store_read(
        self, memory_store, settings, test_user, monkeypatch
    ):
        cache = AsyncMock()
        manager = SessionManager(
            memory_store, TokenIssuer(settings), AuditLog(memory_store), settings, cache
        )
        session, token, _ = await manager.create_session(test_user)
        cache.is_session_revoked.return_value = True

        def unreachable(token):
            raise AssertionError("store read after a cached revocation")

        monkeypatch.setattr(memory_store, "get_session_by_token", unreachable)
        result = await manager.validate(token)
        assert not result.valid
        assert result.reason == "session_revoked"
        cache.is_session_revoked.assert_awaited_once_with(session.id)

    async def test_cache_read_failure_falls_back_to_store(self, memory_store, settings, test_user):
        cache = AsyncMock()
        cache.is_session_revoked.side_effect = RedisConnectionError("connection refused")
        manager = SessionManager(
            memory_store, TokenIssuer(settings), AuditLog(memory_store), settings, cache
        )
        _, token, _ = await manager.create_session(test_user)
        assert (await manager.validate(token)).valid
        await manager.invalidate(token)
        assert (await manager.validate(token)).reason == "session_revoked"

    async def test_inactive_account(self, manager, memory_store, test_user):
        _, token, _ = await manager.create_session(test_user)
        memory_store.update_user(test_user.id, account_status=AccountStatus.SUSPENDED)
        result = await manager.validate(token)
        assert not result.valid
        assert result.reason == "account_inactive"

    async def test_validation_touches_activity(self, manager, memory_store, test_user):
        session, token, _ = await manager.create_session(test_user)
        before = memory_store.sessions[session.id].last_activity
        await asyncio.sleep(0.01)
        await manager.validate(token)
        assert memory_store.sessions[session.id].last_activity > before

    async def test_revoke_between_read_and_touch_wins(self, manager, memory_store, test_user, monkeypatch):
        """A revoke committed after the session read still rejects the request."""
        _, token, _ = await manager.create_session(test_user)
        original_get_user = memory_store.get_user

        def get_user_then_revoke(user_id):
            memory_store.invalidate_session(token)
            return original_get_user(user_id)

        monkeypatch.setattr(memory_store, "get_user", get_user_then_revoke)
        result = await manager.validate(token)
        assert not result.valid
        assert result.reason == "session_revoked"


class TestRefresh:
    """Tests for refresh rotation."""

    async def test_refresh_rotates_session(self, manager, test_user):
        old, old_token, refresh = await manager.create_session(test_user)
        user, session, token, new_refresh = await manager.refresh(refresh)
        assert user.id == test_user.id
        assert session.id != old.id
        assert token != old_token
        assert new_refresh != refresh

        assert (await manager.validate(token)).valid
        assert (await manager.validate(old_token)).reason == "session_revoked"

    async def test_refresh_token_is_single_use(self, manager, test_user):
        _, _, refresh = await manager.create_session(test_user)
        assert (await manager.refresh(refresh))[0] is not None
        assert await manager.refresh(refresh) == (None, None, None, None)

    async def test_concurrent_refresh_has_one_winner(self, manager, test_user):
        _, _, refresh = await manager.create_session(test_user)
        results = await asyncio.gather(*(manager.refresh(refresh) for _ in range(5)))
        winners = [r for r in results if r[0] is not None]
        assert len(winners) == 1

    async def test_access_token_cannot_refresh(self, manager, test_user):
        _, token, _ = await manager.create_session(test_user)
        assert await manager.refresh(token) == (None, None, None, None)

    async def test_inactive_account_cannot_refresh(self, manager, memory_store, test_user):
        _, _, refresh = await manager.create_session(test_user)
        memory_store.update_user(test_user.id, account_status=AccountStatus.INACTIVE)
        assert await manager.refresh(refresh) == (None, None, None, None)

    async def test_refresh_keeps_login_method(self, manager, test_user):
        old, _, refresh = await manager.create_session(test_user, {"login_method": "sso"})
        _, session, _, _ = await manager.refresh(refresh)
        assert session.login_method == old.login_method


class TestRevocation:
    """Tests for bulk revocation and cleanup."""

    async def test_invalidate_all_for_user(self, manager, test_user):
        tokens = [(await manager.create_session(test_user))[1] for _ in range(3)]
        assert await manager.invalidate_all_for_user(test_user.id)
        for token in tokens:
            assert not (await manager.validate(token)).valid
        assert not await manager.invalidate_all_for_user(test_user.id)

    async def test_invalidate_by_refresh_token(self, manager, test_user):
        _, token, refresh = await manager.create_session(test_user)
        assert await manager.invalidate_by_refresh_token(refresh)
        assert not (await manager.validate(token)).valid

    async def test_invalidate_unknown_token(self, manager):
        assert not await manager.invalidate("missing")

    async def test_cleanup_expired(self, manager, memory_store, test_user):
        expired, _, _ = await manager.create_session(test_user)
        live, live_token, _ = await manager.create_session(test_user)
        _expire(memory_store, expired.id)

        assert await manager.cleanup_expired() == 1
        assert expired.id not in memory_store.sessions
        assert (await manager.validate(live_token)).valid

    async def test_cleanup_keeps_refreshable_sessions(self, manager, memory_store, test_user):
        session, _, refresh = await manager.create_session(test_user)
        _expire_access(memory_store, session.id)

        assert await manager.cleanup_expired() == 0
        assert session.id in memory_store.sessions
        assert (await manager.refresh(refresh))[0] is not None

    async def test_revocation_forgets_cache_entries(self, memory_store, settings, test_user):
        cache = AsyncMock()
        manager = SessionManager(
            memory_store, TokenIssuer(settings), AuditLog(memory_store), settings, cache
        )
        session, token, _ = await manager.create_session(test_user)
        await manager.invalidate(token)
        session_id, ttl = cache.revoke_session.await_args.args
        assert session_id == session.id
        # kept until the refresh token could no longer rotate the session
        refresh_seconds = settings.refresh_token_ttl_minutes * 60
        assert refresh_seconds - 60 <= ttl <= refresh_seconds

        await manager.invalidate_all_for_user(test_user.id)
        cache.revoke_user_sessions.assert_awaited_once_with(
            test_user.id,
            60 * max(settings.remember_me_ttl_minutes, settings.refresh_token_ttl_minutes),
        )
