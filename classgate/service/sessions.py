from __future__ import annotations

import uuid
from typing import Optional, Tuple

from classgate.config import Settings
from classgate.logging import get_logger, sanitize_error_message
from classgate.schemas import SessionValidation
from classgate.service.audit import AuditLog
from classgate.service.calls import call_cache, call_store
from classgate.service.tokens import ACCESS, REFRESH, TokenIssuer
from classgate.storage.base import AuthStore
from classgate.storage.errors import StorageError
from classgate.storage.models import (
    EventCategory,
    LoginMethod,
    RiskLevel,
    SecurityEventType,
    Session,
    UserAccount,
    utcnow,
)
from classgate.storage.redis_cache import RedisCache, ttl_until

logger = get_logger(__name__)


class SessionManager:
    """Issues, validates and revokes sessions.

    A session is ``Issued`` on creation and terminal once it is expired or
    revoked. Expiry is detected lazily on validation. A row whose access
    window has passed stays refreshable until its refresh expiry, and
    ``cleanup_expired`` only purges rows past both. Storage is the source of
    truth: validation always ends with a conditional touch of the stored
    row, so a revoke that commits first always wins. The optional cache only
    lets known revocations fail before the store is read.
    """

    def __init__(
        self,
        store: AuthStore,
        tokens: TokenIssuer,
        audit: AuditLog,
        settings: Settings,
        cache: Optional[RedisCache] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.audit = audit
        self.settings = settings
        self.cache = cache

    def session_ttl_minutes(self, remember_me: bool = False) -> int:
        if remember_me:
            return self.settings.remember_me_ttl_minutes
        return self.settings.access_token_ttl_minutes

    async def create_session(
        self, user: UserAccount, metadata: Optional[dict] = None
    ) -> Tuple[Session, str, str]:
        metadata = metadata or {}
        ttl_minutes = self.session_ttl_minutes(bool(metadata.get("remember_me")))
        session_id = str(uuid.uuid4())
        access_token = self.tokens.issue_access_token(
            user, session_id=session_id, ttl_minutes=ttl_minutes
        )
        refresh_token = self.tokens.issue_refresh_token(user, session_id=session_id)
        session = Session.new(
            user.id,
            access_token,
            ttl_minutes,
            session_id=session_id,
            refresh_token=refresh_token,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
            login_method=LoginMethod(metadata.get("login_method") or LoginMethod.PASSWORD),
            ip_address=metadata.get("ip_address"),
            user_agent=metadata.get("user_agent"),
        )
        session = await call_store(self.store.create_session, session)
        await self._index(session)
        logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            expires_at=session.expires_at.isoformat(),
        )
        return session, access_token, refresh_token

    @property
    def _max_retention_seconds(self) -> int:
        return 60 * max(
            self.settings.access_token_ttl_minutes,
            self.settings.remember_me_ttl_minutes,
            self.settings.refresh_token_ttl_minutes,
        )

    async def _index(self, session: Session) -> None:
        if not self.cache:
            return
        try:
            await call_cache(
                self.cache.cache_session, session.id, session.user_id, session.retained_until
            )
        except StorageError as exc:
            logger.warning(
                "session_cache_write_failed",
                session_id=session.id,
                error=sanitize_error_message(str(exc)),
            )

    async def _publish_revocation(
        self, session: Optional[Session] = None, user_id: Optional[str] = None
    ) -> None:
        # the store already holds the revocation; the cache only speeds up rejection
        if not self.cache:
            return
        try:
            if session:
                ttl = ttl_until(session.retained_until)
                await call_cache(self.cache.revoke_session, session.id, ttl)
            if user_id:
                await call_cache(
                    self.cache.revoke_user_sessions, user_id, self._max_retention_seconds
                )
        except StorageError as exc:
            logger.warning(
                "session_cache_revoke_failed",
                session_id=session.id if session else None,
                user_id=user_id,
                error=sanitize_error_message(str(exc)),
            )

    async def _known_revoked(self, session_id: Optional[str]) -> bool:
        if not self.cache or not session_id:
            return False
        try:
            return bool(await call_cache(self.cache.is_session_revoked, session_id))
        except StorageError as exc:
            logger.warning(
                "session_cache_read_failed",
                session_id=session_id,
                error=sanitize_error_message(str(exc)),
            )
            return False

    async def validate(self, token: str) -> SessionValidation:
        claims, reason = self.tokens.verify(token, expected_type=ACCESS)
        if not claims:
            return SessionValidation(valid=False, reason=reason)
        if await self._known_revoked(claims.get("sid")):
            return SessionValidation(valid=False, reason="session_revoked")

        session = await call_store(self.store.get_session_by_token, token)
        if not session:
            return SessionValidation(valid=False, reason="session_not_found")
        if not session.is_active:
            return SessionValidation(valid=False, session=session, reason="session_revoked")

        now = utcnow()
        if session.is_expired(now):
            # the row stays active while its refresh token can still rotate it
            if not session.can_refresh_at(now):
                await call_store(self.store.invalidate_session, token)
                await self._publish_revocation(session=session)
            await self.audit.record(
                SecurityEventType.SESSION_EXPIRED,
                EventCategory.AUTHENTICATION,
                "Session expired",
                success=False,
                risk_level=RiskLevel.LOW,
                user_id=session.user_id,
                session_id=session.id,
                ip_address=session.ip_address,
            )
            return SessionValidation(valid=False, session=session, reason="session_expired")

        if claims.get("sub") != session.user_id:
            logger.warning("session_subject_mismatch", session_id=session.id)
            return SessionValidation(valid=False, reason="session_not_found")

        user = await call_store(self.store.get_user, session.user_id)
        if not user:
            return SessionValidation(valid=False, session=session, reason="user_not_found")
        if not user.is_active:
            return SessionValidation(
                valid=False, user=user, session=session, reason="account_inactive"
            )

        touched = await call_store(self.store.touch_session, token, now)
        if not touched:
            # revoked or expired between the read and the touch
            return SessionValidation(valid=False, user=user, reason="session_revoked")
        return SessionValidation(valid=True, user=user, session=touched)

    async def invalidate(self, token: str) -> bool:
        session = await call_store(self.store.get_session_by_token, token)
        removed = await call_store(self.store.invalidate_session, token)
        if session:
            await self._publish_revocation(session=session)
        return removed

    async def invalidate_all_for_user(self, user_id: str) -> bool:
        count = await call_store(self.store.invalidate_user_sessions, user_id)
        await self._publish_revocation(user_id=user_id)
        logger.info("user_sessions_invalidated", user_id=user_id, count=count)
        return count > 0

    async def invalidate_by_refresh_token(self, refresh_token: str) -> bool:
        session = await call_store(self.store.get_session_by_refresh_token, refresh_token)
        removed = await call_store(self.store.invalidate_session_by_refresh_token, refresh_token)
        if session:
            await self._publish_revocation(session=session)
        return removed

    async def refresh(
        self, refresh_token: str, metadata: Optional[dict] = None
    ) -> Tuple[Optional[UserAccount], Optional[Session], Optional[str], Optional[str]]:
        """Rotate a session. Returns all ``None`` when the refresh token is unusable."""
        empty = (None, None, None, None)
        claims, reason = self.tokens.verify(refresh_token, expected_type=REFRESH)
        if not claims:
            logger.info("refresh_token_rejected", reason=reason)
            return empty
        session = await call_store(self.store.get_session_by_refresh_token, refresh_token)
        if (
            not session
            or not session.can_refresh_at(utcnow())
            or session.user_id != claims.get("sub")
        ):
            return empty
        user = await call_store(self.store.get_user, session.user_id)
        if not user or not user.is_active:
            return empty
        # single use: only the caller whose invalidation lands may rotate
        if not await call_store(self.store.invalidate_session_by_refresh_token, refresh_token):
            return empty
        await self._publish_revocation(session=session)
        metadata = dict(metadata or {})
        metadata.setdefault("login_method", session.login_method)
        new_session, access_token, new_refresh = await self.create_session(user, metadata)
        return user, new_session, access_token, new_refresh

    async def cleanup_expired(self) -> int:
        removed = await call_store(self.store.delete_expired_sessions, utcnow())
        if removed:
            logger.info("expired_sessions_purged", count=removed)
        return removed
