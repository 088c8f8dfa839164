from __future__ import annotations

import asyncio
import contextlib
from datetime import timedelta
from typing import Iterator, List, Optional

from classgate.config import Settings
from classgate.logging import (
    get_correlation_id,
    get_logger,
    sanitize_error_message,
    set_correlation_id,
)
from classgate.schemas import (
    AccessResult,
    LoginRequest,
    LoginResult,
    RegisterRequest,
    RegisterResult,
    RequestContext,
    SessionValidation,
)
from classgate.service.attempts import AttemptTracker, RateLimiter
from classgate.service.audit import AuditLog
from classgate.service.calls import call_store, current_deadline, storage_deadline
from classgate.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from classgate.service.passwords import PasswordHasher, PasswordPolicy
from classgate.service.permissions import PermissionResolver, can_manage_role
from classgate.service.security import hash_sensitive_data
from classgate.service.sessions import SessionManager
from classgate.service.tokens import EMAIL_VERIFICATION, PASSWORD_RESET, TokenIssuer
from classgate.storage.base import AuthStore
from classgate.storage.common import normalize_email
from classgate.storage.errors import ConstraintViolation, StorageError, StorageTimeout
from classgate.storage.models import (
    AccountStatus,
    EventCategory,
    FailureReason,
    LockoutReason,
    Permission,
    RiskLevel,
    Role,
    SecurityEventType,
    Session,
    UserAccount,
    utcnow,
)
from classgate.storage.redis_cache import RedisCache

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
ACCOUNT_UNAVAILABLE = "Account is not available for login"
OPERATION_FAILED = "The operation could not be completed. Please try again."


class AuthService:
    """Registration, login and account lifecycle over the auth components.

    User-facing failure messages are generic. The audit log records the
    true reason for every security-relevant outcome.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        cache: Optional[RedisCache] = None,
        policy: Optional[PasswordPolicy] = None,
        hasher: Optional[PasswordHasher] = None,
        tokens: Optional[TokenIssuer] = None,
        attempts: Optional[AttemptTracker] = None,
        audit: Optional[AuditLog] = None,
        permissions: Optional[PermissionResolver] = None,
        sessions: Optional[SessionManager] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.policy = policy or PasswordPolicy.from_settings(settings)
        self.hasher = hasher or PasswordHasher()
        self.tokens = tokens or TokenIssuer(settings, cache)
        self.attempts = attempts or AttemptTracker(store, settings, cache)
        self.audit = audit or AuditLog(store)
        self.permissions = permissions or PermissionResolver(store, self.audit, settings)
        self.sessions = sessions or SessionManager(
            store, self.tokens, self.audit, settings, cache
        )
        self.rate_limiter = rate_limiter or RateLimiter(cache)
        self.logger = logger

    @contextlib.contextmanager
    def _deadline(self) -> Iterator[None]:
        """Keep a caller-supplied deadline, otherwise apply the configured one.

        Also tags the operation with a correlation id when the caller has not.
        """
        if get_correlation_id() is None:
            set_correlation_id()
        with storage_deadline(current_deadline(self.settings.storage_timeout_seconds)):
            yield

    @staticmethod
    def _origin(context: Optional[RequestContext]) -> dict:
        if not context:
            return {"ip_address": None, "user_agent": None}
        return {"ip_address": context.ip_address, "user_agent": context.user_agent}

    async def _storage_failure(
        self,
        operation: str,
        exc: StorageError,
        event_type: SecurityEventType,
        *,
        category: EventCategory = EventCategory.AUTHENTICATION,
        user_id: Optional[str] = None,
        context: Optional[RequestContext] = None,
        metadata: Optional[dict] = None,
    ) -> ServerError:
        reason = "storage_timeout" if isinstance(exc, StorageTimeout) else "storage_error"
        self.logger.error(
            "auth_operation_failed",
            operation=operation,
            reason=reason,
            user_id=user_id,
            error=sanitize_error_message(str(exc)),
        )
        await self.audit.record(
            event_type,
            category,
            f"{operation} failed: {reason}",
            success=False,
            risk_level=RiskLevel.HIGH,
            user_id=user_id,
            metadata={**(metadata or {}), "reason": reason, "operation": operation},
            **self._origin(context),
        )
        return ServerError(OPERATION_FAILED)

    async def _hash(self, password: str) -> tuple[str, str]:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify_password(self, user_id: str, password: str) -> bool:
        record = await call_store(self.store.get_password_record, user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            await asyncio.to_thread(self.hasher.burn, password)
            return False
        return await asyncio.to_thread(
            self.hasher.verify, record.password_hash, record.password_algo, password
        )

    async def _rehash_if_needed(self, user_id: str, password: str) -> None:
        """Upgrade a verified hash whose argon2 parameters are out of date."""
        record = await call_store(self.store.get_password_record, user_id)
        if not record or not self.hasher.needs_rehash(record.password_hash):
            return
        password_hash, algo = await self._hash(password)
        try:
            await call_store(self.store.save_password, user_id, password_hash, algo)
        except StorageError as exc:
            self.logger.warning(
                "password_rehash_failed",
                user_id=user_id,
                error=sanitize_error_message(str(exc)),
                error_type=type(exc).__name__,
            )
            return
        self.logger.info("password_rehashed", user_id=user_id)

    @staticmethod
    def _user_info(user: UserAccount) -> dict:
        return {
            "email": user.email,
            "username": user.username,
            "first_name": user.first_name,
            "last_name": user.last_name,
        }

    # -- registration -------------------------------------------------------

    async def register(
        self, request: RegisterRequest, context: Optional[RequestContext] = None
    ) -> RegisterResult:
        origin = self._origin(context)
        email_hash = hash_sensitive_data(request.email)
        with self._deadline():
            try:
                if origin["ip_address"]:
                    allowed, _, retry_after = await self.rate_limiter.check(
                        f"register:{hash_sensitive_data(origin['ip_address'])}",
                        self.settings.registration_rate_limit_per_hour,
                        3600,
                        return_remaining=True,
                    )
                    if not allowed:
                        await self._audit_registration_failure(
                            "rate_limited", email_hash, context
                        )
                        raise RateLimitedError(
                            "Too many registration attempts. Try again later.",
                            retry_after=retry_after,
                        )
                return await self._register(request, context, email_hash)
            except StorageError as exc:
                raise await self._storage_failure(
                    "registration",
                    exc,
                    SecurityEventType.ACCOUNT_CREATION,
                    context=context,
                    metadata={"email_hash": email_hash},
                ) from exc

    async def _audit_registration_failure(
        self, reason: str, email_hash: str, context: Optional[RequestContext]
    ) -> None:
        await self.audit.record(
            SecurityEventType.ACCOUNT_CREATION,
            EventCategory.AUTHENTICATION,
            f"Registration rejected: {reason}",
            success=False,
            risk_level=RiskLevel.LOW,
            metadata={"reason": reason, "email_hash": email_hash},
            **self._origin(context),
        )

    async def _register(
        self,
        request: RegisterRequest,
        context: Optional[RequestContext],
        email_hash: str,
    ) -> RegisterResult:
        if await call_store(self.store.get_user_by_email, request.email):
            await self._audit_registration_failure("email_taken", email_hash, context)
            raise ConflictError("An account with this email already exists")
        if request.username and await call_store(
            self.store.get_user_by_username, request.username
        ):
            await self._audit_registration_failure("username_taken", email_hash, context)
            raise ConflictError("This username is already taken")

        role = request.role or self.settings.default_role
        if role == Role.ADMIN:
            await self._audit_registration_failure("admin_self_registration", email_hash, context)
            raise ForbiddenError("Administrator accounts cannot be self-registered")

        check = self.policy.validate(
            request.password,
            {
                "email": request.email,
                "username": request.username,
                "first_name": request.first_name,
                "last_name": request.last_name,
            },
        )
        if not check.ok:
            await self._audit_registration_failure("weak_password", email_hash, context)
            raise ValidationError(
                "Password does not meet requirements",
                detail={"violations": check.violations, "warnings": check.warnings},
            )

        password_hash, algo = await self._hash(request.password)
        status = (
            AccountStatus.PENDING_VERIFICATION
            if self.settings.require_email_verification
            else AccountStatus.ACTIVE
        )
        try:
            user = await call_store(
                self.store.create_user,
                request.email,
                username=request.username,
                role=role,
                account_status=status,
                first_name=request.first_name,
                last_name=request.last_name,
            )
        except ConstraintViolation as exc:
            # lost a race with a concurrent registration
            await self._audit_registration_failure("duplicate", email_hash, context)
            if exc.field == "username":
                raise ConflictError("This username is already taken") from exc
            raise ConflictError("An account with this email already exists") from exc
        await call_store(self.store.save_password, user.id, password_hash, algo)

        verification_token = None
        if self.settings.require_email_verification:
            # the account is committed; a new token can be requested later
            try:
                verification_token = await self.tokens.store_one_time_token(
                    EMAIL_VERIFICATION,
                    user.id,
                    timedelta(hours=self.settings.email_verification_ttl_hours),
                )
            except StorageError as exc:
                self.logger.error(
                    "verification_token_issue_failed",
                    user_id=user.id,
                    error=sanitize_error_message(str(exc)),
                    error_type=type(exc).__name__,
                )

        await self.audit.record(
            SecurityEventType.ACCOUNT_CREATION,
            EventCategory.AUTHENTICATION,
            "Account created",
            success=True,
            user_id=user.id,
            metadata={"role": role.value, "account_status": status.value},
            **self._origin(context),
        )
        self.logger.info("user_registered", user_id=user.id, role=role.value)
        return RegisterResult(user=user, verification_token=verification_token)

    # -- login / logout -----------------------------------------------------

    async def login(
        self, credentials: LoginRequest, context: Optional[RequestContext] = None
    ) -> LoginResult:
        identifier_hash = hash_sensitive_data(credentials.identifier)
        with self._deadline():
            try:
                return await self._login(credentials, context, identifier_hash)
            except StorageError as exc:
                # ambiguous outcome: audited, but the failure counter is left alone
                raise await self._storage_failure(
                    "login",
                    exc,
                    SecurityEventType.LOGIN_FAILURE,
                    context=context,
                    metadata={"identifier_hash": identifier_hash},
                ) from exc

    async def _audit_login_failure(
        self,
        description: str,
        reason: str,
        identifier_hash: str,
        context: Optional[RequestContext],
        *,
        user_id: Optional[str] = None,
        risk_level: RiskLevel = RiskLevel.MEDIUM,
        metadata: Optional[dict] = None,
    ) -> None:
        await self.audit.record(
            SecurityEventType.LOGIN_FAILURE,
            EventCategory.AUTHENTICATION,
            description,
            success=False,
            risk_level=risk_level,
            user_id=user_id,
            metadata={**(metadata or {}), "reason": reason, "identifier_hash": identifier_hash},
            **self._origin(context),
        )

    async def _login(
        self,
        credentials: LoginRequest,
        context: Optional[RequestContext],
        identifier_hash: str,
    ) -> LoginResult:
        origin = self._origin(context)
        ip, user_agent = origin["ip_address"], origin["user_agent"]
        identifier = credentials.identifier

        retry_after = await self.attempts.block_remaining(ip)
        if retry_after:
            await self.attempts.record_failure(
                identifier, ip, FailureReason.TOO_MANY_ATTEMPTS, user_agent
            )
            await self._audit_login_failure(
                "Login blocked: too many attempts from this address",
                FailureReason.TOO_MANY_ATTEMPTS.value,
                identifier_hash,
                context,
                risk_level=RiskLevel.HIGH,
            )
            raise RateLimitedError(
                "Too many login attempts. Try again later.", retry_after=retry_after
            )

        if credentials.is_email:
            user = await call_store(self.store.get_user_by_email, identifier)
        else:
            user = await call_store(self.store.get_user_by_username, identifier)
        if not user:
            await self.attempts.record_failure(
                identifier, ip, FailureReason.INVALID_CREDENTIALS, user_agent
            )
            await self._audit_login_failure(
                "Login failed: unknown identifier",
                "unknown_identifier",
                identifier_hash,
                context,
            )
            await asyncio.to_thread(self.hasher.burn, credentials.password)
            raise AuthenticationError(INVALID_CREDENTIALS)

        if not user.is_active:
            await self.attempts.record_failure(
                identifier, ip, FailureReason.ACCOUNT_SUSPENDED, user_agent
            )
            await self._audit_login_failure(
                f"Login rejected: account is {user.account_status.value}",
                FailureReason.ACCOUNT_SUSPENDED.value,
                identifier_hash,
                context,
                user_id=user.id,
                metadata={"account_status": user.account_status.value},
            )
            raise AuthenticationError(ACCOUNT_UNAVAILABLE)

        lockout = await self.attempts.active_lockout(user.id)
        if lockout:
            await self.attempts.record_failure(
                identifier, ip, FailureReason.ACCOUNT_LOCKED, user_agent
            )
            await self._audit_login_failure(
                "Login rejected: account locked",
                FailureReason.ACCOUNT_LOCKED.value,
                identifier_hash,
                context,
                user_id=user.id,
                metadata={
                    "locked_until": lockout.locked_until.isoformat()
                    if lockout.locked_until
                    else None
                },
            )
            raise AuthenticationError(ACCOUNT_UNAVAILABLE)

        if not await self._verify_password(user.id, credentials.password):
            await self.attempts.record_failure(
                identifier, ip, FailureReason.INVALID_CREDENTIALS, user_agent
            )
            attempts = await self.attempts.register_account_failure(user.id)
            if await self.attempts.should_lock_account(user.id, attempts):
                locked = await self.attempts.lock(user.id, LockoutReason.FAILED_ATTEMPTS)
                await self.audit.record(
                    SecurityEventType.ACCOUNT_LOCKED,
                    EventCategory.SECURITY_EVENT,
                    f"Account locked after {attempts} failed login attempts",
                    success=True,
                    risk_level=RiskLevel.HIGH,
                    user_id=user.id,
                    metadata={
                        "attempts": attempts,
                        "locked_until": locked.locked_until.isoformat()
                        if locked.locked_until
                        else None,
                    },
                    **origin,
                )
            await self._audit_login_failure(
                "Login failed: wrong password",
                FailureReason.INVALID_CREDENTIALS.value,
                identifier_hash,
                context,
                user_id=user.id,
                metadata={"attempts": attempts},
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        # reset before the session is created
        await self.attempts.reset(user.id)
        await self._rehash_if_needed(user.id, credentials.password)
        user = await call_store(self.store.update_user, user.id, last_login=utcnow()) or user
        session, access_token, refresh_token = await self.sessions.create_session(
            user,
            {**origin, "remember_me": credentials.remember_me},
        )
        await self.audit.record(
            SecurityEventType.LOGIN_SUCCESS,
            EventCategory.AUTHENTICATION,
            "Login succeeded",
            success=True,
            user_id=user.id,
            session_id=session.id,
            metadata={"remember_me": credentials.remember_me},
            **origin,
        )
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return self._login_result(user, session, access_token, refresh_token)

    @staticmethod
    def _login_result(
        user: UserAccount, session: Session, access_token: str, refresh_token: str
    ) -> LoginResult:
        expires_in = max(0, int((session.expires_at - utcnow()).total_seconds()))
        return LoginResult(
            token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
            expires_at=session.expires_at,
            user=user,
            session=session,
        )

    async def logout(self, token: str, context: Optional[RequestContext] = None) -> bool:
        with self._deadline():
            try:
                session = await call_store(self.store.get_session_by_token, token)
                if not session:
                    return False
                removed = await self.sessions.invalidate(token)
            except StorageError as exc:
                raise await self._storage_failure(
                    "logout", exc, SecurityEventType.LOGOUT, context=context
                ) from exc
            if removed:
                await self.audit.record(
                    SecurityEventType.LOGOUT,
                    EventCategory.AUTHENTICATION,
                    "Logged out",
                    success=True,
                    user_id=session.user_id,
                    session_id=session.id,
                    **self._origin(context),
                )
            return removed

    async def validate_session(self, token: str) -> SessionValidation:
        with self._deadline():
            try:
                return await self.sessions.validate(token)
            except StorageError as exc:
                self.logger.error(
                    "session_validation_failed",
                    error=sanitize_error_message(str(exc)),
                    error_type=type(exc).__name__,
                )
                return SessionValidation(valid=False, reason="validation_failed")

    async def refresh_session(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> LoginResult:
        origin = self._origin(context)
        with self._deadline():
            try:
                user, session, access_token, new_refresh = await self.sessions.refresh(
                    refresh_token, origin
                )
            except StorageError as exc:
                raise await self._storage_failure(
                    "session_refresh", exc, SecurityEventType.SESSION_REFRESHED, context=context
                ) from exc
            if not user or not session:
                await self.audit.record(
                    SecurityEventType.SESSION_REFRESHED,
                    EventCategory.AUTHENTICATION,
                    "Session refresh rejected",
                    success=False,
                    risk_level=RiskLevel.MEDIUM,
                    **origin,
                )
                raise AuthenticationError("Invalid or expired refresh token")
            await self.audit.record(
                SecurityEventType.SESSION_REFRESHED,
                EventCategory.AUTHENTICATION,
                "Session refreshed",
                success=True,
                user_id=user.id,
                session_id=session.id,
                **origin,
            )
            return self._login_result(user, session, access_token, new_refresh)

    # -- passwords ----------------------------------------------------------

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        context: Optional[RequestContext] = None,
    ) -> bool:
        with self._deadline():
            try:
                return await self._change_password(
                    user_id, current_password, new_password, context
                )
            except StorageError as exc:
                raise await self._storage_failure(
                    "password_change",
                    exc,
                    SecurityEventType.PASSWORD_CHANGE,
                    user_id=user_id,
                    context=context,
                ) from exc

    async def _change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        context: Optional[RequestContext],
    ) -> bool:
        origin = self._origin(context)
        user = await call_store(self.store.get_user, user_id)
        if not user or not await self._verify_password(user_id, current_password):
            await self.audit.record(
                SecurityEventType.PASSWORD_CHANGE,
                EventCategory.AUTHENTICATION,
                "Password change rejected: current password mismatch"
                if user
                else "Password change rejected: unknown user",
                success=False,
                risk_level=RiskLevel.MEDIUM,
                user_id=user_id,
                **origin,
            )
            raise AuthenticationError("Current password is incorrect")

        check = self.policy.validate(new_password, self._user_info(user))
        if not check.ok:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"violations": check.violations, "warnings": check.warnings},
            )
        if new_password == current_password:
            raise ValidationError("New password must differ from the current password")

        password_hash, algo = await self._hash(new_password)
        await call_store(self.store.save_password, user_id, password_hash, algo)
        await self.sessions.invalidate_all_for_user(user_id)
        await self.audit.record(
            SecurityEventType.PASSWORD_CHANGE,
            EventCategory.AUTHENTICATION,
            "Password changed; all sessions revoked",
            success=True,
            risk_level=RiskLevel.MEDIUM,
            user_id=user_id,
            **origin,
        )
        self.logger.info("password_changed", user_id=user_id)
        return True

    async def request_password_reset(
        self, email: str, context: Optional[RequestContext] = None
    ) -> Optional[str]:
        """Mint a reset token for an active account.

        Returns None for unknown or inactive accounts; callers must respond
        identically in both cases.
        """
        email = normalize_email(email)
        email_hash = hash_sensitive_data(email)
        with self._deadline():
            try:
                allowed, _, retry_after = await self.rate_limiter.check(
                    f"reset:{email_hash}",
                    self.settings.reset_rate_limit_per_hour,
                    3600,
                    return_remaining=True,
                )
                if not allowed:
                    self.logger.warning(
                        "password_reset_rate_limited", email_hash=email_hash[:16]
                    )
                    raise RateLimitedError(
                        "Too many password reset requests. Try again later.",
                        retry_after=retry_after,
                    )
                user = await call_store(self.store.get_user_by_email, email)
                token = None
                if user and user.is_active:
                    token = await self.tokens.store_one_time_token(
                        PASSWORD_RESET,
                        user.id,
                        timedelta(minutes=self.settings.password_reset_ttl_minutes),
                    )
            except StorageError as exc:
                raise await self._storage_failure(
                    "password_reset_request",
                    exc,
                    SecurityEventType.PASSWORD_RESET_REQUEST,
                    context=context,
                    metadata={"email_hash": email_hash},
                ) from exc
        await self.audit.record(
            SecurityEventType.PASSWORD_RESET_REQUEST,
            EventCategory.AUTHENTICATION,
            "Password reset requested"
            if token
            else "Password reset requested for unknown or inactive account",
            success=token is not None,
            user_id=user.id if user else None,
            metadata={"email_hash": email_hash},
            **self._origin(context),
        )
        return token

    async def reset_password(
        self, token: str, new_password: str, context: Optional[RequestContext] = None
    ) -> bool:
        origin = self._origin(context)
        # structural rules are checked before the token is consumed
        precheck = self.policy.validate(new_password)
        if not precheck.ok:
            raise ValidationError(
                "Password does not meet requirements",
                detail={"violations": precheck.violations},
            )
        with self._deadline():
            try:
                user_id = await self.tokens.consume_one_time_token(PASSWORD_RESET, token)
            except StorageError as exc:
                raise await self._storage_failure(
                    "password_reset",
                    exc,
                    SecurityEventType.PASSWORD_RESET_COMPLETE,
                    context=context,
                ) from exc
        if not user_id:
            self.logger.warning("password_reset_invalid_token")
            await self.audit.record(
                SecurityEventType.PASSWORD_RESET_COMPLETE,
                EventCategory.AUTHENTICATION,
                "Password reset rejected: invalid or expired token",
                success=False,
                risk_level=RiskLevel.MEDIUM,
                **origin,
            )
            return False
        with self._deadline():
            try:
                user = await call_store(self.store.get_user, user_id)
                if not user:
                    self.logger.warning("password_reset_user_missing", user_id=user_id)
                    return False
                check = self.policy.validate(new_password, self._user_info(user))
                if not check.ok:
                    raise ValidationError(
                        "Password does not meet requirements",
                        detail={"violations": check.violations, "warnings": check.warnings},
                    )
                password_hash, algo = await self._hash(new_password)
                await call_store(self.store.save_password, user.id, password_hash, algo)
                await self.attempts.reset(user.id)
                await self.sessions.invalidate_all_for_user(user.id)
            except StorageError as exc:
                raise await self._storage_failure(
                    "password_reset",
                    exc,
                    SecurityEventType.PASSWORD_RESET_COMPLETE,
                    user_id=user_id,
                    context=context,
                ) from exc
        await self.audit.record(
            SecurityEventType.PASSWORD_RESET_COMPLETE,
            EventCategory.AUTHENTICATION,
            "Password reset completed; all sessions revoked",
            success=True,
            risk_level=RiskLevel.MEDIUM,
            user_id=user.id,
            **origin,
        )
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    # -- email verification -------------------------------------------------

    async def request_email_verification(self, user_id: str) -> str:
        with self._deadline():
            try:
                user = await call_store(self.store.get_user, user_id)
                if not user:
                    raise NotFoundError("user not found", detail={"user_id": user_id})
                if user.email_verified:
                    raise ConflictError("Email address is already verified")
                token = await self.tokens.store_one_time_token(
                    EMAIL_VERIFICATION,
                    user.id,
                    timedelta(hours=self.settings.email_verification_ttl_hours),
                )
            except StorageError as exc:
                raise await self._storage_failure(
                    "email_verification_request",
                    exc,
                    SecurityEventType.EMAIL_VERIFICATION,
                    user_id=user_id,
                ) from exc
        self.logger.info("email_verification_requested", user_id=user.id)
        return token

    async def verify_email(self, token: str) -> bool:
        with self._deadline():
            try:
                user_id = await self.tokens.consume_one_time_token(EMAIL_VERIFICATION, token)
                if not user_id:
                    self.logger.warning("email_verification_invalid_token")
                    return False
                user = await call_store(self.store.get_user, user_id)
                if not user:
                    self.logger.warning("email_verification_missing_user", user_id=user_id)
                    return False
                fields: dict = {"email_verified": True}
                if user.account_status == AccountStatus.PENDING_VERIFICATION:
                    fields["account_status"] = AccountStatus.ACTIVE
                await call_store(self.store.update_user, user.id, **fields)
            except StorageError as exc:
                raise await self._storage_failure(
                    "email_verification", exc, SecurityEventType.EMAIL_VERIFICATION
                ) from exc
        await self.audit.record(
            SecurityEventType.EMAIL_VERIFICATION,
            EventCategory.AUTHENTICATION,
            "Email address verified",
            success=True,
            user_id=user.id,
        )
        self.logger.info("email_verified", user_id=user.id)
        return True

    # -- authorization ------------------------------------------------------

    async def check_access(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: Optional[RequestContext] = None,
    ) -> AccessResult:
        with self._deadline():
            return await self.permissions.check(
                user_id, resource, action, self._origin(context)
            )

    async def get_effective_permissions(self, user_id: str) -> List[Permission]:
        with self._deadline():
            try:
                return await self.permissions.resolve(user_id)
            except StorageError as exc:
                raise await self._storage_failure(
                    "permission_lookup",
                    exc,
                    SecurityEventType.ACCESS_DENIED,
                    category=EventCategory.AUTHORIZATION,
                    user_id=user_id,
                ) from exc

    # -- administration -----------------------------------------------------

    async def _require_admin(self, actor_id: str, action: str) -> UserAccount:
        actor = await call_store(self.store.get_user, actor_id)
        if not actor or not actor.is_active or actor.role != Role.ADMIN:
            await self.audit.record(
                SecurityEventType.ADMIN_ACTION,
                EventCategory.ADMIN_ACTION,
                f"Denied {action}: administrator privileges required",
                success=False,
                risk_level=RiskLevel.HIGH,
                user_id=actor_id,
            )
            raise ForbiddenError("Administrator privileges required")
        return actor

    async def _require_user(self, user_id: str) -> UserAccount:
        user = await call_store(self.store.get_user, user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    async def unlock_account(self, actor_id: str, user_id: str) -> bool:
        with self._deadline():
            await self._require_admin(actor_id, "unlock_account")
            await self._require_user(user_id)
            await self.attempts.reset(user_id)
        await self.audit.record(
            SecurityEventType.ACCOUNT_UNLOCKED,
            EventCategory.ADMIN_ACTION,
            "Account unlocked by administrator",
            success=True,
            risk_level=RiskLevel.MEDIUM,
            user_id=actor_id,
            metadata={"target_user_id": user_id},
        )
        return True

    async def lock_account(
        self,
        actor_id: str,
        user_id: str,
        *,
        minutes: Optional[int] = None,
        reason: LockoutReason = LockoutReason.ADMIN_ACTION,
    ) -> bool:
        with self._deadline():
            await self._require_admin(actor_id, "lock_account")
            await self._require_user(user_id)
            if user_id == actor_id:
                raise ForbiddenError("Administrators cannot lock their own account")
            if minutes is not None and minutes <= 0:
                raise ValidationError("Lock duration must be a positive number of minutes")
            # no duration: locked until an administrator unlocks
            lockout = await self.attempts.lock(
                user_id,
                reason,
                locked_by=actor_id,
                duration=timedelta(minutes=minutes) if minutes else None,
                indefinite=minutes is None,
            )
            await self.sessions.invalidate_all_for_user(user_id)
        await self.audit.record(
            SecurityEventType.ACCOUNT_LOCKED,
            EventCategory.ADMIN_ACTION,
            "Account locked by administrator",
            success=True,
            risk_level=RiskLevel.HIGH,
            user_id=actor_id,
            metadata={
                "target_user_id": user_id,
                "reason": reason.value,
                "locked_until": lockout.locked_until.isoformat() if lockout.locked_until else None,
            },
        )
        return True

    async def change_role(self, actor_id: str, user_id: str, new_role: Role) -> UserAccount:
        new_role = Role(new_role)
        with self._deadline():
            actor = await call_store(self.store.get_user, actor_id)
            target = await self._require_user(user_id)
            if not actor or not actor.is_active:
                allowed = False
            elif actor.id == target.id:
                allowed = False
            elif actor.role == Role.ADMIN:
                allowed = True
            else:
                allowed = can_manage_role(actor.role, target.role) and can_manage_role(
                    actor.role, new_role
                )
            if not allowed:
                await self.audit.record(
                    SecurityEventType.ROLE_CHANGE,
                    EventCategory.ADMIN_ACTION,
                    f"Role change to {new_role.value} denied",
                    success=False,
                    risk_level=RiskLevel.HIGH,
                    user_id=actor_id,
                    metadata={"target_user_id": user_id, "from_role": target.role.value},
                )
                raise ForbiddenError("Not allowed to assign this role")
            updated = await call_store(self.store.update_user, user_id, role=new_role)
        self.permissions.invalidate_user(user_id)
        await self.audit.record(
            SecurityEventType.ROLE_CHANGE,
            EventCategory.ADMIN_ACTION,
            f"Role changed from {target.role.value} to {new_role.value}",
            success=True,
            risk_level=RiskLevel.MEDIUM,
            user_id=actor_id,
            metadata={
                "target_user_id": user_id,
                "from_role": target.role.value,
                "to_role": new_role.value,
            },
        )
        return updated or target

    async def set_account_status(
        self, actor_id: str, user_id: str, status: AccountStatus
    ) -> UserAccount:
        status = AccountStatus(status)
        with self._deadline():
            await self._require_admin(actor_id, "set_account_status")
            target = await self._require_user(user_id)
            if target.id == actor_id and status != AccountStatus.ACTIVE:
                raise ForbiddenError("Administrators cannot deactivate their own account")
            updated = await call_store(self.store.update_user, user_id, account_status=status)
            if status in (AccountStatus.SUSPENDED, AccountStatus.INACTIVE):
                await self.sessions.invalidate_all_for_user(user_id)
        await self.audit.record(
            SecurityEventType.ADMIN_ACTION,
            EventCategory.ADMIN_ACTION,
            f"Account status changed from {target.account_status.value} to {status.value}",
            success=True,
            risk_level=RiskLevel.MEDIUM,
            user_id=actor_id,
            metadata={"target_user_id": user_id, "account_status": status.value},
        )
        return updated or target

    async def cleanup_expired_sessions(self) -> int:
        with self._deadline():
            removed = await self.sessions.cleanup_expired()
        self.tokens.cleanup_expired()
        return removed
