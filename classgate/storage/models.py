from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    STUDENT = "student"


class AccountStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING_VERIFICATION = "pending_verification"


class LoginMethod(str, Enum):
    PASSWORD = "password"
    FACE_RECOGNITION = "face_recognition"
    SSO = "sso"
    JWT = "jwt"


class FailureReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_SUSPENDED = "account_suspended"
    TOO_MANY_ATTEMPTS = "too_many_attempts"


class LockoutReason(str, Enum):
    FAILED_ATTEMPTS = "failed_attempts"
    ADMIN_ACTION = "admin_action"
    SECURITY_BREACH = "security_breach"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"


class SecurityEventType(str, Enum):
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILURE = "login_failure"
    LOGOUT = "logout"
    PASSWORD_CHANGE = "password_change"
    PASSWORD_RESET_REQUEST = "password_reset_request"
    PASSWORD_RESET_COMPLETE = "password_reset_complete"
    EMAIL_VERIFICATION = "email_verification"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    ACCOUNT_CREATION = "account_creation"
    PERMISSION_CHANGE = "permission_change"
    ROLE_CHANGE = "role_change"
    ADMIN_ACTION = "admin_action"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SESSION_EXPIRED = "session_expired"
    SESSION_REFRESHED = "session_refreshed"
    ACCESS_GRANTED = "access_granted"
    ACCESS_DENIED = "access_denied"


class EventCategory(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    DATA_ACCESS = "data_access"
    ADMIN_ACTION = "admin_action"
    SECURITY_EVENT = "security_event"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


WILDCARD = "*"


@dataclass
class UserAccount:
    id: str
    email: str
    username: Optional[str] = None
    role: Role = Role.STUDENT
    account_status: AccountStatus = AccountStatus.ACTIVE
    login_attempts: int = 0
    email_verified: bool = False
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def is_active(self) -> bool:
        return self.account_status == AccountStatus.ACTIVE


@dataclass
class PasswordRecord:
    user_id: str
    password_hash: str
    password_algo: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    refresh_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    login_method: LoginMethod = LoginMethod.PASSWORD
    is_active: bool = True
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    refresh_expires_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        ttl_minutes: int,
        *,
        session_id: str | None = None,
        refresh_token: str | None = None,
        refresh_ttl_minutes: int | None = None,
        login_method: LoginMethod = LoginMethod.PASSWORD,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            refresh_token=refresh_token,
            created_at=now,
            last_activity=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            login_method=login_method,
            ip_address=ip_address,
            user_agent=user_agent,
            refresh_expires_at=now + timedelta(minutes=refresh_ttl_minutes)
            if refresh_token and refresh_ttl_minutes
            else None,
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def retained_until(self) -> datetime:
        """When the row stops being useful: access expiry or, if later, refresh expiry."""
        if self.refresh_expires_at and self.refresh_expires_at > self.expires_at:
            return self.refresh_expires_at
        return self.expires_at

    def can_refresh_at(self, now: datetime) -> bool:
        return self.is_active and bool(self.refresh_token) and now < self.retained_until

    def is_purgeable_at(self, now: datetime) -> bool:
        return not self.is_active or now >= self.retained_until

    def is_valid_at(self, now: datetime) -> bool:
        return self.is_active and not self.is_expired(now)


@dataclass
class Permission:
    id: str
    name: str
    resource: str
    action: str
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RolePermission:
    role: Role
    permission_id: str
    granted_by: Optional[str] = None
    granted_at: datetime = field(default_factory=utcnow)


@dataclass
class UserPermission:
    user_id: str
    permission_id: str
    granted_by: Optional[str] = None
    granted_at: datetime = field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@dataclass
class FailedLoginAttempt:
    id: str
    identifier: str
    ip_address: Optional[str]
    failure_reason: FailureReason
    attempt_time: datetime = field(default_factory=utcnow)
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        identifier: str,
        ip_address: str | None,
        failure_reason: FailureReason,
        user_agent: str | None = None,
    ) -> "FailedLoginAttempt":
        return cls(
            id=str(uuid.uuid4()),
            identifier=identifier,
            ip_address=ip_address,
            failure_reason=failure_reason,
            user_agent=user_agent,
        )


@dataclass
class AccountLockout:
    id: str
    user_id: str
    reason: LockoutReason
    locked_at: datetime = field(default_factory=utcnow)
    locked_until: Optional[datetime] = None
    locked_by: Optional[str] = None
    is_active: bool = True

    def is_in_force(self, now: datetime) -> bool:
        """Active and not yet past locked_until; no end time means indefinite."""
        if not self.is_active:
            return False
        return self.locked_until is None or now < self.locked_until


@dataclass
class SecurityAuditLog:
    id: str
    event_type: SecurityEventType
    event_category: EventCategory
    description: str
    success: bool
    risk_level: RiskLevel = RiskLevel.LOW
    created_at: datetime = field(default_factory=utcnow)
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    resource: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
