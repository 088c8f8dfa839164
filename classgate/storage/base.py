from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol, Tuple

from classgate.storage.models import (
    AccountLockout,
    AccountStatus,
    EventCategory,
    FailedLoginAttempt,
    PasswordRecord,
    Permission,
    Role,
    RolePermission,
    SecurityAuditLog,
    SecurityEventType,
    Session,
    UserAccount,
    UserPermission,
)


class AuthStore(Protocol):
    """Persistence contract for accounts, sessions, grants, attempts and audit.

    Every method is atomic at the row level. Implementations raise
    ``ConstraintViolation`` on uniqueness/foreign-key conflicts and
    ``StorageError`` for any other backend failure.
    """

    # -- accounts ---------------------------------------------------------

    def get_user(self, user_id: str) -> Optional[UserAccount]: ...

    def get_user_by_email(self, email: str) -> Optional[UserAccount]: ...

    def get_user_by_username(self, username: str) -> Optional[UserAccount]: ...

    def create_user(
        self,
        email: str,
        *,
        username: Optional[str] = None,
        role: Role = Role.STUDENT,
        account_status: AccountStatus = AccountStatus.ACTIVE,
        email_verified: bool = False,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        meta: Optional[dict] = None,
    ) -> UserAccount: ...

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserAccount]: ...

    def increment_login_attempts(self, user_id: str) -> int: ...

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    # -- sessions ---------------------------------------------------------

    def create_session(self, session: Session) -> Session: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def touch_session(self, token: str, now: datetime) -> Optional[Session]: ...

    def invalidate_session(self, token: str) -> bool: ...

    def invalidate_session_by_refresh_token(self, refresh_token: str) -> bool: ...

    def invalidate_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    # -- permissions ------------------------------------------------------

    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission: ...

    def get_permission(self, permission_id: str) -> Optional[Permission]: ...

    def get_permission_by_name(self, name: str) -> Optional[Permission]: ...

    def list_permissions(self) -> List[Permission]: ...

    def get_role_permissions(self, role: Role) -> List[Permission]: ...

    def get_user_permissions(
        self, user_id: str
    ) -> List[Tuple[UserPermission, Permission]]: ...

    def grant_role_permission(
        self, role: Role, permission_id: str, granted_by: Optional[str] = None
    ) -> RolePermission: ...

    def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserPermission: ...

    def revoke_role_permission(self, role: Role, permission_id: str) -> bool: ...

    def revoke_user_permission(self, user_id: str, permission_id: str) -> bool: ...

    # -- attempts and lockouts -------------------------------------------

    def record_failed_attempt(self, attempt: FailedLoginAttempt) -> None: ...

    def count_failed_attempts(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> int: ...

    def create_lockout(self, lockout: AccountLockout) -> AccountLockout: ...

    def get_active_lockout(self, user_id: str) -> Optional[AccountLockout]: ...

    def clear_lockout(self, user_id: str) -> bool: ...

    # -- audit ------------------------------------------------------------

    def append_audit_log(self, entry: SecurityAuditLog) -> None: ...

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        category: Optional[EventCategory] = None,
        limit: int = 100,
    ) -> List[SecurityAuditLog]: ...
