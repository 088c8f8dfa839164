from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from classgate.logging import get_logger, sanitize_error_message
from classgate.storage.common import (
    DEFAULT_ROLE_GRANTS,
    default_permissions,
    ensure_aware,
    normalize_email,
    parse_ip_address,
    parse_json_meta,
    permission_name,
    validate_permission_fields,
)
from classgate.storage.errors import ConstraintViolation, StorageError
from classgate.storage.models import (
    AccountLockout,
    AccountStatus,
    EventCategory,
    FailedLoginAttempt,
    LockoutReason,
    LoginMethod,
    PasswordRecord,
    Permission,
    RiskLevel,
    Role,
    RolePermission,
    SecurityAuditLog,
    SecurityEventType,
    Session,
    UserAccount,
    UserPermission,
    utcnow,
)

_UPDATABLE_USER_COLUMNS = (
    "email",
    "username",
    "role",
    "account_status",
    "login_attempts",
    "email_verified",
    "first_name",
    "last_name",
    "last_login",
    "meta",
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT UNIQUE,
        role TEXT NOT NULL,
        account_status TEXT NOT NULL,
        login_attempts INTEGER NOT NULL DEFAULT 0,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        first_name TEXT,
        last_name TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES user_account(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES user_account(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        refresh_token TEXT UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        refresh_expires_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        login_method TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "ALTER TABLE user_session ADD COLUMN IF NOT EXISTS refresh_expires_at TIMESTAMPTZ",
    "CREATE INDEX IF NOT EXISTS user_session_user_idx ON user_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS permission (
        id UUID PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        resource TEXT NOT NULL,
        action TEXT NOT NULL,
        description TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_permission (
        role TEXT NOT NULL,
        permission_id UUID NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        granted_by TEXT,
        granted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (role, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_permission (
        user_id UUID NOT NULL REFERENCES user_account(id) ON DELETE CASCADE,
        permission_id UUID NOT NULL REFERENCES permission(id) ON DELETE CASCADE,
        granted_by TEXT,
        granted_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ,
        PRIMARY KEY (user_id, permission_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS failed_login_attempt (
        id UUID PRIMARY KEY,
        identifier TEXT NOT NULL,
        ip_address TEXT,
        failure_reason TEXT NOT NULL,
        attempt_time TIMESTAMPTZ NOT NULL DEFAULT now(),
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS failed_login_ip_time_idx ON failed_login_attempt (ip_address, attempt_time)",
    """
    CREATE TABLE IF NOT EXISTS account_lockout (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES user_account(id) ON DELETE CASCADE,
        reason TEXT NOT NULL,
        locked_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        locked_until TIMESTAMPTZ,
        locked_by TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS account_lockout_one_active_idx
    ON account_lockout (user_id) WHERE is_active
    """,
    """
    CREATE TABLE IF NOT EXISTS security_audit_log (
        id UUID PRIMARY KEY,
        event_type TEXT NOT NULL,
        event_category TEXT NOT NULL,
        description TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        risk_level TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        user_id UUID,
        ip_address TEXT,
        user_agent TEXT,
        session_id UUID,
        resource TEXT,
        metadata JSONB
    )
    """,
)


class PostgresStore:
    """Postgres-backed store for accounts, sessions, grants and audit events."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._ensure_default_permissions()

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Pooled connection; commits on success, maps driver errors to storage errors."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "referenced record missing",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                error=sanitize_error_message(str(exc)),
                error_type=type(exc).__name__,
            )
            raise StorageError("storage backend failure") from exc

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _ensure_default_permissions(self) -> None:
        with self._connect() as conn:
            for perm in default_permissions():
                conn.execute(
                    """
                    INSERT INTO permission (id, name, resource, action, description)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (name) DO NOTHING
                    """,
                    (perm.id, perm.name, perm.resource, perm.action, perm.description),
                )
            for role, grants in DEFAULT_ROLE_GRANTS.items():
                for resource, action in grants:
                    conn.execute(
                        """
                        INSERT INTO role_permission (role, permission_id, granted_by)
                        SELECT %s, id, 'system' FROM permission WHERE name = %s
                        ON CONFLICT (role, permission_id) DO NOTHING
                        """,
                        (role.value, permission_name(resource, action)),
                    )

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> UserAccount:
        return UserAccount(
            id=str(row["id"]),
            email=row["email"],
            username=row.get("username"),
            role=Role(row.get("role", Role.STUDENT.value)),
            account_status=AccountStatus(
                row.get("account_status", AccountStatus.ACTIVE.value)
            ),
            login_attempts=int(row.get("login_attempts") or 0),
            email_verified=bool(row.get("email_verified", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
            last_login=ensure_aware(row.get("last_login")),
            meta=parse_json_meta(row.get("meta")) or {},
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            refresh_token=row.get("refresh_token"),
            expires_at=ensure_aware(row["expires_at"]),
            refresh_expires_at=ensure_aware(row.get("refresh_expires_at")),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            last_activity=ensure_aware(row.get("last_activity")) or utcnow(),
            login_method=LoginMethod(row.get("login_method", LoginMethod.PASSWORD.value)),
            is_active=bool(row.get("is_active", True)),
            ip_address=parse_ip_address(row.get("ip_address")),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        return Permission(
            id=str(row["id"]),
            name=row["name"],
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _lockout_from_row(row: Dict[str, Any]) -> AccountLockout:
        return AccountLockout(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            reason=LockoutReason(row["reason"]),
            locked_at=ensure_aware(row.get("locked_at")) or utcnow(),
            locked_until=ensure_aware(row.get("locked_until")),
            locked_by=row.get("locked_by"),
            is_active=bool(row.get("is_active", True)),
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> SecurityAuditLog:
        return SecurityAuditLog(
            id=str(row["id"]),
            event_type=SecurityEventType(row["event_type"]),
            event_category=EventCategory(row["event_category"]),
            description=row.get("description", ""),
            success=bool(row.get("success", False)),
            risk_level=RiskLevel(row.get("risk_level", RiskLevel.LOW.value)),
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            session_id=str(row["session_id"]) if row.get("session_id") else None,
            resource=row.get("resource"),
            metadata=parse_json_meta(row.get("metadata")) or {},
        )

    # accounts
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE username = %s", (username,)
            ).fetchone()
        return self._user_from_row(row) if row else None

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
    ) -> UserAccount:
        user_id = str(uuid.uuid4())
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_account (id, email, username, role, account_status, email_verified, first_name, last_name, meta)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    normalize_email(email),
                    username,
                    Role(role).value,
                    AccountStatus(account_status).value,
                    email_verified,
                    first_name,
                    last_name,
                    json.dumps(meta) if meta else None,
                ),
            ).fetchone()
        return self._user_from_row(row)

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserAccount]:
        unknown = set(fields) - set(_UPDATABLE_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = []
        params: List[Any] = []
        for column in _UPDATABLE_USER_COLUMNS:
            if column not in fields:
                continue
            value = fields[column]
            if column == "email":
                value = normalize_email(value)
            elif column == "role":
                value = Role(value).value
            elif column == "account_status":
                value = AccountStatus(value).value
            elif column == "meta":
                value = json.dumps(value) if value else None
            assignments.append(f"{column} = %s")
            params.append(value)
        params.append(user_id)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE user_account SET {', '.join(assignments)}, updated_at = now() WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def increment_login_attempts(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_account
                SET login_attempts = login_attempts + 1, updated_at = now()
                WHERE id = %s
                RETURNING login_attempts
                """,
                (user_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return int(row["login_attempts"])

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT user_id, password_hash, password_algo, updated_at FROM user_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            user_id=str(row["user_id"]),
            password_hash=row["password_hash"],
            password_algo=row["password_algo"],
            updated_at=ensure_aware(row.get("updated_at")) or utcnow(),
        )

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE
                SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo,
                    updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_session (id, user_id, token, refresh_token, expires_at, refresh_expires_at, created_at, last_activity, login_method, is_active, ip_address, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    session.id,
                    session.user_id,
                    session.token,
                    session.refresh_token,
                    session.expires_at,
                    session.refresh_expires_at,
                    session.created_at,
                    session.last_activity,
                    session.login_method.value,
                    session.is_active,
                    parse_ip_address(session.ip_address),
                    session.user_agent,
                ),
            ).fetchone()
        return self._session_from_row(row)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_session WHERE refresh_token = %s", (refresh_token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def touch_session(self, token: str, now: datetime) -> Optional[Session]:
        # The predicate re-checks validity in the same statement as the write
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_session SET last_activity = %s
                WHERE token = %s AND is_active AND expires_at > %s
                RETURNING *
                """,
                (now, token, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def invalidate_session(self, token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE token = %s AND is_active RETURNING id",
                (token,),
            ).fetchone()
        return row is not None

    def invalidate_session_by_refresh_token(self, refresh_token: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE refresh_token = %s AND is_active RETURNING id",
                (refresh_token,),
            ).fetchone()
        return row is not None

    def invalidate_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE user_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return cur.rowcount or 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_session WHERE NOT is_active"
                " OR GREATEST(expires_at, COALESCE(refresh_expires_at, expires_at)) <= %s",
                (now,),
            )
            return cur.rowcount or 0

    # permissions
    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        validate_permission_fields(name, resource, action)
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO permission (id, name, resource, action, description)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (str(uuid.uuid4()), name, resource, action, description),
            ).fetchone()
        return self._permission_from_row(row)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE name = %s", (name,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM permission ORDER BY name").fetchall()
        return [self._permission_from_row(row) for row in rows]

    def get_role_permissions(self, role: Role) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM role_permission rp
                JOIN permission p ON p.id = rp.permission_id
                WHERE rp.role = %s
                ORDER BY p.name
                """,
                (Role(role).value,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def get_user_permissions(
        self, user_id: str
    ) -> List[Tuple[UserPermission, Permission]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.*, up.user_id, up.granted_by, up.granted_at, up.expires_at
                FROM user_permission up
                JOIN permission p ON p.id = up.permission_id
                WHERE up.user_id = %s
                ORDER BY p.name
                """,
                (user_id,),
            ).fetchall()
        result = []
        for row in rows:
            perm = self._permission_from_row(row)
            grant = UserPermission(
                user_id=str(row["user_id"]),
                permission_id=perm.id,
                granted_by=row.get("granted_by"),
                granted_at=ensure_aware(row.get("granted_at")) or utcnow(),
                expires_at=ensure_aware(row.get("expires_at")),
            )
            result.append((grant, perm))
        return result

    def grant_role_permission(
        self, role: Role, permission_id: str, granted_by: Optional[str] = None
    ) -> RolePermission:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO role_permission (role, permission_id, granted_by)
                VALUES (%s, %s, %s)
                ON CONFLICT (role, permission_id) DO UPDATE SET role = EXCLUDED.role
                RETURNING *
                """,
                (Role(role).value, permission_id, granted_by),
            ).fetchone()
        return RolePermission(
            role=Role(row["role"]),
            permission_id=str(row["permission_id"]),
            granted_by=row.get("granted_by"),
            granted_at=ensure_aware(row.get("granted_at")) or utcnow(),
        )

    def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserPermission:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_permission (user_id, permission_id, granted_by, expires_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, permission_id) DO UPDATE
                SET granted_by = EXCLUDED.granted_by,
                    granted_at = now(),
                    expires_at = EXCLUDED.expires_at
                RETURNING *
                """,
                (user_id, permission_id, granted_by, expires_at),
            ).fetchone()
        return UserPermission(
            user_id=str(row["user_id"]),
            permission_id=str(row["permission_id"]),
            granted_by=row.get("granted_by"),
            granted_at=ensure_aware(row.get("granted_at")) or utcnow(),
            expires_at=ensure_aware(row.get("expires_at")),
        )

    def revoke_role_permission(self, role: Role, permission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM role_permission WHERE role = %s AND permission_id = %s",
                (Role(role).value, permission_id),
            )
            return bool(cur.rowcount)

    def revoke_user_permission(self, user_id: str, permission_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_permission WHERE user_id = %s AND permission_id = %s",
                (user_id, permission_id),
            )
            return bool(cur.rowcount)

    # attempts and lockouts
    def record_failed_attempt(self, attempt: FailedLoginAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO failed_login_attempt (id, identifier, ip_address, failure_reason, attempt_time, user_agent)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.identifier,
                    parse_ip_address(attempt.ip_address),
                    attempt.failure_reason.value,
                    attempt.attempt_time,
                    attempt.user_agent,
                ),
            )

    def count_failed_attempts(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> int:
        clauses = ["attempt_time >= %s"]
        params: List[Any] = [since]
        ip_value = parse_ip_address(ip_address)
        if ip_value is not None:
            clauses.append("ip_address = %s")
            params.append(ip_value)
        if identifier is not None:
            clauses.append("identifier = %s")
            params.append(identifier)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS n FROM failed_login_attempt WHERE {' AND '.join(clauses)}",
                tuple(params),
            ).fetchone()
        return int(row["n"]) if row else 0

    def create_lockout(self, lockout: AccountLockout) -> AccountLockout:
        # Deactivate and insert in one transaction so at most one lockout is active
        with self._connect() as conn:
            conn.execute(
                "UPDATE account_lockout SET is_active = FALSE WHERE user_id = %s AND is_active",
                (lockout.user_id,),
            )
            row = conn.execute(
                """
                INSERT INTO account_lockout (id, user_id, reason, locked_at, locked_until, locked_by, is_active)
                VALUES (%s, %s, %s, %s, %s, %s, TRUE)
                RETURNING *
                """,
                (
                    lockout.id,
                    lockout.user_id,
                    lockout.reason.value,
                    lockout.locked_at,
                    lockout.locked_until,
                    lockout.locked_by,
                ),
            ).fetchone()
        return self._lockout_from_row(row)

    def get_active_lockout(self, user_id: str) -> Optional[AccountLockout]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_lockout WHERE user_id = %s AND is_active ORDER BY locked_at DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        return self._lockout_from_row(row) if row else None

    def clear_lockout(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE account_lockout SET is_active = FALSE WHERE user_id = %s AND is_active",
                (user_id,),
            )
            return bool(cur.rowcount)

    # audit
    def append_audit_log(self, entry: SecurityAuditLog) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO security_audit_log (id, event_type, event_category, description, success, risk_level, created_at, user_id, ip_address, user_agent, session_id, resource, metadata)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.event_type.value,
                    entry.event_category.value,
                    entry.description,
                    entry.success,
                    entry.risk_level.value,
                    entry.created_at,
                    entry.user_id,
                    parse_ip_address(entry.ip_address),
                    entry.user_agent,
                    entry.session_id,
                    entry.resource,
                    json.dumps(entry.metadata) if entry.metadata else None,
                ),
            )

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        category: Optional[EventCategory] = None,
        limit: int = 100,
    ) -> List[SecurityAuditLog]:
        clauses = []
        params: List[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(SecurityEventType(event_type).value)
        if category is not None:
            clauses.append("event_category = %s")
            params.append(EventCategory(category).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, limit))
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_audit_log {where} ORDER BY created_at DESC LIMIT %s",
                tuple(params),
            ).fetchall()
        return [self._audit_from_row(row) for row in rows]
