from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from classgate.logging import get_logger
from classgate.storage.common import (
    DEFAULT_ROLE_GRANTS,
    default_permissions,
    format_datetime,
    normalize_email,
    parse_datetime,
    parse_ip_address,
    permission_id_for,
    permission_name,
    validate_permission_fields,
)
from classgate.storage.errors import ConstraintViolation
from classgate.storage.models import (
    AccountLockout,
    AccountStatus,
    EventCategory,
    FailedLoginAttempt,
    FailureReason,
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

_UPDATABLE_USER_FIELDS = frozenset(
    {
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
    }
)


class MemoryStore:
    """Thread-safe in-process store with a JSON snapshot on disk.

    All reads and writes hold a single re-entrant lock, so every method is
    atomic with respect to every other. Returned records are copies; callers
    never observe a half-applied mutation.
    """

    def __init__(self, fs_root: str = "/tmp/classgate", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, UserAccount] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.permissions: Dict[str, Permission] = {}
        self.role_permissions: List[RolePermission] = []
        self.user_permissions: List[UserPermission] = []
        self.failed_attempts: List[FailedLoginAttempt] = []
        self.lockouts: List[AccountLockout] = []
        self.audit_logs: List[SecurityAuditLog] = []
        self._data_lock = threading.RLock()
        self._persist = persist
        self.fs_root = Path(fs_root)
        if self._persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self.seed_defaults()
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    def seed_defaults(self) -> None:
        """Install the default permission catalog and role grants."""
        with self._data_lock:
            for perm in default_permissions():
                self.permissions.setdefault(perm.id, perm)
            existing = {(rp.role, rp.permission_id) for rp in self.role_permissions}
            for role, grants in DEFAULT_ROLE_GRANTS.items():
                for resource, action in grants:
                    pid = permission_id_for(permission_name(resource, action))
                    if (role, pid) not in existing:
                        self.role_permissions.append(
                            RolePermission(role=role, permission_id=pid, granted_by="system")
                        )

    # accounts
    def get_user(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        target = normalize_email(email)
        with self._data_lock:
            for user in self.users.values():
                if user.email == target:
                    return replace(user)
        return None

    def get_user_by_username(self, username: str) -> Optional[UserAccount]:
        with self._data_lock:
            for user in self.users.values():
                if user.username and user.username == username:
                    return replace(user)
        return None

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
        meta: Optional[Dict] = None,
    ) -> UserAccount:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if username and any(
                existing.username == username for existing in self.users.values()
            ):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = UserAccount(
                id=str(uuid.uuid4()),
                email=normalized,
                username=username,
                role=Role(role),
                account_status=AccountStatus(account_status),
                email_verified=email_verified,
                first_name=first_name,
                last_name=last_name,
                meta=dict(meta) if meta else {},
            )
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def update_user(self, user_id: str, **fields: Any) -> Optional[UserAccount]:
        unknown = set(fields) - _UPDATABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                if any(
                    other.email == fields["email"] and other.id != user_id
                    for other in self.users.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            if fields.get("username") and any(
                other.username == fields["username"] and other.id != user_id
                for other in self.users.values()
            ):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if "role" in fields:
                fields["role"] = Role(fields["role"])
            if "account_status" in fields:
                fields["account_status"] = AccountStatus(fields["account_status"])
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def increment_login_attempts(self, user_id: str) -> int:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            user.login_attempts += 1
            user.updated_at = utcnow()
            self._persist_state()
            return user.login_attempts

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            record = self.credentials.get(user_id)
            return replace(record) if record else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = PasswordRecord(
                user_id=user_id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": session.user_id})
            for existing in self.sessions.values():
                if existing.token == session.token:
                    raise ConstraintViolation("session token exists", {"field": "token"})
                if session.refresh_token and existing.refresh_token == session.refresh_token:
                    raise ConstraintViolation(
                        "refresh token exists", {"field": "refresh_token"}
                    )
            stored = replace(session, ip_address=parse_ip_address(session.ip_address))
            self.sessions[stored.id] = stored
            self._persist_state()
            return replace(stored)

    def _find_session(self, token: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.token == token:
                return session
        return None

    def _find_session_by_refresh(self, refresh_token: str) -> Optional[Session]:
        for session in self.sessions.values():
            if session.refresh_token and session.refresh_token == refresh_token:
                return session
        return None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            session = self._find_session(token)
            return replace(session) if session else None

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            session = self._find_session_by_refresh(refresh_token)
            return replace(session) if session else None

    def touch_session(self, token: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            session = self._find_session(token)
            if not session or not session.is_valid_at(now):
                return None
            session.last_activity = now
            self._persist_state()
            return replace(session)

    def invalidate_session(self, token: str) -> bool:
        with self._data_lock:
            session = self._find_session(token)
            if not session or not session.is_active:
                return False
            session.is_active = False
            self._persist_state()
            return True

    def invalidate_session_by_refresh_token(self, refresh_token: str) -> bool:
        with self._data_lock:
            session = self._find_session_by_refresh(refresh_token)
            if not session or not session.is_active:
                return False
            session.is_active = False
            self._persist_state()
            return True

    def invalidate_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for session in self.sessions.values():
                if session.user_id == user_id and session.is_active:
                    session.is_active = False
                    count += 1
            if count:
                self._persist_state()
            return count

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, session in self.sessions.items()
                if session.is_purgeable_at(now)
            ]
            for sid in stale:
                del self.sessions[sid]
            if stale:
                self._persist_state()
            return len(stale)

    # permissions
    def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
    ) -> Permission:
        validate_permission_fields(name, resource, action)
        with self._data_lock:
            if any(p.name == name for p in self.permissions.values()):
                raise ConstraintViolation("permission name exists", {"field": "name"})
            perm = Permission(
                id=str(uuid.uuid4()),
                name=name,
                resource=resource,
                action=action,
                description=description,
            )
            self.permissions[perm.id] = perm
            self._persist_state()
            return replace(perm)

    def get_permission(self, permission_id: str) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def get_permission_by_name(self, name: str) -> Optional[Permission]:
        with self._data_lock:
            for perm in self.permissions.values():
                if perm.name == name:
                    return replace(perm)
        return None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return sorted(
                (replace(p) for p in self.permissions.values()), key=lambda p: p.name
            )

    def get_role_permissions(self, role: Role) -> List[Permission]:
        role = Role(role)
        with self._data_lock:
            return [
                replace(self.permissions[rp.permission_id])
                for rp in self.role_permissions
                if rp.role == role and rp.permission_id in self.permissions
            ]

    def get_user_permissions(
        self, user_id: str
    ) -> List[Tuple[UserPermission, Permission]]:
        with self._data_lock:
            return [
                (replace(up), replace(self.permissions[up.permission_id]))
                for up in self.user_permissions
                if up.user_id == user_id and up.permission_id in self.permissions
            ]

    def grant_role_permission(
        self, role: Role, permission_id: str, granted_by: Optional[str] = None
    ) -> RolePermission:
        role = Role(role)
        with self._data_lock:
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            for rp in self.role_permissions:
                if rp.role == role and rp.permission_id == permission_id:
                    return replace(rp)
            grant = RolePermission(role=role, permission_id=permission_id, granted_by=granted_by)
            self.role_permissions.append(grant)
            self._persist_state()
            return replace(grant)

    def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserPermission:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            # Re-granting replaces the previous expiry
            self.user_permissions = [
                up
                for up in self.user_permissions
                if not (up.user_id == user_id and up.permission_id == permission_id)
            ]
            grant = UserPermission(
                user_id=user_id,
                permission_id=permission_id,
                granted_by=granted_by,
                expires_at=expires_at,
            )
            self.user_permissions.append(grant)
            self._persist_state()
            return replace(grant)

    def revoke_role_permission(self, role: Role, permission_id: str) -> bool:
        role = Role(role)
        with self._data_lock:
            before = len(self.role_permissions)
            self.role_permissions = [
                rp
                for rp in self.role_permissions
                if not (rp.role == role and rp.permission_id == permission_id)
            ]
            removed = len(self.role_permissions) != before
            if removed:
                self._persist_state()
            return removed

    def revoke_user_permission(self, user_id: str, permission_id: str) -> bool:
        with self._data_lock:
            before = len(self.user_permissions)
            self.user_permissions = [
                up
                for up in self.user_permissions
                if not (up.user_id == user_id and up.permission_id == permission_id)
            ]
            removed = len(self.user_permissions) != before
            if removed:
                self._persist_state()
            return removed

    # attempts and lockouts
    def record_failed_attempt(self, attempt: FailedLoginAttempt) -> None:
        with self._data_lock:
            self.failed_attempts.append(
                replace(attempt, ip_address=parse_ip_address(attempt.ip_address))
            )
            self._persist_state()

    def count_failed_attempts(
        self,
        *,
        since: datetime,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> int:
        ip_value = parse_ip_address(ip_address)
        with self._data_lock:
            return sum(
                1
                for attempt in self.failed_attempts
                if attempt.attempt_time >= since
                and (ip_value is None or attempt.ip_address == ip_value)
                and (identifier is None or attempt.identifier == identifier)
            )

    def create_lockout(self, lockout: AccountLockout) -> AccountLockout:
        with self._data_lock:
            if lockout.user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": lockout.user_id})
            for existing in self.lockouts:
                if existing.user_id == lockout.user_id and existing.is_active:
                    existing.is_active = False
            stored = replace(lockout, is_active=True)
            self.lockouts.append(stored)
            self._persist_state()
            return replace(stored)

    def get_active_lockout(self, user_id: str) -> Optional[AccountLockout]:
        with self._data_lock:
            for lockout in reversed(self.lockouts):
                if lockout.user_id == user_id and lockout.is_active:
                    return replace(lockout)
        return None

    def clear_lockout(self, user_id: str) -> bool:
        with self._data_lock:
            cleared = False
            for lockout in self.lockouts:
                if lockout.user_id == user_id and lockout.is_active:
                    lockout.is_active = False
                    cleared = True
            if cleared:
                self._persist_state()
            return cleared

    # audit
    def append_audit_log(self, entry: SecurityAuditLog) -> None:
        with self._data_lock:
            self.audit_logs.append(replace(entry, metadata=dict(entry.metadata or {})))
            self._persist_state()

    def list_audit_logs(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        category: Optional[EventCategory] = None,
        limit: int = 100,
    ) -> List[SecurityAuditLog]:
        with self._data_lock:
            matched = [
                replace(entry)
                for entry in self.audit_logs
                if (user_id is None or entry.user_id == user_id)
                and (event_type is None or entry.event_type == event_type)
                and (category is None or entry.event_category == category)
            ]
        matched.sort(key=lambda e: e.created_at, reverse=True)
        return matched[:limit]

    # persistence
    def _persist_state(self) -> None:
        if not self._persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": rec.user_id,
                    "password_hash": rec.password_hash,
                    "password_algo": rec.password_algo,
                    "updated_at": format_datetime(rec.updated_at),
                }
                for rec in self.credentials.values()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "permissions": [
                self._serialize_permission(p) for p in self.permissions.values()
            ],
            "role_permissions": [
                {
                    "role": rp.role.value,
                    "permission_id": rp.permission_id,
                    "granted_by": rp.granted_by,
                    "granted_at": format_datetime(rp.granted_at),
                }
                for rp in self.role_permissions
            ],
            "user_permissions": [
                {
                    "user_id": up.user_id,
                    "permission_id": up.permission_id,
                    "granted_by": up.granted_by,
                    "granted_at": format_datetime(up.granted_at),
                    "expires_at": format_datetime(up.expires_at),
                }
                for up in self.user_permissions
            ],
            "failed_attempts": [
                {
                    "id": a.id,
                    "identifier": a.identifier,
                    "ip_address": a.ip_address,
                    "failure_reason": a.failure_reason.value,
                    "attempt_time": format_datetime(a.attempt_time),
                    "user_agent": a.user_agent,
                }
                for a in self.failed_attempts
            ],
            "lockouts": [self._serialize_lockout(lk) for lk in self.lockouts],
            "audit_logs": [self._serialize_audit(e) for e in self.audit_logs],
        }
        path = self._state_path()
        tmp_path = None
        try:
            # replace, never rewrite in place: a crash leaves the previous snapshot
            fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=".auth_store_", suffix=".tmp")
            with os.fdopen(fd, "w") as handle:
                os.fchmod(handle.fileno(), 0o600)
                handle.write(json.dumps(state, indent=2))
            os.replace(tmp_path, path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if not self._persist:
            return False
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: PasswordRecord(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                updated_at=parse_datetime(entry.get("updated_at")) or utcnow(),
            )
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.permissions = {
            p["id"]: self._deserialize_permission(p) for p in data.get("permissions", [])
        }
        self.role_permissions = [
            RolePermission(
                role=Role(rp["role"]),
                permission_id=rp["permission_id"],
                granted_by=rp.get("granted_by"),
                granted_at=parse_datetime(rp.get("granted_at")) or utcnow(),
            )
            for rp in data.get("role_permissions", [])
        ]
        self.user_permissions = [
            UserPermission(
                user_id=up["user_id"],
                permission_id=up["permission_id"],
                granted_by=up.get("granted_by"),
                granted_at=parse_datetime(up.get("granted_at")) or utcnow(),
                expires_at=parse_datetime(up.get("expires_at")),
            )
            for up in data.get("user_permissions", [])
        ]
        self.failed_attempts = [
            FailedLoginAttempt(
                id=a["id"],
                identifier=a["identifier"],
                ip_address=a.get("ip_address"),
                failure_reason=FailureReason(a["failure_reason"]),
                attempt_time=parse_datetime(a["attempt_time"]),
                user_agent=a.get("user_agent"),
            )
            for a in data.get("failed_attempts", [])
        ]
        self.lockouts = [self._deserialize_lockout(lk) for lk in data.get("lockouts", [])]
        self.audit_logs = [self._deserialize_audit(e) for e in data.get("audit_logs", [])]
        # Catalog additions from newer releases apply to existing snapshots too
        self.seed_defaults()
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
            audit_logs=len(self.audit_logs),
        )
        return True

    def _serialize_user(self, user: UserAccount) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role.value,
            "account_status": user.account_status.value,
            "login_attempts": user.login_attempts,
            "email_verified": user.email_verified,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "created_at": format_datetime(user.created_at),
            "updated_at": format_datetime(user.updated_at),
            "last_login": format_datetime(user.last_login),
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> UserAccount:
        return UserAccount(
            id=str(data["id"]),
            email=data["email"],
            username=data.get("username"),
            role=Role(data.get("role", Role.STUDENT.value)),
            account_status=AccountStatus(
                data.get("account_status", AccountStatus.ACTIVE.value)
            ),
            login_attempts=int(data.get("login_attempts", 0)),
            email_verified=bool(data.get("email_verified", False)),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
            last_login=parse_datetime(data.get("last_login")),
            meta=data.get("meta") or {},
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "token": session.token,
            "refresh_token": session.refresh_token,
            "expires_at": format_datetime(session.expires_at),
            "refresh_expires_at": format_datetime(session.refresh_expires_at),
            "created_at": format_datetime(session.created_at),
            "last_activity": format_datetime(session.last_activity),
            "login_method": session.login_method.value,
            "is_active": session.is_active,
            "ip_address": session.ip_address,
            "user_agent": session.user_agent,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token=data["token"],
            refresh_token=data.get("refresh_token"),
            expires_at=parse_datetime(data["expires_at"]),
            refresh_expires_at=parse_datetime(data.get("refresh_expires_at")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            last_activity=parse_datetime(data.get("last_activity")) or utcnow(),
            login_method=LoginMethod(data.get("login_method", LoginMethod.PASSWORD.value)),
            is_active=bool(data.get("is_active", True)),
            ip_address=parse_ip_address(data.get("ip_address")),
            user_agent=data.get("user_agent"),
        )

    def _serialize_permission(self, perm: Permission) -> dict:
        return {
            "id": perm.id,
            "name": perm.name,
            "resource": perm.resource,
            "action": perm.action,
            "description": perm.description,
            "created_at": format_datetime(perm.created_at),
        }

    def _deserialize_permission(self, data: dict) -> Permission:
        return Permission(
            id=data["id"],
            name=data["name"],
            resource=data["resource"],
            action=data["action"],
            description=data.get("description"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_lockout(self, lockout: AccountLockout) -> dict:
        return {
            "id": lockout.id,
            "user_id": lockout.user_id,
            "reason": lockout.reason.value,
            "locked_at": format_datetime(lockout.locked_at),
            "locked_until": format_datetime(lockout.locked_until),
            "locked_by": lockout.locked_by,
            "is_active": lockout.is_active,
        }

    def _deserialize_lockout(self, data: dict) -> AccountLockout:
        return AccountLockout(
            id=data["id"],
            user_id=data["user_id"],
            reason=LockoutReason(data["reason"]),
            locked_at=parse_datetime(data.get("locked_at")) or utcnow(),
            locked_until=parse_datetime(data.get("locked_until")),
            locked_by=data.get("locked_by"),
            is_active=bool(data.get("is_active", True)),
        )

    def _serialize_audit(self, entry: SecurityAuditLog) -> dict:
        return {
            "id": entry.id,
            "event_type": entry.event_type.value,
            "event_category": entry.event_category.value,
            "description": entry.description,
            "success": entry.success,
            "risk_level": entry.risk_level.value,
            "created_at": format_datetime(entry.created_at),
            "user_id": entry.user_id,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "session_id": entry.session_id,
            "resource": entry.resource,
            "metadata": entry.metadata,
        }

    def _deserialize_audit(self, data: dict) -> SecurityAuditLog:
        return SecurityAuditLog(
            id=data["id"],
            event_type=SecurityEventType(data["event_type"]),
            event_category=EventCategory(data["event_category"]),
            description=data.get("description", ""),
            success=bool(data.get("success", False)),
            risk_level=RiskLevel(data.get("risk_level", RiskLevel.LOW.value)),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            session_id=data.get("session_id"),
            resource=data.get("resource"),
            metadata=data.get("metadata") or {},
        )
