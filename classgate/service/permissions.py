"""Role/permission resolution with wildcard matching and a write-invalidated cache."""

from __future__ import annotations

import threading
import time
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from classgate.config import Settings
from classgate.logging import get_logger, sanitize_error_message
from classgate.schemas import AccessResult
from classgate.service.audit import AuditLog
from classgate.service.calls import call_store
from classgate.service.errors import AuthorizationError, ConflictError, NotFoundError
from classgate.storage.base import AuthStore
from classgate.storage.errors import ConstraintViolation, StorageError
from classgate.storage.models import (
    WILDCARD,
    EventCategory,
    Permission,
    RiskLevel,
    Role,
    RolePermission,
    SecurityEventType,
    UserAccount,
    UserPermission,
    utcnow,
)

logger = get_logger(__name__)

# Management authority only; never implies resource permissions
ROLE_HIERARCHY: Dict[Role, frozenset] = {
    Role.ADMIN: frozenset({Role.TEACHER, Role.PARENT, Role.STUDENT}),
    Role.TEACHER: frozenset({Role.STUDENT}),
    Role.PARENT: frozenset({Role.STUDENT}),
    Role.STUDENT: frozenset(),
}


def manageable_roles(role: Role) -> frozenset:
    return ROLE_HIERARCHY.get(Role(role), frozenset())


def can_manage_role(manager: Role, target: Role) -> bool:
    return Role(target) in manageable_roles(manager)


def match_permission(
    permissions: Iterable[Permission], resource: str, action: str
) -> Optional[Permission]:
    """Return the grant covering (resource, action), by precedence.

    Exact match first, then (*, action), (resource, *) and (*, *).
    """
    candidates = list(permissions)
    for want_resource, want_action in (
        (resource, action),
        (WILDCARD, action),
        (resource, WILDCARD),
        (WILDCARD, WILDCARD),
    ):
        for perm in candidates:
            if perm.resource == want_resource and perm.action == want_action:
                return perm
    return None


class PermissionCache:
    """TTL cache keyed ``role:<role>`` / ``user:<id>``.

    The lock only guards dict operations and is never held across storage
    calls. Every invalidation bumps a generation counter; a fill computed
    from a read that began under an older generation is dropped, so a slow
    concurrent resolve cannot re-insert a grant that was just revoked.
    """

    def __init__(self, ttl_seconds: int = 300) -> None:
        self.ttl_seconds = ttl_seconds
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._generation = 0

    @staticmethod
    def role_key(role: Role) -> str:
        return f"role:{Role(role).value}"

    @staticmethod
    def user_key(user_id: str) -> str:
        return f"user:{user_id}"

    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: str) -> Optional[Any]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at <= now:
                del self._entries[key]
                return None
            return value

    def put(self, key: str, value: Any, generation: int) -> bool:
        if self.ttl_seconds <= 0:
            return False
        with self._lock:
            if generation != self._generation:
                return False
            self._entries[key] = (value, time.monotonic() + self.ttl_seconds)
            return True

    def invalidate(self, *keys: str) -> None:
        """Drop ``keys`` (everything when none are given) and bump the generation."""
        with self._lock:
            self._generation += 1
            if not keys:
                self._entries.clear()
                return
            for key in keys:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PermissionResolver:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditLog,
        settings: Settings,
        cache: Optional[PermissionCache] = None,
    ) -> None:
        self.store = store
        self.audit = audit
        self.settings = settings
        self.cache = cache or PermissionCache(settings.permission_cache_ttl_seconds)

    async def _role_permissions(self, role: Role) -> List[Permission]:
        key = self.cache.role_key(role)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)
        generation = self.cache.generation()
        perms = await call_store(self.store.get_role_permissions, role)
        self.cache.put(key, tuple(perms), generation)
        return perms

    async def _user_grants(self, user_id: str) -> List[Tuple[UserPermission, Permission]]:
        key = self.cache.user_key(user_id)
        cached = self.cache.get(key)
        if cached is None:
            generation = self.cache.generation()
            grants = await call_store(self.store.get_user_permissions, user_id)
            self.cache.put(key, tuple(grants), generation)
        else:
            grants = list(cached)
        # expiry is evaluated on every read, never frozen into the cache
        now = utcnow()
        return [(grant, perm) for grant, perm in grants if not grant.is_expired(now)]

    async def _effective(self, user: UserAccount) -> List[Permission]:
        merged: Dict[str, Permission] = {}
        for perm in await self._role_permissions(user.role):
            merged.setdefault(perm.id, perm)
        for _, perm in await self._user_grants(user.id):
            merged.setdefault(perm.id, perm)
        return sorted(merged.values(), key=lambda p: p.name)

    async def resolve(self, user_id: str) -> List[Permission]:
        """Role permissions plus unexpired user grants, de-duplicated by id."""
        user = await call_store(self.store.get_user, user_id)
        if not user:
            return []
        return await self._effective(user)

    async def check(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: Optional[dict] = None,
    ) -> AccessResult:
        context = context or {}
        target = f"{resource}:{action}"
        try:
            user = await call_store(self.store.get_user, user_id)
            if not user:
                result = AccessResult(granted=False, reason="User not found")
            elif not user.is_active:
                result = AccessResult(
                    granted=False,
                    reason=f"Account is {user.account_status.value}",
                    role=user.role,
                )
            else:
                matched = match_permission(await self._effective(user), resource, action)
                if matched:
                    result = AccessResult(
                        granted=True,
                        reason="Access granted",
                        role=user.role,
                        matched_permission=matched.name,
                    )
                else:
                    result = AccessResult(
                        granted=False, reason="Insufficient permissions", role=user.role
                    )
        except StorageError as exc:
            logger.error(
                "access_check_failed",
                user_id=user_id,
                resource=target,
                error=sanitize_error_message(str(exc)),
            )
            await self.audit.record(
                SecurityEventType.ACCESS_DENIED,
                EventCategory.AUTHORIZATION,
                f"Access check failed for {target}",
                success=False,
                risk_level=RiskLevel.HIGH,
                user_id=user_id,
                resource=target,
                ip_address=context.get("ip_address"),
                user_agent=context.get("user_agent"),
                metadata={"error_type": type(exc).__name__},
            )
            return AccessResult(granted=False, reason="Access check failed")

        await self.audit.record(
            SecurityEventType.ACCESS_GRANTED if result.granted else SecurityEventType.ACCESS_DENIED,
            EventCategory.AUTHORIZATION,
            f"{result.reason} for {target}",
            success=result.granted,
            risk_level=RiskLevel.LOW if result.granted else RiskLevel.MEDIUM,
            user_id=user_id,
            resource=target,
            ip_address=context.get("ip_address"),
            user_agent=context.get("user_agent"),
            metadata={
                "role": result.role.value if result.role else None,
                "matched_permission": result.matched_permission,
            },
        )
        return result

    async def check_many(
        self,
        user_id: str,
        requests: Sequence[Tuple[str, str]],
        context: Optional[dict] = None,
    ) -> Dict[str, AccessResult]:
        results: Dict[str, AccessResult] = {}
        for resource, action in requests:
            results[f"{resource}:{action}"] = await self.check(
                user_id, resource, action, context
            )
        return results

    async def require(
        self,
        user_id: str,
        resource: str,
        action: str,
        context: Optional[dict] = None,
    ) -> AccessResult:
        result = await self.check(user_id, resource, action, context)
        if not result.granted:
            raise AuthorizationError(resource, action)
        return result

    # -- catalog and grants -----------------------------------------------

    async def list_permissions(self) -> List[Permission]:
        return await call_store(self.store.list_permissions)

    async def create_permission(
        self,
        name: str,
        resource: str,
        action: str,
        description: Optional[str] = None,
        *,
        actor_id: Optional[str] = None,
    ) -> Permission:
        try:
            perm = await call_store(
                self.store.create_permission, name, resource, action, description
            )
        except ConstraintViolation as exc:
            raise ConflictError("permission already exists", detail=exc.detail) from exc
        await self._audit_change(actor_id, f"Created permission {name}", {"permission": name})
        return perm

    async def _require_permission(self, permission_id: str) -> Permission:
        perm = await call_store(self.store.get_permission, permission_id)
        if not perm:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        return perm

    async def grant_role_permission(
        self, role: Role, permission_id: str, *, granted_by: Optional[str] = None
    ) -> RolePermission:
        role = Role(role)
        perm = await self._require_permission(permission_id)
        grant = await call_store(self.store.grant_role_permission, role, permission_id, granted_by)
        self.cache.invalidate(self.cache.role_key(role))
        await self._audit_change(
            granted_by,
            f"Granted {perm.name} to role {role.value}",
            {"role": role.value, "permission": perm.name},
        )
        return grant

    async def revoke_role_permission(
        self, role: Role, permission_id: str, *, revoked_by: Optional[str] = None
    ) -> bool:
        role = Role(role)
        removed = await call_store(self.store.revoke_role_permission, role, permission_id)
        self.cache.invalidate(self.cache.role_key(role))
        if removed:
            await self._audit_change(
                revoked_by,
                f"Revoked permission from role {role.value}",
                {"role": role.value, "permission_id": permission_id},
            )
        return removed

    async def grant_user_permission(
        self,
        user_id: str,
        permission_id: str,
        *,
        granted_by: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> UserPermission:
        perm = await self._require_permission(permission_id)
        try:
            grant = await call_store(
                self.store.grant_user_permission,
                user_id,
                permission_id,
                granted_by,
                expires_at,
            )
        except ConstraintViolation as exc:
            raise NotFoundError("user not found", detail=exc.detail) from exc
        self.cache.invalidate(self.cache.user_key(user_id))
        await self._audit_change(
            granted_by,
            f"Granted {perm.name} to user",
            {
                "target_user_id": user_id,
                "permission": perm.name,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
        )
        return grant

    async def revoke_user_permission(
        self, user_id: str, permission_id: str, *, revoked_by: Optional[str] = None
    ) -> bool:
        removed = await call_store(self.store.revoke_user_permission, user_id, permission_id)
        self.cache.invalidate(self.cache.user_key(user_id))
        if removed:
            await self._audit_change(
                revoked_by,
                "Revoked permission from user",
                {"target_user_id": user_id, "permission_id": permission_id},
            )
        return removed

    def invalidate_user(self, user_id: str) -> None:
        self.cache.invalidate(self.cache.user_key(user_id))

    async def _audit_change(
        self, actor_id: Optional[str], description: str, metadata: dict
    ) -> None:
        await self.audit.record(
            SecurityEventType.PERMISSION_CHANGE,
            EventCategory.ADMIN_ACTION,
            description,
            success=True,
            risk_level=RiskLevel.MEDIUM,
            user_id=actor_id,
            metadata=metadata,
        )
