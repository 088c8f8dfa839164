"""Common storage utilities shared between memory and postgres implementations.

Keeps the default permission catalog, row coercion and validation helpers in
one place so both backends seed and interpret records identically.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, List, Optional, Tuple

from classgate.storage.errors import ConstraintViolation
from classgate.storage.models import Permission, Role

# Stable namespace so catalog permission ids match across backends and restarts
_PERMISSION_NAMESPACE = uuid.UUID("0f6c5a52-3c1e-4b7e-9a44-7d4c9d6f1e2b")


# ============================================================================
# DEFAULT PERMISSION CATALOG
# ============================================================================

DEFAULT_ROLE_GRANTS: Dict[Role, List[Tuple[str, str]]] = {
    Role.ADMIN: [
        ("users", "read"),
        ("users", "write"),
        ("users", "delete"),
        ("courses", "read"),
        ("courses", "write"),
        ("courses", "delete"),
        ("quizzes", "read"),
        ("quizzes", "write"),
        ("quizzes", "delete"),
        ("analytics", "read"),
        ("system", "admin"),
    ],
    Role.TEACHER: [
        ("users", "read"),
        ("courses", "read"),
        ("courses", "write"),
        ("quizzes", "read"),
        ("quizzes", "write"),
        ("analytics", "read"),
        ("students", "manage"),
    ],
    Role.PARENT: [
        ("children", "read"),
        ("children", "progress"),
        ("courses", "read"),
        ("quizzes", "read"),
    ],
    Role.STUDENT: [
        ("courses", "read"),
        ("quizzes", "take"),
        ("profile", "read"),
        ("profile", "write"),
    ],
}


def permission_name(resource: str, action: str) -> str:
    return f"{resource}:{action}"


def permission_id_for(name: str) -> str:
    """Deterministic id for a catalog permission name."""
    return str(uuid.uuid5(_PERMISSION_NAMESPACE, name))


def default_permissions() -> List[Permission]:
    """Every distinct permission referenced by the default role grants."""
    seen: Dict[str, Permission] = {}
    for grants in DEFAULT_ROLE_GRANTS.values():
        for resource, action in grants:
            name = permission_name(resource, action)
            if name in seen:
                continue
            seen[name] = Permission(
                id=permission_id_for(name),
                name=name,
                resource=resource,
                action=action,
                description=f"{action} access to {resource}",
            )
    return list(seen.values())


# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def normalize_email(email: str) -> str:
    return email.strip().lower()


def validate_permission_fields(name: str, resource: str, action: str) -> None:
    """Reject permissions with blank name, resource or action.

    Raises:
        ConstraintViolation: If any field is empty
    """
    for field_name, value in (("name", name), ("resource", resource), ("action", action)):
        if not value or not str(value).strip():
            raise ConstraintViolation(
                f"permission {field_name} required", {field_name: value}
            )


# ============================================================================
# DATA TRANSFORMATION HELPERS
# ============================================================================

def parse_ip_address(raw_ip: Any) -> Optional[str]:
    """Normalize an IP address to its canonical string form.

    Args:
        raw_ip: Raw IP address value (string, ipaddress object, or None)

    Returns:
        Canonical string, the raw value when it does not parse, or None
    """
    if raw_ip is None:
        return None
    text = str(raw_ip).strip()
    if not text:
        return None
    try:
        return str(ip_address(text))
    except ValueError:
        return text


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse metadata field from JSON string or dict.

    Args:
        raw_meta: Raw metadata value (string, dict, or None)

    Returns:
        Parsed dict or None
    """
    if isinstance(raw_meta, str):
        try:
            parsed = json.loads(raw_meta)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    if isinstance(raw_meta, dict):
        return raw_meta
    return None


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_datetime(raw: Any) -> Optional[datetime]:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return ensure_aware(raw)
    return ensure_aware(datetime.fromisoformat(str(raw)))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
