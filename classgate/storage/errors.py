from __future__ import annotations

from typing import Any, Dict, Optional

# Most specific first: "refresh_token" also ends in "token"
_CONSTRAINED_FIELDS = ("refresh_token", "token", "email", "username", "name")


class _StoreFailure(Exception):
    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConstraintViolation(_StoreFailure):
    """A uniqueness or reference rule rejected the write."""

    @property
    def field(self) -> Optional[str]:
        """Column behind a uniqueness violation, when it can be told.

        Memory stores report it directly; Postgres reports the constraint
        name, e.g. ``user_account_email_key``.
        """
        if self.detail.get("field"):
            return self.detail["field"]
        constraint = self.detail.get("constraint") or ""
        for name in _CONSTRAINED_FIELDS:
            if constraint.endswith(f"_{name}_key"):
                return name
        return None


class StorageError(_StoreFailure):
    """The backing store failed for a reason other than a constraint."""


class StorageTimeout(StorageError):
    """A storage call did not complete before its deadline."""


__all__ = ["ConstraintViolation", "StorageError", "StorageTimeout"]
