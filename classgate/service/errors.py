from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Failure raised by the auth services.

    ``error_code`` is stable and ``status_code`` follows HTTP so an outer
    transport can translate the error without parsing ``message``. Messages
    of credential failures stay generic; the audit log keeps the real reason.
    """

    status_code = 400
    error_code = "validation_error"

    def __init__(self, message: str, *, detail: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.message, "detail": self.detail}


class ValidationError(ServiceError):
    """Input rejected by schema or password rules."""


class AuthenticationError(ServiceError):
    """Bad credentials, unusable account or invalid token."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is authenticated but may not perform the action."""

    status_code = 403
    error_code = "forbidden"


class AuthorizationError(ForbiddenError):
    def __init__(self, resource: str, action: str, message: str = "Insufficient permissions") -> None:
        super().__init__(message, detail={"resource": resource, "action": action})
        self.resource = resource
        self.action = action


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Duplicate email, username or permission, or a state that already holds."""

    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Throttled; ``retry_after`` is in seconds."""

    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class ServerError(ServiceError):
    """The backing store failed or timed out."""

    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
