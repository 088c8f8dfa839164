from __future__ import annotations

import uuid
from typing import Any, List, Optional

from classgate.logging import get_logger, sanitize_error_message, sanitize_response_data
from classgate.service.calls import call_store
from classgate.storage.base import AuthStore
from classgate.storage.models import (
    EventCategory,
    RiskLevel,
    SecurityAuditLog,
    SecurityEventType,
    utcnow,
)

logger = get_logger(__name__)


class AuditLog:
    """Append-only writer for security events.

    ``record`` never raises: a failed append is logged and the calling flow
    continues, since losing an audit row must not turn into a login outage.
    """

    def __init__(self, store: AuthStore) -> None:
        self.store = store

    async def record(
        self,
        event_type: SecurityEventType,
        category: EventCategory,
        description: str,
        *,
        success: bool,
        risk_level: RiskLevel = RiskLevel.LOW,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        session_id: Optional[str] = None,
        resource: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[SecurityAuditLog]:
        entry = SecurityAuditLog(
            id=str(uuid.uuid4()),
            event_type=event_type,
            event_category=category,
            description=description,
            success=success,
            risk_level=risk_level,
            created_at=utcnow(),
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            session_id=session_id,
            resource=resource,
            metadata=sanitize_response_data(metadata or {}),
        )
        try:
            await call_store(self.store.append_audit_log, entry)
        except Exception as exc:
            logger.error(
                "audit_append_failed",
                event_type=event_type.value,
                user_id=user_id,
                error=sanitize_error_message(str(exc)),
                error_type=type(exc).__name__,
            )
            return None
        log = logger.warning if risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL) else logger.info
        log(
            "security_event",
            event_type=event_type.value,
            category=category.value,
            success=success,
            risk_level=risk_level.value,
            user_id=user_id,
        )
        return entry

    async def list_events(
        self,
        *,
        user_id: Optional[str] = None,
        event_type: Optional[SecurityEventType] = None,
        category: Optional[EventCategory] = None,
        limit: int = 100,
    ) -> List[SecurityAuditLog]:
        return await call_store(
            self.store.list_audit_logs,
            user_id=user_id,
            event_type=event_type,
            category=category,
            limit=limit,
        )
