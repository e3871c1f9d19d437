from __future__ import annotations

from typing import Any, List, Optional, Protocol

from accesscore.logging import get_security_audit_logger
from accesscore.service.clock import Clock, IdGenerator, SystemClock, uuid4_id
from accesscore.storage.models import SecurityEvent

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

EVENT_REFRESH_TOKEN_REUSE = "refresh_token_reuse"
EVENT_MFA_LOCKOUT = "mfa_lockout"
EVENT_CROSS_TENANT_ACCESS = "cross_tenant_access"
EVENT_SESSION_LIMIT_EVICTION = "session_limit_eviction"
EVENT_SUSPICIOUS_SESSION = "suspicious_session"

_LOG_METHOD = {
    SEVERITY_LOW: "info",
    SEVERITY_MEDIUM: "warning",
    SEVERITY_HIGH: "warning",
    SEVERITY_CRITICAL: "critical",
}


class SecurityEventStore(Protocol):
    def append_security_event(self, event: SecurityEvent) -> SecurityEvent: ...

    def list_security_events(
        self,
        *,
        principal_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]: ...


class SecurityAuditLog:
    """Durable security trail, separate from ordinary failed-auth logging."""

    def __init__(
        self,
        store: SecurityEventStore,
        *,
        clock: Optional[Clock] = None,
        id_generator: IdGenerator = uuid4_id,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self._new_id = id_generator
        self.logger = get_security_audit_logger()

    def record(
        self,
        event_type: str,
        severity: str,
        *,
        principal_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        **detail: Any,
    ) -> SecurityEvent:
        if severity not in _LOG_METHOD:
            raise ValueError(f"unknown severity {severity!r}")
        event = SecurityEvent(
            id=self._new_id(),
            event_type=event_type,
            severity=severity,
            principal_id=principal_id,
            tenant_id=tenant_id,
            detail=dict(detail),
            created_at=self.clock.now(),
        )
        self.store.append_security_event(event)
        log = getattr(self.logger, _LOG_METHOD[severity])
        log(
            event_type,
            severity=severity,
            event_id=event.id,
            principal_id=principal_id,
            tenant_id=tenant_id,
            **detail,
        )
        return event

    def recent(
        self,
        *,
        principal_id: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[SecurityEvent]:
        return self.store.list_security_events(
            principal_id=principal_id, event_type=event_type, limit=limit
        )
