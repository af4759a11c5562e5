"""
Audit sinks.

A sink receives every security event the monitor persists. Delivery is
fire-and-forget from the caller's point of view.
"""

from abc import ABC, abstractmethod

from sessionguard.logging import log_audit_event
from sessionguard.models import SecurityEvent, SecurityEventType

# Audit category per event type; anything unlisted is a detected threat
_CATEGORIES: dict[SecurityEventType, str] = {
    SecurityEventType.LOGIN_FAILED: "authentication",
    SecurityEventType.LOGIN_SUCCESS: "authentication",
    SecurityEventType.SESSION_CREATED: "session",
    SecurityEventType.SESSION_REVOKED: "session",
    SecurityEventType.DEVICE_REGISTERED: "device",
    SecurityEventType.DEVICE_TRUSTED: "device",
    SecurityEventType.DEVICE_BLOCKED: "device",
}


def audit_category(event_type: SecurityEventType) -> str:
    return _CATEGORIES.get(event_type, "threat")


class AuditSink(ABC):
    """Append-only destination for security events."""

    @abstractmethod
    async def append(self, event: SecurityEvent) -> None:
        """Record an event."""


class StructlogAuditSink(AuditSink):
    """Writes events as structured audit log entries."""

    async def append(self, event: SecurityEvent) -> None:
        log_audit_event(
            event.type.value,
            audit_category(event.type),
            subject_id=event.subject_id,
            tenant_id=event.tenant_id,
            session_id=event.session_id,
            ip_address=event.ip_address,
            severity=event.severity.value,
            event_id=event.id,
            occurred_at=event.created_at.isoformat() if event.created_at else None,
            details=event.details,
        )


class MemoryAuditSink(AuditSink):
    """Keeps events in a list."""

    def __init__(self) -> None:
        self.events: list[SecurityEvent] = []

    async def append(self, event: SecurityEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: SecurityEventType) -> list[SecurityEvent]:
        return [e for e in self.events if e.type == event_type]
