"""Audit sinks for security events."""

from sessionguard.audit.sink import AuditSink, MemoryAuditSink, StructlogAuditSink, audit_category

__all__ = [
    "AuditSink",
    "MemoryAuditSink",
    "StructlogAuditSink",
    "audit_category",
]
