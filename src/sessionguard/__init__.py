"""
sessionguard - session lifecycle and behavioral threat detection.

Session admission with a per-subject device ceiling, token validation with idle and
absolute expiry, and heuristic detectors for brute force, session hijack and
multi-device anomalies. All state lives in a pluggable backing store.
"""

from sessionguard.audit import AuditSink, MemoryAuditSink, StructlogAuditSink
from sessionguard.clock import Clock, FrozenClock, SystemClock
from sessionguard.device_manager import MultiDeviceManager
from sessionguard.exceptions import (
    ConfigurationError,
    LockUnavailableError,
    SessionGuardError,
    StoreError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from sessionguard.models import (
    ActivityContext,
    DeviceContext,
    DeviceInfo,
    LoginAttempt,
    RevocationReason,
    SecurityEventType,
    Session,
    ThreatAssessment,
    ThreatSeverity,
    ThreatType,
)
from sessionguard.security_monitor import SecurityMonitor
from sessionguard.session_manager import SessionManager
from sessionguard.settings import Settings, get_settings, reset_settings
from sessionguard.store import MemoryStore, StoreAdapter, create_store

__version__ = "1.0.0"

__all__ = [
    # Core
    "SessionManager",
    "SecurityMonitor",
    "MultiDeviceManager",
    # Stores
    "StoreAdapter",
    "MemoryStore",
    "create_store",
    # Audit
    "AuditSink",
    "MemoryAuditSink",
    "StructlogAuditSink",
    # Clock
    "Clock",
    "SystemClock",
    "FrozenClock",
    # Models
    "ActivityContext",
    "DeviceContext",
    "DeviceInfo",
    "LoginAttempt",
    "RevocationReason",
    "SecurityEventType",
    "Session",
    "ThreatAssessment",
    "ThreatSeverity",
    "ThreatType",
    # Settings
    "Settings",
    "get_settings",
    "reset_settings",
    # Exceptions
    "SessionGuardError",
    "ConfigurationError",
    "StoreError",
    "StoreUnavailableError",
    "StoreTimeoutError",
    "LockUnavailableError",
    "__version__",
]
