"""
Session, security event and device records plus the result types returned by the core.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from uuid import uuid4


def _dt(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def new_id() -> str:
    return str(uuid4())


class SessionStatus(str, Enum):
    """Session status enumeration."""

    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    INACTIVE = "inactive"


class RevocationReason(str, Enum):
    """Why a session was revoked."""

    MANUAL_LOGOUT = "manual_logout"
    DEVICE_LIMIT_EXCEEDED = "device_limit_exceeded"
    SECURITY_VIOLATION = "security_violation"
    TIMEOUT = "timeout"
    ADMIN_TERMINATED = "admin_terminated"
    DEVICE_BLOCKED = "device_blocked"


class SecurityEventType(str, Enum):
    """Types of security events persisted by the monitor."""

    LOGIN_FAILED = "login_failed"
    LOGIN_SUCCESS = "login_success"
    BRUTE_FORCE_DETECTED = "brute_force_detected"
    SESSION_HIJACK_DETECTED = "session_hijack_detected"
    MULTIPLE_DEVICES_DETECTED = "multiple_devices_detected"
    LOCATION_ANOMALY_DETECTED = "location_anomaly_detected"
    SESSION_CREATED = "session_created"
    SESSION_REVOKED = "session_revoked"
    DEVICE_REGISTERED = "device_registered"
    DEVICE_TRUSTED = "device_trusted"
    DEVICE_BLOCKED = "device_blocked"


class ThreatType(str, Enum):
    BRUTE_FORCE = "brute_force"
    SESSION_HIJACK = "session_hijack"
    MULTIPLE_DEVICES = "multiple_devices"
    LOCATION_ANOMALY = "location_anomaly"


class ThreatSeverity(str, Enum):
    """Severity levels, comparable by rank."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(ThreatSeverity).index(self)


# Detected-threat event type for each threat type
THREAT_EVENT_TYPES: dict[ThreatType, SecurityEventType] = {
    ThreatType.BRUTE_FORCE: SecurityEventType.BRUTE_FORCE_DETECTED,
    ThreatType.SESSION_HIJACK: SecurityEventType.SESSION_HIJACK_DETECTED,
    ThreatType.MULTIPLE_DEVICES: SecurityEventType.MULTIPLE_DEVICES_DETECTED,
    ThreatType.LOCATION_ANOMALY: SecurityEventType.LOCATION_ANOMALY_DETECTED,
}


@dataclass
class DeviceInfo:
    """Client environment summary supplied by the calling layer."""

    browser_family: str | None = None
    os_family: str | None = None
    form_factor: str = "desktop"  # desktop, mobile, tablet
    is_mobile: bool = False
    screen_resolution: str | None = None
    timezone: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "DeviceInfo":
        data = data or {}
        return cls(
            browser_family=data.get("browser_family"),
            os_family=data.get("os_family"),
            form_factor=data.get("form_factor") or "desktop",
            is_mobile=bool(data.get("is_mobile", False)),
            screen_resolution=data.get("screen_resolution"),
            timezone=data.get("timezone"),
        )


@dataclass
class DeviceContext:
    """Everything the create path needs to know about the client."""

    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    ip_address: str | None = None
    user_agent: str | None = None
    remember_device: bool = False
    idle_minutes: int | None = None
    lifetime_hours: int | None = None


@dataclass
class ActivityContext:
    """Request attributes observed while a session is in use."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass
class Session:
    """Server-tracked authenticated context for one subject/device pairing."""

    id: str
    subject_id: str
    tenant_id: str
    token_hash: str
    device_info: DeviceInfo
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    max_idle_minutes: int = 30
    ip_address: str | None = None
    user_agent: str | None = None
    is_active: bool = True
    is_revoked: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    remember_device: bool = False
    device_fingerprint: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """Absolute expiry: the session is dead from ``expires_at`` onwards."""
        return now >= self.expires_at

    def is_idle(self, now: datetime) -> bool:
        return now - self.last_activity_at > timedelta(minutes=self.max_idle_minutes)

    def is_valid(self, now: datetime) -> bool:
        return (
            self.is_active
            and not self.is_revoked
            and not self.is_expired(now)
            and not self.is_idle(now)
        )

    def status(self, now: datetime) -> SessionStatus:
        if self.is_revoked:
            return SessionStatus.REVOKED
        if not self.is_active:
            return SessionStatus.INACTIVE
        if self.is_expired(now) or self.is_idle(now):
            return SessionStatus.EXPIRED
        return SessionStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        data = asdict(self)
        for key in ["created_at", "last_activity_at", "expires_at", "revoked_at"]:
            data[key] = _iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        data = dict(data)
        for key in ["created_at", "last_activity_at", "expires_at", "revoked_at"]:
            data[key] = _dt(data.get(key))
        data["device_info"] = DeviceInfo.from_dict(data.get("device_info"))
        return cls(**data)


@dataclass
class SecurityEvent:
    """Append-only record of something security-relevant."""

    type: SecurityEventType
    tenant_id: str | None = None
    subject_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    session_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    severity: ThreatSeverity = ThreatSeverity.LOW
    created_at: datetime | None = None
    id: str = field(default_factory=new_id)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["severity"] = self.severity.value
        data["created_at"] = _iso(self.created_at)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "SecurityEvent":
        data = dict(data)
        data["type"] = SecurityEventType(data["type"])
        data["severity"] = ThreatSeverity(data.get("severity") or ThreatSeverity.LOW)
        data["created_at"] = _dt(data.get("created_at"))
        data["details"] = data.get("details") or {}
        return cls(**data)


@dataclass
class DeviceRecord:
    """A device fingerprint seen for a subject."""

    subject_id: str
    fingerprint: str
    first_seen_at: datetime
    last_used_at: datetime
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    is_trusted: bool = False
    is_blocked: bool = False
    trusted_at: datetime | None = None
    blocked_at: datetime | None = None
    blocked_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ["first_seen_at", "last_used_at", "trusted_at", "blocked_at"]:
            data[key] = _iso(data[key])
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceRecord":
        data = dict(data)
        for key in ["first_seen_at", "last_used_at", "trusted_at", "blocked_at"]:
            data[key] = _dt(data.get(key))
        data["device_info"] = DeviceInfo.from_dict(data.get("device_info"))
        return cls(**data)


@dataclass
class LoginAttempt:
    """Outcome of a credential check, reported by the identity provider."""

    email: str
    ip_address: str
    user_agent: str
    success: bool
    timestamp: datetime
    subject_id: str | None = None
    tenant_id: str | None = None
    failure_reason: str | None = None


@dataclass
class ThreatAssessment:
    """Transient judgment that an activity pattern is anomalous. Never persisted as-is."""

    threat_type: ThreatType
    severity: ThreatSeverity
    confidence: float
    occurred_at: datetime
    reasons: list[str] = field(default_factory=list)
    recommended_actions: list[str] = field(default_factory=list)
    subject_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None
    description: str = ""
    evidence: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.confidence = max(0.0, min(1.0, float(self.confidence)))


# ------------------------------------------------------------------
# Results
# ------------------------------------------------------------------


class FailureReason(str, Enum):
    STORE_UNAVAILABLE = "store_unavailable"
    STORE_TIMEOUT = "store_timeout"
    LOCK_UNAVAILABLE = "lock_unavailable"
    DEVICE_BLOCKED = "device_blocked"
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"


@dataclass
class OperationFailure:
    reason: FailureReason
    message: str = ""


@dataclass
class CreateSessionResult:
    session: Session | None = None
    token: str | None = None
    failure: OperationFailure | None = None

    @property
    def success(self) -> bool:
        return self.failure is None and self.session is not None


class ValidationReason(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    REVOKED = "revoked"
    INACTIVE = "inactive"
    EXPIRED = "expired"
    IDLE_TIMEOUT = "idle_timeout"


@dataclass
class ValidationResult:
    is_valid: bool
    session: Session | None = None
    reason: ValidationReason = ValidationReason.NOT_FOUND


@dataclass
class RevokeResult:
    success: bool
    session_id: str
    failure: OperationFailure | None = None


@dataclass
class DailyCount:
    date: str
    count: int


@dataclass
class SecurityStatistics:
    total_events: int = 0
    events_by_type: dict[str, int] = field(default_factory=dict)
    events_by_day: list[DailyCount] = field(default_factory=list)
    critical_threats: int = 0
    suspicious_logins: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SecurityAlert:
    id: str
    threat_type: str
    severity: ThreatSeverity
    title: str
    created_at: datetime | None
    subject_id: str | None = None
    tenant_id: str | None = None
    ip_address: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


class DeviceAlertType(str, Enum):
    NEW_DEVICE = "new_device"
    CONCURRENT_LIMIT = "concurrent_limit"
    LOCATION_CHANGE = "location_change"
    BLOCKED_DEVICE = "blocked_device"


@dataclass
class DeviceAlert:
    type: DeviceAlertType
    severity: ThreatSeverity
    message: str
    action_required: bool = False


@dataclass
class DeviceAdmission:
    is_allowed: bool
    fingerprint: str
    alerts: list[DeviceAlert] = field(default_factory=list)


@dataclass
class DeviceSession:
    """A device as seen through one of its active sessions."""

    session_id: str
    fingerprint: str | None
    device_info: DeviceInfo
    ip_address: str | None
    last_activity_at: datetime
    created_at: datetime
    is_trusted: bool


@dataclass
class DeviceSyncStatus:
    total_devices: int = 0
    active_devices: int = 0
    trusted_devices: int = 0
    suspicious_devices: int = 0
    last_activity_at: datetime | None = None


class RecommendationType(str, Enum):
    ACTION = "action"
    WARNING = "warning"
    INFO = "info"


@dataclass
class SecurityRecommendation:
    """Housekeeping advice for a subject's set of devices."""

    type: RecommendationType
    title: str
    description: str
    action_label: str | None = None
    action_data: dict[str, Any] = field(default_factory=dict)
