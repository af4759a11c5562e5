"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: SESSIONGUARD_SESSION__DEVICE_CEILING=5
"""

from datetime import timedelta
from enum import Enum

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreBackend(str, Enum):
    """Supported backing stores."""

    MEMORY = "memory"
    REDIS = "redis"
    DATABASE = "database"


class SessionSettings(BaseModel):
    """Session lifecycle configuration."""

    device_ceiling: int = Field(3, gt=0, description="Max concurrently active sessions per subject")
    absolute_lifetime_hours: int = Field(24, gt=0, description="Session lifetime from creation")
    max_idle_minutes: int = Field(30, gt=0, description="Idle timeout in minutes")
    remember_device_days: int = Field(
        30, gt=0, description="Hard cap for remember-device sessions, measured from creation"
    )
    token_bytes: int = Field(64, ge=32, description="Random bytes in a session token")
    active_query_limit: int = Field(50, gt=0, description="Upper bound for active-session reads")
    analysis_timeout_seconds: float = Field(
        0.03, gt=0, description="Budget for the security analysis side channel"
    )

    @property
    def absolute_lifetime(self) -> timedelta:
        return timedelta(hours=self.absolute_lifetime_hours)

    @property
    def remember_device_lifetime(self) -> timedelta:
        return timedelta(days=self.remember_device_days)


class DetectionPolicy(BaseModel):
    """Heuristic thresholds for the threat detectors."""

    brute_force_window_minutes: int = Field(15, gt=0, description="Brute-force trailing window")
    brute_force_threshold: int = Field(5, gt=0, description="Failed logins that trigger brute force")
    hijack_window_minutes: int = Field(30, gt=0, description="IP history window for hijack checks")
    similarity_threshold: float = Field(
        0.5, ge=0.0, le=1.0, description="Fingerprint similarity below which a hijack is flagged"
    )
    multi_device_window_minutes: int = Field(5, gt=0, description="Multi-device trailing window")
    multi_device_threshold: int = Field(2, gt=1, description="Distinct devices that trigger an alert")
    location_window_days: int = Field(30, gt=0, description="Known-IP history window")
    location_min_history: int = Field(
        3, gt=0, description="Sessions required before location anomalies are reported"
    )

    @property
    def brute_force_window(self) -> timedelta:
        return timedelta(minutes=self.brute_force_window_minutes)

    @property
    def hijack_window(self) -> timedelta:
        return timedelta(minutes=self.hijack_window_minutes)

    @property
    def multi_device_window(self) -> timedelta:
        return timedelta(minutes=self.multi_device_window_minutes)

    @property
    def location_window(self) -> timedelta:
        return timedelta(days=self.location_window_days)


class DetectionSettings(DetectionPolicy):
    """Detection configuration with per-tenant overrides."""

    alert_limit: int = Field(50, gt=0, description="Default number of alerts returned")
    tenant_overrides: dict[str, dict[str, float | int]] = Field(
        default_factory=dict, description="Per-tenant threshold overrides"
    )

    def for_tenant(self, tenant_id: str | None) -> DetectionPolicy:
        """Resolve the effective policy for a tenant."""
        base = DetectionPolicy.model_validate(
            self.model_dump(exclude={"alert_limit", "tenant_overrides"})
        )
        overrides = self.tenant_overrides.get(tenant_id or "")
        if not overrides:
            return base
        return DetectionPolicy.model_validate({**base.model_dump(), **overrides})


class StoreSettings(BaseModel):
    """Backing store configuration."""

    backend: StoreBackend = Field(StoreBackend.MEMORY, description="Store backend")
    redis_url: str = Field("redis://localhost:6379/2", description="Redis URL")
    key_prefix: str = Field("sessionguard:", description="Redis key prefix")
    database_url: str = Field(
        "sqlite+aiosqlite:///./sessionguard.sqlite", description="Async SQLAlchemy URL"
    )
    operation_timeout_seconds: float = Field(
        0.25, gt=0, description="Upper bound for a single store call"
    )
    lock_timeout_seconds: float = Field(5.0, gt=0, description="Advisory lock lease")
    lock_blocking_timeout_seconds: float = Field(
        0.5, gt=0, description="How long to wait for a per-subject lock"
    )


class ObservabilitySettings(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
    log_format: str = Field("json", description="Log format (json or console)")
    enable_correlation_ids: bool = Field(False, description="Add thread names to log entries")


class Settings(BaseSettings):
    """Main settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    app_name: str = Field("sessionguard", description="Application name")

    session: SessionSettings = SessionSettings()  # type: ignore[call-arg]
    detection: DetectionSettings = DetectionSettings()  # type: ignore[call-arg]
    store: StoreSettings = StoreSettings()  # type: ignore[call-arg]
    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None
