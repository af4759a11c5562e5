"""
Per-subject device registry and concurrent-device ceiling.

Trust is an explicit external decision: a device is registered untrusted on first
sighting and only ``trust_device`` promotes it.
"""

from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

import structlog

from sessionguard.clock import Clock, SystemClock
from sessionguard.exceptions import StoreError
from sessionguard.fingerprint import compute_fingerprint, is_same_subnet
from sessionguard.models import (
    DeviceAdmission,
    DeviceAlert,
    DeviceAlertType,
    DeviceInfo,
    DeviceRecord,
    DeviceSession,
    DeviceSyncStatus,
    RecommendationType,
    RevocationReason,
    SecurityEventType,
    SecurityRecommendation,
    Session,
    ThreatSeverity,
)
from sessionguard.security_monitor import SecurityMonitor
from sessionguard.settings import SessionSettings, get_settings
from sessionguard.store.interfaces import StoreAdapter, bounded

logger = structlog.get_logger(__name__)

# Devices with activity inside this window count as active in the sync view
SYNC_ACTIVE_WINDOW = timedelta(hours=24)

# Devices idle longer than this are suggested for cleanup
STALE_DEVICE_AGE = timedelta(days=7)

# Share of the device ceiling at which a warning is raised
CEILING_WARNING_RATIO = 0.8


def select_eviction_target(active_sessions: Sequence[Session], ceiling: int) -> str | None:
    """Pick the session to evict so a new one fits under ``ceiling``.

    Returns the id of the least recently active session when the subject is at or
    above the ceiling, otherwise None. Ties go to the oldest ``created_at``, then id.
    """
    candidates = [s for s in active_sessions if s.is_active]
    if len(candidates) < ceiling:
        return None
    oldest = min(candidates, key=lambda s: (s.last_activity_at, s.created_at, s.id))
    return oldest.id


class MultiDeviceManager:
    """Device records, trust decisions and the concurrent-session ceiling."""

    def __init__(
        self,
        store: StoreAdapter,
        clock: Clock | None = None,
        settings: SessionSettings | None = None,
        monitor: SecurityMonitor | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings().session
        self.monitor = monitor

    async def _call(self, awaitable):
        return await bounded(awaitable, self.store.operation_timeout)

    async def _log_event(self, event_type: SecurityEventType, **kwargs: Any) -> None:
        if self.monitor is not None:
            await self.monitor.log_security_event(event_type, **kwargs)

    async def is_device_trusted(self, subject_id: str, fingerprint: str) -> bool:
        """True only for a known, trusted and unblocked device. Fails closed."""
        try:
            record = await self._call(self.store.get_device(subject_id, fingerprint))
        except StoreError as e:
            logger.warning(
                "Device trust lookup failed", subject_id=subject_id, error=str(e)
            )
            return False
        if record is None or record.fingerprint != fingerprint:
            return False
        return record.is_trusted and not record.is_blocked

    def select_eviction_target(
        self, active_sessions: Sequence[Session], ceiling: int | None = None
    ) -> str | None:
        return select_eviction_target(
            active_sessions, ceiling if ceiling is not None else self.settings.device_ceiling
        )

    async def enforce_device_ceiling(
        self, subject_id: str, ceiling: int | None = None, *, tenant_id: str | None = None
    ) -> str | None:
        """Load the subject's active sessions and pick an eviction target.

        Store errors propagate; the caller decides how to fail.
        """
        active = await self._call(
            self.store.get_active_sessions(
                subject_id, tenant_id=tenant_id, limit=self.settings.active_query_limit
            )
        )
        return self.select_eviction_target(active, ceiling)

    async def register_device(
        self, subject_id: str, device_info: DeviceInfo, seen_at: datetime | None = None
    ) -> tuple[DeviceRecord, bool]:
        """Record a sighting of a device.

        Returns:
            The stored record and whether it was created by this call
        """
        seen_at = seen_at or self.clock.now()
        fingerprint = compute_fingerprint(device_info)
        existing = await self._call(self.store.get_device(subject_id, fingerprint))

        if existing is None:
            record = DeviceRecord(
                subject_id=subject_id,
                fingerprint=fingerprint,
                first_seen_at=seen_at,
                last_used_at=seen_at,
                device_info=device_info,
            )
            created = True
        else:
            record = replace(existing, last_used_at=max(existing.last_used_at, seen_at))
            created = False

        await self._call(self.store.upsert_device(record))
        if created:
            logger.info("Device registered", subject_id=subject_id, fingerprint=fingerprint)
        return record, created

    async def trust_device(
        self, subject_id: str, fingerprint: str, *, tenant_id: str | None = None
    ) -> DeviceRecord | None:
        """Mark a known device trusted. Blocked devices stay untrusted."""
        record = await self._call(self.store.get_device(subject_id, fingerprint))
        if record is None:
            return None
        if record.is_blocked:
            logger.warning(
                "Refusing to trust blocked device", subject_id=subject_id, fingerprint=fingerprint
            )
            return record
        if not record.is_trusted:
            record = replace(record, is_trusted=True, trusted_at=self.clock.now())
            await self._call(self.store.upsert_device(record))
            logger.info("Device trusted", subject_id=subject_id, fingerprint=fingerprint)
            await self._log_event(
                SecurityEventType.DEVICE_TRUSTED,
                subject_id=subject_id,
                tenant_id=tenant_id,
                details={"fingerprint": fingerprint},
            )
        return record

    async def block_device(
        self,
        subject_id: str,
        fingerprint: str,
        reason: str | None = None,
        *,
        tenant_id: str | None = None,
    ) -> tuple[DeviceRecord | None, int]:
        """Block a device and revoke its active sessions.

        Returns:
            The updated record (None if unknown) and the number of sessions revoked
        """
        record = await self._call(self.store.get_device(subject_id, fingerprint))
        if record is None:
            return None, 0

        now = self.clock.now()
        newly_blocked = not record.is_blocked
        if newly_blocked:
            record = replace(
                record,
                is_blocked=True,
                is_trusted=False,
                blocked_at=now,
                blocked_reason=reason,
            )
            await self._call(self.store.upsert_device(record))

        active = await self._call(
            self.store.get_active_sessions(
                subject_id, tenant_id=tenant_id, limit=self.settings.active_query_limit
            )
        )
        revoked: list[Session] = []
        for session in active:
            if session.device_fingerprint != fingerprint or session.is_revoked:
                continue
            await self._call(
                self.store.update_session_fields(
                    session.id,
                    {
                        "is_active": False,
                        "is_revoked": True,
                        "revoked_at": now,
                        "revoked_reason": RevocationReason.DEVICE_BLOCKED.value,
                    },
                )
            )
            revoked.append(session)

        logger.warning(
            "Device blocked",
            subject_id=subject_id,
            fingerprint=fingerprint,
            reason=reason,
            sessions_revoked=len(revoked),
        )
        if newly_blocked:
            await self._log_event(
                SecurityEventType.DEVICE_BLOCKED,
                subject_id=subject_id,
                tenant_id=tenant_id,
                severity=ThreatSeverity.MEDIUM,
                details={
                    "fingerprint": fingerprint,
                    "reason": reason,
                    "sessions_revoked": [s.id for s in revoked],
                },
            )
        for session in revoked:
            await self._log_event(
                SecurityEventType.SESSION_REVOKED,
                subject_id=subject_id,
                tenant_id=session.tenant_id,
                session_id=session.id,
                ip_address=session.ip_address,
                severity=ThreatSeverity.MEDIUM,
                details={"reason": RevocationReason.DEVICE_BLOCKED.value},
            )
        return record, len(revoked)

    async def get_user_devices(
        self, subject_id: str, tenant_id: str | None = None
    ) -> list[DeviceSession]:
        """Devices behind the subject's active sessions, most recent first."""
        try:
            sessions = await self._call(
                self.store.get_active_sessions(
                    subject_id, tenant_id=tenant_id, limit=self.settings.active_query_limit
                )
            )
            records = await self._call(self.store.list_devices(subject_id))
        except StoreError as e:
            logger.error("Failed to load user devices", subject_id=subject_id, error=str(e))
            return []

        trusted = {r.fingerprint for r in records if r.is_trusted and not r.is_blocked}
        return [
            DeviceSession(
                session_id=s.id,
                fingerprint=s.device_fingerprint,
                device_info=s.device_info,
                ip_address=s.ip_address,
                last_activity_at=s.last_activity_at,
                created_at=s.created_at,
                is_trusted=s.device_fingerprint in trusted,
            )
            for s in sessions
            if not s.is_revoked
        ]

    async def validate_new_device(
        self,
        subject_id: str,
        tenant_id: str | None,
        device_info: DeviceInfo,
        ip_address: str | None = None,
    ) -> DeviceAdmission:
        """Assess a device about to open a session.

        Blocked devices are refused. Reaching the ceiling is reported but still allowed,
        since admission evicts the least recently active session.
        """
        fingerprint = compute_fingerprint(device_info)
        alerts: list[DeviceAlert] = []

        try:
            record = await self._call(self.store.get_device(subject_id, fingerprint))
            active = await self._call(
                self.store.get_active_sessions(
                    subject_id, tenant_id=tenant_id, limit=self.settings.active_query_limit
                )
            )
        except StoreError as e:
            logger.error("Device admission check failed", subject_id=subject_id, error=str(e))
            return DeviceAdmission(is_allowed=False, fingerprint=fingerprint)

        if record is not None and record.is_blocked:
            alerts.append(
                DeviceAlert(
                    type=DeviceAlertType.BLOCKED_DEVICE,
                    severity=ThreatSeverity.CRITICAL,
                    message="Device is blocked for this account",
                    action_required=True,
                )
            )
            return DeviceAdmission(is_allowed=False, fingerprint=fingerprint, alerts=alerts)

        ceiling = self.settings.device_ceiling
        if len(active) >= ceiling:
            alerts.append(
                DeviceAlert(
                    type=DeviceAlertType.CONCURRENT_LIMIT,
                    severity=ThreatSeverity.HIGH,
                    message=f"Concurrent device limit ({ceiling}) reached",
                    action_required=True,
                )
            )

        if record is None:
            alerts.append(
                DeviceAlert(
                    type=DeviceAlertType.NEW_DEVICE,
                    severity=ThreatSeverity.MEDIUM,
                    message="Access from a new device",
                )
            )

        if ip_address:
            other_ips = {s.ip_address for s in active if s.ip_address and s.ip_address != ip_address}
            if other_ips and not any(is_same_subnet(ip_address, ip) for ip in other_ips):
                alerts.append(
                    DeviceAlert(
                        type=DeviceAlertType.LOCATION_CHANGE,
                        severity=ThreatSeverity.MEDIUM,
                        message="Access from an unusual network location",
                    )
                )

        return DeviceAdmission(is_allowed=True, fingerprint=fingerprint, alerts=alerts)

    async def check_device_sync_status(
        self, subject_id: str, tenant_id: str | None = None
    ) -> DeviceSyncStatus:
        devices = await self.get_user_devices(subject_id, tenant_id)
        if not devices:
            return DeviceSyncStatus()

        cutoff = self.clock.now() - SYNC_ACTIVE_WINDOW
        active = [d for d in devices if d.last_activity_at > cutoff]
        return DeviceSyncStatus(
            total_devices=len(devices),
            active_devices=len(active),
            trusted_devices=sum(1 for d in devices if d.is_trusted),
            suspicious_devices=sum(1 for d in active if not d.is_trusted),
            last_activity_at=max(d.last_activity_at for d in devices),
        )

    async def generate_security_recommendations(
        self, subject_id: str, tenant_id: str | None = None
    ) -> list[SecurityRecommendation]:
        """Suggest cleanups for stale, untrusted or too many devices."""
        devices = await self.get_user_devices(subject_id, tenant_id)
        recommendations: list[SecurityRecommendation] = []

        cutoff = self.clock.now() - STALE_DEVICE_AGE
        stale = [d for d in devices if d.last_activity_at < cutoff]
        if stale:
            recommendations.append(
                SecurityRecommendation(
                    type=RecommendationType.ACTION,
                    title="Clean up old sessions",
                    description=f"{len(stale)} old session(s) have been idle for over a week",
                    action_label="Revoke old sessions",
                    action_data={
                        "action": "revoke_old_sessions",
                        "session_ids": [d.session_id for d in stale],
                    },
                )
            )

        untrusted = [d for d in devices if not d.is_trusted]
        if untrusted:
            recommendations.append(
                SecurityRecommendation(
                    type=RecommendationType.WARNING,
                    title="Untrusted devices",
                    description=f"{len(untrusted)} device(s) not in the trusted list",
                )
            )

        ceiling = self.settings.device_ceiling
        if len(devices) >= ceiling * CEILING_WARNING_RATIO:
            recommendations.append(
                SecurityRecommendation(
                    type=RecommendationType.WARNING,
                    title="Approaching device limit",
                    description=f"{len(devices)}/{ceiling} devices in use",
                )
            )

        return recommendations
