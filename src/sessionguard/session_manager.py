"""
Session lifecycle: create, validate, refresh and revoke.

Raw tokens leave this module exactly once, in the result of ``create_session``;
only their SHA-256 digest is stored. Public operations never raise store errors,
they return tagged results instead. Validation fails closed, the security
analysis side channel fails open.
"""

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta

import structlog

from sessionguard.clock import Clock, SystemClock
from sessionguard.device_manager import MultiDeviceManager
from sessionguard.exceptions import LockUnavailableError, StoreError, StoreTimeoutError
from sessionguard.fingerprint import compute_fingerprint
from sessionguard.models import (
    ActivityContext,
    CreateSessionResult,
    DeviceContext,
    FailureReason,
    OperationFailure,
    RevocationReason,
    RevokeResult,
    SecurityEventType,
    Session,
    ThreatSeverity,
    ValidationReason,
    ValidationResult,
    new_id,
)
from sessionguard.security_monitor import SecurityMonitor
from sessionguard.settings import SessionSettings, get_settings
from sessionguard.store.interfaces import StoreAdapter, bounded

logger = structlog.get_logger(__name__)


def hash_token(token: str) -> str:
    """Digest under which a session token is stored."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _store_failure(error: StoreError) -> OperationFailure:
    if isinstance(error, StoreTimeoutError):
        reason = FailureReason.STORE_TIMEOUT
    elif isinstance(error, LockUnavailableError):
        reason = FailureReason.LOCK_UNAVAILABLE
    else:
        reason = FailureReason.STORE_UNAVAILABLE
    return OperationFailure(reason=reason, message=str(error))


def _revocation_fields(now: datetime, reason: RevocationReason) -> dict:
    return {
        "is_active": False,
        "is_revoked": True,
        "revoked_at": now,
        "revoked_reason": reason.value,
    }


class SessionManager:
    """Production session manager."""

    def __init__(
        self,
        store: StoreAdapter,
        devices: MultiDeviceManager | None = None,
        monitor: SecurityMonitor | None = None,
        clock: Clock | None = None,
        settings: SessionSettings | None = None,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings().session
        self.devices = devices or MultiDeviceManager(store, self.clock, self.settings, monitor)
        self.monitor = monitor

    async def _call(self, awaitable):
        return await bounded(awaitable, self.store.operation_timeout)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_session(
        self, subject_id: str, tenant_id: str, context: DeviceContext | None = None
    ) -> CreateSessionResult:
        """Admit a new session for a subject, evicting the least recently used if full."""
        if not subject_id or not tenant_id:
            return CreateSessionResult(
                failure=OperationFailure(
                    FailureReason.INVALID_INPUT, "subject_id and tenant_id are required"
                )
            )

        context = context or DeviceContext()
        now = self.clock.now()
        token = secrets.token_hex(self.settings.token_bytes)
        lifetime = (
            timedelta(hours=context.lifetime_hours)
            if context.lifetime_hours
            else self.settings.absolute_lifetime
        )
        session = Session(
            id=new_id(),
            subject_id=subject_id,
            tenant_id=tenant_id,
            token_hash=hash_token(token),
            device_info=context.device_info,
            device_fingerprint=compute_fingerprint(context.device_info),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            created_at=now,
            last_activity_at=now,
            expires_at=now + lifetime,
            max_idle_minutes=context.idle_minutes or self.settings.max_idle_minutes,
            remember_device=context.remember_device,
        )

        try:
            device = await self._call(
                self.store.get_device(subject_id, session.device_fingerprint)
            )
            if device is not None and device.is_blocked:
                logger.warning(
                    "Session refused for blocked device",
                    subject_id=subject_id,
                    fingerprint=session.device_fingerprint,
                )
                return CreateSessionResult(
                    failure=OperationFailure(FailureReason.DEVICE_BLOCKED, "device is blocked")
                )

            async with self.store.subject_lock(subject_id):
                active = await self._call(
                    self.store.get_active_sessions(
                        subject_id, limit=self.settings.active_query_limit
                    )
                )
                evicted = await self._evict_to_fit(active, now)
                await self._call(self.store.insert_session(session))
        except StoreError as e:
            logger.error("Failed to create session", subject_id=subject_id, error=str(e))
            return CreateSessionResult(failure=_store_failure(e))

        logger.info(
            "Session created",
            session_id=session.id,
            subject_id=subject_id,
            tenant_id=tenant_id,
            evicted=evicted,
        )
        await self._after_create(session, evicted)
        return CreateSessionResult(session=session, token=token)

    async def _evict_to_fit(self, active: list[Session], now: datetime) -> list[str]:
        """Revoke least recently active sessions until one more fits under the ceiling."""
        remaining = list(active)
        evicted = []
        while (
            target := self.devices.select_eviction_target(remaining, self.settings.device_ceiling)
        ) is not None:
            await self._call(
                self.store.update_session_fields(
                    target, _revocation_fields(now, RevocationReason.DEVICE_LIMIT_EXCEEDED)
                )
            )
            evicted.append(target)
            remaining = [s for s in remaining if s.id != target]
        return evicted

    async def _after_create(self, session: Session, evicted: list[str]) -> None:
        try:
            _, created = await self.devices.register_device(
                session.subject_id, session.device_info, session.created_at
            )
        except StoreError as e:
            logger.warning("Device registration failed", session_id=session.id, error=str(e))
            created = False

        if self.monitor is None:
            return

        if created:
            await self.monitor.log_security_event(
                SecurityEventType.DEVICE_REGISTERED,
                subject_id=session.subject_id,
                tenant_id=session.tenant_id,
                ip_address=session.ip_address,
                user_agent=session.user_agent,
                session_id=session.id,
                details={"fingerprint": session.device_fingerprint},
            )
        await self.monitor.log_security_event(
            SecurityEventType.SESSION_CREATED,
            subject_id=session.subject_id,
            tenant_id=session.tenant_id,
            ip_address=session.ip_address,
            user_agent=session.user_agent,
            session_id=session.id,
            details={"remember_device": session.remember_device, "evicted": evicted},
        )
        for session_id in evicted:
            await self.monitor.log_security_event(
                SecurityEventType.SESSION_REVOKED,
                subject_id=session.subject_id,
                tenant_id=session.tenant_id,
                session_id=session_id,
                severity=ThreatSeverity.MEDIUM,
                details={"reason": RevocationReason.DEVICE_LIMIT_EXCEEDED.value},
            )

    # ------------------------------------------------------------------
    # Validate / refresh
    # ------------------------------------------------------------------

    async def validate_session(
        self, token: str, context: ActivityContext | None = None
    ) -> ValidationResult:
        """Check a token and slide its activity window.

        Any store failure yields an invalid result.
        """
        if not token or not isinstance(token, str):
            return ValidationResult(is_valid=False)

        now = self.clock.now()
        try:
            session = await self._call(self.store.get_session_by_token(hash_token(token)))
        except StoreError as e:
            logger.warning("Session lookup failed", error=str(e))
            return ValidationResult(is_valid=False)

        invalid = self._check(session, now)
        if invalid is not None:
            return invalid

        try:
            updated = await self._call(
                self.store.update_session_fields(session.id, {"last_activity_at": now})
            )
        except StoreError as e:
            logger.warning("Session activity update failed", session_id=session.id, error=str(e))
            return ValidationResult(is_valid=False)

        # A concurrent revoke may have landed between the read and the update
        invalid = self._check(updated, now)
        if invalid is not None:
            return invalid

        if context is not None and self.monitor is not None:
            await self._analyze_activity(updated, context)

        return ValidationResult(is_valid=True, session=updated, reason=ValidationReason.OK)

    def _check(self, session: Session | None, now: datetime) -> ValidationResult | None:
        if session is None:
            return ValidationResult(is_valid=False)
        if session.is_revoked:
            return ValidationResult(False, session, ValidationReason.REVOKED)
        if not session.is_active:
            return ValidationResult(False, session, ValidationReason.INACTIVE)
        if session.is_expired(now):
            return ValidationResult(False, session, ValidationReason.EXPIRED)
        if session.is_idle(now):
            return ValidationResult(False, session, ValidationReason.IDLE_TIMEOUT)
        return None

    async def _analyze_activity(self, session: Session, context: ActivityContext) -> None:
        async def run() -> None:
            threats = await self.monitor.analyze_session_activity(session, context)
            for threat in threats:
                await self.monitor.handle_security_threat(threat)

        try:
            await asyncio.wait_for(run(), timeout=self.settings.analysis_timeout_seconds)
        except TimeoutError:
            logger.warning("Session activity analysis timed out", session_id=session.id)
        except Exception as e:
            logger.warning(
                "Session activity analysis failed", session_id=session.id, error=str(e)
            )

    async def refresh_session(self, token: str, ip_address: str | None = None) -> bool:
        """Slide the idle window of a valid session.

        The absolute expiry never moves, except for remember-device sessions which may be
        extended up to ``remember_device_lifetime`` from creation.
        """
        result = await self.validate_session(token)
        if not result.is_valid:
            return False

        session = result.session
        now = self.clock.now()
        fields = {"last_activity_at": now}
        if ip_address:
            fields["ip_address"] = ip_address
        if session.remember_device:
            extended = min(
                now + self.settings.absolute_lifetime,
                session.created_at + self.settings.remember_device_lifetime,
            )
            fields["expires_at"] = max(session.expires_at, extended)

        try:
            updated = await self._call(self.store.update_session_fields(session.id, fields))
        except StoreError as e:
            logger.warning("Session refresh failed", session_id=session.id, error=str(e))
            return False
        return updated is not None

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    async def revoke_session(
        self,
        session_id: str,
        reason: RevocationReason | str = RevocationReason.MANUAL_LOGOUT,
    ) -> RevokeResult:
        """Revoke a session. Repeating the call is a no-op that reports success."""
        try:
            reason = RevocationReason(reason)
        except ValueError:
            return RevokeResult(
                False,
                session_id,
                OperationFailure(FailureReason.INVALID_INPUT, f"unknown reason {reason!r}"),
            )

        try:
            session = await self._call(self.store.get_session(session_id))
            if session is None:
                return RevokeResult(
                    False, session_id, OperationFailure(FailureReason.NOT_FOUND)
                )

            async with self.store.subject_lock(session.subject_id):
                current = await self._call(self.store.get_session(session_id))
                if current is None:
                    return RevokeResult(
                        False, session_id, OperationFailure(FailureReason.NOT_FOUND)
                    )
                if current.is_revoked:
                    return RevokeResult(True, session_id)
                await self._call(
                    self.store.update_session_fields(
                        session_id, _revocation_fields(self.clock.now(), reason)
                    )
                )
        except StoreError as e:
            logger.error("Failed to revoke session", session_id=session_id, error=str(e))
            return RevokeResult(False, session_id, _store_failure(e))

        logger.info(
            "Session revoked",
            session_id=session_id,
            subject_id=session.subject_id,
            reason=reason.value,
        )
        if self.monitor is not None:
            await self.monitor.log_security_event(
                SecurityEventType.SESSION_REVOKED,
                subject_id=session.subject_id,
                tenant_id=session.tenant_id,
                session_id=session_id,
                ip_address=session.ip_address,
                details={"reason": reason.value},
            )
        return RevokeResult(True, session_id)

    async def revoke_other_sessions(
        self,
        current_token: str,
        subject_id: str,
        tenant_id: str | None = None,
        reason: RevocationReason = RevocationReason.MANUAL_LOGOUT,
    ) -> int:
        """Revoke every active session of the subject except the caller's own."""
        keep = hash_token(current_token) if current_token else None
        try:
            sessions = await self._call(
                self.store.get_active_sessions(
                    subject_id, tenant_id=tenant_id, limit=self.settings.active_query_limit
                )
            )
        except StoreError as e:
            logger.error("Failed to load sessions", subject_id=subject_id, error=str(e))
            return 0

        revoked = 0
        for session in sessions:
            if session.token_hash == keep:
                continue
            result = await self.revoke_session(session.id, reason)
            if result.success:
                revoked += 1
        return revoked

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    async def get_user_sessions(
        self, subject_id: str, tenant_id: str | None = None
    ) -> list[Session]:
        """Currently valid sessions, most recent activity first."""
        now = self.clock.now()
        try:
            sessions = await self._call(
                self.store.get_active_sessions(
                    subject_id, tenant_id=tenant_id, limit=self.settings.active_query_limit
                )
            )
        except StoreError as e:
            logger.error("Failed to load user sessions", subject_id=subject_id, error=str(e))
            return []
        return [s for s in sessions if s.is_valid(now)]

    async def get_active_session_count(
        self, subject_id: str, tenant_id: str | None = None
    ) -> int:
        return len(await self.get_user_sessions(subject_id, tenant_id))

    async def sweep_expired_sessions(self, subject_id: str) -> int:
        """Deactivate a subject's expired or idle sessions.

        Expiry is otherwise evaluated lazily on validation; swept sessions are marked
        inactive, not revoked.
        """
        now = self.clock.now()
        swept = 0
        try:
            sessions = await self._call(
                self.store.get_active_sessions(subject_id, limit=self.settings.active_query_limit)
            )
            for session in sessions:
                if session.is_expired(now) or session.is_idle(now):
                    await self._call(
                        self.store.update_session_fields(session.id, {"is_active": False})
                    )
                    swept += 1
        except StoreError as e:
            logger.error("Expired session sweep failed", subject_id=subject_id, error=str(e))
        if swept:
            logger.info("Expired sessions swept", subject_id=subject_id, count=swept)
        return swept
