"""
Heuristic threat detection over login attempts and session activity.

Detectors are independent: one failing detector is logged and skipped, the others
still run. Persisting events and handling threats never raise to the caller.
"""

import re
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

import structlog

from sessionguard.audit import AuditSink, StructlogAuditSink
from sessionguard.clock import Clock, SystemClock, as_utc
from sessionguard.exceptions import StoreError
from sessionguard.fingerprint import (
    SIMILARITY_ATTRIBUTES,
    compute_fingerprint,
    parse_user_agent,
    similarity,
)
from sessionguard.models import (
    THREAT_EVENT_TYPES,
    ActivityContext,
    DailyCount,
    LoginAttempt,
    SecurityAlert,
    SecurityEvent,
    SecurityEventType,
    SecurityStatistics,
    Session,
    ThreatAssessment,
    ThreatSeverity,
    ThreatType,
)
from sessionguard.settings import DetectionPolicy, DetectionSettings, get_settings
from sessionguard.store.interfaces import StoreAdapter, bounded

logger = structlog.get_logger(__name__)

# Confidence assigned by the fixed-weight detectors
IP_HIJACK_CONFIDENCE = 0.6
MULTI_DEVICE_CONFIDENCE = 0.7
LOCATION_ANOMALY_CONFIDENCE = 0.6
AUTOMATED_AGENT_CONFIDENCE = 0.6

AUTOMATED_AGENT_PATTERN = re.compile(r"(automated|headless|bot|crawler|spider)", re.IGNORECASE)

# How far back get_security_alerts looks
ALERT_LOOKBACK = timedelta(days=30)

ALERT_TITLES: dict[SecurityEventType, str] = {
    SecurityEventType.BRUTE_FORCE_DETECTED: "Brute force attack detected",
    SecurityEventType.SESSION_HIJACK_DETECTED: "Possible session hijack",
    SecurityEventType.MULTIPLE_DEVICES_DETECTED: "Simultaneous logins from multiple devices",
    SecurityEventType.LOCATION_ANOMALY_DETECTED: "Access from an unusual location",
}

SUSPICIOUS_LOGIN_TYPES = frozenset(
    {SecurityEventType.BRUTE_FORCE_DETECTED, SecurityEventType.LOCATION_ANOMALY_DETECTED}
)

LoginDetector = Callable[[LoginAttempt, DetectionPolicy], Awaitable[ThreatAssessment | None]]
ActivityDetector = Callable[
    [Session, ActivityContext, DetectionPolicy], Awaitable[ThreatAssessment | None]
]


class SecurityMonitor:
    """Runs threat detectors and persists security events."""

    similarity = staticmethod(similarity)

    def __init__(
        self,
        store: StoreAdapter,
        audit_sink: AuditSink | None = None,
        clock: Clock | None = None,
        settings: DetectionSettings | None = None,
    ) -> None:
        self.store = store
        self.audit_sink = audit_sink or StructlogAuditSink()
        self.clock = clock or SystemClock()
        self.settings = settings or get_settings().detection

    async def _call(self, awaitable):
        return await bounded(awaitable, self.store.operation_timeout)

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    async def analyze_login_attempt(self, attempt: LoginAttempt) -> list[ThreatAssessment]:
        """Run the login detectors against an attempt."""
        try:
            attempt = replace(attempt, timestamp=as_utc(attempt.timestamp))
        except TypeError as e:
            logger.error("Dropping malformed login attempt", error=str(e))
            return []

        policy = self.settings.for_tenant(attempt.tenant_id)
        detectors: list[LoginDetector] = [
            self._detect_brute_force,
            self._detect_multiple_devices,
            self._detect_location_anomaly,
        ]

        threats = []
        for detector in detectors:
            try:
                threat = await detector(attempt, policy)
            except Exception as e:
                logger.warning(
                    "Login detector failed",
                    detector=detector.__name__,
                    ip_address=attempt.ip_address,
                    error=str(e),
                )
                continue
            if threat is not None:
                threats.append(threat)
        return threats

    async def record_login_attempt(self, attempt: LoginAttempt) -> list[ThreatAssessment]:
        """Persist a login outcome, analyze it and hand detected threats off."""
        await self.log_security_event(
            SecurityEventType.LOGIN_SUCCESS if attempt.success else SecurityEventType.LOGIN_FAILED,
            subject_id=attempt.subject_id,
            tenant_id=attempt.tenant_id,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            details={"email": attempt.email, "failure_reason": attempt.failure_reason},
            occurred_at=attempt.timestamp,
        )
        threats = await self.analyze_login_attempt(attempt)
        for threat in threats:
            await self.handle_security_threat(threat)
        return threats

    async def _detect_brute_force(
        self, attempt: LoginAttempt, policy: DetectionPolicy
    ) -> ThreatAssessment | None:
        if not attempt.ip_address:
            return None

        # Both window ends are inclusive
        failures = await self._call(
            self.store.query_events_window(
                attempt.timestamp - policy.brute_force_window,
                attempt.timestamp,
                ip_address=attempt.ip_address,
                event_types=[SecurityEventType.LOGIN_FAILED],
            )
        )
        count = len(failures)
        threshold = policy.brute_force_threshold
        if count < threshold:
            return None

        if count >= 2 * threshold:
            severity = ThreatSeverity.CRITICAL
        elif count >= 1.5 * threshold:
            severity = ThreatSeverity.HIGH
        else:
            severity = ThreatSeverity.MEDIUM

        return ThreatAssessment(
            threat_type=ThreatType.BRUTE_FORCE,
            severity=severity,
            confidence=min(1.0, count / (2 * threshold)),
            occurred_at=attempt.timestamp,
            reasons=[
                f"{count} failed logins from {attempt.ip_address} "
                f"in {policy.brute_force_window_minutes} minutes"
            ],
            recommended_actions=["Rate limit the source address", "Notify the account owner"],
            subject_id=attempt.subject_id,
            tenant_id=attempt.tenant_id,
            ip_address=attempt.ip_address,
            description=f"Repeated login failures from {attempt.ip_address}",
            evidence={"failed_attempts": count, "threshold": threshold},
        )

    async def _detect_multiple_devices(
        self, attempt: LoginAttempt, policy: DetectionPolicy
    ) -> ThreatAssessment | None:
        if not attempt.success or not attempt.subject_id:
            return None

        sessions = await self._call(
            self.store.get_active_sessions(attempt.subject_id, tenant_id=attempt.tenant_id)
        )
        cutoff = attempt.timestamp - policy.multi_device_window
        fingerprints = {
            s.device_fingerprint or compute_fingerprint(s.device_info)
            for s in sessions
            if s.last_activity_at >= cutoff
        }
        if len(fingerprints) < policy.multi_device_threshold:
            return None

        return ThreatAssessment(
            threat_type=ThreatType.MULTIPLE_DEVICES,
            severity=ThreatSeverity.MEDIUM,
            confidence=MULTI_DEVICE_CONFIDENCE,
            occurred_at=attempt.timestamp,
            reasons=[
                f"{len(fingerprints)} devices active within "
                f"{policy.multi_device_window_minutes} minutes"
            ],
            recommended_actions=["Confirm the logins with the user", "Review active sessions"],
            subject_id=attempt.subject_id,
            tenant_id=attempt.tenant_id,
            ip_address=attempt.ip_address,
            description="Logins from several devices in a short period",
            evidence={"device_count": len(fingerprints)},
        )

    async def _detect_location_anomaly(
        self, attempt: LoginAttempt, policy: DetectionPolicy
    ) -> ThreatAssessment | None:
        if not attempt.subject_id or not attempt.ip_address:
            return None

        history = await self._call(
            self.store.query_sessions_window(
                attempt.subject_id,
                attempt.timestamp - policy.location_window,
                attempt.timestamp,
            )
        )
        if len(history) < policy.location_min_history:
            return None
        if attempt.ip_address in {s.ip_address for s in history}:
            return None

        return ThreatAssessment(
            threat_type=ThreatType.LOCATION_ANOMALY,
            severity=ThreatSeverity.LOW,
            confidence=LOCATION_ANOMALY_CONFIDENCE,
            occurred_at=attempt.timestamp,
            reasons=[f"IP address not used in the last {policy.location_window_days} days"],
            recommended_actions=["Confirm the login with the user", "Monitor the session"],
            subject_id=attempt.subject_id,
            tenant_id=attempt.tenant_id,
            ip_address=attempt.ip_address,
            description=f"Login from a previously unseen address {attempt.ip_address}",
            evidence={"known_sessions": len(history)},
        )

    # ------------------------------------------------------------------
    # Session activity
    # ------------------------------------------------------------------

    async def analyze_session_activity(
        self, session: Session, context: ActivityContext
    ) -> list[ThreatAssessment]:
        """Check in-session activity for signs of a hijacked token."""
        policy = self.settings.for_tenant(session.tenant_id)
        detectors: list[ActivityDetector] = [
            self._detect_ip_hijack,
            self._detect_ua_hijack,
            self._detect_automated_agent,
        ]

        threats = []
        for detector in detectors:
            try:
                threat = await detector(session, context, policy)
            except Exception as e:
                logger.warning(
                    "Activity detector failed",
                    detector=detector.__name__,
                    session_id=session.id,
                    error=str(e),
                )
                continue
            if threat is not None:
                threats.append(threat)
        return threats

    async def _known_ips(self, session: Session, policy: DetectionPolicy) -> set[str]:
        now = self.clock.now()
        start = now - policy.hijack_window
        known = {session.ip_address} if session.ip_address else set()

        recent_sessions = await self._call(
            self.store.query_sessions_window(session.subject_id, start, now)
        )
        known.update(s.ip_address for s in recent_sessions if s.ip_address)

        logins = await self._call(
            self.store.query_events_window(
                start,
                now,
                subject_id=session.subject_id,
                event_types=[SecurityEventType.LOGIN_SUCCESS],
            )
        )
        known.update(e.ip_address for e in logins if e.ip_address)
        return known

    async def _detect_ip_hijack(
        self, session: Session, context: ActivityContext, policy: DetectionPolicy
    ) -> ThreatAssessment | None:
        if not context.ip_address:
            return None
        known = await self._known_ips(session, policy)
        if context.ip_address in known:
            return None

        return ThreatAssessment(
            threat_type=ThreatType.SESSION_HIJACK,
            severity=ThreatSeverity.MEDIUM,
            confidence=IP_HIJACK_CONFIDENCE,
            occurred_at=self.clock.now(),
            reasons=["IP address changed"],
            recommended_actions=["Monitor the session", "Require re-authentication"],
            subject_id=session.subject_id,
            tenant_id=session.tenant_id,
            ip_address=context.ip_address,
            description="Session used from an unfamiliar IP address",
            evidence={
                "session_id": session.id,
                "original_ip": session.ip_address,
                "current_ip": context.ip_address,
            },
        )

    async def _detect_ua_hijack(
        self, session: Session, context: ActivityContext, policy: DetectionPolicy
    ) -> ThreatAssessment | None:
        if not context.user_agent:
            return None

        observed = parse_user_agent(context.user_agent)
        known = session.device_info
        comparable = [
            name
            for name in SIMILARITY_ATTRIBUTES
            if getattr(observed, name) and getattr(known, name)
        ]
        if not comparable:
            return None

        score = similarity(observed, known)
        if score >= policy.similarity_threshold:
            return None

        confidence = 1.0 - score
        return ThreatAssessment(
            threat_type=ThreatType.SESSION_HIJACK,
            severity=ThreatSeverity.HIGH if confidence > 0.8 else ThreatSeverity.MEDIUM,
            confidence=confidence,
            occurred_at=self.clock.now(),
            reasons=["User-Agent does not match the session's device"],
            recommended_actions=["Terminate the session", "Require re-authentication"],
            subject_id=session.subject_id,
            tenant_id=session.tenant_id,
            ip_address=context.ip_address,
            description="Session used from a different client",
            evidence={
                "session_id": session.id,
                "similarity": round(score, 3),
                "compared": comparable,
            },
        )

    async def _detect_automated_agent(
        self, session: Session, context: ActivityContext, policy: DetectionPolicy
    ) -> ThreatAssessment | None:
        """Flag scripted clients regardless of how well the browser matches."""
        if not context.user_agent:
            return None
        match = AUTOMATED_AGENT_PATTERN.search(context.user_agent)
        if match is None:
            return None

        return ThreatAssessment(
            threat_type=ThreatType.SESSION_HIJACK,
            severity=ThreatSeverity.MEDIUM,
            confidence=AUTOMATED_AGENT_CONFIDENCE,
            occurred_at=self.clock.now(),
            reasons=["Suspicious User-Agent (possible automation or bot)"],
            recommended_actions=["Require re-authentication", "Review the session's activity"],
            subject_id=session.subject_id,
            tenant_id=session.tenant_id,
            ip_address=context.ip_address,
            description="Session used by an automated client",
            evidence={
                "session_id": session.id,
                "user_agent": context.user_agent,
                "matched": match.group(1).lower(),
            },
        )

    # ------------------------------------------------------------------
    # Events and threats
    # ------------------------------------------------------------------

    async def log_security_event(
        self,
        event_type: SecurityEventType | str,
        *,
        subject_id: str | None = None,
        tenant_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
        session_id: str | None = None,
        details: dict[str, Any] | None = None,
        severity: ThreatSeverity | str = ThreatSeverity.LOW,
        occurred_at: datetime | None = None,
    ) -> SecurityEvent | None:
        """Persist an event and forward it to the audit sink.

        Returns:
            The stored event, or None when the input was rejected or the store failed
        """
        created_at = self.clock.now() if occurred_at is None else occurred_at
        try:
            event = SecurityEvent(
                type=SecurityEventType(event_type),
                subject_id=subject_id,
                tenant_id=tenant_id,
                ip_address=ip_address,
                user_agent=user_agent,
                session_id=session_id,
                details=dict(details or {}),
                severity=ThreatSeverity(severity),
                created_at=as_utc(created_at),
            )
        except (TypeError, ValueError) as e:
            logger.error("Dropping malformed security event", event_type=event_type, error=str(e))
            return None

        try:
            await self._call(self.store.insert_event(event))
        except (StoreError, TypeError, ValueError) as e:
            logger.error(
                "Failed to persist security event", event_type=event.type.value, error=str(e)
            )
            return None

        try:
            await self.audit_sink.append(event)
        except Exception as e:
            logger.error("Audit sink rejected event", event_id=event.id, error=str(e))
        return event

    async def handle_security_threat(self, threat: ThreatAssessment) -> None:
        """Record a detected threat as a security event."""
        try:
            threat_type = ThreatType(threat.threat_type)
            event_type = THREAT_EVENT_TYPES[threat_type]
            severity = ThreatSeverity(threat.severity)
            evidence = dict(threat.evidence or {})
            details = {
                "description": str(threat.description or ""),
                "confidence": float(threat.confidence),
                "reasons": list(threat.reasons or []),
                "recommended_actions": list(threat.recommended_actions or []),
                "evidence": evidence,
            }
            subject_id = threat.subject_id
            tenant_id = threat.tenant_id
            ip_address = threat.ip_address
            occurred_at = threat.occurred_at
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error("Dropping malformed threat", threat=repr(threat), error=str(e))
            return

        await self.log_security_event(
            event_type,
            subject_id=subject_id,
            tenant_id=tenant_id,
            ip_address=ip_address,
            severity=severity,
            session_id=evidence.get("session_id"),
            details=details,
            occurred_at=occurred_at,
        )

        if severity.rank >= ThreatSeverity.HIGH.rank:
            logger.warning(
                "High severity threat detected",
                threat_type=threat_type.value,
                severity=severity.value,
                subject_id=subject_id,
                tenant_id=tenant_id,
                ip_address=ip_address,
            )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_security_statistics(
        self, tenant_id: str, days: int = 30
    ) -> SecurityStatistics:
        """Aggregate a tenant's events over the trailing ``days`` x 24h."""
        if days <= 0:
            return SecurityStatistics()

        now = self.clock.now()
        try:
            events = await self._call(
                self.store.query_events_window(
                    now - timedelta(days=days), now, tenant_id=tenant_id
                )
            )
        except Exception as e:
            logger.error("Failed to load security statistics", tenant_id=tenant_id, error=str(e))
            return SecurityStatistics()

        if not events:
            return SecurityStatistics()

        by_type = Counter(e.type.value for e in events)
        by_day = Counter(e.created_at.date().isoformat() for e in events if e.created_at)

        return SecurityStatistics(
            total_events=len(events),
            events_by_type=dict(by_type),
            events_by_day=[DailyCount(date=day, count=by_day[day]) for day in sorted(by_day)],
            critical_threats=sum(
                1 for e in events if e.severity.rank >= ThreatSeverity.HIGH.rank
            ),
            suspicious_logins=sum(1 for e in events if e.type in SUSPICIOUS_LOGIN_TYPES),
        )

    async def get_security_alerts(
        self, tenant_id: str, limit: int | None = None
    ) -> list[SecurityAlert]:
        """Recent detected threats for a tenant, newest first."""
        now = self.clock.now()
        try:
            events = await self._call(
                self.store.query_events_window(
                    now - ALERT_LOOKBACK,
                    now,
                    tenant_id=tenant_id,
                    event_types=list(ALERT_TITLES),
                    limit=limit or self.settings.alert_limit,
                )
            )
        except Exception as e:
            logger.error("Failed to load security alerts", tenant_id=tenant_id, error=str(e))
            return []

        return [
            SecurityAlert(
                id=e.id,
                threat_type=e.type.value,
                severity=e.severity,
                title=ALERT_TITLES.get(e.type, "Security event"),
                created_at=e.created_at,
                subject_id=e.subject_id,
                tenant_id=e.tenant_id,
                ip_address=e.ip_address,
                details=e.details,
            )
            for e in events
        ]
