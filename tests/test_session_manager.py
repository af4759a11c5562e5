"""
Unit tests for SessionManager with MemoryStore.
"""

import asyncio
import hashlib
from datetime import timedelta

import pytest

from sessionguard.exceptions import StoreUnavailableError
from sessionguard.models import (
    ActivityContext,
    DeviceContext,
    FailureReason,
    RevocationReason,
    SecurityEventType,
    ValidationReason,
)
from sessionguard.session_manager import SessionManager, hash_token
from sessionguard.settings import SessionSettings
from sessionguard.store.memory import MemoryStore
from tests.factories import CHROME_WINDOWS_UA, device_context


class FailingStore(MemoryStore):
    """Memory store whose token lookups and inserts fail."""

    async def get_session_by_token(self, token_hash):
        raise StoreUnavailableError("connection refused")

    async def insert_session(self, session):
        raise StoreUnavailableError("connection refused")


class HangingStore(MemoryStore):
    """Memory store whose token lookups never complete."""

    async def get_session_by_token(self, token_hash):
        await asyncio.sleep(10)


class BrokenMonitor:
    async def analyze_session_activity(self, session, context):
        raise RuntimeError("detector exploded")

    async def handle_security_threat(self, threat):
        raise AssertionError("should not be reached")

    async def log_security_event(self, *args, **kwargs):
        return None


class SlowMonitor(BrokenMonitor):
    async def analyze_session_activity(self, session, context):
        await asyncio.sleep(5)
        return []


DEVICES = [
    ("Chrome", "Windows"),
    ("Safari", "iOS"),
    ("Firefox", "Linux"),
    ("Edge", "macOS"),
]


async def _create_devices(manager, clock, count=4):
    results = []
    for browser, os_family in DEVICES[:count]:
        result = await manager.create_session("u1", "t1", device_context(browser, os_family))
        assert result.success
        results.append(result)
        clock.advance(minutes=1)
    return results


@pytest.mark.unit
@pytest.mark.asyncio
async def test_device_ceiling_evicts_least_recently_active(manager, store, clock):
    d1, d2, d3, d4 = await _create_devices(manager, clock)

    evicted = await store.get_session(d1.session.id)
    assert evicted.is_revoked is True
    assert evicted.is_active is False
    assert evicted.revoked_reason == RevocationReason.DEVICE_LIMIT_EXCEEDED.value

    active = await manager.get_user_sessions("u1", "t1")
    assert {s.id for s in active} == {d2.session.id, d3.session.id, d4.session.id}
    assert await manager.get_active_session_count("u1", "t1") == 3

    result = await manager.validate_session(d1.token)
    assert result.is_valid is False
    assert result.reason == ValidationReason.REVOKED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_recent_activity_protects_older_session_from_eviction(manager, store, clock):
    d1, d2, d3 = await _create_devices(manager, clock, count=3)

    # d1 becomes the most recently active, so d2 is the eviction target
    assert (await manager.validate_session(d1.token)).is_valid
    clock.advance(minutes=1)
    d4 = await manager.create_session("u1", "t1", device_context("Edge", "macOS"))

    assert d4.success
    assert (await store.get_session(d2.session.id)).is_revoked
    assert not (await store.get_session(d1.session.id)).is_revoked


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_creates_never_exceed_ceiling(manager, store):
    results = await asyncio.gather(
        *[
            manager.create_session("u1", "t1", device_context(ip_address=f"10.0.0.{i}"))
            for i in range(6)
        ]
    )

    assert all(r.success for r in results)
    active = await store.get_active_sessions("u1")
    assert len(active) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_ceiling_is_per_subject(manager):
    for i in range(3):
        assert (await manager.create_session("u1", "t1", device_context(ip_address=f"10.0.0.{i}"))).success
    assert (await manager.create_session("u2", "t1", device_context())).success

    assert await manager.get_active_session_count("u1") == 3
    assert await manager.get_active_session_count("u2") == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_stores_only_token_digest(manager, store):
    result = await manager.create_session("u1", "t1", device_context())

    assert len(result.token) == 128
    stored = store.sessions[result.session.id]
    assert stored.token_hash == hashlib.sha256(result.token.encode()).hexdigest()
    assert result.token not in stored.to_dict().values()
    assert stored.expires_at - stored.created_at == timedelta(hours=24)
    assert stored.max_idle_minutes == 30


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_applies_context_overrides(manager):
    result = await manager.create_session(
        "u1", "t1", DeviceContext(idle_minutes=5, lifetime_hours=2, remember_device=True)
    )

    session = result.session
    assert session.max_idle_minutes == 5
    assert session.expires_at - session.created_at == timedelta(hours=2)
    assert session.remember_device is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_rejects_missing_identifiers(manager):
    result = await manager.create_session("", "t1")

    assert result.success is False
    assert result.failure.reason == FailureReason.INVALID_INPUT


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_store_failure_is_reported_not_raised(clock):
    manager = SessionManager(FailingStore(), clock=clock, settings=SessionSettings())

    result = await manager.create_session("u1", "t1", device_context())

    assert result.success is False
    assert result.token is None
    assert result.failure.reason == FailureReason.STORE_UNAVAILABLE


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_refused_for_blocked_device(manager, devices):
    context = device_context()
    first = await manager.create_session("u1", "t1", context)
    await devices.block_device("u1", first.session.device_fingerprint, "stolen laptop")

    result = await manager.create_session("u1", "t1", context)

    assert result.success is False
    assert result.failure.reason == FailureReason.DEVICE_BLOCKED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_session_logs_events(manager, audit_sink):
    await manager.create_session("u1", "t1", device_context())
    await manager.create_session("u1", "t1", device_context())

    assert len(audit_sink.of_type(SecurityEventType.SESSION_CREATED)) == 2
    # Same device both times: registered once
    assert len(audit_sink.of_type(SecurityEventType.DEVICE_REGISTERED)) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_fresh_session_slides_activity(manager, clock):
    created = await manager.create_session("u1", "t1", device_context())
    clock.advance(minutes=10)

    result = await manager.validate_session(created.token)

    assert result.is_valid is True
    assert result.reason == ValidationReason.OK
    assert result.session.last_activity_at == clock.now()


@pytest.mark.unit
@pytest.mark.asyncio
@pytest.mark.parametrize("token", ["", None, "tok-unknown"])
async def test_validate_unknown_token(manager, token):
    result = await manager.validate_session(token)

    assert result.is_valid is False
    assert result.reason == ValidationReason.NOT_FOUND


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_absolute_expiry_boundary(store, clock):
    settings = SessionSettings(absolute_lifetime_hours=1, max_idle_minutes=120)
    manager = SessionManager(store, clock=clock, settings=settings)
    created = await manager.create_session("u1", "t1", device_context())

    clock.advance(minutes=59)
    assert (await manager.validate_session(created.token)).is_valid

    clock.advance(minutes=1)
    result = await manager.validate_session(created.token)
    assert result.is_valid is False
    assert result.reason == ValidationReason.EXPIRED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_idle_timeout_boundary(manager, clock):
    created = await manager.create_session("u1", "t1", device_context())

    clock.advance(minutes=30)
    assert (await manager.validate_session(created.token)).is_valid

    clock.advance(minutes=31)
    result = await manager.validate_session(created.token)
    assert result.is_valid is False
    assert result.reason == ValidationReason.IDLE_TIMEOUT


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_store_failure_fails_closed(clock):
    manager = SessionManager(FailingStore(), clock=clock, settings=SessionSettings())

    result = await manager.validate_session("tok-x")

    assert result.is_valid is False
    assert result.reason == ValidationReason.NOT_FOUND


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_hanging_store_resolves_quickly(clock):
    store = HangingStore(operation_timeout=0.1)
    manager = SessionManager(store, clock=clock, settings=SessionSettings())
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await manager.validate_session("tok-x")
    elapsed = loop.time() - started

    assert result.is_valid is False
    assert elapsed < 0.3


@pytest.mark.unit
@pytest.mark.slow
@pytest.mark.asyncio
async def test_concurrent_validations(manager):
    created = await manager.create_session("u1", "t1", device_context())
    loop = asyncio.get_running_loop()

    started = loop.time()
    results = await asyncio.gather(*[manager.validate_session(created.token) for _ in range(100)])
    elapsed = loop.time() - started

    assert all(r.is_valid for r in results)
    assert elapsed < 2.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_monitor_failure_does_not_affect_validity(store, clock):
    manager = SessionManager(
        store, monitor=BrokenMonitor(), clock=clock, settings=SessionSettings()
    )
    created = await manager.create_session("u1", "t1", device_context())

    result = await manager.validate_session(
        created.token, ActivityContext(ip_address="203.0.113.9", user_agent=CHROME_WINDOWS_UA)
    )

    assert result.is_valid is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_monitor_is_cut_off(store, clock):
    settings = SessionSettings(analysis_timeout_seconds=0.05)
    manager = SessionManager(store, monitor=SlowMonitor(), clock=clock, settings=settings)
    created = await manager.create_session("u1", "t1", device_context())
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await manager.validate_session(created.token, ActivityContext(ip_address="10.0.0.1"))

    assert result.is_valid is True
    assert loop.time() - started < 1.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_default_analysis_budget_keeps_validate_fast(store, clock):
    manager = SessionManager(store, monitor=SlowMonitor(), clock=clock, settings=SessionSettings())
    created = await manager.create_session("u1", "t1", device_context())
    loop = asyncio.get_running_loop()

    started = loop.time()
    result = await manager.validate_session(created.token, ActivityContext(ip_address="10.0.0.1"))

    assert result.is_valid is True
    assert SessionSettings().analysis_timeout_seconds <= 0.05
    assert loop.time() - started < 0.15


@pytest.mark.unit
@pytest.mark.asyncio
async def test_validate_with_unfamiliar_ip_records_hijack(manager, store, clock):
    created = await manager.create_session("u1", "t1", device_context(ip_address="10.0.0.1"))
    clock.advance(minutes=1)

    result = await manager.validate_session(
        created.token, ActivityContext(ip_address="198.51.100.7")
    )

    assert result.is_valid is True
    hijacks = [e for e in store.events if e.type == SecurityEventType.SESSION_HIJACK_DETECTED]
    assert len(hijacks) == 1
    assert hijacks[0].session_id == created.session.id


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_never_moves_absolute_expiry(store, clock):
    settings = SessionSettings(max_idle_minutes=2000)
    manager = SessionManager(store, clock=clock, settings=settings)
    created = await manager.create_session("u1", "t1", device_context())
    t0 = created.session.created_at

    clock.advance(hours=23)
    assert await manager.refresh_session(created.token) is True
    assert (await store.get_session(created.session.id)).expires_at == t0 + timedelta(hours=24)

    clock.advance(hours=2)
    result = await manager.validate_session(created.token)

    assert result.is_valid is False
    assert result.reason == ValidationReason.EXPIRED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_keeps_custom_lifetime(store, clock):
    settings = SessionSettings(max_idle_minutes=2000)
    manager = SessionManager(store, clock=clock, settings=settings)
    created = await manager.create_session("u1", "t1", device_context(lifetime_hours=2))

    clock.advance(hours=1)
    assert await manager.refresh_session(created.token) is True
    clock.advance(hours=1)

    assert (await manager.validate_session(created.token)).reason == ValidationReason.EXPIRED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_slides_idle_window_and_updates_ip(manager, store, clock):
    created = await manager.create_session("u1", "t1", device_context(ip_address="10.0.0.1"))

    clock.advance(minutes=20)
    assert await manager.refresh_session(created.token, ip_address="10.0.0.77") is True
    clock.advance(minutes=20)

    stored = await store.get_session(created.session.id)
    assert stored.ip_address == "10.0.0.77"
    assert stored.last_activity_at == created.session.created_at + timedelta(minutes=20)
    assert (await manager.validate_session(created.token)).is_valid is True


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_without_ip_keeps_address(manager, store, clock):
    created = await manager.create_session("u1", "t1", device_context(ip_address="10.0.0.1"))

    assert await manager.refresh_session(created.token) is True

    assert (await store.get_session(created.session.id)).ip_address == "10.0.0.1"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_remember_device_uses_longer_cap(store, clock):
    settings = SessionSettings(max_idle_minutes=10_000)
    manager = SessionManager(store, clock=clock, settings=settings)
    created = await manager.create_session(
        "u1", "t1", device_context(remember_device=True)
    )
    t0 = created.session.created_at

    for _ in range(3):
        clock.advance(hours=23)
        assert await manager.refresh_session(created.token) is True

    assert (await store.get_session(created.session.id)).expires_at == t0 + timedelta(hours=93)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_invalid_session(manager, clock):
    created = await manager.create_session("u1", "t1", device_context())
    clock.advance(hours=2)

    assert await manager.refresh_session(created.token) is False
    assert await manager.refresh_session("tok-unknown") is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_revoke_is_idempotent_and_keeps_first_revocation(manager, store, clock):
    created = await manager.create_session("u1", "t1", device_context())
    session_id = created.session.id

    first = await manager.revoke_session(session_id, RevocationReason.SECURITY_VIOLATION)
    revoked_at = (await store.get_session(session_id)).revoked_at
    clock.advance(minutes=5)
    second = await manager.revoke_session(session_id, RevocationReason.MANUAL_LOGOUT)

    assert first.success and second.success
    stored = await store.get_session(session_id)
    assert stored.revoked_at == revoked_at
    assert stored.revoked_reason == RevocationReason.SECURITY_VIOLATION.value
    assert (await manager.validate_session(created.token)).reason == ValidationReason.REVOKED


@pytest.mark.unit
@pytest.mark.asyncio
async def test_revoke_missing_and_invalid_reason(manager):
    missing = await manager.revoke_session("nope")
    assert missing.success is False
    assert missing.failure.reason == FailureReason.NOT_FOUND

    created = await manager.create_session("u1", "t1", device_context())
    bad = await manager.revoke_session(created.session.id, "because")
    assert bad.success is False
    assert bad.failure.reason == FailureReason.INVALID_INPUT


@pytest.mark.unit
@pytest.mark.asyncio
async def test_revoke_other_sessions_keeps_current(manager, clock):
    d1, d2, d3 = await _create_devices(manager, clock, count=3)

    count = await manager.revoke_other_sessions(d2.token, "u1", "t1")

    assert count == 2
    remaining = await manager.get_user_sessions("u1", "t1")
    assert [s.id for s in remaining] == [d2.session.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_get_user_sessions_ordering_and_tenant_filter(manager, clock):
    d1, d2 = await _create_devices(manager, clock, count=2)
    await manager.create_session("u1", "t2", device_context("Firefox", "Linux"))
    await manager.validate_session(d1.token)

    sessions = await manager.get_user_sessions("u1", "t1")

    assert [s.id for s in sessions] == [d1.session.id, d2.session.id]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_sweep_deactivates_expired_without_revoking(manager, store, clock):
    stale = await manager.create_session("u1", "t1", device_context())
    clock.advance(minutes=45)
    fresh = await manager.create_session("u1", "t1", device_context("Safari", "iOS"))

    swept = await manager.sweep_expired_sessions("u1")

    assert swept == 1
    stored = await store.get_session(stale.session.id)
    assert stored.is_active is False
    assert stored.is_revoked is False
    assert (await store.get_session(fresh.session.id)).is_active is True


@pytest.mark.unit
def test_hash_token_is_sha256_hex():
    assert hash_token("abc") == hashlib.sha256(b"abc").hexdigest()
