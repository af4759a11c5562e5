"""
Shared fixtures for sessionguard tests.

Everything runs against the in-memory store with a frozen clock unless a test
module builds its own store.
"""

import pytest

from sessionguard.audit import MemoryAuditSink
from sessionguard.clock import FrozenClock
from sessionguard.device_manager import MultiDeviceManager
from sessionguard.security_monitor import SecurityMonitor
from sessionguard.session_manager import SessionManager
from sessionguard.settings import DetectionSettings, SessionSettings, reset_settings
from sessionguard.store.memory import MemoryStore


@pytest.fixture(autouse=True)
def _reset_global_settings():
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def session_settings() -> SessionSettings:
    return SessionSettings()


@pytest.fixture
def detection_settings() -> DetectionSettings:
    return DetectionSettings()


@pytest.fixture
def audit_sink() -> MemoryAuditSink:
    return MemoryAuditSink()


@pytest.fixture
def devices(store, clock, session_settings, monitor) -> MultiDeviceManager:
    return MultiDeviceManager(store, clock, session_settings, monitor)


@pytest.fixture
def monitor(store, audit_sink, clock, detection_settings) -> SecurityMonitor:
    return SecurityMonitor(store, audit_sink, clock, detection_settings)


@pytest.fixture
def manager(store, devices, monitor, clock, session_settings) -> SessionManager:
    return SessionManager(store, devices, monitor, clock, session_settings)


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line("markers", "unit: Unit test")
    config.addinivalue_line("markers", "integration: Integration test")
    config.addinivalue_line("markers", "asyncio: Async test")
    config.addinivalue_line("markers", "slow: Slow test")
