"""Backing store interface.

The core depends only on this interface. All durable state lives behind it; adapters
may keep their own connection pools or in-memory tables but the core keeps none.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Iterable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Any, TypeVar

from sessionguard.exceptions import StoreTimeoutError
from sessionguard.models import DeviceRecord, SecurityEvent, SecurityEventType, Session

T = TypeVar("T")

# Session fields callers may change through update_session_fields
MUTABLE_SESSION_FIELDS = frozenset(
    {
        "last_activity_at",
        "expires_at",
        "ip_address",
        "is_active",
        "is_revoked",
        "revoked_at",
        "revoked_reason",
    }
)


async def bounded(awaitable: Awaitable[T], timeout: float) -> T:
    """Await a store call, turning an overrun into StoreTimeoutError."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except TimeoutError as e:
        raise StoreTimeoutError(f"store call exceeded {timeout:.3f}s") from e


class StoreAdapter(ABC):
    """Abstract base class for backing stores."""

    operation_timeout: float = 0.25

    async def connect(self) -> None:
        """Open connections. No-op by default."""

    async def close(self) -> None:
        """Release connections. No-op by default."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check the store is reachable."""

    # Sessions

    @abstractmethod
    async def get_session_by_token(self, token_hash: str) -> Session | None:
        """Get session by token digest."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """Get session by ID."""

    @abstractmethod
    async def get_active_sessions(
        self, subject_id: str, *, tenant_id: str | None = None, limit: int = 50
    ) -> list[Session]:
        """Active sessions for a subject, most recent activity first, at most ``limit``."""

    @abstractmethod
    async def insert_session(self, session: Session) -> None:
        """Insert a new session row."""

    @abstractmethod
    async def update_session_fields(
        self, session_id: str, fields: dict[str, Any]
    ) -> Session | None:
        """Apply a partial update. Returns the updated session or None if absent."""

    @abstractmethod
    async def query_sessions_window(
        self, subject_id: str, start: datetime, end: datetime, *, limit: int = 200
    ) -> list[Session]:
        """Sessions whose last activity falls within [start, end]."""

    # Security events

    @abstractmethod
    async def insert_event(self, event: SecurityEvent) -> None:
        """Append a security event."""

    @abstractmethod
    async def query_events_window(
        self,
        start: datetime,
        end: datetime,
        *,
        tenant_id: str | None = None,
        subject_id: str | None = None,
        ip_address: str | None = None,
        event_types: Iterable[SecurityEventType] | None = None,
        limit: int | None = None,
    ) -> list[SecurityEvent]:
        """Events created within [start, end] matching every given filter, newest first."""

    # Devices

    @abstractmethod
    async def get_device(self, subject_id: str, fingerprint: str) -> DeviceRecord | None:
        """Get a device record."""

    @abstractmethod
    async def upsert_device(self, record: DeviceRecord) -> None:
        """Create or replace a device record."""

    @abstractmethod
    async def list_devices(self, subject_id: str) -> list[DeviceRecord]:
        """All device records for a subject."""

    # Coordination

    @abstractmethod
    def subject_lock(self, subject_id: str) -> AbstractAsyncContextManager[None]:
        """Per-subject advisory lock serializing the admission sequence."""


def check_session_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_SESSION_FIELDS
    if unknown:
        raise ValueError(f"Cannot update session fields: {sorted(unknown)}")


def event_matches(
    event: SecurityEvent,
    *,
    tenant_id: str | None = None,
    subject_id: str | None = None,
    ip_address: str | None = None,
    event_types: Iterable[SecurityEventType] | None = None,
) -> bool:
    if tenant_id is not None and event.tenant_id != tenant_id:
        return False
    if subject_id is not None and event.subject_id != subject_id:
        return False
    if ip_address is not None and event.ip_address != ip_address:
        return False
    if event_types is not None and event.type not in set(event_types):
        return False
    return True
