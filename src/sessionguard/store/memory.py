"""In-memory store (async). Suitable for tests and single-process deployments."""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any

from sessionguard.exceptions import LockUnavailableError
from sessionguard.models import DeviceRecord, SecurityEvent, SecurityEventType, Session
from sessionguard.store.interfaces import StoreAdapter, check_session_fields, event_matches


class MemoryStore(StoreAdapter):
    """In-memory store backend.

    Records are copied on the way in and out so callers never share mutable rows.
    """

    def __init__(
        self, lock_blocking_timeout: float = 0.5, operation_timeout: float = 0.25
    ) -> None:
        self.sessions: dict[str, Session] = {}
        self.tokens: dict[str, str] = {}
        self.subject_sessions: dict[str, set[str]] = {}
        self.events: list[SecurityEvent] = []
        self.devices: dict[tuple[str, str], DeviceRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self.lock_blocking_timeout = lock_blocking_timeout
        self.operation_timeout = operation_timeout

    async def ping(self) -> bool:
        return True

    async def get_session_by_token(self, token_hash: str) -> Session | None:
        session_id = self.tokens.get(token_hash)
        if session_id is None:
            return None
        return await self.get_session(session_id)

    async def get_session(self, session_id: str) -> Session | None:
        session = self.sessions.get(session_id)
        return replace(session) if session else None

    async def get_active_sessions(
        self, subject_id: str, *, tenant_id: str | None = None, limit: int = 50
    ) -> list[Session]:
        sessions = [
            self.sessions[sid]
            for sid in self.subject_sessions.get(subject_id, set())
            if self.sessions[sid].is_active
            and (tenant_id is None or self.sessions[sid].tenant_id == tenant_id)
        ]
        sessions.sort(key=lambda s: (s.last_activity_at, s.created_at), reverse=True)
        return [replace(s) for s in sessions[:limit]]

    async def insert_session(self, session: Session) -> None:
        if session.id in self.sessions:
            raise ValueError(f"Session {session.id} already exists")
        self.sessions[session.id] = replace(session)
        self.tokens[session.token_hash] = session.id
        self.subject_sessions.setdefault(session.subject_id, set()).add(session.id)

    async def update_session_fields(
        self, session_id: str, fields: dict[str, Any]
    ) -> Session | None:
        check_session_fields(fields)
        session = self.sessions.get(session_id)
        if session is None:
            return None
        updated = replace(session, **fields)
        self.sessions[session_id] = updated
        return replace(updated)

    async def query_sessions_window(
        self, subject_id: str, start: datetime, end: datetime, *, limit: int = 200
    ) -> list[Session]:
        sessions = [
            self.sessions[sid]
            for sid in self.subject_sessions.get(subject_id, set())
            if start <= self.sessions[sid].last_activity_at <= end
        ]
        sessions.sort(key=lambda s: s.last_activity_at, reverse=True)
        return [replace(s) for s in sessions[:limit]]

    async def insert_event(self, event: SecurityEvent) -> None:
        self.events.append(replace(event, details=dict(event.details)))

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
        types = set(event_types) if event_types is not None else None
        matched = [
            replace(e)
            for e in self.events
            if e.created_at is not None
            and start <= e.created_at <= end
            and event_matches(
                e,
                tenant_id=tenant_id,
                subject_id=subject_id,
                ip_address=ip_address,
                event_types=types,
            )
        ]
        matched.sort(key=lambda e: e.created_at, reverse=True)
        return matched[:limit] if limit is not None else matched

    async def get_device(self, subject_id: str, fingerprint: str) -> DeviceRecord | None:
        record = self.devices.get((subject_id, fingerprint))
        return replace(record) if record else None

    async def upsert_device(self, record: DeviceRecord) -> None:
        self.devices[(record.subject_id, record.fingerprint)] = replace(record)

    async def list_devices(self, subject_id: str) -> list[DeviceRecord]:
        records = [replace(r) for (sid, _), r in self.devices.items() if sid == subject_id]
        records.sort(key=lambda r: r.last_used_at, reverse=True)
        return records

    @asynccontextmanager
    async def subject_lock(self, subject_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(subject_id, asyncio.Lock())
        self._lock_users[subject_id] = self._lock_users.get(subject_id, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.lock_blocking_timeout)
            except TimeoutError as e:
                raise LockUnavailableError(f"Lock for subject {subject_id} is busy") from e
            try:
                yield
            finally:
                lock.release()
        finally:
            # Drop the lock once nobody holds or waits on it
            self._lock_users[subject_id] -= 1
            if not self._lock_users[subject_id]:
                del self._lock_users[subject_id]
                del self._locks[subject_id]
