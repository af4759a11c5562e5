"""Redis store for production.

Records are JSON strings; time-window queries run against sorted sets scored by
epoch seconds so reads stay bounded as history grows.
"""

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from redis.exceptions import LockError, RedisError, WatchError

from sessionguard.exceptions import LockUnavailableError, StoreUnavailableError
from sessionguard.models import DeviceRecord, SecurityEvent, SecurityEventType, Session
from sessionguard.store.interfaces import StoreAdapter, check_session_fields, event_matches

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def _redis_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except RedisError as e:
        logger.error("Redis operation failed", operation=operation, error=str(e))
        raise StoreUnavailableError(f"{operation} failed: {e}") from e


class RedisStore(StoreAdapter):
    """Redis store backend."""

    def __init__(
        self,
        redis_url: str | None = None,
        key_prefix: str = "sessionguard:",
        *,
        lock_timeout: float = 5.0,
        lock_blocking_timeout: float = 0.5,
        operation_timeout: float = 0.25,
    ) -> None:
        self.redis_url = redis_url or "redis://localhost:6379/0"
        self.key_prefix = key_prefix
        self.lock_timeout = lock_timeout
        self.lock_blocking_timeout = lock_blocking_timeout
        self.operation_timeout = operation_timeout
        self._redis = None

    @property
    def redis(self):
        """Lazy Redis connection."""
        if self._redis is None:
            import redis.asyncio as redis

            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as e:
            logger.warning("Redis ping failed", error=str(e))
            return False

    # Keys

    def _key(self, *parts: str) -> str:
        return self.key_prefix + ":".join(parts)

    def _session_key(self, session_id: str) -> str:
        return self._key("session", session_id)

    def _token_key(self, token_hash: str) -> str:
        return self._key("token", token_hash)

    def _active_key(self, subject_id: str) -> str:
        return self._key("subject", subject_id, "active")

    def _history_key(self, subject_id: str) -> str:
        return self._key("subject", subject_id, "sessions")

    def _event_key(self, event_id: str) -> str:
        return self._key("event", event_id)

    def _devices_key(self, subject_id: str) -> str:
        return self._key("devices", subject_id)

    def _event_index_keys(self, event: SecurityEvent) -> list[str]:
        keys = [self._key("events", "all")]
        if event.tenant_id:
            keys.append(self._key("events", "tenant", event.tenant_id))
        if event.subject_id:
            keys.append(self._key("events", "subject", event.subject_id))
        if event.ip_address:
            keys.append(self._key("events", "ip", event.ip_address))
        return keys

    # Sessions

    async def _load_sessions(self, session_ids: list[str]) -> list[Session]:
        if not session_ids:
            return []
        raw = await self.redis.mget([self._session_key(sid) for sid in session_ids])
        return [Session.from_dict(json.loads(item)) for item in raw if item]

    async def get_session_by_token(self, token_hash: str) -> Session | None:
        async with _redis_errors("get_session_by_token"):
            session_id = await self.redis.get(self._token_key(token_hash))
            if not session_id:
                return None
            return await self.get_session(session_id)

    async def get_session(self, session_id: str) -> Session | None:
        async with _redis_errors("get_session"):
            data = await self.redis.get(self._session_key(session_id))
        return Session.from_dict(json.loads(data)) if data else None

    async def get_active_sessions(
        self, subject_id: str, *, tenant_id: str | None = None, limit: int = 50
    ) -> list[Session]:
        async with _redis_errors("get_active_sessions"):
            session_ids = await self.redis.zrevrange(self._active_key(subject_id), 0, limit - 1)
            sessions = await self._load_sessions(session_ids)
        return [
            s
            for s in sessions
            if s.is_active and (tenant_id is None or s.tenant_id == tenant_id)
        ]

    async def insert_session(self, session: Session) -> None:
        score = session.last_activity_at.timestamp()
        async with _redis_errors("insert_session"):
            pipe = self.redis.pipeline()
            pipe.set(self._session_key(session.id), json.dumps(session.to_dict()))
            pipe.set(self._token_key(session.token_hash), session.id)
            pipe.zadd(self._history_key(session.subject_id), {session.id: score})
            if session.is_active:
                pipe.zadd(self._active_key(session.subject_id), {session.id: score})
            await pipe.execute()

    async def update_session_fields(
        self, session_id: str, fields: dict[str, Any]
    ) -> Session | None:
        check_session_fields(fields)
        key = self._session_key(session_id)
        async with _redis_errors("update_session_fields"):
            async with self.redis.pipeline(transaction=True) as pipe:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if not raw:
                        return None
                    data = json.loads(raw)
                    updated = Session.from_dict({**data, **_serialize(fields)})
                    score = updated.last_activity_at.timestamp()
                    pipe.multi()
                    pipe.set(key, json.dumps(updated.to_dict()))
                    pipe.zadd(self._history_key(updated.subject_id), {session_id: score})
                    if updated.is_active:
                        pipe.zadd(self._active_key(updated.subject_id), {session_id: score})
                    else:
                        pipe.zrem(self._active_key(updated.subject_id), session_id)
                    await pipe.execute()
                    return updated
                except WatchError as e:
                    raise StoreUnavailableError(
                        f"Concurrent update conflicted on session {session_id}"
                    ) from e

    async def query_sessions_window(
        self, subject_id: str, start: datetime, end: datetime, *, limit: int = 200
    ) -> list[Session]:
        async with _redis_errors("query_sessions_window"):
            session_ids = await self.redis.zrevrangebyscore(
                self._history_key(subject_id),
                end.timestamp(),
                start.timestamp(),
                start=0,
                num=limit,
            )
            return await self._load_sessions(session_ids)

    # Events

    async def insert_event(self, event: SecurityEvent) -> None:
        score = event.created_at.timestamp() if event.created_at else 0.0
        async with _redis_errors("insert_event"):
            pipe = self.redis.pipeline()
            pipe.set(self._event_key(event.id), json.dumps(event.to_dict()))
            for index_key in self._event_index_keys(event):
                pipe.zadd(index_key, {event.id: score})
            await pipe.execute()

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
        # Read from the most selective index, then filter the remainder client-side.
        if ip_address is not None:
            index_key = self._key("events", "ip", ip_address)
        elif subject_id is not None:
            index_key = self._key("events", "subject", subject_id)
        elif tenant_id is not None:
            index_key = self._key("events", "tenant", tenant_id)
        else:
            index_key = self._key("events", "all")

        types = set(event_types) if event_types is not None else None
        async with _redis_errors("query_events_window"):
            event_ids = await self.redis.zrevrangebyscore(
                index_key, end.timestamp(), start.timestamp()
            )
            if not event_ids:
                return []
            raw = await self.redis.mget([self._event_key(eid) for eid in event_ids])

        events = []
        for item in raw:
            if not item:
                continue
            event = SecurityEvent.from_dict(json.loads(item))
            if event_matches(
                event,
                tenant_id=tenant_id,
                subject_id=subject_id,
                ip_address=ip_address,
                event_types=types,
            ):
                events.append(event)
                if limit is not None and len(events) >= limit:
                    break
        return events

    # Devices

    async def get_device(self, subject_id: str, fingerprint: str) -> DeviceRecord | None:
        async with _redis_errors("get_device"):
            data = await self.redis.hget(self._devices_key(subject_id), fingerprint)
        return DeviceRecord.from_dict(json.loads(data)) if data else None

    async def upsert_device(self, record: DeviceRecord) -> None:
        async with _redis_errors("upsert_device"):
            await self.redis.hset(
                self._devices_key(record.subject_id),
                record.fingerprint,
                json.dumps(record.to_dict()),
            )

    async def list_devices(self, subject_id: str) -> list[DeviceRecord]:
        async with _redis_errors("list_devices"):
            raw = await self.redis.hvals(self._devices_key(subject_id))
        records = [DeviceRecord.from_dict(json.loads(item)) for item in raw]
        records.sort(key=lambda r: r.last_used_at, reverse=True)
        return records

    @asynccontextmanager
    async def subject_lock(self, subject_id: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            self._key("lock", "subject", subject_id),
            timeout=self.lock_timeout,
            blocking_timeout=self.lock_blocking_timeout,
        )
        async with _redis_errors("subject_lock"):
            acquired = await lock.acquire()
        if not acquired:
            raise LockUnavailableError(f"Lock for subject {subject_id} is busy")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lease expired while held; the next holder already owns it.
                logger.warning("Subject lock lost before release", subject_id=subject_id, error=str(e))
            except RedisError as e:
                logger.warning("Failed to release subject lock", subject_id=subject_id, error=str(e))


def _serialize(fields: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in fields.items()}
