"""
SQLAlchemy 2.0 store.

Works with any async driver (asyncpg in production, aiosqlite in tests).
"""

import asyncio
import secrets
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    and_,
    delete,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import TypeDecorator

from sessionguard.exceptions import LockUnavailableError, StoreUnavailableError
from sessionguard.models import (
    DeviceInfo,
    DeviceRecord,
    SecurityEvent,
    SecurityEventType,
    Session,
    ThreatSeverity,
)
from sessionguard.store.interfaces import StoreAdapter, check_session_fields

logger = structlog.get_logger(__name__)

# Poll interval while another holder owns a subject lock
_LOCK_POLL_SECONDS = 0.01


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always comes back in UTC (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for store tables."""

    pass


class SessionRecord(Base):
    __tablename__ = "session_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    subject_id: Mapped[str] = mapped_column(String(255), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    device_info: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    device_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    max_idle_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    revoked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    revoked_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    remember_device: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_session_records_subject_active", "subject_id", "is_active", "last_activity_at"),
        Index("ix_session_records_subject_activity", "subject_id", "last_activity_at"),
    )


class SecurityEventRecord(Base):
    __tablename__ = "security_event_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    subject_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    session_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    severity: Mapped[str] = mapped_column(String(20), nullable=False, default="low")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_security_events_tenant_created", "tenant_id", "created_at"),
        Index("ix_security_events_ip_created", "ip_address", "created_at"),
        Index("ix_security_events_subject_created", "subject_id", "created_at"),
    )


class DeviceRecordRow(Base):
    __tablename__ = "device_records"

    subject_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_info: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_trusted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    first_seen_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    last_used_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    trusted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    blocked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    blocked_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)


class SubjectLock(Base):
    """One row per held lock; the primary key makes acquisition a conditional insert."""

    __tablename__ = "subject_locks"

    subject_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    owner: Mapped[str] = mapped_column(String(64), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)


def _to_session(row: SessionRecord) -> Session:
    return Session(
        id=row.id,
        subject_id=row.subject_id,
        tenant_id=row.tenant_id,
        token_hash=row.token_hash,
        device_info=DeviceInfo.from_dict(row.device_info),
        device_fingerprint=row.device_fingerprint,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=row.created_at,
        last_activity_at=row.last_activity_at,
        expires_at=row.expires_at,
        max_idle_minutes=row.max_idle_minutes,
        is_active=row.is_active,
        is_revoked=row.is_revoked,
        revoked_at=row.revoked_at,
        revoked_reason=row.revoked_reason,
        remember_device=row.remember_device,
    )


def _to_event(row: SecurityEventRecord) -> SecurityEvent:
    return SecurityEvent(
        id=row.id,
        type=SecurityEventType(row.type),
        tenant_id=row.tenant_id,
        subject_id=row.subject_id,
        session_id=row.session_id,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        details=row.details or {},
        severity=ThreatSeverity(row.severity),
        created_at=row.created_at,
    )


def _to_device(row: DeviceRecordRow) -> DeviceRecord:
    return DeviceRecord(
        subject_id=row.subject_id,
        fingerprint=row.fingerprint,
        device_info=DeviceInfo.from_dict(row.device_info),
        is_trusted=row.is_trusted,
        is_blocked=row.is_blocked,
        first_seen_at=row.first_seen_at,
        last_used_at=row.last_used_at,
        trusted_at=row.trusted_at,
        blocked_at=row.blocked_at,
        blocked_reason=row.blocked_reason,
    )


def _enum_value(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


class DatabaseStore(StoreAdapter):
    """SQLAlchemy store backend."""

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: AsyncEngine | None = None,
        lock_timeout: float = 5.0,
        lock_blocking_timeout: float = 0.5,
        operation_timeout: float = 0.25,
    ) -> None:
        if engine is None:
            url = database_url or "sqlite+aiosqlite:///:memory:"
            if url.startswith("sqlite") and ":memory:" in url:
                engine = create_async_engine(
                    url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,  # Required for SQLite in-memory async
                )
            else:
                engine = create_async_engine(url, pool_pre_ping=True)
        self.engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
        self.lock_timeout = lock_timeout
        self.lock_blocking_timeout = lock_blocking_timeout
        self.operation_timeout = operation_timeout

    @asynccontextmanager
    async def _session(self, operation: str):
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    yield db
        except SQLAlchemyError as e:
            logger.error("Database operation failed", operation=operation, error=str(e))
            raise StoreUnavailableError(f"{operation} failed: {e}") from e

    async def connect(self) -> None:
        """Create tables if they do not exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"schema setup failed: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def ping(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning("Database ping failed", error=str(e))
            return False

    # Sessions

    async def get_session_by_token(self, token_hash: str) -> Session | None:
        async with self._session("get_session_by_token") as db:
            row = await db.scalar(
                select(SessionRecord).where(SessionRecord.token_hash == token_hash)
            )
            return _to_session(row) if row else None

    async def get_session(self, session_id: str) -> Session | None:
        async with self._session("get_session") as db:
            row = await db.get(SessionRecord, session_id)
            return _to_session(row) if row else None

    async def get_active_sessions(
        self, subject_id: str, *, tenant_id: str | None = None, limit: int = 50
    ) -> list[Session]:
        conditions = [SessionRecord.subject_id == subject_id, SessionRecord.is_active.is_(True)]
        if tenant_id is not None:
            conditions.append(SessionRecord.tenant_id == tenant_id)
        query = (
            select(SessionRecord)
            .where(and_(*conditions))
            .order_by(SessionRecord.last_activity_at.desc(), SessionRecord.created_at.desc())
            .limit(limit)
        )
        async with self._session("get_active_sessions") as db:
            rows = (await db.scalars(query)).all()
            return [_to_session(row) for row in rows]

    async def insert_session(self, session: Session) -> None:
        async with self._session("insert_session") as db:
            db.add(
                SessionRecord(
                    id=session.id,
                    subject_id=session.subject_id,
                    tenant_id=session.tenant_id,
                    token_hash=session.token_hash,
                    device_info=session.device_info.to_dict(),
                    device_fingerprint=session.device_fingerprint,
                    ip_address=session.ip_address,
                    user_agent=session.user_agent,
                    created_at=session.created_at,
                    last_activity_at=session.last_activity_at,
                    expires_at=session.expires_at,
                    max_idle_minutes=session.max_idle_minutes,
                    is_active=session.is_active,
                    is_revoked=session.is_revoked,
                    revoked_at=session.revoked_at,
                    revoked_reason=session.revoked_reason,
                    remember_device=session.remember_device,
                )
            )

    async def update_session_fields(
        self, session_id: str, fields: dict[str, Any]
    ) -> Session | None:
        check_session_fields(fields)
        values = {key: _enum_value(value) for key, value in fields.items()}
        async with self._session("update_session_fields") as db:
            result = await db.execute(
                update(SessionRecord).where(SessionRecord.id == session_id).values(**values)
            )
            if result.rowcount == 0:
                return None
            row = await db.get(SessionRecord, session_id, populate_existing=True)
            return _to_session(row) if row else None

    async def query_sessions_window(
        self, subject_id: str, start: datetime, end: datetime, *, limit: int = 200
    ) -> list[Session]:
        query = (
            select(SessionRecord)
            .where(
                SessionRecord.subject_id == subject_id,
                SessionRecord.last_activity_at >= start,
                SessionRecord.last_activity_at <= end,
            )
            .order_by(SessionRecord.last_activity_at.desc())
            .limit(limit)
        )
        async with self._session("query_sessions_window") as db:
            return [_to_session(row) for row in (await db.scalars(query)).all()]

    # Events

    async def insert_event(self, event: SecurityEvent) -> None:
        async with self._session("insert_event") as db:
            db.add(
                SecurityEventRecord(
                    id=event.id,
                    type=event.type.value,
                    tenant_id=event.tenant_id,
                    subject_id=event.subject_id,
                    session_id=event.session_id,
                    ip_address=event.ip_address,
                    user_agent=event.user_agent,
                    details=event.details,
                    severity=event.severity.value,
                    created_at=event.created_at,
                )
            )

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
        conditions = [
            SecurityEventRecord.created_at >= start,
            SecurityEventRecord.created_at <= end,
        ]
        if tenant_id is not None:
            conditions.append(SecurityEventRecord.tenant_id == tenant_id)
        if subject_id is not None:
            conditions.append(SecurityEventRecord.subject_id == subject_id)
        if ip_address is not None:
            conditions.append(SecurityEventRecord.ip_address == ip_address)
        if event_types is not None:
            conditions.append(SecurityEventRecord.type.in_([t.value for t in event_types]))

        query = (
            select(SecurityEventRecord)
            .where(and_(*conditions))
            .order_by(SecurityEventRecord.created_at.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        async with self._session("query_events_window") as db:
            return [_to_event(row) for row in (await db.scalars(query)).all()]

    # Devices

    async def get_device(self, subject_id: str, fingerprint: str) -> DeviceRecord | None:
        async with self._session("get_device") as db:
            row = await db.get(DeviceRecordRow, (subject_id, fingerprint))
            return _to_device(row) if row else None

    async def upsert_device(self, record: DeviceRecord) -> None:
        async with self._session("upsert_device") as db:
            await db.merge(
                DeviceRecordRow(
                    subject_id=record.subject_id,
                    fingerprint=record.fingerprint,
                    device_info=record.device_info.to_dict(),
                    is_trusted=record.is_trusted,
                    is_blocked=record.is_blocked,
                    first_seen_at=record.first_seen_at,
                    last_used_at=record.last_used_at,
                    trusted_at=record.trusted_at,
                    blocked_at=record.blocked_at,
                    blocked_reason=record.blocked_reason,
                )
            )

    async def list_devices(self, subject_id: str) -> list[DeviceRecord]:
        query = (
            select(DeviceRecordRow)
            .where(DeviceRecordRow.subject_id == subject_id)
            .order_by(DeviceRecordRow.last_used_at.desc())
        )
        async with self._session("list_devices") as db:
            return [_to_device(row) for row in (await db.scalars(query)).all()]

    # Coordination

    async def _try_acquire(self, subject_id: str, owner: str) -> bool:
        now = datetime.now(UTC)
        try:
            async with self._sessionmaker() as db:
                async with db.begin():
                    await db.execute(
                        delete(SubjectLock).where(
                            SubjectLock.subject_id == subject_id,
                            SubjectLock.expires_at < now,
                        )
                    )
                    db.add(
                        SubjectLock(
                            subject_id=subject_id,
                            owner=owner,
                            expires_at=now + timedelta(seconds=self.lock_timeout),
                        )
                    )
            return True
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"subject_lock failed: {e}") from e

    @asynccontextmanager
    async def subject_lock(self, subject_id: str) -> AsyncIterator[None]:
        owner = secrets.token_hex(16)
        deadline = asyncio.get_running_loop().time() + self.lock_blocking_timeout
        while not await self._try_acquire(subject_id, owner):
            if asyncio.get_running_loop().time() >= deadline:
                raise LockUnavailableError(f"Lock for subject {subject_id} is busy")
            await asyncio.sleep(_LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            try:
                async with self._session("release_subject_lock") as db:
                    await db.execute(
                        delete(SubjectLock).where(
                            SubjectLock.subject_id == subject_id,
                            SubjectLock.owner == owner,
                        )
                    )
            except StoreUnavailableError as e:
                logger.warning("Failed to release subject lock", subject_id=subject_id, error=str(e))
