"""
Adapter-specific behavior: factory wiring, error mapping and key layout.
"""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from sessionguard.exceptions import (
    ConfigurationError,
    LockUnavailableError,
    StoreTimeoutError,
    StoreUnavailableError,
)
from sessionguard.models import DeviceInfo, Session
from sessionguard.settings import Settings, StoreBackend, StoreSettings
from sessionguard.store import MemoryStore, bounded, create_store

T0 = datetime(2025, 1, 1, 9, 0, tzinfo=UTC)


def make_session(session_id="s1"):
    return Session(
        id=session_id,
        subject_id="u1",
        tenant_id="t1",
        token_hash=f"hash-{session_id}",
        device_info=DeviceInfo(browser_family="Chrome"),
        created_at=T0,
        last_activity_at=T0,
        expires_at=T0 + timedelta(hours=24),
    )


@pytest.fixture
def redis_store():
    fakeredis = pytest.importorskip("fakeredis", reason="fakeredis is required for Redis store tests")
    from sessionguard.store.redis import RedisStore

    store = RedisStore("redis://localhost:6379/0", "test:")
    store._redis = fakeredis.aioredis.FakeRedis(decode_responses=True)
    return store


class TestCreateStore:
    @pytest.mark.unit
    def test_memory_backend_is_default(self):
        store = create_store(Settings())

        assert isinstance(store, MemoryStore)
        assert store.operation_timeout == 0.25

    @pytest.mark.unit
    def test_redis_backend(self):
        from sessionguard.store.redis import RedisStore

        settings = Settings(
            store=StoreSettings(
                backend=StoreBackend.REDIS,
                redis_url="redis://cache:6379/4",
                key_prefix="sg:",
                lock_blocking_timeout_seconds=1.5,
            )
        )

        store = create_store(settings)

        assert isinstance(store, RedisStore)
        assert store.redis_url == "redis://cache:6379/4"
        assert store.key_prefix == "sg:"
        assert store.lock_blocking_timeout == 1.5
        # Connection is opened lazily
        assert store._redis is None

    @pytest.mark.unit
    def test_database_backend(self, tmp_path):
        pytest.importorskip("aiosqlite", reason="aiosqlite is required for database store tests")
        from sessionguard.store.database import DatabaseStore

        settings = Settings(
            store=StoreSettings(
                backend=StoreBackend.DATABASE,
                database_url=f"sqlite+aiosqlite:///{tmp_path / 'sg.db'}",
            )
        )

        assert isinstance(create_store(settings), DatabaseStore)

    @pytest.mark.unit
    def test_unknown_backend(self):
        settings = Settings()
        settings.store.backend = "cassandra"

        with pytest.raises(ConfigurationError):
            create_store(settings)


class TestBounded:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returns_result_within_budget(self):
        async def quick():
            return 42

        assert await bounded(quick(), 0.1) == 42

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overrun_becomes_store_timeout(self):
        with pytest.raises(StoreTimeoutError):
            await bounded(asyncio.sleep(1), 0.01)


class TestMemoryStore:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_subject_locks_are_dropped_after_release(self):
        store = MemoryStore(lock_blocking_timeout=0.05)

        async with store.subject_lock("u1"):
            with pytest.raises(LockUnavailableError):
                async with store.subject_lock("u1"):
                    pass
            assert set(store._locks) == {"u1"}
        for i in range(100):
            async with store.subject_lock(f"u{i}"):
                pass

        assert store._locks == {}
        assert store._lock_users == {}


class TestRedisStore:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_keys_use_prefix_and_token_digest(self, redis_store):
        await redis_store.insert_session(make_session())

        keys = set(await redis_store.redis.keys("*"))

        assert "test:session:s1" in keys
        assert "test:token:hash-s1" in keys
        assert all(key.startswith("test:") for key in keys)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_revoked_session_leaves_active_index(self, redis_store):
        await redis_store.insert_session(make_session())

        await redis_store.update_session_fields("s1", {"is_active": False})

        assert await redis_store.redis.zcard("test:subject:u1:active") == 0
        assert await redis_store.redis.zcard("test:subject:u1:sessions") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflicting_update_fails_without_retry(self, redis_store, monkeypatch):
        from redis.exceptions import WatchError

        await redis_store.insert_session(make_session())
        opened = []
        real_pipeline = redis_store.redis.pipeline

        def conflicting_pipeline(*args, **kwargs):
            pipe = real_pipeline(*args, **kwargs)

            async def execute(*a, **kw):
                raise WatchError("watched key changed")

            pipe.execute = execute
            opened.append(pipe)
            return pipe

        monkeypatch.setattr(redis_store.redis, "pipeline", conflicting_pipeline)

        with pytest.raises(StoreUnavailableError):
            await redis_store.update_session_fields("s1", {"is_active": False})

        assert len(opened) == 1
        monkeypatch.undo()
        assert (await redis_store.get_session("s1")).is_active is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_errors_become_store_unavailable(self, redis_store, monkeypatch):
        from redis.exceptions import ConnectionError as RedisConnectionError

        async def boom(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(redis_store.redis, "get", boom)

        with pytest.raises(StoreUnavailableError):
            await redis_store.get_session("s1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_ping_reports_unreachable(self, redis_store, monkeypatch):
        from redis.exceptions import ConnectionError as RedisConnectionError

        async def boom(*args, **kwargs):
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(redis_store.redis, "ping", boom)

        assert await redis_store.ping() is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_resets_connection(self, redis_store):
        await redis_store.close()

        assert redis_store._redis is None


class TestDatabaseStore:
    @pytest.fixture
    def database_store(self, tmp_path):
        pytest.importorskip("aiosqlite", reason="aiosqlite is required for database store tests")
        from sessionguard.store.database import DatabaseStore

        return DatabaseStore(f"sqlite+aiosqlite:///{tmp_path / 'sg.db'}")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_tables_become_store_unavailable(self, database_store):
        # connect() never ran, so the schema does not exist
        with pytest.raises(StoreUnavailableError):
            await database_store.get_session("s1")
        await database_store.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_insert_is_rejected(self, database_store):
        await database_store.connect()
        await database_store.insert_session(make_session())

        with pytest.raises(StoreUnavailableError):
            await database_store.insert_session(make_session())
        await database_store.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_memory_default(self):
        pytest.importorskip("aiosqlite", reason="aiosqlite is required for database store tests")
        from sessionguard.store.database import DatabaseStore

        store = DatabaseStore()
        await store.connect()
        await store.insert_session(make_session())

        assert (await store.get_session("s1")).expires_at == T0 + timedelta(hours=24)
        await store.close()
