import asyncio
import os
import sqlite3
import threading
from unittest.mock import AsyncMock, patch

import pytest

from dbcore.config.settings import Settings
from dbcore.db.errors import (
    ConnectionTimeoutError,
    DatabaseConnectionError,
    PoolExhaustedError,
)
from dbcore.db.pool import PoolConfig, SQLiteConnectionPool


def assert_conserved(pool):
    assert pool.idle_count + pool.active_count == pool.size
    assert pool.size <= pool.config.max_size


class TestPoolConfig:
    """Test pool configuration defaults and environment loading."""

    @pytest.fixture(autouse=True)
    def restore_settings(self):
        yield
        Settings.refresh_from_env()

    def test_defaults(self):
        config = PoolConfig()
        assert config.max_size == 16
        assert config.acquire_timeout == 5.0
        assert config.operation_timeout == 30.0

    def test_from_env(self):
        env = {
            "DBCORE_POOL_MAX_SIZE": "4",
            "DBCORE_POOL_ACQUIRE_TIMEOUT": "0.5",
            "DBCORE_OPERATION_TIMEOUT": "2",
            "DBCORE_DATABASE_PATH": "/tmp/x.db",
        }
        with patch.dict(os.environ, env):
            config = PoolConfig.from_env()
        assert config.max_size == 4
        assert config.acquire_timeout == 0.5
        assert config.operation_timeout == 2.0
        assert config.connection_string == "/tmp/x.db"

    def test_from_env_malformed_values_use_defaults(self):
        env = {
            "DBCORE_POOL_MAX_SIZE": "lots",
            "DBCORE_POOL_ACQUIRE_TIMEOUT": "soon",
            "DBCORE_OPERATION_TIMEOUT": "",
        }
        with patch.dict(os.environ, env):
            config = PoolConfig.from_env()
        assert config.max_size == 16
        assert config.acquire_timeout == 5.0
        assert config.operation_timeout == 30.0
        assert config.max_size == Settings.DBCORE_POOL_MAX_SIZE

    def test_rejects_empty_pool(self):
        with pytest.raises(ValueError):
            PoolConfig(max_size=0)


class TestSQLiteConnectionPool:
    """Test borrowing, returning and bookkeeping."""

    @pytest.fixture
    async def pool(self, db_path):
        pool = SQLiteConnectionPool(
            PoolConfig(max_size=2, acquire_timeout=1.0, connection_string=db_path)
        )
        yield pool
        await pool.close()

    @pytest.mark.asyncio
    async def test_lazy_creation(self, pool):
        assert pool.size == 0
        lease = await pool.acquire()
        assert pool.size == 1
        assert pool.active_count == 1
        lease.release()
        assert pool.idle_count == 1
        assert pool.active_count == 0
        assert_conserved(pool)

    @pytest.mark.asyncio
    async def test_idle_connection_reused(self, pool):
        async with await pool.acquire() as lease:
            first = lease.index
        async with await pool.acquire() as lease:
            assert lease.index == first
        assert pool.size == 1

    @pytest.mark.asyncio
    async def test_leases_are_exclusive(self, pool):
        a = await pool.acquire()
        b = await pool.acquire()
        assert a.index != b.index
        assert a.connection is not b.connection
        a.release()
        b.release()
        assert_conserved(pool)

    @pytest.mark.asyncio
    async def test_exhaustion(self, pool):
        """All connections busy for the whole window raises PoolExhausted."""
        a = await pool.acquire()
        b = await pool.acquire()
        with pytest.raises(PoolExhaustedError) as exc_info:
            await pool.acquire()
        assert exc_info.value.active == 2
        assert exc_info.value.max_size == 2
        assert pool.waiting_count == 0
        a.release()
        b.release()
        assert_conserved(pool)

    @pytest.mark.asyncio
    async def test_waiter_gets_released_connection(self, pool):
        a = await pool.acquire()
        b = await pool.acquire()
        waiter = asyncio.create_task(pool.acquire())
        await asyncio.sleep(0.01)
        assert pool.stats().waiting == 1
        a.release()
        lease = await waiter
        assert lease.index == a.index
        lease.release()
        b.release()
        assert_conserved(pool)

    @pytest.mark.asyncio
    async def test_release_is_idempotent(self, pool):
        lease = await pool.acquire()
        lease.release()
        lease.release()
        pool.release(lease.index)
        assert pool.idle_count == 1
        assert pool.size == 1
        with pytest.raises(DatabaseConnectionError):
            lease.connection

    @pytest.mark.asyncio
    async def test_open_transaction_rolled_back_on_reuse(self, db_path):
        pool = SQLiteConnectionPool(PoolConfig(max_size=1, connection_string=db_path))
        try:
            lease = await pool.acquire()
            await lease.connection.execute("CREATE TABLE t (x INTEGER)")
            await lease.connection.execute("BEGIN")
            await lease.connection.execute("INSERT INTO t VALUES (1)")
            assert lease.connection.in_transaction
            lease.release()

            async with await pool.acquire() as again:
                assert not again.connection.in_transaction
                cursor = await again.connection.execute("SELECT COUNT(*) FROM t")
                assert (await cursor.fetchone())[0] == 0
                await cursor.close()
        finally:
            await pool.close()

    @pytest.mark.asyncio
    async def test_collected_lease_is_returned(self, pool):
        lease = await pool.acquire()
        del lease
        assert pool.active_count == 0
        assert pool.idle_count == 1

    @pytest.mark.asyncio
    async def test_stats(self, pool):
        lease = await pool.acquire()
        stats = pool.stats()
        assert stats.size == 1
        assert stats.available == 0
        assert stats.active == 1
        assert stats.waiting == 0
        assert stats.max_size == 2
        lease.release()

    @pytest.mark.asyncio
    async def test_hooks_run_once_per_connection(self, pool):
        hook = AsyncMock()
        pool.on_connection_created(hook)
        a = await pool.acquire()
        a.release()
        b = await pool.acquire()
        b.release()
        assert hook.await_count == 1

    @pytest.mark.asyncio
    async def test_slow_connect_times_out(self, pool):
        async def slow_open(_):
            await asyncio.sleep(5)

        with patch("dbcore.db.pool.open_sqlite_connection", slow_open):
            with pytest.raises(ConnectionTimeoutError):
                await pool.acquire()
        assert pool.size == 0

    @pytest.mark.asyncio
    async def test_failed_connect_frees_capacity(self, pool):
        with patch(
            "dbcore.db.pool.open_sqlite_connection",
            AsyncMock(side_effect=DatabaseConnectionError("unable to open")),
        ):
            with pytest.raises(DatabaseConnectionError):
                await pool.acquire()
        assert pool.size == 0
        async with await pool.acquire():
            assert pool.size == 1

    @pytest.mark.asyncio
    async def test_close(self, pool):
        idle = await pool.acquire()
        held = await pool.acquire()
        idle.release()
        await pool.close()
        assert pool.size == 1
        held.release()
        assert pool.size == 0
        with pytest.raises(DatabaseConnectionError):
            await pool.acquire()

    @pytest.mark.asyncio
    async def test_conservation_under_load(self, pool):
        async def borrow():
            async with await pool.acquire():
                await asyncio.sleep(0.001)

        await asyncio.gather(*(borrow() for _ in range(20)))
        assert_conserved(pool)
        assert pool.active_count == 0

    @pytest.mark.asyncio
    async def test_timed_out_opens_close_their_connections(self, db_path):
        """Opens that time out on a locked database do not leave worker threads behind."""
        blocker = sqlite3.connect(db_path, isolation_level=None)
        blocker.execute("BEGIN EXCLUSIVE")
        before = threading.active_count()
        pool = SQLiteConnectionPool(
            PoolConfig(max_size=2, acquire_timeout=0.2, connection_string=db_path)
        )
        try:
            for _ in range(3):
                with pytest.raises(ConnectionTimeoutError):
                    await pool.acquire()
            assert pool.size == 0
        finally:
            blocker.execute("ROLLBACK")
            blocker.close()

        for _ in range(250):
            if threading.active_count() <= before:
                break
            await asyncio.sleep(0.02)
        assert threading.active_count() <= before

        async with await pool.acquire():
            assert pool.size == 1
        await pool.close()
