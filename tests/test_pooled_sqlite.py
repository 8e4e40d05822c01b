import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from dbcore.db.base import DatabaseType
from dbcore.db.errors import (
    DatabaseConnectionError,
    PoolExhaustedError,
    QueryTimeoutError,
    SQLiteError,
    TransactionError,
    UnsupportedOperationError,
)
from dbcore.db.pool import PoolConfig
from dbcore.db.pooled_sqlite import PooledSQLiteDatabase


class TestPooledSQLiteDatabase:
    """Test the borrow-per-call backend."""

    @pytest.mark.asyncio
    async def test_create_validates_pool(self, pooled_db):
        stats = pooled_db.stats()
        assert stats.size == 1
        assert stats.available == 1
        assert stats.max_size == 4
        assert pooled_db.database_type is DatabaseType.SQLITE

    @pytest.mark.asyncio
    async def test_execute_and_query(self, pooled_db):
        await pooled_db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
        assert await pooled_db.execute_with_params(
            "INSERT INTO items (name) VALUES (?)", ["a"]
        ) == 1
        rows = await pooled_db.query_with_params("SELECT name FROM items WHERE id = ?", [1])
        assert rows[0]["name"].as_str() == "a"
        assert pooled_db.stats().active == 0

    @pytest.mark.asyncio
    async def test_lease_returned_on_error(self, pooled_db):
        with pytest.raises(SQLiteError):
            await pooled_db.query("SELECT * FROM nope")
        stats = pooled_db.stats()
        assert stats.active == 0
        assert stats.available == stats.size

    @pytest.mark.asyncio
    async def test_timeout_does_not_leak_connection(self, db_path, sleep_ms_hook):
        """A 1ms budget against a slow call times out and keeps the pool intact."""
        db = await PooledSQLiteDatabase.create(
            db_path, hooks=[sleep_ms_hook], max_size=2, operation_timeout=0.001
        )
        try:
            size_before = db.stats().size
            loop = asyncio.get_running_loop()
            start = loop.time()
            with pytest.raises(QueryTimeoutError) as exc_info:
                await db.query("SELECT sleep_ms(300)")
            assert loop.time() - start < 0.25
            assert exc_info.value.timeout_ms == 1

            stats = db.stats()
            assert stats.size == size_before
            assert stats.active == 0
            assert stats.available == stats.size
        finally:
            await db.close()

    @pytest.mark.asyncio
    async def test_concurrent_calls_share_pool(self, pooled_db):
        await pooled_db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, n INTEGER)")
        results = await asyncio.gather(
            *(pooled_db.execute_with_params("INSERT INTO items (n) VALUES (?)", [i]) for i in range(30))
        )
        assert sum(results) == 30
        rows = await pooled_db.query("SELECT COUNT(*) AS n FROM items")
        assert rows[0]["n"].as_long() == 30
        stats = pooled_db.stats()
        assert stats.size <= 4
        assert stats.active == 0

    @pytest.mark.asyncio
    async def test_exhaustion_surfaces(self, db_path):
        db = await PooledSQLiteDatabase.with_config(
            PoolConfig(max_size=1, acquire_timeout=0.05, connection_string=db_path)
        )
        try:
            tx = await db.begin()
            with pytest.raises(PoolExhaustedError):
                await db.query("SELECT 1")
            await tx.rollback()
            assert (await db.query("SELECT 1 AS x"))[0]["x"].as_int() == 1
        finally:
            await db.close()


class TestPooledTransactionVerbs:
    """Handle-level transaction verbs are unavailable on a pooled backend."""

    @pytest.mark.asyncio
    async def test_begin_transaction_unsupported(self, pooled_db):
        with pytest.raises(UnsupportedOperationError, match="begin()"):
            await pooled_db.begin_transaction()

    @pytest.mark.asyncio
    async def test_commit_and_rollback_rejected(self, pooled_db):
        with pytest.raises(TransactionError):
            await pooled_db.commit()
        with pytest.raises(TransactionError):
            await pooled_db.rollback()

    @pytest.mark.asyncio
    async def test_in_transaction_always_false(self, pooled_db, caplog):
        caplog.set_level(logging.WARNING, logger="dbcore")
        tx = await pooled_db.begin()
        assert await pooled_db.in_transaction() is False
        assert await pooled_db.in_transaction() is False
        assert caplog.text.count("always False") == 1
        await tx.rollback()

    @pytest.mark.asyncio
    async def test_connect_is_health_check(self, pooled_db):
        await pooled_db.connect()
        assert await pooled_db.is_connected() is True
        await pooled_db.disconnect()
        assert await pooled_db.is_connected() is True

    @pytest.mark.asyncio
    async def test_close(self, db_path):
        db = await PooledSQLiteDatabase.create(db_path)
        await db.close()
        assert await db.is_connected() is False
        with pytest.raises(DatabaseConnectionError):
            await db.connect()
        with pytest.raises(DatabaseConnectionError):
            await db.execute("SELECT 1")

    @pytest.mark.asyncio
    async def test_begin_failure_releases_lease(self, pooled_db):
        with patch(
            "dbcore.db.pooled_sqlite.sqlite_execute",
            AsyncMock(side_effect=SQLiteError("database is locked")),
        ):
            with pytest.raises(SQLiteError):
                await pooled_db.begin()
        assert pooled_db.stats().active == 0
