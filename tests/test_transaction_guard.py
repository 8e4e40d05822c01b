import asyncio
import gc
import logging

import pytest

from dbcore.db.errors import SQLiteError, TransactionError
from dbcore.db.transaction import TransactionGuard


async def _count(db):
    rows = await db.query("SELECT COUNT(*) AS n FROM items")
    return rows[0]["n"].as_long()


@pytest.fixture
async def db(sqlite_db):
    await sqlite_db.execute("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT)")
    yield sqlite_db


class TestTransactionGuard:
    """Test guard lifecycle on a direct connection."""

    @pytest.mark.asyncio
    async def test_begin_opens_transaction(self, db):
        guard = await TransactionGuard.begin(db)
        assert guard.is_open
        assert await db.in_transaction() is True
        await guard.execute("INSERT INTO items (name) VALUES ('a')")
        await guard.commit()
        assert not guard.is_open
        assert await db.in_transaction() is False
        assert await _count(db) == 1

    @pytest.mark.asyncio
    async def test_rollback_discards(self, db):
        guard = await TransactionGuard.begin(db)
        await guard.execute_with_params("INSERT INTO items (name) VALUES (?)", ["a"])
        rows = await guard.query_with_params("SELECT name FROM items WHERE name = ?", ["a"])
        assert len(rows) == 1
        await guard.rollback()
        assert guard.rolled_back
        assert await _count(db) == 0

    @pytest.mark.asyncio
    async def test_commit_twice(self, db):
        guard = await TransactionGuard.begin(db)
        await guard.commit()
        with pytest.raises(TransactionError, match="already committed"):
            await guard.commit()

    @pytest.mark.asyncio
    async def test_rollback_twice(self, db):
        guard = await TransactionGuard.begin(db)
        await guard.rollback()
        with pytest.raises(TransactionError, match="already rolled back"):
            await guard.rollback()

    @pytest.mark.asyncio
    async def test_cross_finalize(self, db):
        guard = await TransactionGuard.begin(db)
        await guard.commit()
        with pytest.raises(TransactionError, match="Cannot rollback committed"):
            await guard.rollback()

        guard = await TransactionGuard.begin(db)
        await guard.rollback()
        with pytest.raises(TransactionError, match="Cannot commit rolled back"):
            await guard.commit()

    @pytest.mark.asyncio
    async def test_operations_after_finalize(self, db):
        committed = await TransactionGuard.begin(db)
        await committed.commit()
        with pytest.raises(TransactionError, match="committed transaction"):
            await committed.execute("SELECT 1")

        rolled_back = await TransactionGuard.begin(db)
        await rolled_back.rollback()
        with pytest.raises(TransactionError, match="rolled back transaction"):
            await rolled_back.query("SELECT 1")

        # The handle itself is still usable
        rows = await db.query("SELECT 1 AS one")
        assert rows[0]["one"].as_int() == 1

    @pytest.mark.asyncio
    async def test_dropped_guard_rolls_back(self, db, caplog):
        caplog.set_level(logging.INFO, logger="dbcore")
        guard = await TransactionGuard.begin(db)
        await guard.execute("INSERT INTO items (name) VALUES ('lost')")
        del guard
        gc.collect()

        for _ in range(100):
            if not await db.in_transaction():
                break
            await asyncio.sleep(0.02)

        assert await db.in_transaction() is False
        assert await _count(db) == 0
        assert "dropped without commit or rollback" in caplog.text
        assert "Scheduled background rollback" in caplog.text


class TestTransactionContext:
    """Test ``Database.transaction()`` on a direct connection."""

    @pytest.mark.asyncio
    async def test_commits_on_clean_exit(self, db):
        async with db.transaction() as tx:
            assert isinstance(tx, TransactionGuard)
            await tx.execute("INSERT INTO items (name) VALUES ('a')")
        assert tx.committed
        assert await _count(db) == 1

    @pytest.mark.asyncio
    async def test_rolls_back_on_error(self, db):
        with pytest.raises(ValueError):
            async with db.transaction() as tx:
                await tx.execute("INSERT INTO items (name) VALUES ('a')")
                raise ValueError("abort")
        assert tx.rolled_back
        assert await db.in_transaction() is False
        assert await _count(db) == 0

    @pytest.mark.asyncio
    async def test_failed_commit_rolls_back(self, db):
        """A COMMIT rejected by a deferred constraint leaves the handle reusable."""
        await db.execute("CREATE TABLE parent (id INTEGER PRIMARY KEY)")
        await db.execute(
            "CREATE TABLE child (id INTEGER PRIMARY KEY, parent_id INTEGER "
            "REFERENCES parent(id) DEFERRABLE INITIALLY DEFERRED)"
        )
        with pytest.raises(SQLiteError):
            async with db.transaction() as tx:
                await tx.execute("INSERT INTO child (parent_id) VALUES (42)")
        assert tx.rolled_back
        assert await db.in_transaction() is False

        async with db.transaction() as again:
            await again.execute("INSERT INTO items (name) VALUES ('after')")
        assert await _count(db) == 1
        rows = await db.query("SELECT COUNT(*) AS n FROM child")
        assert rows[0]["n"].as_long() == 0

    @pytest.mark.asyncio
    async def test_explicit_rollback_inside_block(self, db):
        async with db.transaction() as tx:
            await tx.execute("INSERT INTO items (name) VALUES ('a')")
            await tx.rollback()
        assert await _count(db) == 0

    @pytest.mark.asyncio
    async def test_guard_block_rolls_back_when_left_open(self, db, caplog):
        caplog.set_level(logging.WARNING, logger="dbcore")
        async with await TransactionGuard.begin(db) as guard:
            await guard.execute("INSERT INTO items (name) VALUES ('a')")
        assert guard.rolled_back
        assert "left open" in caplog.text
        assert await _count(db) == 0
