"""Pytest configuration and fixtures for dbcore tests."""

import logging
import os
import time
from unittest.mock import patch

import pytest

from dbcore.db.pooled_sqlite import PooledSQLiteDatabase
from dbcore.db.sqlite import SQLiteDatabase


@pytest.fixture(autouse=True)
def mock_environment_variables():
    """Keep tests independent of the developer's environment."""
    env_vars = {
        "DBCORE_DEBUG_SQL": "0",
        "LOG_LEVEL": "ERROR",
    }
    with patch.dict(os.environ, env_vars, clear=False):
        yield


def _sleep_ms(ms):
    time.sleep(ms / 1000)
    return ms


async def register_sleep_ms(conn):
    """Connection hook adding ``sleep_ms(n)``, a deliberately slow SQL function."""
    await conn.create_function("sleep_ms", 1, _sleep_ms)


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "test.db")


@pytest.fixture
async def sqlite_db(db_path):
    """A connected direct-connection SQLite database."""
    db = SQLiteDatabase(operation_timeout=5.0)
    db.on_connection_created(register_sleep_ms)
    await db.connect(db_path)
    yield db
    await db.disconnect()


@pytest.fixture
async def pooled_db(db_path):
    """A pooled SQLite database with a small pool."""
    db = await PooledSQLiteDatabase.create(
        db_path,
        hooks=[register_sleep_ms],
        max_size=4,
        acquire_timeout=1.0,
        operation_timeout=5.0,
    )
    yield db
    await db.close()


# Disable logging to reduce noise during tests
logging.getLogger().setLevel(logging.ERROR)


@pytest.fixture
def sleep_ms_hook():
    return register_sleep_ms
