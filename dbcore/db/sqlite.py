"""SQLite database backend for development and small deployments."""

from __future__ import annotations

import asyncio
import logging
import os
import sqlite3
from typing import Any, List, Sequence, Tuple

import aiosqlite

from .base import DatabaseType
from .direct import DirectConnectionDatabase
from .errors import DatabaseConnectionError, SQLiteError
from .timeouts import spawn_background, timed_statement, track_background
from .value import DatabaseResult, DatabaseRow, DatabaseValue, ValueKind

logger = logging.getLogger(__name__)

MEMORY = ":memory:"


def sqlite_path(connection_string: str) -> str:
    """Turn ``sqlite:///path`` (or a bare path / ``file:`` URI) into a path."""
    for prefix in ("sqlite:///", "sqlite://"):
        if connection_string.startswith(prefix):
            return connection_string[len(prefix):] or MEMORY
    return connection_string or MEMORY


def to_sqlite_param(value: DatabaseValue) -> Any:
    kind = value.kind
    if kind is ValueKind.BOOL:
        return int(value.value)
    return value.value


def _from_sqlite(raw: Any) -> DatabaseValue:
    # SQLite storage classes: NULL, INTEGER (64-bit), REAL, TEXT, BLOB
    if raw is None:
        return DatabaseValue.null()
    if isinstance(raw, int):
        return DatabaseValue.int64(raw)
    if isinstance(raw, float):
        return DatabaseValue.float64(raw)
    if isinstance(raw, str):
        return DatabaseValue.string(raw)
    if isinstance(raw, bytes):
        return DatabaseValue.blob(raw)
    return DatabaseValue.from_python(raw)


def row_from_sqlite(names: Sequence[str], row: Sequence[Any]) -> DatabaseRow:
    return {name: _from_sqlite(raw) for name, raw in zip(names, row)}


async def _open_and_configure(path: str, uri: bool, is_file: bool) -> aiosqlite.Connection:
    try:
        conn = await aiosqlite.connect(
            path, timeout=30.0, isolation_level=None, uri=uri, check_same_thread=False
        )
    except sqlite3.Error as e:
        raise DatabaseConnectionError(f"{path}: {e}") from e

    try:
        await conn.execute("PRAGMA foreign_keys = ON")
        if is_file:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA synchronous=NORMAL")
            await conn.execute("PRAGMA busy_timeout=5000")
    except sqlite3.Error as e:
        logger.debug(f"Failed to set PRAGMA options: {e}")
    except BaseException:
        await conn.close()
        raise

    return conn


def _close_unclaimed(task: "asyncio.Task[aiosqlite.Connection]") -> None:
    # Runs once an open finishes after its caller stopped waiting for it
    if task.cancelled() or task.exception() is not None:
        return
    logger.debug("Closing connection whose open outlived its caller")
    spawn_background(close_sqlite_connection(task.result()))


async def open_sqlite_connection(connection_string: str) -> aiosqlite.Connection:
    """Open an autocommit connection; transactions are started explicitly.

    The open runs in its own task. If the caller is cancelled (for example by
    a connect timeout) the open is left to finish and the connection is then
    closed, so no worker thread or file handle outlives a failed open.

    Args:
        connection_string: ``sqlite:///path``, a bare path, ``:memory:`` or a
            ``file:`` URI.

    Returns:
        An open ``aiosqlite.Connection`` with foreign keys enabled.

    Raises:
        DatabaseConnectionError: If SQLite cannot open the database.
    """
    path = sqlite_path(connection_string)
    uri = path.startswith("file:")
    is_file = not uri and path != MEMORY
    if is_file:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)

    task = asyncio.ensure_future(_open_and_configure(path, uri, is_file))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        track_background(task).add_done_callback(_close_unclaimed)
        raise


async def close_sqlite_connection(conn: aiosqlite.Connection) -> None:
    await conn.close()


async def sqlite_execute(
    conn: aiosqlite.Connection, sql: str, params: Tuple[DatabaseValue, ...] = ()
) -> int:
    """Run one statement and return the affected row count (0 for DDL/SELECT)."""
    args = [to_sqlite_param(p) for p in params]
    try:
        cursor = await timed_statement(conn.execute(sql, args), sql, args)
        try:
            return max(cursor.rowcount, 0)
        finally:
            await cursor.close()
    except sqlite3.Error as e:
        raise SQLiteError(str(e), e) from e


async def sqlite_query(
    conn: aiosqlite.Connection, sql: str, params: Tuple[DatabaseValue, ...] = ()
) -> DatabaseResult:
    args = [to_sqlite_param(p) for p in params]
    try:
        cursor = await timed_statement(conn.execute(sql, args), sql, args)
        try:
            rows = await cursor.fetchall()
            names: List[str] = [d[0] for d in cursor.description or ()]
        finally:
            await cursor.close()
    except sqlite3.Error as e:
        raise SQLiteError(str(e), e) from e
    return [row_from_sqlite(names, row) for row in rows]


class SQLiteDatabase(DirectConnectionDatabase):
    """SQLite over a single aiosqlite connection.

    aiosqlite runs every call on the connection's own worker thread, so the
    event loop never blocks on the engine.
    """

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.SQLITE

    async def _open(self, connection_string: str) -> aiosqlite.Connection:
        return await open_sqlite_connection(connection_string)

    _close = staticmethod(close_sqlite_connection)
    _engine_execute = staticmethod(sqlite_execute)
    _engine_query = staticmethod(sqlite_query)
