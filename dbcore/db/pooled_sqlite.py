"""Pooled SQLite backend and the transaction handle that pins one connection."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

from .base import Database, DatabaseType, Params, PoolStats, _finalizing
from .errors import DatabaseConnectionError, TransactionError, UnsupportedOperationError
from .pool import ConnectionHook, PoolConfig, PooledConnection, SQLiteConnectionPool
from .sqlite import sqlite_execute, sqlite_query
from .timeouts import run_with_timeout
from .value import DatabaseResult, coerce_params

logger = logging.getLogger(__name__)


class TransactionState(Enum):
    """Lifecycle of a pooled transaction."""

    OPEN = "open"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"  # COMMIT or ROLLBACK itself raised
    ABANDONED = "abandoned"  # collected while open


class PooledTransaction:
    """A transaction bound to one pooled connection for its whole life.

    Every statement goes to the pinned connection; nothing is re-borrowed.
    ``commit`` and ``rollback`` finish the transaction and hand the connection
    back to the pool whether the final statement succeeds or not. After that
    every call raises ``TransactionError``.

    If the handle is collected while still open it logs a warning and returns
    the connection. The pool rolls the connection back before its next lease;
    the handle itself does not roll anything back.
    """

    def __init__(self, lease: PooledConnection, operation_timeout: Optional[float]):
        self._lease = lease
        self._timeout = operation_timeout
        self._state = TransactionState.OPEN

    @classmethod
    async def begin(cls, db: "PooledSQLiteDatabase") -> "PooledTransaction":
        """Lease a connection from ``db``'s pool and issue BEGIN on it.

        Args:
            db: Pooled backend to borrow from.

        Returns:
            An open ``PooledTransaction`` pinned to the leased connection.

        Raises:
            PoolExhaustedError: If no connection frees up in time.
            SQLiteError: If BEGIN fails; the lease is returned first.
        """
        lease = await db.pool.acquire()
        try:
            await run_with_timeout(sqlite_execute(lease.connection, "BEGIN"), db.operation_timeout)
        except BaseException:
            lease.release()
            raise
        logger.debug(f"Began pooled transaction on connection #{lease.index}")
        return cls(lease, db.operation_timeout)

    @property
    def state(self) -> TransactionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is TransactionState.OPEN

    @property
    def connection_id(self) -> int:
        """Index of the pinned pool slot."""
        return self._lease.index

    def _require_open(self) -> None:
        if self._state is not TransactionState.OPEN:
            raise TransactionError("Transaction already finalized")

    async def _run(self, method: Callable[..., Awaitable[Any]], sql: str, params: Params) -> Any:
        self._require_open()
        bound = coerce_params(params)
        return await run_with_timeout(method(self._lease.connection, sql, bound), self._timeout)

    async def execute(self, sql: str) -> int:
        return await self._run(sqlite_execute, sql, None)

    async def query(self, sql: str) -> DatabaseResult:
        return await self._run(sqlite_query, sql, None)

    async def execute_with_params(self, sql: str, params: Params) -> int:
        return await self._run(sqlite_execute, sql, params)

    async def query_with_params(self, sql: str, params: Params) -> DatabaseResult:
        return await self._run(sqlite_query, sql, params)

    async def _finish(self, sql: str, target: TransactionState) -> None:
        try:
            await run_with_timeout(sqlite_execute(self._lease.connection, sql), self._timeout)
        except BaseException:
            self._state = TransactionState.FAILED
            raise
        else:
            self._state = target
        finally:
            self._lease.release()

    async def commit(self) -> None:
        """Commit and return the connection to the pool.

        The connection goes back even when COMMIT fails; the state is then
        ``FAILED``.

        Raises:
            TransactionError: If the transaction is already finalized.
        """
        if self._state is TransactionState.COMMITTED:
            raise TransactionError("Transaction already committed")
        if self._state is TransactionState.ROLLED_BACK:
            raise TransactionError("Cannot commit a rolled back transaction")
        self._require_open()
        await self._finish("COMMIT", TransactionState.COMMITTED)

    async def rollback(self) -> None:
        """Roll back and return the connection to the pool."""
        if self._state is TransactionState.ROLLED_BACK:
            raise TransactionError("Transaction already rolled back")
        if self._state is TransactionState.COMMITTED:
            raise TransactionError("Cannot roll back a committed transaction")
        self._require_open()
        await self._finish("ROLLBACK", TransactionState.ROLLED_BACK)

    async def __aenter__(self) -> "PooledTransaction":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self._state is not TransactionState.OPEN:
            return
        if exc_type is None:
            logger.warning(
                f"Pooled transaction on connection #{self.connection_id} left open at end of block, "
                "rolling back"
            )
        await self.rollback()

    def __del__(self) -> None:
        if getattr(self, "_state", None) is not TransactionState.OPEN:
            return
        self._state = TransactionState.ABANDONED
        logger.warning(
            f"Pooled transaction on connection #{self._lease.index} dropped without commit or "
            "rollback; the pool will roll the connection back before reusing it"
        )
        self._lease.release()


class PooledSQLiteDatabase(Database):
    """SQLite backed by a connection pool.

    Ordinary statements borrow a connection for exactly one call. Transaction
    state lives on a connection, not on this handle, so the handle-level
    transaction verbs are unavailable: use ``begin()`` or ``transaction()``,
    which pin one connection. ``in_transaction()`` always returns ``False``.
    """

    def __init__(self, config: PoolConfig):
        self.config = config
        self.pool = SQLiteConnectionPool(config)
        self._warned_in_transaction = False

    @classmethod
    async def with_config(
        cls, config: PoolConfig, hooks: Sequence[ConnectionHook] = ()
    ) -> "PooledSQLiteDatabase":
        """Build the pool and check it by borrowing one connection.

        Args:
            config: Pool configuration.
            hooks: Callbacks run on each new connection, registered before
                the first one is opened.

        Returns:
            A ready ``PooledSQLiteDatabase``.

        Raises:
            DatabaseConnectionError: If the first connection cannot be opened.
                The pool is closed before the error propagates.
        """
        db = cls(config)
        for hook in hooks:
            db.on_connection_created(hook)
        try:
            async with await db.pool.acquire():
                pass
        except BaseException:
            await db.pool.close()
            raise
        return db

    @classmethod
    async def create(
        cls,
        connection_string: str,
        hooks: Sequence[ConnectionHook] = (),
        **overrides: Any,
    ) -> "PooledSQLiteDatabase":
        """Shorthand for ``with_config`` with ``PoolConfig`` field overrides."""
        return await cls.with_config(
            PoolConfig(connection_string=connection_string, **overrides), hooks
        )

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.SQLITE

    @property
    def operation_timeout(self) -> Optional[float]:
        return self.config.operation_timeout

    def on_connection_created(self, hook: ConnectionHook) -> None:
        self.pool.on_connection_created(hook)

    def stats(self) -> PoolStats:
        return self.pool.stats()

    async def connect(self, connection_string: str = "") -> None:
        """Health check. The pool already owns its connections."""
        if self.pool.closed:
            raise DatabaseConnectionError("Connection pool is closed")
        async with await self.pool.acquire():
            pass

    async def is_connected(self) -> bool:
        return not self.pool.closed

    async def disconnect(self) -> None:
        """No-op; use ``close()`` to tear the pool down."""

    async def close(self) -> None:
        await self.pool.close()

    async def _run(self, method: Callable[..., Awaitable[Any]], sql: str, params: Params) -> Any:
        bound = coerce_params(params)
        async with await self.pool.acquire() as lease:
            return await run_with_timeout(
                method(lease.connection, sql, bound), self.config.operation_timeout
            )

    async def execute(self, sql: str) -> int:
        return await self._run(sqlite_execute, sql, None)

    async def query(self, sql: str) -> DatabaseResult:
        return await self._run(sqlite_query, sql, None)

    async def execute_with_params(self, sql: str, params: Params) -> int:
        return await self._run(sqlite_execute, sql, params)

    async def query_with_params(self, sql: str, params: Params) -> DatabaseResult:
        return await self._run(sqlite_query, sql, params)

    async def begin_transaction(self) -> None:
        raise UnsupportedOperationError(
            "A pooled database cannot hold a transaction on the handle; use begin() to pin a connection"
        )

    async def commit(self) -> None:
        raise TransactionError("Not in a transaction (pooled handles never own one; use begin())")

    async def rollback(self) -> None:
        raise TransactionError("Not in a transaction (pooled handles never own one; use begin())")

    async def in_transaction(self) -> bool:
        if not self._warned_in_transaction:
            self._warned_in_transaction = True
            logger.warning(
                "in_transaction() is always False on a pooled database; "
                "track transactions with the PooledTransaction returned by begin()"
            )
        return False

    async def begin(self) -> PooledTransaction:
        """Start a transaction pinned to one pooled connection."""
        return await PooledTransaction.begin(self)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PooledTransaction]:
        tx = await self.begin()
        async with _finalizing(tx):
            yield tx
