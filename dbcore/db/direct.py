"""Backend that owns a single physical connection."""

from __future__ import annotations

import asyncio
import logging
from abc import abstractmethod
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from .base import Database, Params, sanitize_connection_string
from .errors import DatabaseConnectionError, TransactionError
from .timeouts import connect_with_timeout, run_with_timeout, spawn_background
from .value import DatabaseResult, DatabaseValue, coerce_params

logger = logging.getLogger(__name__)

ConnectionHook = Callable[[Any], Awaitable[None]]

DEFAULT_OPERATION_TIMEOUT = 30.0


async def _teardown_connection(backend_cls: type, conn: Any, in_transaction: bool) -> None:
    """Best-effort cleanup of a connection whose backend was collected."""
    if in_transaction:
        try:
            await backend_cls._engine_execute(conn, "ROLLBACK", ())
            logger.info(f"{backend_cls.__name__}: rolled back abandoned transaction")
        except Exception as e:
            logger.error(f"{backend_cls.__name__}: rollback of abandoned transaction failed: {e}")
    try:
        await backend_cls._close(conn)
    except Exception as e:
        logger.error(f"{backend_cls.__name__}: error closing abandoned connection: {e}")


class DirectConnectionDatabase(Database):
    """One connection and one transaction flag, each behind its own lock.

    Ordinary verbs take the connection lock only. Transaction verbs take the
    transaction lock and then the connection lock, always in that order, so
    two concurrent ``begin_transaction`` calls cannot both observe "not in a
    transaction". Statements run before the flag changes; a failed ``BEGIN``
    or ``COMMIT`` leaves the flag as it was.

    Engine subclasses supply ``_open``, ``_close``, ``_engine_execute`` and
    ``_engine_query``. The last three are static so cleanup can run after the
    backend object itself is gone.
    """

    def __init__(
        self,
        operation_timeout: Optional[float] = DEFAULT_OPERATION_TIMEOUT,
        connect_timeout: Optional[float] = None,
    ):
        """Initialize an unconnected backend.

        Args:
            operation_timeout: Per-statement budget in seconds, or None for no limit.
            connect_timeout: Budget for opening the connection; defaults to
                ``operation_timeout``.
        """
        self.operation_timeout = operation_timeout
        self.connect_timeout = connect_timeout if connect_timeout is not None else operation_timeout
        self._conn: Any = None
        self._in_transaction = False
        self._conn_lock = asyncio.Lock()
        self._tx_lock = asyncio.Lock()
        self._connection_string = ""
        self._on_connection_created: List[ConnectionHook] = []

    # Engine hooks

    @abstractmethod
    async def _open(self, connection_string: str) -> Any:
        ...

    @staticmethod
    @abstractmethod
    async def _close(conn: Any) -> None:
        ...

    @staticmethod
    @abstractmethod
    async def _engine_execute(conn: Any, sql: str, params: Tuple[DatabaseValue, ...]) -> int:
        ...

    @staticmethod
    @abstractmethod
    async def _engine_query(
        conn: Any, sql: str, params: Tuple[DatabaseValue, ...]
    ) -> DatabaseResult:
        ...

    # Lifecycle

    def on_connection_created(self, hook: ConnectionHook) -> None:
        """Register an async callback run on every newly opened connection."""
        self._on_connection_created.append(hook)

    async def _run_hooks(self, conn: Any) -> None:
        for hook in self._on_connection_created:
            try:
                await hook(conn)
            except Exception as e:
                logger.error(f"Error in connection_created hook: {e}")

    async def connect(self, connection_string: str) -> None:
        """Open a connection, replacing any current one.

        A previous connection is closed first and its open transaction, if
        any, is dropped with it.

        Args:
            connection_string: Engine-specific target, e.g. a SQLite path or a
                PostgreSQL URL.

        Raises:
            ConnectionTimeoutError: If opening takes longer than ``connect_timeout``.
            DatabaseConnectionError: If the engine refuses the connection.
        """
        async with self._tx_lock, self._conn_lock:
            old = self._conn
            self._conn = None
            self._in_transaction = False
            if old is not None:
                await self._close_quietly(old)

            conn = await connect_with_timeout(self._open(connection_string), self.connect_timeout)
            await self._run_hooks(conn)
            self._conn = conn
            self._connection_string = connection_string
        logger.info(
            f"{type(self).__name__} connected: {sanitize_connection_string(connection_string)}"
        )

    async def is_connected(self) -> bool:
        return self._conn is not None

    async def disconnect(self) -> None:
        """Close the connection, rolling back an open transaction first.

        A failed rollback is logged and does not stop the close.
        """
        async with self._tx_lock, self._conn_lock:
            conn = self._conn
            if conn is None:
                return
            in_transaction = self._in_transaction
            self._conn = None
            self._in_transaction = False

            if in_transaction:
                logger.warning(f"{type(self).__name__}: disconnecting with an open transaction, rolling back")
                try:
                    await run_with_timeout(
                        self._engine_execute(conn, "ROLLBACK", ()), self.operation_timeout
                    )
                except Exception as e:
                    logger.error(f"Rollback during disconnect failed: {e}")
            await self._close_quietly(conn)
        logger.info(f"{type(self).__name__} disconnected")

    async def _close_quietly(self, conn: Any) -> None:
        try:
            await self._close(conn)
        except Exception as e:
            logger.error(f"Error closing connection: {e}")

    def _require_connection(self) -> Any:
        if self._conn is None:
            raise DatabaseConnectionError("Not connected to database")
        return self._conn

    def __del__(self) -> None:
        conn = getattr(self, "_conn", None)
        if conn is None:
            return
        in_transaction = self._in_transaction
        name = type(self).__name__
        self._conn = None
        if in_transaction:
            logger.warning(f"{name} dropped with an open transaction; scheduling rollback")
        else:
            logger.warning(f"{name} dropped while connected; scheduling close")
        task = spawn_background(_teardown_connection(type(self), conn, in_transaction))
        if task is None:
            logger.warning(
                f"{name}: no running event loop, the engine will roll back when the connection closes"
            )

    # Statements

    async def _run(self, method: Callable[..., Awaitable[Any]], sql: str, params: Params) -> Any:
        bound = coerce_params(params)
        async with self._conn_lock:
            conn = self._require_connection()
            return await run_with_timeout(method(conn, sql, bound), self.operation_timeout)

    async def execute(self, sql: str) -> int:
        return await self._run(self._engine_execute, sql, None)

    async def query(self, sql: str) -> DatabaseResult:
        return await self._run(self._engine_query, sql, None)

    async def execute_with_params(self, sql: str, params: Params) -> int:
        return await self._run(self._engine_execute, sql, params)

    async def query_with_params(self, sql: str, params: Params) -> DatabaseResult:
        return await self._run(self._engine_query, sql, params)

    # Transactions

    async def _transaction_statement(self, sql: str) -> None:
        conn = self._require_connection()
        await run_with_timeout(self._engine_execute(conn, sql, ()), self.operation_timeout)

    async def begin_transaction(self) -> None:
        async with self._tx_lock, self._conn_lock:
            self._require_connection()
            if self._in_transaction:
                raise TransactionError("Already in a transaction")
            await self._transaction_statement("BEGIN")
            self._in_transaction = True

    async def commit(self) -> None:
        async with self._tx_lock, self._conn_lock:
            self._require_connection()
            if not self._in_transaction:
                raise TransactionError("Not in a transaction")
            await self._transaction_statement("COMMIT")
            self._in_transaction = False

    async def rollback(self) -> None:
        async with self._tx_lock, self._conn_lock:
            self._require_connection()
            if not self._in_transaction:
                raise TransactionError("Not in a transaction")
            await self._transaction_statement("ROLLBACK")
            self._in_transaction = False

    async def in_transaction(self) -> bool:
        async with self._tx_lock:
            return self._in_transaction
