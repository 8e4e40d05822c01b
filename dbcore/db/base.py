"""Base database abstractions for multi-backend support."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Optional, Sequence

from .errors import InvalidConnectionStringError
from .value import DatabaseResult

logger = logging.getLogger(__name__)

Params = Optional[Sequence[Any]]


class DatabaseType(Enum):
    """Kinds of database engine a backend can speak to."""

    NONE = "none"
    POSTGRES = "postgres"
    MYSQL = "mysql"
    SQLITE = "sqlite"
    ORACLE = "oracle"
    MONGODB = "mongodb"
    REDIS = "redis"

    @classmethod
    def parse(cls, name: str) -> "DatabaseType":
        aliases = {
            "none": cls.NONE,
            "postgres": cls.POSTGRES,
            "postgresql": cls.POSTGRES,
            "mysql": cls.MYSQL,
            "mariadb": cls.MYSQL,
            "sqlite": cls.SQLITE,
            "sqlite3": cls.SQLITE,
            "oracle": cls.ORACLE,
            "mongodb": cls.MONGODB,
            "mongo": cls.MONGODB,
            "redis": cls.REDIS,
        }
        try:
            return aliases[name.lower()]
        except KeyError:
            raise InvalidConnectionStringError(f"Invalid database type: '{name}'") from None

    def is_sql(self) -> bool:
        return self in (DatabaseType.POSTGRES, DatabaseType.MYSQL, DatabaseType.SQLITE, DatabaseType.ORACLE)

    def is_nosql(self) -> bool:
        return self in (DatabaseType.MONGODB, DatabaseType.REDIS)

    def supports_transactions(self) -> bool:
        return self.is_sql() or self is DatabaseType.MONGODB

    def supports_async(self) -> bool:
        # Engines whose driver speaks the wire protocol natively; SQLite goes
        # through a worker thread instead.
        return self in (
            DatabaseType.POSTGRES,
            DatabaseType.MYSQL,
            DatabaseType.MONGODB,
            DatabaseType.REDIS,
        )

    def __str__(self) -> str:
        return self.value


@dataclass
class PoolStats:
    """Database connection pool statistics.

    Counters are a snapshot and may lag behind borrows that are in flight.
    """

    size: int
    available: int
    waiting: int
    active: int = 0
    max_size: int = 0


class Database(ABC):
    """Capability contract implemented by every backend.

    ``execute`` and ``query`` send the SQL text as-is and must never be fed
    fragments built from untrusted input. Use ``execute_with_params`` and
    ``query_with_params`` for anything that carries user data.

    Every verb raises ``DatabaseConnectionError`` when the backend is not
    connected, and ``commit``/``rollback`` raise ``TransactionError`` when no
    transaction is active.
    """

    @property
    @abstractmethod
    def database_type(self) -> DatabaseType:
        ...

    @abstractmethod
    async def connect(self, connection_string: str) -> None:
        """Open the backend against ``connection_string``."""
        ...

    @abstractmethod
    async def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def execute(self, sql: str) -> int:
        """Run a statement and return the number of affected rows."""
        ...

    @abstractmethod
    async def query(self, sql: str) -> DatabaseResult:
        """Run a statement and return every result row."""
        ...

    @abstractmethod
    async def execute_with_params(self, sql: str, params: Params) -> int:
        ...

    @abstractmethod
    async def query_with_params(self, sql: str, params: Params) -> DatabaseResult:
        ...

    @abstractmethod
    async def begin_transaction(self) -> None:
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...

    @abstractmethod
    async def in_transaction(self) -> bool:
        """Whether this handle currently owns an open transaction.

        Backends that cannot answer reliably return ``False``.
        """
        ...

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Run a block inside a transaction.

        Commits on clean exit if the block left the transaction open, rolls
        back if the block raised.
        """
        from .transaction import TransactionGuard

        guard = await TransactionGuard.begin(self)
        async with _finalizing(guard):
            yield guard


async def _rollback_quietly(handle: Any, reason: str) -> None:
    if not handle.is_open:
        return
    try:
        await handle.rollback()
    except Exception as e:
        logger.error(f"Rollback after {reason} failed: {e}")


@asynccontextmanager
async def _finalizing(handle: Any) -> AsyncIterator[Any]:
    """Commit ``handle`` on success, roll it back on error.

    A failed commit is rolled back too (when the handle is still open) before
    the commit error propagates, so the backend is never left mid-transaction.
    """
    try:
        yield handle
    except BaseException:
        await _rollback_quietly(handle, "failed transaction block")
        raise
    if handle.is_open:
        try:
            await handle.commit()
        except BaseException:
            await _rollback_quietly(handle, "failed commit")
            raise


def sanitize_connection_string(conn_str: str) -> str:
    """Remove password from connection string for logging."""
    return re.sub(r":([^:@/]+)@", r":***@", conn_str)


__all__ = [
    "Database",
    "DatabaseType",
    "Params",
    "PoolStats",
    "sanitize_connection_string",
]
