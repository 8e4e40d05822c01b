"""Bounded pool of SQLite connections.

Connections live in an arena of slots addressed by index. Idle slots sit in
an ``asyncio.Queue`` of indices (the free-list); a slot is owned by exactly one
lease while it is out of the queue. Connections are opened lazily up to
``max_size``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set

import aiosqlite

from ..config.settings import Settings
from .base import PoolStats, sanitize_connection_string
from .errors import DatabaseConnectionError, PoolExhaustedError
from .sqlite import open_sqlite_connection, sqlite_execute
from .timeouts import connect_with_timeout, run_with_timeout, spawn_background

logger = logging.getLogger(__name__)

ConnectionHook = Callable[[aiosqlite.Connection], Awaitable[None]]

# Placed on the free-list to wake a waiter when capacity frees up without an
# idle connection becoming available.
_WAKEUP = -1


@dataclass
class PoolConfig:
    """Configuration for a connection pool with environment variable support."""

    max_size: int = 16
    acquire_timeout: float = 5.0  # Seconds to wait for a free connection
    operation_timeout: float = 30.0  # Per-statement budget in seconds
    connection_string: str = ""

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError(f"max_size must be at least 1, got {self.max_size}")

    @classmethod
    def from_env(cls) -> "PoolConfig":
        """Create configuration from the environment via ``Settings``.

        Reads DBCORE_POOL_MAX_SIZE, DBCORE_POOL_ACQUIRE_TIMEOUT,
        DBCORE_OPERATION_TIMEOUT and DBCORE_DATABASE_PATH. Malformed values
        fall back to the defaults, exactly as they do for ``Settings``.

        Returns:
            A ``PoolConfig`` built from the current environment.
        """
        Settings.refresh_from_env()
        return cls(
            max_size=Settings.DBCORE_POOL_MAX_SIZE,
            acquire_timeout=Settings.DBCORE_POOL_ACQUIRE_TIMEOUT,
            operation_timeout=Settings.DBCORE_OPERATION_TIMEOUT,
            connection_string=Settings.DBCORE_DATABASE_PATH,
        )


@dataclass
class _Slot:
    connection: aiosqlite.Connection
    created_at: float = field(default_factory=time.time)
    last_used: float = field(default_factory=time.time)
    usage_count: int = 0


async def _close_quietly(conn: aiosqlite.Connection) -> None:
    try:
        await conn.close()
    except Exception as e:
        logger.error(f"Error closing pooled connection: {e}")


class PooledConnection:
    """Exclusive lease on one pooled connection.

    Returning the lease is synchronous and idempotent, so it also happens if
    the lease is garbage collected.
    """

    def __init__(self, pool: "SQLiteConnectionPool", index: int):
        self._pool = pool
        self.index = index
        self._released = False

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._released:
            raise DatabaseConnectionError("Connection already returned to the pool")
        return self._pool._connection_at(self.index)

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if not self._released:
            self._released = True
            self._pool.release(self.index)

    async def __aenter__(self) -> "PooledConnection":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.release()

    def __del__(self) -> None:
        if not getattr(self, "_released", True):
            logger.warning(f"Pooled connection #{self.index} was never released, returning it")
            self.release()


class SQLiteConnectionPool:
    """Fixed-capacity pool of aiosqlite connections.

    At rest ``idle_count + active_count == size <= max_size``. A connection
    handed back with an open transaction is rolled back before its next
    lease, which is what abandoned transactions rely on.
    """

    def __init__(self, config: PoolConfig):
        """Initialize an empty pool.

        Args:
            config: Pool sizing, timeouts and the SQLite connection string.
                No connection is opened until the first ``acquire()``.
        """
        self.config = config
        self._slots: List[Optional[_Slot]] = []
        self._vacant: List[int] = []
        self._idle: asyncio.Queue[int] = asyncio.Queue()
        self._idle_set: Set[int] = set()
        self._active: Set[int] = set()
        self._size = 0  # includes connections still being opened
        self._waiting = 0
        self._closed = False
        self._total_created = 0
        self._total_acquired = 0

        # Lifecycle hooks
        self._on_connection_created: List[ConnectionHook] = []

        logger.info(
            f"Initialized connection pool: {sanitize_connection_string(config.connection_string)} "
            f"(max: {config.max_size}, acquire timeout: {config.acquire_timeout}s)"
        )

    # Observability

    @property
    def size(self) -> int:
        return self._size

    @property
    def idle_count(self) -> int:
        return len(self._idle_set)

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def waiting_count(self) -> int:
        return self._waiting

    @property
    def closed(self) -> bool:
        return self._closed

    def stats(self) -> PoolStats:
        return PoolStats(
            size=self._size,
            available=len(self._idle_set),
            waiting=self._waiting,
            active=len(self._active),
            max_size=self.config.max_size,
        )

    def on_connection_created(self, hook: ConnectionHook) -> None:
        """Register an async callback run on every newly opened connection."""
        self._on_connection_created.append(hook)

    # Borrowing

    async def acquire(self) -> PooledConnection:
        """Lease a connection, waiting up to ``acquire_timeout`` if all are busy.

        An idle connection is preferred; otherwise a new one is opened while
        the pool is below ``max_size``.

        Returns:
            A ``PooledConnection`` owning one connection until released.

        Raises:
            PoolExhaustedError: If no connection frees up within ``acquire_timeout``.
            ConnectionTimeoutError: If opening a new connection takes too long.
            DatabaseConnectionError: If the pool is closed or SQLite cannot open the file.
        """
        index = await self._checkout()
        self._total_acquired += 1
        return PooledConnection(self, index)

    async def _checkout(self) -> int:
        while True:
            if self._closed:
                raise DatabaseConnectionError("Connection pool is closed")
            try:
                index = self._idle.get_nowait()
            except asyncio.QueueEmpty:
                if self._size < self.config.max_size:
                    return await self._create_slot()
                index = await self._wait_for_idle()
            if index == _WAKEUP:
                continue
            self._idle_set.discard(index)
            if await self._prepare(index):
                return index

    async def _wait_for_idle(self) -> int:
        self._waiting += 1
        try:
            return await asyncio.wait_for(self._idle.get(), timeout=self.config.acquire_timeout)
        except asyncio.TimeoutError:
            raise PoolExhaustedError(len(self._active), self.config.max_size) from None
        finally:
            self._waiting -= 1

    async def _create_slot(self) -> int:
        # Reserve capacity before the first await so concurrent acquirers
        # cannot overshoot max_size.
        self._size += 1
        try:
            conn = await connect_with_timeout(
                open_sqlite_connection(self.config.connection_string), self.config.acquire_timeout
            )
        except BaseException:
            self._size -= 1
            self._wake_waiter()
            raise

        try:
            for hook in self._on_connection_created:
                try:
                    await hook(conn)
                except Exception as e:
                    logger.error(f"Error in connection_created hook: {e}")
        except BaseException:
            self._size -= 1
            self._wake_waiter()
            spawn_background(_close_quietly(conn))
            raise

        if self._vacant:
            index = self._vacant.pop()
            self._slots[index] = _Slot(conn)
        else:
            index = len(self._slots)
            self._slots.append(_Slot(conn))
        self._active.add(index)
        self._slots[index].usage_count += 1
        self._total_created += 1
        logger.debug(f"Created pooled connection #{index} ({self._size}/{self.config.max_size})")
        return index

    async def _prepare(self, index: int) -> bool:
        """Take ownership of an idle slot, rolling back leftover transactions."""
        slot = self._slots[index]
        if slot is None:
            return False
        self._active.add(index)
        slot.usage_count += 1
        slot.last_used = time.time()

        if not slot.connection.in_transaction:
            return True

        logger.warning(f"Pooled connection #{index} came back with an open transaction, rolling back")
        try:
            await run_with_timeout(
                sqlite_execute(slot.connection, "ROLLBACK"), self.config.operation_timeout
            )
        except asyncio.CancelledError:
            self.release(index)
            raise
        except Exception as e:
            logger.error(f"Rollback on reuse failed for connection #{index}, discarding it: {e}")
            self._active.discard(index)
            self._discard(index)
            return False
        return True

    def _connection_at(self, index: int) -> aiosqlite.Connection:
        slot = self._slots[index]
        if slot is None or index not in self._active:
            raise DatabaseConnectionError(f"Pooled connection #{index} is not leased")
        return slot.connection

    def release(self, index: int) -> None:
        """Return a leased slot to the free-list.

        Synchronous so it can run from ``__del__``. Releasing twice is a
        no-op; after ``close()`` the connection is closed instead.

        Args:
            index: Slot index of the lease being returned.
        """
        if index not in self._active:
            return
        self._active.discard(index)
        if self._closed or self._slots[index] is None:
            self._discard(index)
            return
        self._idle_set.add(index)
        self._idle.put_nowait(index)

    def _discard(self, index: int) -> None:
        slot = self._slots[index]
        if slot is None:
            return
        self._slots[index] = None
        self._vacant.append(index)
        self._size -= 1
        spawn_background(_close_quietly(slot.connection))
        self._wake_waiter()

    def _wake_waiter(self) -> None:
        if self._waiting > 0:
            self._idle.put_nowait(_WAKEUP)

    # Shutdown

    async def close(self) -> None:
        """Close the pool.

        Idle connections are closed now; leases still out are closed when
        they are returned. Waiters are woken and fail with
        ``DatabaseConnectionError``.
        """
        if self._closed:
            return
        self._closed = True

        closed_count = 0
        while True:
            try:
                index = self._idle.get_nowait()
            except asyncio.QueueEmpty:
                break
            if index == _WAKEUP:
                continue
            self._idle_set.discard(index)
            slot = self._slots[index]
            if slot is None:
                continue
            self._slots[index] = None
            self._size -= 1
            await _close_quietly(slot.connection)
            closed_count += 1

        for _ in range(self._waiting):
            self._idle.put_nowait(_WAKEUP)

        logger.info(
            f"Closed connection pool: {closed_count} connections "
            f"({len(self._active)} still leased)"
        )
