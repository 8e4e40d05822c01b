"""Transaction guard for backends that track the transaction on the handle."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .errors import TransactionError
from .timeouts import spawn_background
from .value import DatabaseResult

if TYPE_CHECKING:
    from .base import Database, Params

logger = logging.getLogger(__name__)


async def _rollback_abandoned(db: "Database") -> None:
    try:
        await db.rollback()
        logger.info("Background rollback of abandoned transaction succeeded")
    except Exception as e:
        logger.error(f"Background rollback of abandoned transaction failed: {e}")


class TransactionGuard:
    """Wraps a direct-connection database for the span of one transaction.

    Operations are refused once the guard is committed or rolled back, even
    though the underlying handle stays usable.

    If the guard is collected while still open it schedules ``db.rollback()``
    on the running event loop and logs the outcome from there. This is a
    safety net only: nothing waits for that rollback, and without a running
    loop the transaction is left for the engine to roll back when the
    connection closes. Finish guards explicitly.
    """

    def __init__(self, db: "Database"):
        self._db = db
        self.committed = False
        self.rolled_back = False

    @classmethod
    async def begin(cls, db: "Database") -> "TransactionGuard":
        """Start a transaction on ``db`` and guard it.

        Args:
            db: A direct-connection backend with no transaction open.

        Returns:
            An open ``TransactionGuard``.

        Raises:
            TransactionError: If ``db`` already has a transaction open.
        """
        await db.begin_transaction()
        return cls(db)

    @property
    def is_open(self) -> bool:
        return not (self.committed or self.rolled_back)

    def _check(self) -> None:
        if self.committed:
            raise TransactionError("Cannot execute on committed transaction")
        if self.rolled_back:
            raise TransactionError("Cannot execute on rolled back transaction")

    async def execute(self, sql: str) -> int:
        self._check()
        return await self._db.execute(sql)

    async def query(self, sql: str) -> DatabaseResult:
        self._check()
        return await self._db.query(sql)

    async def execute_with_params(self, sql: str, params: "Params") -> int:
        self._check()
        return await self._db.execute_with_params(sql, params)

    async def query_with_params(self, sql: str, params: "Params") -> DatabaseResult:
        self._check()
        return await self._db.query_with_params(sql, params)

    async def commit(self) -> None:
        if self.rolled_back:
            raise TransactionError("Cannot commit rolled back transaction")
        if self.committed:
            raise TransactionError("Transaction already committed")
        await self._db.commit()
        self.committed = True

    async def rollback(self) -> None:
        if self.committed:
            raise TransactionError("Cannot rollback committed transaction")
        if self.rolled_back:
            raise TransactionError("Transaction already rolled back")
        await self._db.rollback()
        self.rolled_back = True

    async def __aenter__(self) -> "TransactionGuard":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if not self.is_open:
            return
        if exc_type is None:
            logger.warning("Transaction guard left open at end of block, rolling back")
        await self.rollback()

    def __del__(self) -> None:
        if not getattr(self, "committed", True) and not self.rolled_back:
            self.rolled_back = True
            logger.warning("Transaction guard dropped without commit or rollback")
            task = spawn_background(_rollback_abandoned(self._db))
            if task is None:
                logger.warning(
                    "No running event loop; the engine will roll back when the connection closes"
                )
            else:
                logger.warning("Scheduled background rollback of abandoned transaction")
