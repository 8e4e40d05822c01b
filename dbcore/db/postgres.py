"""PostgreSQL database backend over a single asyncpg connection."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Tuple

logger = logging.getLogger(__name__)

# Check if asyncpg is available
try:
    import asyncpg

    ASYNCPG_AVAILABLE = True
except ImportError:
    ASYNCPG_AVAILABLE = False
    asyncpg = None  # type: ignore[assignment]

from .base import DatabaseType  # noqa: E402
from .direct import DEFAULT_OPERATION_TIMEOUT, DirectConnectionDatabase  # noqa: E402
from .errors import DatabaseConnectionError, PostgresError  # noqa: E402
from .timeouts import timed_statement  # noqa: E402
from .value import DatabaseResult, DatabaseRow, DatabaseValue, ValueKind  # noqa: E402

_INT32_TYPES = {"int2", "int4"}
_TEXT_TYPES = {"text", "varchar", "char", "bpchar", "name"}


def to_postgres_param(value: DatabaseValue) -> Any:
    if value.kind is ValueKind.TIMESTAMP:
        return value.as_datetime()
    return value.value


def _from_postgres(type_name: str, raw: Any) -> DatabaseValue:
    if raw is None:
        return DatabaseValue.null()
    if type_name == "bool":
        return DatabaseValue.boolean(raw)
    if type_name in _INT32_TYPES:
        return DatabaseValue.int32(raw)
    if type_name == "int8":
        return DatabaseValue.int64(raw)
    if type_name == "float4":
        return DatabaseValue.float32(raw)
    if type_name == "float8":
        return DatabaseValue.float64(raw)
    if type_name in _TEXT_TYPES:
        return DatabaseValue.string(raw)
    if type_name == "bytea":
        return DatabaseValue.blob(raw)
    if isinstance(raw, datetime):
        if raw.tzinfo is None:
            raw = raw.replace(tzinfo=timezone.utc)
        return DatabaseValue.from_datetime(raw)
    # Unknown types (numeric, uuid, json, ...) come back as text
    return DatabaseValue.string(str(raw))


def _rowcount_from_status(status: str) -> int:
    """Affected rows from a command tag such as ``UPDATE 5`` or ``INSERT 0 1``."""
    parts = status.split()
    if parts and parts[-1].isdigit():
        return int(parts[-1])
    return 0


async def postgres_execute(
    conn: "asyncpg.Connection", sql: str, params: Tuple[DatabaseValue, ...] = ()
) -> int:
    args = [to_postgres_param(p) for p in params]
    try:
        status = await timed_statement(conn.execute(sql, *args), sql, args)
    except asyncpg.PostgresError as e:
        raise PostgresError(str(e), e) from e
    return _rowcount_from_status(status or "")


async def postgres_query(
    conn: "asyncpg.Connection", sql: str, params: Tuple[DatabaseValue, ...] = ()
) -> DatabaseResult:
    args = [to_postgres_param(p) for p in params]
    try:
        stmt = await conn.prepare(sql)
        records = await timed_statement(stmt.fetch(*args), sql, args)
    except asyncpg.PostgresError as e:
        raise PostgresError(str(e), e) from e

    columns: List[Tuple[str, str]] = [(a.name, a.type.name) for a in stmt.get_attributes()]
    result: DatabaseResult = []
    for record in records:
        row: DatabaseRow = {
            name: _from_postgres(type_name, record[i]) for i, (name, type_name) in enumerate(columns)
        }
        result.append(row)
    return result


async def close_postgres_connection(conn: "asyncpg.Connection") -> None:
    await conn.close()


class PostgreSQLDatabase(DirectConnectionDatabase):
    """PostgreSQL over one asyncpg connection. Parameters use ``$1, $2, ...``."""

    def __init__(self, operation_timeout: float = DEFAULT_OPERATION_TIMEOUT, **kwargs: Any):
        if not ASYNCPG_AVAILABLE:
            raise RuntimeError(
                "asyncpg is required for PostgreSQL support. Install it with: pip install asyncpg"
            )
        super().__init__(operation_timeout=operation_timeout, **kwargs)

    @property
    def database_type(self) -> DatabaseType:
        return DatabaseType.POSTGRES

    async def _open(self, connection_string: str) -> "asyncpg.Connection":
        try:
            return await asyncpg.connect(connection_string)
        except (OSError, asyncpg.PostgresError) as e:
            raise DatabaseConnectionError(str(e)) from e

    _close = staticmethod(close_postgres_connection)
    _engine_execute = staticmethod(postgres_execute)
    _engine_query = staticmethod(postgres_query)
