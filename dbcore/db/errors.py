"""Exception hierarchy for database operations."""

from __future__ import annotations

from typing import Optional


class DatabaseError(Exception):
    """Base class for every error raised by dbcore."""


class DatabaseConnectionError(DatabaseError):
    """A connection could not be established or is not available."""

    def __init__(self, message: str):
        super().__init__(f"Connection error: {message}")
        self.message = message


class ConnectionTimeoutError(DatabaseConnectionError):
    """Establishing or acquiring a connection took too long."""

    def __init__(self, timeout_ms: int):
        DatabaseError.__init__(self, f"Connection timeout after {timeout_ms}ms")
        self.message = str(self)
        self.timeout_ms = timeout_ms


class PoolExhaustedError(DatabaseConnectionError):
    """Every pooled connection stayed busy for the whole acquire window."""

    def __init__(self, active: int, max_size: int):
        DatabaseError.__init__(
            self, f"Connection pool exhausted: {active}/{max_size} connections in use"
        )
        self.message = str(self)
        self.active = active
        self.max_size = max_size


class QueryError(DatabaseError):
    """A statement failed to execute."""

    def __init__(self, message: str):
        super().__init__(f"Query execution error: {message}")
        self.message = message


class QueryTimeoutError(QueryError):
    """A statement exceeded the operation timeout.

    The outcome is unknown: the engine may still apply the statement after
    the caller has given up on it.
    """

    def __init__(self, timeout_ms: int):
        DatabaseError.__init__(self, f"Query timeout after {timeout_ms}ms")
        self.message = str(self)
        self.timeout_ms = timeout_ms


class TransactionError(DatabaseError):
    """Illegal transaction state transition."""

    def __init__(self, message: str):
        super().__init__(f"Transaction error: {message}")
        self.message = message


class TypeMismatchError(DatabaseError):
    def __init__(self, expected: str, actual: str):
        super().__init__(f"Type mismatch: expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class InvalidConnectionStringError(DatabaseError):
    def __init__(self, message: str):
        super().__init__(f"Invalid connection string: {message}")
        self.message = message


class MigrationError(DatabaseError):
    def __init__(self, message: str):
        super().__init__(f"Migration error: {message}")
        self.message = message


class UnsupportedOperationError(DatabaseError):
    def __init__(self, message: str):
        super().__init__(f"Unsupported operation: {message}")
        self.message = message


class EngineError(DatabaseError):
    """Wraps an underlying driver or runtime error that fits no other kind.

    The original exception is kept as ``__cause__`` and on ``original``.
    """

    engine: str = "engine"

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.original = original


class SQLiteError(EngineError):
    engine = "sqlite"

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(f"SQLite error: {message}", original)


class PostgresError(EngineError):
    engine = "postgresql"

    def __init__(self, message: str, original: Optional[BaseException] = None):
        super().__init__(f"PostgreSQL error: {message}", original)


__all__ = [
    "DatabaseError",
    "DatabaseConnectionError",
    "ConnectionTimeoutError",
    "PoolExhaustedError",
    "QueryError",
    "QueryTimeoutError",
    "TransactionError",
    "TypeMismatchError",
    "InvalidConnectionStringError",
    "MigrationError",
    "UnsupportedOperationError",
    "EngineError",
    "SQLiteError",
    "PostgresError",
]
