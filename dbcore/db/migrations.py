"""Versioned schema migrations driven through the Database contract."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .base import Database, DatabaseType
from .errors import MigrationError

logger = logging.getLogger(__name__)

SqlStatements = Union[str, Sequence[str]]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _statements(sql: SqlStatements) -> Tuple[str, ...]:
    if isinstance(sql, str):
        return (sql,)
    return tuple(sql)


class MigrationStatus(Enum):
    APPLIED = "applied"
    PENDING = "pending"


@dataclass(frozen=True)
class Migration:
    """One schema step. ``up_sql``/``down_sql`` are a statement or a list of them."""

    version: int
    name: str
    up_sql: SqlStatements
    down_sql: SqlStatements = ()

    @property
    def up_statements(self) -> Tuple[str, ...]:
        return _statements(self.up_sql)

    @property
    def down_statements(self) -> Tuple[str, ...]:
        return _statements(self.down_sql)


class MigrationManager:
    """Applies and reverts migrations, recording them in a tracking table.

    Each step runs in its own transaction together with its bookkeeping row,
    so a failed step leaves neither schema changes nor a record behind.
    """

    def __init__(self, db: Database, table_name: str = "schema_migrations"):
        if not _IDENTIFIER_RE.match(table_name):
            raise MigrationError(f"Invalid migrations table name: {table_name!r}")
        self.db = db
        self.table_name = table_name
        self._migrations: Dict[int, Migration] = {}

    def add_migration(self, migration: Migration) -> None:
        """Register a migration. Versions must be unique."""
        if migration.version in self._migrations:
            raise MigrationError(f"Duplicate migration version {migration.version}")
        self._migrations[migration.version] = migration

    @property
    def migrations(self) -> List[Migration]:
        return [self._migrations[v] for v in sorted(self._migrations)]

    def _placeholders(self, count: int) -> List[str]:
        if self.db.database_type is DatabaseType.POSTGRES:
            return [f"${i}" for i in range(1, count + 1)]
        return ["?"] * count

    async def _ensure_table(self) -> None:
        await self.db.execute(
            f"CREATE TABLE IF NOT EXISTS {self.table_name} ("
            "version BIGINT PRIMARY KEY NOT NULL, "
            "name TEXT NOT NULL, "
            "applied_at BIGINT NOT NULL)"
        )

    async def applied_versions(self) -> List[int]:
        await self._ensure_table()
        rows = await self.db.query(f"SELECT version FROM {self.table_name} ORDER BY version")
        versions = []
        for row in rows:
            version = row["version"].as_long()
            if version is not None:
                versions.append(version)
        return versions

    async def is_applied(self, version: int) -> bool:
        return version in await self.applied_versions()

    async def current_version(self) -> Optional[int]:
        applied = await self.applied_versions()
        return applied[-1] if applied else None

    async def pending(self) -> List[Migration]:
        applied = set(await self.applied_versions())
        return [m for m in self.migrations if m.version not in applied]

    async def status(self) -> Dict[int, MigrationStatus]:
        applied = set(await self.applied_versions())
        return {
            m.version: MigrationStatus.APPLIED if m.version in applied else MigrationStatus.PENDING
            for m in self.migrations
        }

    async def _apply(self, migration: Migration) -> None:
        p = self._placeholders(3)
        async with self.db.transaction() as tx:
            for statement in migration.up_statements:
                await tx.execute(statement)
            await tx.execute_with_params(
                f"INSERT INTO {self.table_name} (version, name, applied_at) "
                f"VALUES ({p[0]}, {p[1]}, {p[2]})",
                [migration.version, migration.name, int(time.time())],
            )
        logger.info(f"Applied migration {migration.version} ({migration.name})")

    async def _revert(self, migration: Migration) -> None:
        p = self._placeholders(1)
        async with self.db.transaction() as tx:
            for statement in migration.down_statements:
                await tx.execute(statement)
            await tx.execute_with_params(
                f"DELETE FROM {self.table_name} WHERE version = {p[0]}", [migration.version]
            )
        logger.info(f"Reverted migration {migration.version} ({migration.name})")

    def _known(self, version: int) -> Migration:
        try:
            return self._migrations[version]
        except KeyError:
            raise MigrationError(f"Migration {version} not found") from None

    async def migrate(self, target: Optional[int] = None) -> List[int]:
        """Apply pending migrations in order, up to ``target`` when given.

        A ``target`` below the current version reverts down to it instead.

        Args:
            target: Highest version to apply, or None for all pending.

        Returns:
            Versions applied (ascending) or reverted (descending).

        Raises:
            MigrationError: If an applied version has no registered migration.
                Errors from a failing step propagate after its transaction is
                rolled back.
        """
        applied = await self.applied_versions()
        if target is not None and applied and target < applied[-1]:
            return await self.rollback_to(target)

        done = []
        for migration in self.migrations:
            if migration.version in applied:
                continue
            if target is not None and migration.version > target:
                break
            await self._apply(migration)
            done.append(migration.version)
        return done

    async def rollback(self, steps: int = 1) -> List[int]:
        """Revert the last ``steps`` applied migrations, newest first."""
        applied = await self.applied_versions()
        if steps <= 0 or not applied:
            return []
        done = []
        for version in reversed(applied[-steps:]):
            await self._revert(self._known(version))
            done.append(version)
        return done

    async def rollback_to(self, version: int) -> List[int]:
        """Revert every applied migration newer than ``version``."""
        applied = await self.applied_versions()
        done = []
        for applied_version in reversed(applied):
            if applied_version <= version:
                break
            await self._revert(self._known(applied_version))
            done.append(applied_version)
        return done

    async def reset(self) -> List[int]:
        return await self.rollback(len(await self.applied_versions()))
