"""
SQL Server full-text catalog engine.

Every scheduler-facing operation takes a database name. Names are bound as
parameters wherever T-SQL accepts a value and quoted through the dialect's
identifier preparer where T-SQL needs an identifier (USE, three-part names,
ALTER FULLTEXT CATALOG).
"""

from __future__ import annotations

import os
from typing import Any, List, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine


_DEFAULT_DATABASE_PREFIX = "EDDS"
_DEFAULT_EXCLUDED_DATABASES = ("EDDS", "EDDSPerformance", "EDDSResource")
_PAGE_SIZE_BYTES = 8192
_FULL_POPULATION_TYPE = 1


class CatalogEngineError(RuntimeError):
    """An engine call against one database failed."""

    def __init__(self, database_name: str, operation: str, message: str) -> None:
        super().__init__(message)
        self.database_name = database_name
        self.operation = operation


def _env_list(name: str, default: Sequence[str]) -> List[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _escape_like_pattern(value: str) -> str:
    return (
        value.replace("[", "[[]")
        .replace("%", "[%]")
        .replace("_", "[_]")
    )


class SqlServerCatalogEngine:
    """Maintenance engine backed by a SQL Server instance."""

    def __init__(
        self,
        server_url: str,
        *,
        database_prefix: Optional[str] = None,
        excluded_databases: Optional[Sequence[str]] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self.server_url = server_url
        self.database_prefix = (
            database_prefix
            if database_prefix is not None
            else os.getenv("CATALOG_DATABASE_PREFIX", _DEFAULT_DATABASE_PREFIX)
        )
        self.excluded_databases = {
            name.lower()
            for name in (
                excluded_databases
                if excluded_databases is not None
                else _env_list("CATALOG_EXCLUDED_DATABASES", _DEFAULT_EXCLUDED_DATABASES)
            )
        }
        self.engine = engine or create_async_engine(server_url, echo=False)
        self._autocommit_engine = self.engine.execution_options(
            isolation_level="AUTOCOMMIT"
        )

    async def close(self) -> None:
        await self.engine.dispose()

    def _quote(self, name: str) -> str:
        return self.engine.dialect.identifier_preparer.quote_identifier(name)

    async def _scalar(
        self, database_name: str, operation: str, statement: str, **params: Any
    ) -> Any:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(text(statement), params)
                return result.scalar()
        except DBAPIError as exc:
            raise CatalogEngineError(database_name, operation, str(exc.orig or exc)) from exc

    async def list_databases(self) -> List[str]:
        """Online databases matching the configured prefix, minus the exclusions."""
        statement = (
            "SELECT name FROM sys.databases "
            "WHERE name LIKE :pattern AND state_desc = 'ONLINE' "
            "ORDER BY database_id"
        )
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    text(statement),
                    {"pattern": _escape_like_pattern(self.database_prefix) + "%"},
                )
                names = [str(row[0]) for row in result.all()]
        except DBAPIError as exc:
            raise CatalogEngineError("", "list_databases", str(exc.orig or exc)) from exc
        return [name for name in names if name.lower() not in self.excluded_databases]

    async def has_catalog(self, database_name: str) -> bool:
        statement = (
            f"SELECT COUNT(1) FROM {self._quote(database_name)}.sys.fulltext_catalogs "
            "WHERE name = :catalog_name"
        )
        count = await self._scalar(
            database_name, "has_catalog", statement, catalog_name=database_name
        )
        return bool(count)

    async def fragment_count(self, database_name: str) -> int:
        statement = (
            "SELECT COUNT(fragment_id) FROM "
            f"{self._quote(database_name)}.sys.fulltext_index_fragments"
        )
        count = await self._scalar(database_name, "fragment_count", statement)
        return int(count or 0)

    async def catalog_size_bytes(self, database_name: str) -> int:
        """Size of the largest ftrow_ file of the database, in bytes."""
        statement = (
            "SELECT MAX(CAST(size AS BIGINT)) FROM sys.master_files "
            "WHERE database_id = DB_ID(:database_name) AND name LIKE 'ftrow[_]%'"
        )
        pages = await self._scalar(
            database_name, "catalog_size_bytes", statement, database_name=database_name
        )
        return int(pages or 0) * _PAGE_SIZE_BYTES

    async def _alter_catalog(self, database_name: str, verb: str) -> None:
        quoted = self._quote(database_name)
        try:
            async with self._autocommit_engine.connect() as conn:
                await conn.execute(text(f"USE {quoted}"))
                try:
                    await conn.execute(text(f"ALTER FULLTEXT CATALOG {quoted} {verb}"))
                finally:
                    # Pooled connections go back pointed at master.
                    await conn.execute(text("USE master"))
        except DBAPIError as exc:
            raise CatalogEngineError(
                database_name, verb.lower(), str(exc.orig or exc)
            ) from exc

    async def reorganize(self, database_name: str) -> None:
        """Synchronous reorganize; returns once the engine has finished."""
        await self._alter_catalog(database_name, "REORGANIZE")

    async def rebuild(self, database_name: str) -> None:
        """Starts a rebuild; the population continues in the background."""
        await self._alter_catalog(database_name, "REBUILD")

    async def rebuild_in_progress(self, database_name: str) -> bool:
        statement = (
            "SELECT COUNT(1) FROM sys.dm_fts_index_population "
            "WHERE database_id = DB_ID(:database_name) "
            "AND population_type = :population_type"
        )
        count = await self._scalar(
            database_name,
            "rebuild_in_progress",
            statement,
            database_name=database_name,
            population_type=_FULL_POPULATION_TYPE,
        )
        return bool(count)


def create_catalog_engine(server_url: Optional[str] = None) -> SqlServerCatalogEngine:
    url = server_url or os.getenv("CATALOG_SERVER_URL")
    if not url:
        raise ValueError(
            "CATALOG_SERVER_URL environment variable is not set. Please check your .env file."
        )
    return SqlServerCatalogEngine(url)
