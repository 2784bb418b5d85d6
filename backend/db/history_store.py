"""
History store for full-text catalog maintenance runs.

This module implements the append-only maintenance log with:
- One row per successfully observed reorganize/rebuild
- Filtered average-duration lookups used to estimate future runtimes
- Age-based pruning applied at the start of every run
"""

import os
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, List
from contextlib import asynccontextmanager

from sqlalchemy import (
    Column,
    Integer,
    Index,
    String,
    DateTime,
    select,
    delete,
    func,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from dotenv import load_dotenv, find_dotenv

# Load environment variables
_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

Base = declarative_base()

ACTION_REORGANIZE = "Reorganize"
ACTION_REBUILD = "Rebuild"
VALID_ACTIONS = (ACTION_REORGANIZE, ACTION_REBUILD)

_SQLITE_ADAPTERS_REGISTERED = False


def _register_sqlite_adapters() -> None:
    """
    Register explicit sqlite adapters for Python datetime objects.

    Python 3.12+ deprecates sqlite3's implicit default datetime adapter.
    """
    global _SQLITE_ADAPTERS_REGISTERED
    if _SQLITE_ADAPTERS_REGISTERED:
        return
    sqlite3.register_adapter(datetime, lambda value: value.isoformat(sep=" "))
    _SQLITE_ADAPTERS_REGISTERED = True


_register_sqlite_adapters()


def utc_now_naive() -> datetime:
    """Naive UTC datetime, the representation stored in the log table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _days_in_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (datetime(year, month + 1, 1) - timedelta(days=1)).day


def months_before(value: datetime, months: int) -> datetime:
    """Calendar-month subtraction; the day is clamped to the target month's length."""
    total = value.year * 12 + (value.month - 1) - max(0, int(months))
    year, month_index = divmod(total, 12)
    month = month_index + 1
    day = min(value.day, _days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def years_before(value: datetime, years: int) -> datetime:
    return months_before(value, years * 12)


def minutes_between(begin: datetime, end: datetime) -> int:
    """Number of minute boundaries crossed between two timestamps."""
    begin_minute = begin.replace(second=0, microsecond=0)
    end_minute = end.replace(second=0, microsecond=0)
    return int((end_minute - begin_minute).total_seconds() // 60)


# =============================================================================
# ORM Models
# =============================================================================


class CatalogMaintenanceLog(Base):
    """One completed maintenance operation against a database's catalog.

    Rows are only ever inserted or pruned; a failed operation never produces
    a row, so averages are computed over successful runs only.
    """

    __tablename__ = "catalog_maintenance_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    database_name = Column(String(128), nullable=False)
    action = Column(String(10), nullable=False)  # Reorganize | Rebuild
    start_time = Column(DateTime, nullable=False)
    finish_time = Column(DateTime, nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    __table_args__ = (
        Index(
            "idx_catalog_maintenance_log_lookup",
            "database_name",
            "action",
            "finish_time",
        ),
    )


@dataclass(frozen=True)
class HistoryRecord:
    database_name: str
    action: str
    start_time: datetime
    finish_time: datetime
    duration_minutes: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database_name": self.database_name,
            "action": self.action,
            "start_time": self.start_time.isoformat(),
            "finish_time": self.finish_time.isoformat(),
            "duration_minutes": self.duration_minutes,
        }


# =============================================================================
# History Store
# =============================================================================


class HistoryStore:
    """
    Async store for the catalog maintenance log.

    Core operations:
    - append: Record a completed operation
    - average_duration: Mean runtime for a database/action since a cutoff
    - prune_older_than: Delete rows finished before a cutoff
    - list_records: Most recent rows, optionally filtered
    """

    def __init__(self, database_url: str):
        """
        Initialize the history store.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///catalog_maintenance.db"
        """
        self.database_url = database_url
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init_db(self):
        """Create the log table if it doesn't exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        """Close the database connection."""
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Get an async session context manager."""
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    @staticmethod
    def _row_to_dict(row: CatalogMaintenanceLog) -> Dict[str, Any]:
        return {
            "id": row.id,
            "database_name": row.database_name,
            "action": row.action,
            "start_time": row.start_time.isoformat() if row.start_time else None,
            "finish_time": row.finish_time.isoformat() if row.finish_time else None,
            "duration_minutes": row.duration_minutes,
        }

    async def append(self, record: HistoryRecord) -> Dict[str, Any]:
        if record.action not in VALID_ACTIONS:
            raise ValueError(f"Unknown maintenance action '{record.action}'.")
        row = CatalogMaintenanceLog(
            database_name=record.database_name,
            action=record.action,
            start_time=normalize_db_datetime(record.start_time),
            finish_time=normalize_db_datetime(record.finish_time),
            duration_minutes=int(record.duration_minutes),
        )
        async with self.session() as session:
            session.add(row)
            await session.flush()
            return self._row_to_dict(row)

    async def average_duration(
        self, database_name: str, action: str, since: datetime
    ) -> Optional[float]:
        """
        Average duration_minutes for rows matching the database and action
        that finished strictly after ``since``. None when nothing matches.
        """
        cutoff = normalize_db_datetime(since)
        async with self.session() as session:
            result = await session.execute(
                select(
                    func.count(CatalogMaintenanceLog.id),
                    func.avg(CatalogMaintenanceLog.duration_minutes),
                ).where(
                    CatalogMaintenanceLog.database_name == database_name,
                    CatalogMaintenanceLog.action == action,
                    CatalogMaintenanceLog.finish_time > cutoff,
                )
            )
            count, average = result.one()
        if not count:
            return None
        return float(average)

    async def prune_older_than(self, cutoff: datetime) -> int:
        """Delete rows whose finish_time is before ``cutoff``; returns the count."""
        async with self.session() as session:
            result = await session.execute(
                delete(CatalogMaintenanceLog).where(
                    CatalogMaintenanceLog.finish_time < normalize_db_datetime(cutoff)
                )
            )
            return int(result.rowcount or 0)

    async def list_records(
        self,
        *,
        database_name: Optional[str] = None,
        action: Optional[str] = None,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        query = select(CatalogMaintenanceLog)
        if database_name:
            query = query.where(CatalogMaintenanceLog.database_name == database_name)
        if action:
            query = query.where(CatalogMaintenanceLog.action == action)
        query = query.order_by(
            CatalogMaintenanceLog.finish_time.desc(), CatalogMaintenanceLog.id.desc()
        ).limit(max(1, int(limit)))

        async with self.session() as session:
            result = await session.execute(query)
            return [self._row_to_dict(row) for row in result.scalars().all()]


# =============================================================================
# Global Singleton
# =============================================================================

_history_store: Optional[HistoryStore] = None


def get_history_store() -> HistoryStore:
    """Get the global HistoryStore instance."""
    global _history_store
    if _history_store is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        _history_store = HistoryStore(database_url)
    return _history_store


async def close_history_store():
    """Close the global HistoryStore connection."""
    global _history_store
    if _history_store:
        await _history_store.close()
        _history_store = None
