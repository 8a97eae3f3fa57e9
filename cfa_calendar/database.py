"""
Database layer for the CFA calendar service.

Provides an async SQLite interface with connection management, schema
creation and the day/event/fetch-log queries used by synchronization and
feed generation. Statements run in autocommit mode: each one is atomic on
its own, but there is no transaction spanning several statements.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path
from typing import Any
from typing import AsyncGenerator
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

import aiosqlite

from cfa_calendar.errors import StorageFailure
from cfa_calendar.models import FetchLog
from cfa_calendar.models import ScheduleDay
from cfa_calendar.models import ScheduleEvent
from cfa_calendar.settings import get_settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class Database:
    """
    Async SQLite database interface for the calendar service.

    Handles schema creation and the relational operations the
    reconciler, sync policy and feed builder rely on. Any driver error is
    re-raised as StorageFailure so callers only deal with one type.
    """

    def __init__(self, db_path: Optional[Path] = None) -> None:
        """Initialize database with optional custom path."""
        self.db_path = db_path or get_settings().db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema and record its version."""
        await self._ensure_schema()
        await self._run_migrations()
        logger.info(f"Database initialized at {self.db_path}")

    async def close(self) -> None:
        """Close database connection cleanly."""
        async with self._lock:
            if self._connection:
                await self._connection.close()
                self._connection = None

    @asynccontextmanager
    async def _get_connection(self) -> AsyncGenerator[aiosqlite.Connection, None]:
        """Get database connection with proper lifecycle management."""
        async with self._lock:
            if not self._connection:
                self._connection = await aiosqlite.connect(
                    self.db_path,
                    timeout=30.0,
                    isolation_level=None,  # Autocommit mode
                )
                self._connection.row_factory = aiosqlite.Row

                await self._connection.execute("PRAGMA journal_mode = WAL")
                await self._connection.execute("PRAGMA synchronous = NORMAL")

            yield self._connection

    async def _ensure_schema(self) -> None:
        """Create database tables if they don't exist."""
        schema_sql = """
        -- One aggregate row per calendar date
        CREATE TABLE IF NOT EXISTS calendar_days (
            date TEXT PRIMARY KEY,
            day INTEGER NOT NULL,
            month INTEGER NOT NULL,
            year INTEGER NOT NULL,
            have_activity TEXT NOT NULL DEFAULT 'false',
            events_count INTEGER NOT NULL DEFAULT 0,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        );

        -- Screenings, replaced per date on every reconcile
        CREATE TABLE IF NOT EXISTS calendar_events (
            id INTEGER PRIMARY KEY,
            show_name TEXT,
            film_area TEXT,
            film_type TEXT,
            film_year TEXT,
            screen_time_len,
            show_mode TEXT,
            show_type TEXT,
            program_ids TEXT,
            activity_ids TEXT,
            statu_verify TEXT,
            show_time,
            show_price TEXT,
            screen_up_time TEXT,
            screen_sales_time TEXT,
            screen_start_time TEXT,
            program_colle TEXT,
            screen_cinema TEXT,
            activity TEXT,
            have_activity TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            cover_img1 TEXT,
            date TEXT NOT NULL,
            day INTEGER NOT NULL,
            month INTEGER NOT NULL,
            year INTEGER NOT NULL,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL
        );

        -- Append-only audit trail of reconcile attempts
        CREATE TABLE IF NOT EXISTS fetch_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            status TEXT NOT NULL,
            year INTEGER NOT NULL,
            month INTEGER NOT NULL,
            message TEXT,
            events_count INTEGER,
            created_at TIMESTAMP NOT NULL
        );

        -- Single-key JSON entries (credential, last fetch time)
        CREATE TABLE IF NOT EXISTS kv_entries (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TIMESTAMP NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_days_year_month ON calendar_days(year, month);
        CREATE INDEX IF NOT EXISTS idx_events_date ON calendar_events(date);
        CREATE INDEX IF NOT EXISTS idx_events_year_month ON calendar_events(year, month);
        CREATE INDEX IF NOT EXISTS idx_fetch_logs_created_at ON fetch_logs(created_at);
        """

        async with self._get_connection() as conn:
            await conn.executescript(schema_sql)

    async def _run_migrations(self) -> None:
        """Run database migrations if needed."""
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name='schema_version'"
            )
            has_version_table = await cursor.fetchone() is not None

            if not has_version_table:
                await conn.execute(
                    "CREATE TABLE schema_version (version INTEGER PRIMARY KEY)"
                )
                await conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
                logger.info(f"Database schema initialized to version {SCHEMA_VERSION}")

    # ------------------------------------------------------------------
    # Generic statement helpers
    # ------------------------------------------------------------------

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """
        Execute a single parameterized statement.

        Returns:
            Number of rows affected

        Raises:
            StorageFailure: if the driver rejects the statement
        """
        try:
            async with self._get_connection() as conn:
                cursor = await conn.execute(sql, tuple(params))
                return cursor.rowcount
        except aiosqlite.Error as e:
            raise StorageFailure(f"{type(e).__name__}: {e}") from e

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            async with self._get_connection() as conn:
                cursor = await conn.execute(sql, tuple(params))
                rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            raise StorageFailure(f"{type(e).__name__}: {e}") from e
        return [dict(row) for row in rows]

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        try:
            async with self._get_connection() as conn:
                cursor = await conn.execute(sql, tuple(params))
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise StorageFailure(f"{type(e).__name__}: {e}") from e
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Domain queries
    # ------------------------------------------------------------------

    async def count_days(self, year: int, month: int) -> int:
        """Number of stored day aggregates for a month."""
        row = await self.fetch_one(
            "SELECT COUNT(*) AS count FROM calendar_days WHERE year = ? AND month = ?",
            (year, month),
        )
        return row["count"] if row else 0

    async def get_month(self, year: int, month: int) -> Tuple[List[ScheduleDay], List[ScheduleEvent]]:
        """
        Get stored days and events for a month.

        Args:
            year: Four-digit year
            month: Month number (1-12)

        Returns:
            Tuple of (days ordered by day, events ordered by start time);
            events are only queried when the month has day rows
        """
        day_rows = await self.fetch_all(
            """
            SELECT * FROM calendar_days
            WHERE year = ? AND month = ?
            ORDER BY day ASC
            """,
            (year, month),
        )
        if not day_rows:
            return [], []

        event_rows = await self.fetch_all(
            """
            SELECT * FROM calendar_events
            WHERE year = ? AND month = ?
            ORDER BY screen_start_time ASC, id ASC
            """,
            (year, month),
        )

        days = [ScheduleDay(**row) for row in day_rows]
        events = [ScheduleEvent(**row) for row in event_rows]
        logger.debug(f"Loaded {len(days)} days and {len(events)} events for {year}-{month:02d}")
        return days, events

    async def get_events_for_date(self, date_text: str) -> List[ScheduleEvent]:
        rows = await self.fetch_all(
            "SELECT * FROM calendar_events WHERE date = ? ORDER BY screen_start_time ASC, id ASC",
            (date_text,),
        )
        return [ScheduleEvent(**row) for row in rows]

    async def recent_fetch_logs(self, limit: int = 20) -> List[FetchLog]:
        rows = await self.fetch_all(
            "SELECT * FROM fetch_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return [FetchLog(**row) for row in rows]

    async def cleanup_fetch_logs(self, days: int = 90) -> int:
        """
        Remove fetch log rows older than the retention window.

        Args:
            days: Number of days of history to keep

        Returns:
            Number of rows removed
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)
        removed = await self.execute(
            "DELETE FROM fetch_logs WHERE created_at < ?",
            (cutoff.isoformat(),),
        )
        logger.info(f"Cleaned up {removed} fetch log records older than {days} days")
        return removed

    async def get_database_stats(self) -> dict:
        """
        Get database statistics for monitoring and health checks.

        Returns:
            Dictionary with database metrics
        """
        stats: Dict[str, Any] = {}

        row = await self.fetch_one("SELECT COUNT(*) AS count FROM calendar_days")
        stats["total_days"] = row["count"]

        row = await self.fetch_one("SELECT COUNT(*) AS count FROM calendar_events")
        stats["total_events"] = row["count"]

        row = await self.fetch_one(
            "SELECT status, created_at FROM fetch_logs ORDER BY id DESC LIMIT 1"
        )
        stats["last_fetch_status"] = row["status"] if row else None
        stats["last_fetch_logged_at"] = row["created_at"] if row else None

        stats["db_size_bytes"] = self.db_path.stat().st_size if self.db_path.exists() else 0
        return stats

    async def __aenter__(self) -> "Database":
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
