"""
Reconciliation of fetched schedule batches into local storage.

For every day in a batch the aggregate row is upserted and the stored
screenings for that date are replaced wholesale. Storage runs statement
by statement: if one fails midway, days already written stay written and
the remaining ones are skipped until the next cycle.
"""

import json
import logging
from datetime import date
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import List
from typing import Optional
from typing import Tuple

from cfa_calendar.database import Database
from cfa_calendar.errors import StorageFailure
from cfa_calendar.models import CalendarDayData
from cfa_calendar.models import CalendarEventData
from cfa_calendar.models import FetchStatus
from cfa_calendar.models import ScheduleBatch
from cfa_calendar.models import parse_timestamp

logger = logging.getLogger(__name__)

_EVENT_COLUMNS = (
    "id", "show_name", "film_area", "film_type", "film_year", "screen_time_len",
    "show_mode", "show_type", "program_ids", "activity_ids", "statu_verify",
    "show_time", "show_price", "screen_up_time", "screen_sales_time",
    "screen_start_time", "program_colle", "screen_cinema", "activity",
    "have_activity", "tags", "cover_img1", "date", "day", "month", "year",
    "created_at", "updated_at",
)

# created_at is kept on conflict; everything else is refreshed.
_INSERT_EVENT_SQL = "INSERT INTO calendar_events ({columns}) VALUES ({marks}) ON CONFLICT (id) DO UPDATE SET {updates}".format(
    columns=", ".join(_EVENT_COLUMNS),
    marks=", ".join("?" for _ in _EVENT_COLUMNS),
    updates=", ".join(
        f"{column} = excluded.{column}"
        for column in _EVENT_COLUMNS
        if column not in ("id", "created_at")
    ),
)

_UPSERT_DAY_SQL = """
    INSERT INTO calendar_days (day, month, year, date, have_activity, events_count, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT (date) DO UPDATE SET
        have_activity = excluded.have_activity,
        events_count = excluded.events_count,
        updated_at = excluded.updated_at
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def event_date_fields(event: CalendarEventData, fallback: date) -> Tuple[date, int, int, int]:
    """
    Date bucket for a screening.

    The screening's own start timestamp wins when it parses; late-night
    screenings listed under one day may start on the next.
    """
    start = parse_timestamp(event.screen_start_time)
    event_day = start.date() if start else fallback
    return event_day, event_day.day, event_day.month, event_day.year


class Reconciler:
    """Merges ScheduleBatch objects into calendar_days and calendar_events."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock

    async def store(self, batch: ScheduleBatch) -> bool:
        """
        Store a fetched batch.

        Returns:
            True when every day was written and the success log recorded;
            False for an empty batch (nothing written) or a storage error
        """
        return await self.reconcile(batch) is not None

    async def reconcile(self, batch: ScheduleBatch) -> Optional[int]:
        """
        Store a fetched batch and count what was written.

        Args:
            batch: Validated schedule for one month

        Returns:
            Number of events written, which excludes days that do not exist
            in the batch month; None when store() would return False
        """
        if not batch.days:
            logger.warning(f"Refusing to store empty batch for {batch.year}-{batch.month:02d}")
            return None

        timestamp = self.clock().isoformat()
        total_events = 0
        written: List[int] = []

        try:
            for day in batch.days:
                total_events += await self._store_day(batch, day, timestamp, written)

            await self._log(
                FetchStatus.SUCCESS,
                batch,
                f"Successfully fetched {total_events} events",
                total_events,
                timestamp,
            )
        except StorageFailure as e:
            logger.error(f"Database error during calendar storage: {e}")
            try:
                await self._log(
                    FetchStatus.ERROR,
                    batch,
                    f"Error storing calendar data: {e}",
                    None,
                    timestamp,
                )
            except StorageFailure as log_error:
                logger.error(f"Could not record fetch error: {log_error}")
            return None

        logger.info(
            f"Stored {len(batch.days)} days and {total_events} events for {batch.year}-{batch.month:02d}"
        )
        return total_events

    async def _store_day(
        self,
        batch: ScheduleBatch,
        day: CalendarDayData,
        timestamp: str,
        written: List[int],
    ) -> int:
        try:
            bucket = date(batch.year, batch.month, day.day)
        except ValueError:
            logger.warning(f"Skipping day {day.day} which does not exist in {batch.year}-{batch.month:02d}")
            return 0
        bucket_text = bucket.isoformat()

        await self.db.execute(
            _UPSERT_DAY_SQL,
            (
                day.day,
                batch.month,
                batch.year,
                bucket_text,
                day.have_activity,
                len(day.screen),
                timestamp,
                timestamp,
            ),
        )

        # Screenings filed under an earlier day of this batch but starting
        # on this date are not stale.
        delete_sql = "DELETE FROM calendar_events WHERE date = ?"
        if written:
            delete_sql += f" AND id NOT IN ({', '.join('?' for _ in written)})"
        removed = await self.db.execute(delete_sql, [bucket_text, *written])
        if removed:
            logger.debug(f"Removed {removed} stored events for {bucket_text}")

        for event in day.screen:
            event_day, day_of_month, month, year = event_date_fields(event, bucket)
            row = event.model_dump()
            row.update(
                tags=json.dumps(event.tags, ensure_ascii=False),
                date=event_day.isoformat(),
                day=day_of_month,
                month=month,
                year=year,
                created_at=timestamp,
                updated_at=timestamp,
            )
            await self.db.execute(_INSERT_EVENT_SQL, [row[column] for column in _EVENT_COLUMNS])
            written.append(event.id)

        return len(day.screen)

    async def _log(self, status: FetchStatus, batch: ScheduleBatch, message: str, events_count, timestamp: str) -> None:
        await self.db.execute(
            """
            INSERT INTO fetch_logs (status, year, month, message, events_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (status.value, batch.year, batch.month, message, events_count, timestamp),
        )
