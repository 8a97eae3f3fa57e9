"""
ICS calendar generation module.

Provides FeedBuilder, which filters stored screenings by venue hierarchy
and emits an RFC 5545 payload. Upstream start times are local to the
source timezone and are written out in UTC.
"""

from __future__ import annotations

import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Callable
from typing import Iterable
from typing import List
from urllib.parse import quote

from icalendar import Calendar
from icalendar import Event
from icalendar import vCalAddress
from icalendar import vText

from cfa_calendar.database import Database
from cfa_calendar.errors import EncodingFailure
from cfa_calendar.models import FeedFilter
from cfa_calendar.models import ScheduleEvent
from cfa_calendar.settings import Settings
from cfa_calendar.settings import get_settings
from cfa_calendar.venues import VenueResolver

logger = logging.getLogger(__name__)

CALENDAR_MIME_TYPE = "text/calendar; charset=utf-8"
SEARCH_URL = "https://search.douban.com/movie/subject_search?search_text="


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def describe(event: ScheduleEvent) -> str:
    """Genre, optional region suffix and optional activity note."""
    text = event.film_type
    if event.film_area:
        text += f" / {event.film_area}"
    if event.activity:
        text += f"\n{event.activity}"
    return text


class FeedBuilder:
    """Generate ICS calendar content from stored screenings."""

    def __init__(
        self,
        db: Database | None = None,
        resolver: VenueResolver | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.resolver = resolver or VenueResolver()
        self.settings = settings or get_settings()
        self.clock = clock

    def start_in_utc(self, event: ScheduleEvent) -> datetime | None:
        """
        Start instant in UTC, or None when the timestamp is missing/unparseable.

        Naive timestamps are local to the fixed source offset (UTC+8 by
        default) and are shifted back by that offset.
        """
        start = event.start_time
        if start is None:
            return None
        if start.tzinfo is None:
            offset = timedelta(hours=self.settings.source_utc_offset_hours)
            return (start - offset).replace(tzinfo=timezone.utc)
        return start.astimezone(timezone.utc)

    def select(self, events: Iterable[ScheduleEvent], feed_filter: FeedFilter) -> List[ScheduleEvent]:
        return [
            event for event in events
            if feed_filter.accepts(self.resolver.resolve(event.screen_cinema))
        ]

    def _organizer(self) -> vCalAddress:
        organizer = vCalAddress(f"mailto:{self.settings.organizer_email}")
        organizer.params["cn"] = vText(self.settings.organizer_name)
        return organizer

    def _build_event(self, event: ScheduleEvent, start: datetime, stamp: datetime) -> Event:
        venue = self.resolver.resolve(event.screen_cinema)

        ev = Event()
        ev.add('uid', f"{event.id}@{self.settings.feed_uid_domain}")
        ev.add('dtstamp', stamp)
        ev.add('dtstart', start)
        minutes = event.runtime_minutes
        if minutes is not None:
            ev.add('duration', timedelta(minutes=minutes))

        ev.add('summary', event.show_name)
        ev.add('description', describe(event))
        ev.add('location', venue.location)
        ev.add('geo', venue.geo)
        ev.add('url', SEARCH_URL + quote(event.show_name, safe=""))
        ev.add('status', 'TENTATIVE')
        ev['organizer'] = self._organizer()
        return ev

    def build_feed(self, events: Iterable[ScheduleEvent], feed_filter: FeedFilter | None = None) -> bytes:
        """
        Encode the screenings that pass the filter.

        Args:
            events: Stored screenings
            feed_filter: Venue codes to keep; empty components match anything

        Returns:
            ICS payload bytes

        Raises:
            EncodingFailure: when no entry survives or the encoder fails
        """
        feed_filter = feed_filter or FeedFilter()
        stamp = self.clock().astimezone(timezone.utc)

        cal = Calendar()
        cal.add('prodid', self.settings.feed_product_id)
        cal.add('version', '2.0')
        cal.add('calscale', 'GREGORIAN')
        cal.add('method', 'PUBLISH')
        cal.add('x-wr-calname', self.resolver.feed_title(feed_filter, self.settings.calendar_name))

        encoded = 0
        for event in self.select(events, feed_filter):
            start = self.start_in_utc(event)
            if start is None:
                logger.debug(f"Dropping event {event.id} without a usable start time")
                continue
            cal.add_component(self._build_event(event, start, stamp))
            encoded += 1

        if not encoded:
            raise EncodingFailure("No events to encode")

        try:
            payload = cal.to_ical()
        except (ValueError, TypeError) as e:
            raise EncodingFailure(f"Calendar encoding failed: {e}") from e

        logger.info(f"Encoded {encoded} events into calendar feed")
        return payload

    async def generate(self, year: int, month: int, feed_filter: FeedFilter | None = None) -> bytes:
        """Build the feed for a stored month."""
        if self.db is None:
            raise RuntimeError("FeedBuilder.generate requires a database")
        _, events = await self.db.get_month(year, month)
        return self.build_feed(events, feed_filter)
