"""
CFA Calendar: China Film Archive screening schedule as a calendar feed.

Keeps a local copy of the monthly screening schedule published by the
ticketing API and republishes it as JSON and as iCalendar feeds that can
be filtered by region, venue and hall.

Main Components:
- TokenManager: Login exchange and cached bearer token
- SyncPolicy: Staleness checks and the fetch/reconcile cycle
- Reconciler: Idempotent day/event storage with per-date replacement
- VenueResolver: Keyword matching of venue descriptions to codes
- FeedBuilder: ICS generation following RFC 5545
- Web Server: FastAPI service with a scheduled refresh entry point

Usage:
    # Run web server
    python -m cfa_calendar --mode web

    # Scheduled refresh
    python -m cfa_calendar --mode refresh

    # Build a feed programmatically
    from cfa_calendar.calendar_generator import FeedBuilder
    from cfa_calendar.database import Database
    from cfa_calendar.models import FeedFilter

    async with Database() as db:
        ics_content = await FeedBuilder(db).generate(2025, 7, FeedFilter(region_code="beijing"))
"""

__version__ = "1.0.0"
__license__ = "MIT"

# Public API for external usage
from cfa_calendar.auth import TokenManager
from cfa_calendar.calendar_generator import FeedBuilder
from cfa_calendar.database import Database
from cfa_calendar.models import FeedFilter
from cfa_calendar.models import ScheduleBatch
from cfa_calendar.models import ScheduleDay
from cfa_calendar.models import ScheduleEvent
from cfa_calendar.reconciler import Reconciler
from cfa_calendar.sync import SyncPolicy
from cfa_calendar.venues import VenueResolver

__all__ = [
    "Database",
    "FeedBuilder",
    "FeedFilter",
    "Reconciler",
    "ScheduleBatch",
    "ScheduleDay",
    "ScheduleEvent",
    "SyncPolicy",
    "TokenManager",
    "VenueResolver",
]
