"""
FastAPI application exposing the stored schedule and its calendar feeds.

Endpoints:
    GET  /api/calendar            current month, refreshed first when stale
    GET|POST /api/calendar/refresh  unconditional refresh
    GET  /api/health              storage statistics
    GET  [/{region}[/{venue}[/{hall}]]]/calendar.ics  filtered ICS feed

Every error is reported as JSON {"error": message} with status 500.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Optional

from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.responses import Response

from cfa_calendar import __version__
from cfa_calendar.api_client import ApiClient
from cfa_calendar.calendar_generator import CALENDAR_MIME_TYPE
from cfa_calendar.calendar_generator import FeedBuilder
from cfa_calendar.database import Database
from cfa_calendar.errors import CalendarSyncError
from cfa_calendar.kv_store import KeyValueStore
from cfa_calendar.models import FeedFilter
from cfa_calendar.settings import Settings
from cfa_calendar.settings import get_settings
from cfa_calendar.sync import SyncPolicy
from cfa_calendar.sync import current_month
from cfa_calendar.venues import VenueResolver

logger = logging.getLogger(__name__)


def _error(message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=500)


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    client_factory: Optional[Callable[[], ApiClient]] = None,
    resolver: Optional[VenueResolver] = None,
    clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Configuration (defaults to the global settings)
        db: Database to use; one is created from settings.db_path if omitted
        client_factory: Builds the upstream client for each invocation
        resolver: Venue reference lookup shared by all feed requests
        clock: Source of "now", injectable for tests
    """
    settings = settings or get_settings()
    db = db or Database(settings.db_path)
    client_factory = client_factory or (lambda: ApiClient(settings))
    resolver = resolver or VenueResolver()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await db.initialize()
        yield
        await db.close()

    app = FastAPI(
        title="CFA Calendar",
        description="China Film Archive screening schedule as JSON and iCalendar feeds",
        version=__version__,
        lifespan=lifespan,
    )

    async def run_sync(force: bool):
        async with client_factory() as client:
            policy = SyncPolicy(db, KeyValueStore(db, clock), client, settings=settings, clock=clock)
            return await (policy.refresh() if force else policy.sync_if_stale())

    @app.get("/")
    async def index():
        return {"service": "CFA Calendar API", "version": __version__}

    @app.get("/api/calendar")
    async def get_calendar():
        try:
            result = await run_sync(force=False)
            if not result.success:
                logger.error(f"Calendar sync before read failed: {result.message}")

            year, month = current_month(settings, clock())
            days, events = await db.get_month(year, month)
        except CalendarSyncError as e:
            logger.error(f"Error handling calendar request: {e}")
            return _error("Failed to retrieve calendar data")

        return {
            "days": [day.model_dump(mode="json") for day in days],
            "events": [event.model_dump(mode="json") for event in events],
        }

    @app.api_route("/api/calendar/refresh", methods=["GET", "POST"])
    async def refresh_calendar():
        result = await run_sync(force=True)
        if not result.success:
            return _error(result.message)
        return {"success": True, "message": result.message, "events_count": result.events_count}

    @app.get("/api/health")
    async def health():
        try:
            stats = await db.get_database_stats()
        except CalendarSyncError as e:
            return _error(str(e))
        return {"status": "ok", **stats}

    async def feed_response(feed_filter: FeedFilter) -> Response:
        builder = FeedBuilder(db, resolver, settings, clock)
        year, month = current_month(settings, clock())
        try:
            payload = await builder.generate(year, month, feed_filter)
        except CalendarSyncError as e:
            logger.error(f"Calendar feed failed for {feed_filter.model_dump()}: {e}")
            return _error(str(e))

        return Response(
            content=payload,
            media_type=CALENDAR_MIME_TYPE,
            headers={"Content-Disposition": 'attachment; filename="calendar.ics"'},
        )

    @app.get("/calendar.ics")
    async def feed_all():
        return await feed_response(FeedFilter())

    @app.get("/{region}/calendar.ics")
    async def feed_region(region: str):
        return await feed_response(FeedFilter(region_code=region))

    @app.get("/{region}/{venue}/calendar.ics")
    async def feed_venue(region: str, venue: str):
        return await feed_response(FeedFilter(region_code=region, venue_code=venue))

    @app.get("/{region}/{venue}/{hall}/calendar.ics")
    async def feed_hall(region: str, venue: str, hall: str):
        return await feed_response(FeedFilter(region_code=region, venue_code=venue, hall_code=hall))

    @app.exception_handler(Exception)
    async def unhandled(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        return _error("Internal server error")

    return app
