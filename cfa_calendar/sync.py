"""
Staleness-aware synchronization of the monthly schedule.

SyncPolicy decides whether the stored schedule needs refreshing and runs
the fetch cycle:

    FRESH -> STALE -> FETCHING -> DONE
                         |
                         +-> FAILED

FAILED ends the invocation; nothing is raised to the caller, who gets a
SyncResult and may try again on the next request or scheduled run.
"""

import logging
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Optional
from typing import Tuple

from pydantic import ValidationError

from cfa_calendar.api_client import ApiClient
from cfa_calendar.api_client import is_calendar_response_valid
from cfa_calendar.api_client import is_unauthorized
from cfa_calendar.auth import TokenManager
from cfa_calendar.database import Database
from cfa_calendar.errors import StorageFailure
from cfa_calendar.errors import UpstreamFetchFailure
from cfa_calendar.kv_store import LAST_FETCH_KEY
from cfa_calendar.kv_store import KeyValueStore
from cfa_calendar.models import CalendarResponse
from cfa_calendar.models import ScheduleBatch
from cfa_calendar.models import SyncResult
from cfa_calendar.models import SyncState
from cfa_calendar.models import SyncStatus
from cfa_calendar.reconciler import Reconciler
from cfa_calendar.settings import Settings
from cfa_calendar.settings import get_settings

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def current_month(settings: Settings, now: datetime) -> Tuple[int, int]:
    """Year and month of an instant as seen in the schedule's own timezone."""
    local = now.astimezone(settings.source_timezone)
    return local.year, local.month


class SyncPolicy:
    """
    Decides when to re-fetch and orchestrates token -> fetch -> reconcile.

    All state shared between invocations is read from and written to the
    key-value store; instances are cheap and meant to be built per request.
    """

    def __init__(
        self,
        db: Database,
        kv: KeyValueStore,
        client: ApiClient,
        tokens: Optional[TokenManager] = None,
        reconciler: Optional[Reconciler] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.kv = kv
        self.client = client
        self.settings = settings or get_settings()
        self.clock = clock
        self.tokens = tokens or TokenManager(kv, client, self.settings, clock)
        self.reconciler = reconciler or Reconciler(db, clock)

    def current_month(self) -> Tuple[int, int]:
        return current_month(self.settings, self.clock())

    async def last_sync_state(self) -> Optional[SyncState]:
        stored = await self.kv.get_json(LAST_FETCH_KEY)
        if not stored:
            return None
        try:
            return SyncState.model_validate(stored)
        except ValidationError:
            logger.warning("Stored sync state is malformed; treating as never fetched")
            return None

    async def should_update(self) -> bool:
        """
        Whether the stored schedule is stale.

        True when there is no record of a successful fetch, when the last
        one is older than the staleness window, or when the current month
        has no stored days yet (e.g. right after a month rollover).
        """
        try:
            state = await self.last_sync_state()
            now = self.clock()
            if state is None or state.is_stale(now, self.settings.staleness_window):
                return True

            year, month = self.current_month()
            return await self.db.count_days(year, month) == 0
        except StorageFailure as e:
            logger.error(f"Error checking if calendar update is needed: {e}")
            return True

    async def sync_if_stale(self) -> SyncResult:
        if not await self.should_update():
            logger.debug("Stored schedule is fresh; skipping fetch")
            return SyncResult(state=SyncStatus.FRESH, success=True, message="Calendar data is fresh")
        return await self.refresh()

    async def refresh(self) -> SyncResult:
        """
        Run one full fetch cycle regardless of staleness.

        Returns:
            SyncResult in state DONE on success, FAILED otherwise
        """
        year, month = self.current_month()
        logger.info(f"Refreshing calendar data for {year}-{month:02d}")

        try:
            response = await self._fetch_with_reauth(year, month)
            if response is None:
                return self._failed(year, month, "Failed to fetch calendar data")

            batch = ScheduleBatch.from_response(response, year, month)
            events_count = await self.reconciler.reconcile(batch)
            if events_count is None:
                return self._failed(year, month, "Failed to store calendar data")

            await self.kv.put_json(
                LAST_FETCH_KEY,
                SyncState(last_fetch_at=self.clock()).model_dump(mode="json"),
            )
        except (StorageFailure, UpstreamFetchFailure, ValidationError) as e:
            logger.error(f"Error during calendar refresh: {e}")
            return self._failed(year, month, f"Failed to refresh calendar data: {e}")

        logger.info(f"Successfully updated calendar data for {year}-{month:02d}")
        return SyncResult(
            state=SyncStatus.DONE,
            success=True,
            message="Calendar data refreshed successfully",
            events_count=events_count,
            year=year,
            month=month,
        )

    async def _fetch_with_reauth(self, year: int, month: int) -> Optional[CalendarResponse]:
        credential = await self.tokens.get_valid_token()
        if credential is None:
            credential = await self.tokens.authenticate()
            if credential is None:
                logger.error("Failed to authenticate")
                return None

        response = await self.client.fetch_calendar(credential.token, year, month)
        if is_calendar_response_valid(response):
            return response

        if is_unauthorized(response):
            logger.warning(f"Upstream rejected token (status {response.status}); re-authenticating once")
            credential = await self.tokens.authenticate()
            if credential is not None:
                response = await self.client.fetch_calendar(credential.token, year, month)
                if is_calendar_response_valid(response):
                    return response

        logger.error(f"Failed to fetch valid calendar data: {response.msg or 'Unknown error'}")
        return None

    @staticmethod
    def _failed(year: int, month: int, message: str) -> SyncResult:
        return SyncResult(state=SyncStatus.FAILED, success=False, message=message, year=year, month=month)
