from datetime import timedelta

import pytest

from cfa_calendar.errors import UpstreamFetchFailure
from cfa_calendar.kv_store import AUTH_KEY
from cfa_calendar.kv_store import LAST_FETCH_KEY
from cfa_calendar.models import CalendarResponse
from cfa_calendar.models import Credential
from cfa_calendar.models import LoginResponse
from cfa_calendar.models import SyncState
from cfa_calendar.models import SyncStatus
from cfa_calendar.sync import SyncPolicy
from tests.conftest import NOW
from tests.conftest import FakeApiClient
from tests.conftest import calendar_ok
from tests.conftest import event_payload
from tests.conftest import fixed_clock
from tests.conftest import login_ok

pytestmark = pytest.mark.asyncio

JULY = [
    {"day": 1, "have_activity": "false", "screen": [event_payload(1, "2025-07-01 19:00:00")]},
    {"day": 2, "have_activity": "false", "screen": []},
]
UNAUTHORIZED = CalendarResponse(status=401, msg="token expired")
LOGIN_FAILED = LoginResponse(status=200, code="410002", msg="bad password")


def _policy(db, kv, client, settings, moment=NOW) -> SyncPolicy:
    return SyncPolicy(db, kv, client, settings=settings, clock=fixed_clock(moment))


async def _remember_fetch(kv, when) -> None:
    await kv.put_json(LAST_FETCH_KEY, SyncState(last_fetch_at=when).model_dump(mode="json"))


async def _store_token(kv, token="cached", expires_in=timedelta(hours=1)) -> None:
    await kv.put_json(AUTH_KEY, Credential(token=token, expires_at=NOW + expires_in).model_dump(mode="json"))


async def _seed_current_month(db, kv, settings) -> None:
    client = FakeApiClient(fetch=calendar_ok(JULY))
    assert (await _policy(db, kv, client, settings).refresh()).success


# --- staleness decision ------------------------------------------------------

async def test_should_update_without_previous_fetch(db, kv, settings):
    assert await _policy(db, kv, FakeApiClient(), settings).should_update() is True


async def test_should_update_after_window(db, kv, settings):
    await _seed_current_month(db, kv, settings)
    await _remember_fetch(kv, NOW - timedelta(hours=12, seconds=1))

    assert await _policy(db, kv, FakeApiClient(), settings).should_update() is True


async def test_fresh_within_window_with_month_data(db, kv, settings):
    await _seed_current_month(db, kv, settings)
    await _remember_fetch(kv, NOW - timedelta(hours=11, minutes=59))

    assert await _policy(db, kv, FakeApiClient(), settings).should_update() is False


async def test_exactly_at_window_is_still_fresh(db, kv, settings):
    await _seed_current_month(db, kv, settings)
    await _remember_fetch(kv, NOW - timedelta(hours=12))

    assert await _policy(db, kv, FakeApiClient(), settings).should_update() is False


async def test_should_update_when_current_month_missing(db, kv, settings):
    # Recent fetch, but only June is stored (e.g. after a month rollover)
    await _remember_fetch(kv, NOW - timedelta(minutes=5))
    await db.execute(
        "INSERT INTO calendar_days (day, month, year, date, created_at, updated_at) VALUES (30, 6, 2025, '2025-06-30', 'x', 'x')"
    )

    assert await _policy(db, kv, FakeApiClient(), settings).should_update() is True


async def test_current_month_uses_source_timezone(db, kv, settings):
    # 2025-07-31 17:00 UTC is already August 1st in UTC+8
    late = NOW.replace(day=31, hour=17)
    assert _policy(db, kv, FakeApiClient(), settings, moment=late).current_month() == (2025, 8)


# --- refresh cycle -----------------------------------------------------------

async def test_refresh_authenticates_fetches_and_stores(db, kv, settings):
    client = FakeApiClient(fetch=calendar_ok(JULY))

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.DONE
    assert result.success is True
    assert result.events_count == 1
    client.login.assert_awaited_once()
    client.fetch_calendar.assert_awaited_once_with("tok-1", 2025, 7)
    assert await db.count_days(2025, 7) == 2
    assert SyncState.model_validate(await kv.get_json(LAST_FETCH_KEY)).last_fetch_at == NOW


async def test_refresh_counts_only_stored_events(db, kv, settings):
    june = [
        {"day": 31, "screen": [event_payload(1), event_payload(2)]},
        {"day": 30, "screen": [event_payload(3, "2025-06-30 19:00:00")]},
    ]
    client = FakeApiClient(fetch=calendar_ok(june))

    result = await _policy(db, kv, client, settings, moment=NOW.replace(month=6)).refresh()

    assert result.success is True
    assert result.events_count == 1
    assert len(await db.get_events_for_date("2025-06-30")) == 1


async def test_refresh_reuses_valid_token(db, kv, settings):
    await _store_token(kv)
    client = FakeApiClient(fetch=calendar_ok(JULY))

    assert (await _policy(db, kv, client, settings).refresh()).success

    client.login.assert_not_awaited()
    client.fetch_calendar.assert_awaited_once_with("cached", 2025, 7)


async def test_auth_failure_aborts_without_side_effects(db, kv, settings):
    client = FakeApiClient(login=LOGIN_FAILED, fetch=calendar_ok(JULY))

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    assert result.success is False
    client.fetch_calendar.assert_not_awaited()
    assert await kv.get_json(LAST_FETCH_KEY) is None
    assert await db.count_days(2025, 7) == 0


async def test_unauthorized_fetch_reauthenticates_once(db, kv, settings):
    await _store_token(kv, token="revoked")
    client = FakeApiClient(login=login_ok("renewed"))
    client.fetch_calendar.side_effect = [UNAUTHORIZED, calendar_ok(JULY)]

    result = await _policy(db, kv, client, settings).refresh()

    assert result.success is True
    client.login.assert_awaited_once()
    assert [call.args[0] for call in client.fetch_calendar.await_args_list] == ["revoked", "renewed"]


async def test_second_unauthorized_fetch_fails(db, kv, settings):
    await _store_token(kv)
    client = FakeApiClient()
    client.fetch_calendar.side_effect = [UNAUTHORIZED, UNAUTHORIZED]

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    assert client.fetch_calendar.await_count == 2
    assert client.login.await_count == 1
    assert await kv.get_json(LAST_FETCH_KEY) is None


async def test_reauth_failure_after_unauthorized_fails(db, kv, settings):
    await _store_token(kv)
    client = FakeApiClient(login=LOGIN_FAILED, fetch=UNAUTHORIZED)

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    assert client.fetch_calendar.await_count == 1


async def test_other_invalid_response_is_not_retried(db, kv, settings):
    await _store_token(kv)
    client = FakeApiClient(fetch=CalendarResponse(status=500, msg="server error"))

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    assert client.fetch_calendar.await_count == 1
    client.login.assert_not_awaited()


async def test_network_error_fails_cycle(db, kv, settings):
    await _store_token(kv)
    client = FakeApiClient()
    client.fetch_calendar.side_effect = UpstreamFetchFailure("timeout")

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    assert "timeout" in result.message


async def test_empty_month_is_not_recorded_as_fetched(db, kv, settings):
    await _store_token(kv)
    client = FakeApiClient(fetch=calendar_ok([]))

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    assert await kv.get_json(LAST_FETCH_KEY) is None


async def test_reconcile_failure_keeps_sync_state(db, kv, settings):
    await _remember_fetch(kv, NOW - timedelta(days=1))
    await _store_token(kv)
    await db.execute("DROP TABLE calendar_events")
    client = FakeApiClient(fetch=calendar_ok(JULY))

    result = await _policy(db, kv, client, settings).refresh()

    assert result.state is SyncStatus.FAILED
    state = SyncState.model_validate(await kv.get_json(LAST_FETCH_KEY))
    assert state.last_fetch_at == NOW - timedelta(days=1)


async def test_sync_if_stale_skips_when_fresh(db, kv, settings):
    await _seed_current_month(db, kv, settings)
    client = FakeApiClient(fetch=calendar_ok(JULY))

    result = await _policy(db, kv, client, settings, moment=NOW + timedelta(hours=1)).sync_if_stale()

    assert result.state is SyncStatus.FRESH
    assert result.success is True
    client.fetch_calendar.assert_not_awaited()


async def test_sync_if_stale_refreshes_when_stale(db, kv, settings):
    client = FakeApiClient(fetch=calendar_ok(JULY))

    result = await _policy(db, kv, client, settings).sync_if_stale()

    assert result.state is SyncStatus.DONE
    client.fetch_calendar.assert_awaited_once()
