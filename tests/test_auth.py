from datetime import timedelta

import pytest

from cfa_calendar.auth import TokenManager
from cfa_calendar.errors import UpstreamFetchFailure
from cfa_calendar.kv_store import AUTH_KEY
from cfa_calendar.kv_store import KeyValueStore
from cfa_calendar.models import Credential
from cfa_calendar.models import LoginResponse
from cfa_calendar.settings import Settings
from tests.conftest import NOW
from tests.conftest import FakeApiClient
from tests.conftest import fixed_clock
from tests.conftest import login_ok

pytestmark = pytest.mark.asyncio


def _manager(kv: KeyValueStore, client: FakeApiClient, settings: Settings) -> TokenManager:
    return TokenManager(kv, client, settings, clock=fixed_clock())


async def _store_credential(kv: KeyValueStore, token: str, expires_at) -> None:
    await kv.put_json(AUTH_KEY, Credential(token=token, expires_at=expires_at).model_dump(mode="json"))


async def test_no_stored_token(kv, settings):
    assert await _manager(kv, FakeApiClient(), settings).get_valid_token() is None


@pytest.mark.parametrize("offset", [timedelta(0), -timedelta(seconds=1), -timedelta(days=3)])
async def test_expired_or_expiring_token_is_invalid(kv, settings, offset):
    await _store_credential(kv, "stale", NOW + offset)
    assert await _manager(kv, FakeApiClient(), settings).get_valid_token() is None


async def test_unexpired_token_returned_unchanged(kv, settings):
    expires_at = NOW + timedelta(seconds=1)
    await _store_credential(kv, "fresh", expires_at)

    credential = await _manager(kv, FakeApiClient(), settings).get_valid_token()

    assert credential.token == "fresh"
    assert credential.expires_at == expires_at


async def test_get_valid_token_never_logs_in(kv, settings):
    client = FakeApiClient()
    await _manager(kv, client, settings).get_valid_token()
    client.login.assert_not_awaited()


async def test_authenticate_persists_credential(kv, settings):
    expires_time = int(NOW.timestamp()) + 7200
    client = FakeApiClient(login=login_ok("new-token", expires_time))
    manager = _manager(kv, client, settings)

    credential = await manager.authenticate()

    assert credential.token == "new-token"
    assert credential.expires_at == NOW + timedelta(hours=2)
    client.login.assert_awaited_once_with("account", "secret")

    stored = await manager.get_valid_token()
    assert stored == credential


@pytest.mark.parametrize(
    "payload",
    [
        {"status": 500, "code": "410001", "data": {"token": "x", "expires_time": 1}},
        {"status": 200, "code": "410002", "data": {"token": "x", "expires_time": 1}},
        {"status": 200, "code": "410001"},
        {"status": 200, "code": "410001", "data": {"token": "", "expires_time": 1}},
        {"status": 200, "code": "410001", "data": {"token": "x"}},
        {"status": 200, "code": "410001", "data": {"token": "x", "expires_time": int(NOW.timestamp()) - 60}},
        {"status": 200, "code": "410001", "data": {"token": "x", "expires_time": int(NOW.timestamp())}},
    ],
)
async def test_authenticate_rejects_partial_success(kv, settings, payload):
    await _store_credential(kv, "previous", NOW + timedelta(hours=1))
    client = FakeApiClient(login=LoginResponse.model_validate(payload))

    assert await _manager(kv, client, settings).authenticate() is None
    assert (await kv.get_json(AUTH_KEY))["token"] == "previous"


async def test_authenticate_network_error_keeps_state(kv, settings):
    await _store_credential(kv, "previous", NOW - timedelta(hours=1))
    client = FakeApiClient()
    client.login.side_effect = UpstreamFetchFailure("connection refused")

    assert await _manager(kv, client, settings).authenticate() is None
    assert (await kv.get_json(AUTH_KEY))["token"] == "previous"


async def test_authenticate_without_configured_account(kv, tmp_path):
    client = FakeApiClient()
    settings = Settings(db_path=tmp_path / "x.db", api_account="", api_password="")

    assert await _manager(kv, client, settings).authenticate() is None
    client.login.assert_not_awaited()
