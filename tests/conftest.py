from datetime import datetime
from datetime import timezone
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from cfa_calendar.database import Database
from cfa_calendar.kv_store import KeyValueStore
from cfa_calendar.models import CalendarResponse
from cfa_calendar.models import LoginResponse
from cfa_calendar.settings import Settings

# 2025-07-15 12:00 in the source timezone (UTC+8)
NOW = datetime(2025, 7, 15, 4, 0, 0, tzinfo=timezone.utc)


def fixed_clock(moment: datetime = NOW):
    return lambda: moment


def login_ok(token: str = "tok-1", expires_time: int = int(NOW.timestamp()) + 3600) -> LoginResponse:
    return LoginResponse.model_validate({
        "status": 200,
        "msg": "ok",
        "code": "410001",
        "data": {"token": token, "expires_time": expires_time},
    })


def event_payload(event_id: int, start: str = "", cinema: str = "小西天艺术影院 1号厅", **extra) -> dict:
    payload = {
        "id": event_id,
        "show_name": f"Film {event_id}",
        "film_area": "法国",
        "film_type": "剧情",
        "film_year": "1962",
        "screen_time_len": 110,
        "screen_start_time": start,
        "screen_cinema": cinema,
        "activity": "",
        "have_activity": "false",
        "tags": ["修复版"],
        "cover_img1": "https://example.com/poster.jpg",
    }
    payload.update(extra)
    return payload


def calendar_payload(days: list, status: int = 200) -> dict:
    count = sum(len(day.get("screen") or []) for day in days)
    return {
        "status": status,
        "msg": "ok",
        "data": {"list": days, "count": count, "data_type": "month"},
    }


def calendar_ok(days: list) -> CalendarResponse:
    return CalendarResponse.model_validate(calendar_payload(days))


class FakeApiClient:
    """Stand-in for ApiClient with AsyncMock endpoints."""

    def __init__(self, login=None, fetch=None) -> None:
        self.login = AsyncMock(return_value=login or login_ok())
        self.fetch_calendar = AsyncMock(return_value=fetch)

    async def __aenter__(self) -> "FakeApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        return None


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "calendar.db",
        api_account="account",
        api_password="secret",
    )


@pytest_asyncio.fixture
async def db(tmp_path: Path):
    """Provides an initialized file-based database instance for each test."""
    db_instance = Database(db_path=tmp_path / "test.db")
    await db_instance.initialize()
    yield db_instance
    await db_instance.close()


@pytest.fixture
def kv(db: Database) -> KeyValueStore:
    return KeyValueStore(db, clock=fixed_clock())
