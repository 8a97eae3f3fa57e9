"""
HTTP client for the upstream ticketing API.

Wraps the login and monthly schedule endpoints. Both endpoints answer
with a JSON envelope whose own `status` field carries the outcome, so
responses are returned as models and judged by the validators below;
only transport problems raise.
"""

import asyncio
import json
import logging
from typing import Any
from typing import Dict
from typing import Optional
from typing import Tuple

import aiohttp
from pydantic import ValidationError

from cfa_calendar.errors import UpstreamFetchFailure
from cfa_calendar.models import CalendarResponse
from cfa_calendar.models import LoginResponse
from cfa_calendar.settings import Settings
from cfa_calendar.settings import get_settings

logger = logging.getLogger(__name__)

UNAUTHORIZED_STATUSES = frozenset({401, 403})


def is_login_successful(response: LoginResponse, success_code: str = "410001") -> bool:
    """Login succeeded only with status 200, the success code, a token and an expiry."""
    return (
        response.status == 200
        and response.code == success_code
        and response.data is not None
        and bool(response.data.token)
        and response.data.expires_time > 0
    )


def is_calendar_response_valid(response: CalendarResponse) -> bool:
    """Schedule response is usable when status is 200 and a day list is present."""
    return (
        response.status == 200
        and response.data is not None
        and isinstance(response.data.list, list)
    )


def is_unauthorized(response: CalendarResponse) -> bool:
    return response.status in UNAUTHORIZED_STATUSES


class ApiClient:
    """
    Async client for the login and schedule endpoints.

    Use as an async context manager, or pass an existing aiohttp session
    which the client will then leave open.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "ApiClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout),
                headers={"User-Agent": self.settings.user_agent},
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def _post_json(
        self,
        url: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Tuple[int, Any, str]:
        """
        POST a JSON payload.

        Returns:
            Tuple of (HTTP status, decoded body or None, raw text)

        Raises:
            UpstreamFetchFailure: on connection errors and timeouts
        """
        if self._session is None:
            raise RuntimeError("ApiClient used outside of its async context")

        try:
            async with self._session.post(url, json=payload, headers=headers) as resp:
                status = resp.status
                text = await resp.text()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[API] POST {url} failed: {type(e).__name__} {e}")
            raise UpstreamFetchFailure(f"Request to {url} failed: {type(e).__name__}") from e

        try:
            body = json.loads(text) if text else None
        except ValueError:
            body = None

        logger.debug(f"[API] POST {url} status={status}")
        return status, body, text

    @staticmethod
    def _envelope(status: int, body: Any, text: str) -> Dict[str, Any]:
        # Non-JSON bodies (proxy error pages, bare 401s) keep the HTTP status.
        if not isinstance(body, dict):
            return {"status": status, "msg": text[:200]}
        envelope = dict(body)
        envelope.setdefault("status", status)
        return envelope

    async def login(self, account: str, password: str) -> LoginResponse:
        """
        Exchange account and password for a token.

        Returns:
            LoginResponse; a malformed body yields a response without data
        """
        status, body, text = await self._post_json(
            self.settings.login_url,
            {"account": account, "password": password},
        )
        envelope = self._envelope(status, body, text)
        try:
            return LoginResponse.model_validate(envelope)
        except ValidationError as e:
            logger.warning(f"[API] Malformed login payload: {e.error_count()} validation errors")
            return LoginResponse(status=status, msg="Malformed login payload")

    async def fetch_calendar(
        self,
        token: str,
        year: int,
        month: int,
        cinema_code: str = "",
    ) -> CalendarResponse:
        """
        Fetch the schedule for one month.

        Args:
            token: Bearer token from login
            year: Four-digit year
            month: Month number, sent zero padded
            cinema_code: Optional upstream cinema filter

        Returns:
            CalendarResponse; a malformed body yields a response without data
        """
        status, body, text = await self._post_json(
            self.settings.calendar_url,
            {"year": str(year), "month": f"{month:02d}", "cinema_code": cinema_code},
            headers={"Authorization": f"Bearer {token}"},
        )
        envelope = self._envelope(status, body, text)
        try:
            return CalendarResponse.model_validate(envelope)
        except ValidationError as e:
            logger.warning(f"[API] Malformed schedule payload: {e.error_count()} validation errors")
            envelope_status = envelope.get("status")
            return CalendarResponse(
                status=envelope_status if isinstance(envelope_status, int) else status,
                msg="Malformed schedule payload",
            )
