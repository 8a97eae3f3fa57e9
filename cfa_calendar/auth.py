"""
Token management for the upstream API.

The credential lives in the key-value store, never in process memory, so
every invocation sees the token the previous one obtained. Refreshing is
always explicit: callers ask for a valid token and authenticate when none
is available or the upstream rejects the one they used.
"""

import logging
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Optional

from pydantic import ValidationError

from cfa_calendar.api_client import ApiClient
from cfa_calendar.api_client import is_login_successful
from cfa_calendar.errors import StorageFailure
from cfa_calendar.errors import UpstreamFetchFailure
from cfa_calendar.kv_store import AUTH_KEY
from cfa_calendar.kv_store import KeyValueStore
from cfa_calendar.models import Credential
from cfa_calendar.settings import Settings
from cfa_calendar.settings import get_settings

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TokenManager:
    """Obtains, persists and hands out the upstream bearer token."""

    def __init__(
        self,
        kv: KeyValueStore,
        client: ApiClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.kv = kv
        self.client = client
        self.settings = settings or get_settings()
        self.clock = clock

    async def get_valid_token(self) -> Optional[Credential]:
        """
        Return the stored credential if it has not expired.

        Never refreshes. An absent, expired or unreadable entry yields None.
        """
        try:
            stored = await self.kv.get_json(AUTH_KEY)
        except StorageFailure as e:
            logger.error(f"Could not read stored credential: {e}")
            return None

        if not stored:
            return None

        try:
            credential = Credential.model_validate(stored)
        except ValidationError:
            logger.warning("Stored credential is malformed; ignoring it")
            return None

        if not credential.is_valid(self.clock()):
            logger.info(f"Stored token expired at {credential.expires_at.isoformat()}")
            return None
        return credential

    async def authenticate(self) -> Optional[Credential]:
        """
        Log in and persist the new credential.

        Returns:
            The new credential, or None on any failure; on failure the
            previously stored credential is left as it was
        """
        account = self.settings.api_account
        password = self.settings.api_password.get_secret_value()
        if not account or not password:
            logger.error("Missing API credentials in configuration")
            return None

        try:
            response = await self.client.login(account, password)
        except UpstreamFetchFailure as e:
            logger.error(f"Authentication error: {e}")
            return None

        if not is_login_successful(response, self.settings.login_success_code):
            logger.error(f"Login failed: status={response.status} code={response.code!r} msg={response.msg!r}")
            return None

        try:
            expires_at = datetime.fromtimestamp(response.data.expires_time, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as e:
            logger.error(f"Login returned an unusable expiry {response.data.expires_time!r}: {e}")
            return None

        if expires_at <= self.clock():
            logger.error(f"Login returned a token that already expired at {expires_at.isoformat()}")
            return None

        credential = Credential(token=response.data.token, expires_at=expires_at)
        try:
            await self.kv.put_json(AUTH_KEY, credential.model_dump(mode="json"))
        except StorageFailure as e:
            logger.error(f"Could not persist credential: {e}")
            return None

        logger.info(f"Authenticated; token valid until {expires_at.isoformat()}")
        return credential
