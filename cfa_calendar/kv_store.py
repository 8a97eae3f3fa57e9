"""
Key-value entries persisted next to the relational tables.

Holds the single-key records that must survive between invocations: the
upstream credential and the last successful fetch time. Each put replaces
the whole entry in one statement.
"""

import json
import logging
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Callable
from typing import Optional

from cfa_calendar.database import Database
from cfa_calendar.errors import StorageFailure

logger = logging.getLogger(__name__)

AUTH_KEY = "auth"
LAST_FETCH_KEY = "last_fetch"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class KeyValueStore:
    """JSON get/put over the kv_entries table."""

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self.db = db
        self.clock = clock

    async def get_json(self, key: str) -> Optional[Any]:
        """
        Read and decode an entry.

        Returns:
            Decoded JSON value, or None if the key is absent

        Raises:
            StorageFailure: on driver errors or an undecodable stored value
        """
        row = await self.db.fetch_one("SELECT value FROM kv_entries WHERE key = ?", (key,))
        if row is None:
            return None
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError as e:
            raise StorageFailure(f"Corrupt value stored under {key!r}: {e}") from e

    async def put_json(self, key: str, value: Any) -> None:
        """Replace an entry wholesale."""
        await self.db.execute(
            """
            INSERT INTO kv_entries (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, json.dumps(value, ensure_ascii=False), self.clock().isoformat()),
        )
        logger.debug(f"Stored key-value entry {key!r}")
