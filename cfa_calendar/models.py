"""
Data models for the CFA calendar service.

Defines Pydantic models for the upstream wire format, the stored
day/event records, persisted key-value entries and the venue reference
tree, with validation and serialization in one place.
"""

import json
from datetime import date
from datetime import datetime
from datetime import timedelta
from enum import Enum
from typing import Any
from typing import List
from typing import Optional
from typing import Tuple
from typing import Union

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import field_validator

_FALLBACK_TIMESTAMP_FORMATS = (
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d %H:%M",
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an upstream schedule timestamp.

    Accepts ISO 8601 text (with either 'T' or a space between date and
    time) and a few slash-separated variants seen in listings.

    Returns:
        Parsed datetime (naive unless the text carries an offset), or None
        when the value is empty or unparseable
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip()
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass

    for fmt in _FALLBACK_TIMESTAMP_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def _flag_text(v: Any) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if v is None:
        return "false"
    return str(v)


# ---------------------------------------------------------------------------
# Persisted key-value records
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    """Bearer token issued by the upstream login endpoint."""

    token: str = Field(..., min_length=1, description="Bearer token")

    expires_at: datetime = Field(
        ...,
        description="Absolute expiry instant (UTC)"
    )

    def is_valid(self, now: datetime) -> bool:
        """A credential is usable only while its expiry lies strictly ahead."""
        return self.expires_at > now


class SyncState(BaseModel):
    """Timestamp of the last fully successful fetch and reconcile."""

    last_fetch_at: datetime = Field(
        ...,
        description="When the schedule was last stored successfully (UTC)"
    )

    def is_stale(self, now: datetime, window: timedelta) -> bool:
        return now - self.last_fetch_at > window


# ---------------------------------------------------------------------------
# Upstream wire models
# ---------------------------------------------------------------------------


class LoginData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    token: str = ""
    expires_time: int = Field(
        default=0,
        description="Token expiry as Unix epoch seconds"
    )


class LoginResponse(BaseModel):
    """Body of the login endpoint response."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    status: int = Field(default=0, description="Status echoed in the body")
    msg: str = ""
    code: str = ""
    data: Optional[LoginData] = None


class CalendarEventData(BaseModel):
    """
    A single screening as published by the schedule endpoint.

    Only `id` is required; everything else defaults to empty so a
    partially filled listing still reconciles.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    id: int = Field(..., description="Stable upstream screening identifier")
    show_name: str = ""
    film_area: str = ""
    film_type: str = ""
    film_year: str = ""
    screen_time_len: Optional[Union[int, float, str]] = None
    show_mode: str = ""
    show_type: str = ""
    program_ids: str = ""
    activity_ids: str = ""
    statu_verify: str = ""
    show_time: Optional[Union[int, str]] = None
    show_price: str = ""
    screen_up_time: str = ""
    screen_sales_time: str = ""
    screen_start_time: str = ""
    program_colle: str = ""
    screen_cinema: str = ""
    activity: str = ""
    have_activity: str = "false"
    tags: List[str] = Field(default_factory=list)
    cover_img1: str = ""

    @field_validator(
        "show_name", "film_area", "film_type", "film_year", "show_mode",
        "show_type", "program_ids", "activity_ids", "statu_verify",
        "show_price", "screen_up_time", "screen_sales_time",
        "screen_start_time", "program_colle", "screen_cinema", "activity",
        "cover_img1",
        mode="before",
    )
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("have_activity", mode="before")
    @classmethod
    def normalize_flag(cls, v: Any) -> str:
        return _flag_text(v)

    @field_validator("tags", mode="before")
    @classmethod
    def normalize_tags(cls, v: Any) -> Any:
        return [] if v is None else v


class CalendarDayData(BaseModel):
    """One day bucket of the schedule endpoint."""

    model_config = ConfigDict(extra="ignore")

    day: int = Field(..., ge=1, le=31)
    screen: List[CalendarEventData] = Field(default_factory=list)
    have_activity: str = "false"

    @field_validator("screen", mode="before")
    @classmethod
    def normalize_screen(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("have_activity", mode="before")
    @classmethod
    def normalize_flag(cls, v: Any) -> str:
        return _flag_text(v)


class CalendarData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    list: List[CalendarDayData]
    count: int = 0
    data_type: Optional[str] = None


class CalendarResponse(BaseModel):
    """Body of the schedule endpoint response."""

    model_config = ConfigDict(extra="ignore")

    status: int = 0
    msg: str = ""
    data: Optional[CalendarData] = None


class ScheduleBatch(BaseModel):
    """
    A validated schedule response paired with the month that was requested.

    The requested year/month is what day buckets are dated against; the
    upstream payload itself only carries day-of-month numbers.
    """

    year: int = Field(..., ge=1970, le=9999)
    month: int = Field(..., ge=1, le=12)
    days: Optional[List[CalendarDayData]] = None
    count: int = Field(default=0, ge=0)

    @classmethod
    def from_response(cls, response: CalendarResponse, year: int, month: int) -> "ScheduleBatch":
        days = response.data.list if response.data else None
        count = response.data.count if response.data else 0
        return cls(year=year, month=month, days=days, count=count)


# ---------------------------------------------------------------------------
# Stored records
# ---------------------------------------------------------------------------


class ScheduleDay(BaseModel):
    """Aggregate row for one calendar date."""

    day: int
    month: int
    year: int
    date: date
    have_activity: str = "false"
    events_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ScheduleEvent(CalendarEventData):
    """A screening as stored locally, with its derived date fields."""

    date: date
    day: int
    month: int
    year: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def decode_tags(cls, v: Any) -> Any:
        if isinstance(v, str):
            return json.loads(v) if v else []
        return [] if v is None else v

    @property
    def start_time(self) -> Optional[datetime]:
        return parse_timestamp(self.screen_start_time)

    @property
    def runtime_minutes(self) -> Optional[float]:
        """Runtime when the upstream value is a usable positive number."""
        if self.screen_time_len is None or isinstance(self.screen_time_len, bool):
            return None
        try:
            minutes = float(self.screen_time_len)
        except (TypeError, ValueError):
            return None
        if minutes != minutes or minutes <= 0:  # NaN or non-positive
            return None
        return minutes


class FetchStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class FetchLog(BaseModel):
    """Append-only audit record of a reconciliation attempt."""

    id: Optional[int] = None
    status: FetchStatus
    year: int
    month: int
    message: str = ""
    events_count: Optional[int] = None
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Venue reference tree
# ---------------------------------------------------------------------------


class Hall(BaseModel):
    name: str
    code: str
    keywords: List[str] = Field(
        ...,
        min_length=1,
        description="Substrings that must all occur in a venue description"
    )


class Venue(BaseModel):
    name: str
    code: str
    location: str = Field(..., description="Street address used as display location")
    lat: float = 0.0
    lng: float = 0.0
    halls: List[Hall] = Field(default_factory=list)


class Region(BaseModel):
    name: str
    code: str
    venues: List[Venue] = Field(default_factory=list)


class ResolvedVenue(BaseModel):
    """Outcome of matching a venue description against the reference tree."""

    region_code: str = ""
    venue_code: str = ""
    hall_code: str = ""
    location: str = ""
    lat: float = 0.0
    lon: float = 0.0

    @property
    def matched(self) -> bool:
        return bool(self.hall_code)

    @property
    def geo(self) -> Tuple[float, float]:
        return (self.lat, self.lon)


class FeedFilter(BaseModel):
    """Venue-hierarchy filter; empty components act as wildcards."""

    region_code: str = ""
    venue_code: str = ""
    hall_code: str = ""

    def accepts(self, venue: ResolvedVenue) -> bool:
        return (
            (not self.region_code or self.region_code == venue.region_code)
            and (not self.venue_code or self.venue_code == venue.venue_code)
            and (not self.hall_code or self.hall_code == venue.hall_code)
        )


# ---------------------------------------------------------------------------
# Synchronization outcome
# ---------------------------------------------------------------------------


class SyncStatus(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    FETCHING = "fetching"
    DONE = "done"
    FAILED = "failed"


class SyncResult(BaseModel):
    """Outcome of one synchronization invocation."""

    state: SyncStatus
    success: bool = False
    message: str = ""
    events_count: int = 0
    year: Optional[int] = None
    month: Optional[int] = None
