"""
Venue resolution against the region -> venue -> hall reference tree.

Upstream listings describe where a screening happens as free text
(e.g. "小西天艺术影院 2号厅"). The resolver walks the reference tree in
declaration order and returns the first hall whose keywords all occur in
that text, so ordering inside the table decides ambiguous matches.
"""

import logging
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional
from typing import Tuple

from cfa_calendar.models import FeedFilter
from cfa_calendar.models import Hall
from cfa_calendar.models import Region
from cfa_calendar.models import ResolvedVenue
from cfa_calendar.models import Venue

logger = logging.getLogger(__name__)


DEFAULT_REGIONS: List[Region] = [
    Region(
        name="北京市",
        code="beijing",
        venues=[
            Venue(
                name="小西天",
                code="xiaoxitian",
                location="海淀区文慧园路 3 号小西天艺术影院",
                lat=39.952908,
                lng=116.369569,
                halls=[
                    Hall(name="1号厅", code="1", keywords=["小西天", "1"]),
                    Hall(name="2号厅", code="2", keywords=["小西天", "2"]),
                ],
            ),
            Venue(
                name="百子湾",
                code="baiziwan",
                location="北京市朝阳区百子湾南二路 2 号百子湾艺术影院",
                lat=39.896749,
                lng=116.511986,
                halls=[
                    Hall(name="1 号厅", code="1", keywords=["百子湾", "1"]),
                ],
            ),
        ],
    ),
    Region(
        name="苏州市",
        code="suzhou",
        venues=[
            Venue(
                name="江南分馆",
                code="jiangnan",
                location="苏州市姑苏区景德路 523 号长船湾青年码头东岸中国电影资料馆江南分馆",
                lat=31.309049,
                lng=120.607034,
                halls=[
                    Hall(name="1 号厅", code="1", keywords=["江南", "1"]),
                    Hall(name="2 号厅", code="2", keywords=["江南", "2"]),
                    Hall(name="3 号厅", code="3", keywords=["江南", "3"]),
                    Hall(name="4 号厅", code="4", keywords=["江南", "4"]),
                ],
            ),
        ],
    ),
]


class VenueResolver:
    """
    First-match-wins keyword resolver over an injected reference tree.

    The resolver holds no mutable state; one instance can serve any
    number of lookups. Subclasses may override `iter_halls` or `matches`
    to change traversal order or the matching rule without touching
    callers.
    """

    def __init__(self, regions: Optional[Iterable[Region]] = None) -> None:
        self.regions: Tuple[Region, ...] = tuple(DEFAULT_REGIONS if regions is None else regions)

    def iter_halls(self) -> Iterator[Tuple[Region, Venue, Hall]]:
        """Yield every hall with its parents in reference-table order."""
        for region in self.regions:
            for venue in region.venues:
                for hall in venue.halls:
                    yield region, venue, hall

    @staticmethod
    def matches(hall: Hall, text: str) -> bool:
        return all(keyword in text for keyword in hall.keywords)

    def resolve(self, text: str) -> ResolvedVenue:
        """
        Resolve a free-text venue description.

        Args:
            text: Venue description as published upstream

        Returns:
            ResolvedVenue with codes and geo of the first matching hall, or
            empty codes, zero geo and the original text as location when
            nothing matches
        """
        text = text or ""
        for region, venue, hall in self.iter_halls():
            if self.matches(hall, text):
                return ResolvedVenue(
                    region_code=region.code,
                    venue_code=venue.code,
                    hall_code=hall.code,
                    location=region.name + venue.location + hall.name,
                    lat=venue.lat,
                    lon=venue.lng,
                )

        logger.debug(f"No venue matched description: {text!r}")
        return ResolvedVenue(location=text)

    def region_name(self, code: str) -> str:
        for region in self.regions:
            if region.code == code:
                return region.name
        return ""

    def venue_name(self, code: str) -> str:
        for region in self.regions:
            for venue in region.venues:
                if venue.code == code:
                    return venue.name
        return ""

    def hall_name(self, code: str, venue_code: str = "") -> str:
        # Hall codes repeat across venues; scope by venue when known.
        for _, venue, hall in self.iter_halls():
            if venue_code and venue.code != venue_code:
                continue
            if hall.code == code:
                return hall.name
        return ""

    def feed_title(self, feed_filter: FeedFilter, default: str = "CFA Calendar") -> str:
        """Human-readable calendar name for a venue filter."""
        parts = []
        if feed_filter.region_code:
            parts.append(self.region_name(feed_filter.region_code))
        if feed_filter.venue_code:
            parts.append(self.venue_name(feed_filter.venue_code))
        if feed_filter.hall_code:
            parts.append(self.hall_name(feed_filter.hall_code, feed_filter.venue_code))

        title = " ".join(part for part in parts if part)
        return title or default
