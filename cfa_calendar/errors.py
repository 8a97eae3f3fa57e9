"""
Exception types raised across the CFA calendar service.

Every failure that can cross a component boundary derives from
CalendarSyncError so the invocation boundary (web handler or scheduled
run) can translate it into a structured response.
"""


class CalendarSyncError(Exception):
    """Base class for all service errors."""


class UpstreamFetchFailure(CalendarSyncError):
    """Network error or timeout while talking to the upstream API."""


class StorageFailure(CalendarSyncError):
    """A statement against local storage failed."""


class EncodingFailure(CalendarSyncError):
    """The calendar encoder rejected the assembled entries."""
