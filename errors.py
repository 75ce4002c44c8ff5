"""
Error taxonomy shared by ingestion, analytics and tracing.

Ingestion recovers from everything except UpstreamFeedError at the
smallest scope possible (one vehicle, one trip update).  Query-facing
code lets NoScheduleAvailable / UnresolvedReference / InvalidDateRange
reach the HTTP layer, which maps them to status codes.  CacheWriteFailure
never escapes the cache module.
"""

from datetime import date


class TransitDataError(Exception):
    """Base class for every error raised by this service."""


class UpstreamFeedError(TransitDataError):
    """A GTFS-RT feed could not be fetched or decoded; the poll is abandoned."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Feed {url} unavailable: {reason}")


class NoScheduleAvailable(TransitDataError):
    """No imported schedule version covers the requested date."""

    def __init__(self, service_date: date, detail: str | None = None):
        self.service_date = service_date
        message = detail or f"No schedule data for {service_date.isoformat()}"
        super().__init__(message)


class UnresolvedReference(TransitDataError):
    """A trip, block or bus id matched nothing in the schedule or observations."""


class NoActiveBlock(UnresolvedReference):
    def __init__(self, bus_id: str, service_date: date):
        self.bus_id = bus_id
        self.service_date = service_date
        super().__init__(f"No blocks ran with bus {bus_id} on {service_date.isoformat()}")


class InvalidDateRange(TransitDataError):
    """End date before start date, or an unparsable date parameter."""


class CacheWriteFailure(TransitDataError):
    """A cache read or upsert failed.  Treated as a miss by callers."""
