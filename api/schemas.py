from __future__ import annotations
from datetime import date as Date, datetime
from typing import Literal
from pydantic import BaseModel


# ---------------------------------------------------------------------------
# GET /api/on-time-performance
# ---------------------------------------------------------------------------

class AggregateStats(BaseModel):
    total_scheduled: int
    evaluated_trips: int
    on_time_trips: int
    canceled_trips: int
    on_time_pct: float | None
    avg_delay_min: float | None
    median_delay_min: float | None
    p90_delay_min: float | None
    max_delay_min: float | None


class RouteDirectionStats(AggregateStats):
    route_id: str
    direction_id: int | None


class RouteStats(AggregateStats):
    route_id: str


class TimeOfDayStats(AggregateStats):
    label: str


class OnTimePerformanceResponse(BaseModel):
    date: Date
    end_date: Date
    metric: Literal["avgObserved", "firstObserved"]
    threshold_minutes: float
    include_canceled: bool
    route_id: str | None
    frequency_filter: Literal["frequent", "non-frequent"] | None
    overall: AggregateStats
    route_summary: AggregateStats | None
    routes: list[RouteDirectionStats]
    routes_combined: list[RouteStats]
    time_of_day: list[TimeOfDayStats]
    route_time_of_day: list[TimeOfDayStats] | None


# ---------------------------------------------------------------------------
# GET /api/block-details, /api/route-details, /api/block-cancel-count
# ---------------------------------------------------------------------------

class TripDetailResult(BaseModel):
    trip_id: str
    route_id: str
    headsign: str | None
    direction_id: int | None
    scheduled_start_time: str | None   # HH:MM:SS, may exceed 24:00:00
    scheduled_end_time: str | None     # HH:MM:SS, may exceed 24:00:00
    actual_start_time: str | None
    actual_end_time: str | None
    delay_minutes: float | None
    canceled: int | None
    bus_id: str | None
    block_id: str | None


class CancellationStreakResponse(BaseModel):
    block_id: str
    date: Date
    days_canceled: int
    all_days: bool


# ---------------------------------------------------------------------------
# GET /api/canceled, /api/active-buses
# ---------------------------------------------------------------------------

class CanceledTripResult(BaseModel):
    trip_id: str
    block_id: str | None
    headsign: str | None
    direction_id: int | None
    start_time: str | None
    end_time: str | None
    last_start_time: str | None
    next_start_time: str | None


class RouteCancellationsResult(BaseModel):
    route_id: str
    total_trips: int
    cancellations: list[CanceledTripResult]


class IdleTripResult(BaseModel):
    trip_id: str
    route_id: str
    direction_id: int | None
    headsign: str | None
    block_id: str | None
    start_time: str | None


class BusCountResponse(BaseModel):
    at: datetime
    service_date: Date
    active_buses: int
    buses_on_routes: int
    trips_scheduled: int
    trips_never_ran: int
    trips_not_running: list[IdleTripResult]


# ---------------------------------------------------------------------------
# /api/cache/*
# ---------------------------------------------------------------------------

class CacheStatsResponse(BaseModel):
    total_entries: int
    dates_with_cache: int
    oldest_cached_date: Date | None
    newest_cached_date: Date | None
    approximate_size: str


class CacheInvalidateResponse(BaseModel):
    status: Literal["ok"]
    start: Date
    end: Date
    deleted: int


# ---------------------------------------------------------------------------
# /api/schedule/*
# ---------------------------------------------------------------------------

class ScheduleVersionResponse(BaseModel):
    date: Date
    version: int
    import_date: Date


class ServiceIdsResponse(BaseModel):
    date: Date
    version: int
    service_ids: list[str]


class ServiceDayResponse(BaseModel):
    date: Date
    start: datetime
    end: datetime


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class ScheduleHealth(BaseModel):
    versions: int
    latest_version: int | None
    latest_import_date: Date | None


class RealtimeHealth(BaseModel):
    observations: int
    last_observed_at: datetime | None
    last_poll_at: datetime | None
    polling_active: bool


class JobsHealth(BaseModel):
    next_poll_at: str | None
    next_refresh_at: str | None
    next_prewarm_at: str | None


class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    service_date: Date
    schedule: ScheduleHealth
    realtime: RealtimeHealth
    cache_entries: int
    jobs: JobsHealth


# ---------------------------------------------------------------------------
# POST /ingest/*
# ---------------------------------------------------------------------------

class IngestResponse(BaseModel):
    status: Literal["ok"]
    version: int
    message: str
