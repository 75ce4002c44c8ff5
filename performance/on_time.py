"""
On-time-performance aggregation.

For every requested service day:
  1. resolve the schedule version and running service ids,
  2. load every scheduled trip of that service with its average observed
     delay, first-seen instant and cancellation state,
  3. classify each trip and fold it into overall / per-route-direction /
     time-of-day aggregates.

Day results come from the daily cache when present; otherwise they are
computed and stored under the unfiltered base key.  Days are merged by
adding counts and concatenating delay lists, and only then turned into
percentages and delay statistics.

Metrics:
  avgObserved    mean of the delays recorded by realtime ingestion
  firstObserved  first-seen instant minus scheduled start

Canceled trips always count toward canceled_trips.  They enter the
evaluated (denominator) set as "late" only when include_canceled is set.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import FREQUENT_ROUTE_IDS, ONTIME_THRESHOLD_MINUTES
from db.models import CancellationRecord, ScheduledTrip, VehicleObservation
from errors import InvalidDateRange, NoScheduleAvailable
from performance import cache as daily_cache
from performance.cache import DailyCacheKey
from performance.stats import (
    Aggregate, DayAggregates, route_key, route_sort_key, split_route_key,
)
from schedule.calendar import ScheduleScope, is_current_service_day, iter_dates, resolve_schedule
from schedule.times import extended_seconds, hms_to_minutes, parse_hms

logger = logging.getLogger(__name__)

METRICS = ("avgObserved", "firstObserved")
FREQUENCY_FILTERS = ("frequent", "non-frequent")


@dataclass(frozen=True)
class TimeBucket:
    label: str
    start_minute: int  # inclusive, extended-range minutes
    end_minute: int    # exclusive

    def contains(self, minute: float) -> bool:
        return self.start_minute <= minute < self.end_minute


DEFAULT_TIME_BUCKETS = (
    TimeBucket("early", 0, 300),       # 00:00–05:00
    TimeBucket("morning", 300, 540),   # 05:00–09:00
    TimeBucket("midday", 540, 900),    # 09:00–15:00
    TimeBucket("evening", 900, 1140),  # 15:00–19:00
    TimeBucket("late", 1140, 1620),    # 19:00–03:00 next day
)


@dataclass(frozen=True)
class OnTimeSettings:
    threshold_minutes: int = ONTIME_THRESHOLD_MINUTES
    time_buckets: tuple[TimeBucket, ...] = DEFAULT_TIME_BUCKETS
    frequent_route_ids: frozenset[str] = FREQUENT_ROUTE_IDS

    def bucket_for(self, start_time: str | None) -> str | None:
        minute = hms_to_minutes(start_time)
        if minute is None:
            return None
        for bucket in self.time_buckets:
            if bucket.contains(minute):
                return bucket.label
        return None

    def empty_buckets(self) -> dict[str, Aggregate]:
        return {b.label: Aggregate() for b in self.time_buckets}


@dataclass
class TripRow:
    """One scheduled trip joined with what was observed of it."""
    trip_id: str
    route_id: str
    direction_id: int | None
    start_time: str | None
    avg_delay_minutes: float | None = None
    first_seen: datetime | None = None
    schedule_relationship: int | None = None

    @property
    def canceled(self) -> bool:
        return bool(self.schedule_relationship)


@dataclass
class DayResult:
    service_date: date
    aggregates: DayAggregates
    rows: list[TripRow] | None = field(default=None, repr=False)  # None when read from cache
    cached: bool = False  # stored in, or read from, the daily cache


def load_trip_rows(session: Session, scope: ScheduleScope) -> list[TripRow]:
    """Every trip of the day's service with its observations and cancellation."""
    trips = (
        session.query(
            ScheduledTrip.trip_id,
            ScheduledTrip.route_id,
            ScheduledTrip.direction_id,
            ScheduledTrip.start_time,
        )
        .filter(
            ScheduledTrip.gtfs_version == scope.version,
            ScheduledTrip.service_id.in_(list(scope.service_ids)),
        )
        .all()
    )
    if not trips:
        return []

    window = scope.service_day
    runs = {
        trip_id: (avg_delay, first_seen)
        for trip_id, avg_delay, first_seen in (
            session.query(
                VehicleObservation.trip_id,
                func.avg(VehicleObservation.delay_minutes),
                func.min(VehicleObservation.observed_at),
            )
            .filter(
                VehicleObservation.observed_at >= window.start,
                VehicleObservation.observed_at <= window.end,
                VehicleObservation.trip_id.isnot(None),
            )
            .group_by(VehicleObservation.trip_id)
            .all()
        )
    }
    cancellations = dict(
        session.query(CancellationRecord.trip_id, CancellationRecord.schedule_relationship)
        .filter(CancellationRecord.service_date == scope.service_date)
        .all()
    )

    rows = []
    for trip_id, route_id, direction_id, start_time in trips:
        avg_delay, first_seen = runs.get(trip_id, (None, None))
        rows.append(TripRow(
            trip_id=trip_id,
            route_id=route_id,
            direction_id=direction_id,
            start_time=start_time,
            avg_delay_minutes=float(avg_delay) if avg_delay is not None else None,
            first_seen=first_seen,
            schedule_relationship=cancellations.get(trip_id),
        ))
    return rows


def compute_metric(row: TripRow, metric: str, service_date: date) -> float | None:
    """Signed delay in minutes for the chosen metric; None when unobserved."""
    if metric == "avgObserved":
        return row.avg_delay_minutes
    scheduled = parse_hms(row.start_time)
    if scheduled is None or row.first_seen is None:
        return None
    return (extended_seconds(service_date, row.first_seen) - scheduled) / 60


def classify(
    row: TripRow,
    metric: str,
    service_date: date,
    threshold_minutes: float,
    include_canceled: bool,
) -> tuple[bool | None, float | None]:
    """(on_time, metric value) for one trip; on_time None means not evaluated."""
    value = compute_metric(row, metric, service_date)
    if row.canceled:
        return (False if include_canceled else None), value
    if value is None:
        return None, None
    return abs(value) <= threshold_minutes, value


def aggregate_rows(
    rows: list[TripRow],
    service_date: date,
    metric: str,
    threshold_minutes: float,
    include_canceled: bool,
    settings: OnTimeSettings,
) -> DayAggregates:
    day = DayAggregates(buckets=settings.empty_buckets())
    for row in rows:
        on_time, value = classify(row, metric, service_date, threshold_minutes, include_canceled)
        day.overall.update(on_time, row.canceled, value)
        day.routes.setdefault(route_key(row.route_id, row.direction_id), Aggregate()).update(
            on_time, row.canceled, value,
        )
        label = settings.bucket_for(row.start_time)
        if label is not None:
            day.buckets[label].update(on_time, row.canceled, value)
    return day


def compute_day(
    session: Session,
    service_date: date,
    metric: str,
    threshold_minutes: float,
    include_canceled: bool,
    settings: OnTimeSettings,
) -> DayResult | None:
    """Fresh (uncached) aggregates for one day; None when no trips are scheduled.

    Raises NoScheduleAvailable when no schedule version or service covers the day.
    """
    scope = resolve_schedule(session, service_date)
    rows = load_trip_rows(session, scope)
    if not rows:
        return None
    aggregates = aggregate_rows(rows, service_date, metric, threshold_minutes, include_canceled, settings)
    return DayResult(service_date, aggregates, rows)


def get_day(
    session: Session,
    service_date: date,
    metric: str,
    threshold_minutes: float,
    include_canceled: bool,
    settings: OnTimeSettings,
) -> DayResult | None:
    """Cached base aggregates for a finished day, computing and caching on a miss."""
    key = DailyCacheKey(service_date, metric, threshold_minutes, include_canceled)
    in_progress = is_current_service_day(service_date)
    if not in_progress:
        cached = daily_cache.get(session, key)
        if cached is not None:
            return DayResult(service_date, DayAggregates.from_payload(cached), cached=True)

    result = compute_day(session, service_date, metric, threshold_minutes, include_canceled, settings)
    if result is not None and not in_progress:
        result.cached = daily_cache.put(session, key, result.aggregates.to_payload())
    return result


def _matches_filters(
    route_id: str,
    frequency_filter: str | None,
    route_filter: str | None,
    settings: OnTimeSettings,
) -> bool:
    if route_filter and route_id != route_filter:
        return False
    if frequency_filter == "frequent":
        return route_id in settings.frequent_route_ids
    if frequency_filter == "non-frequent":
        return route_id not in settings.frequent_route_ids
    return True


def _filtered_buckets(
    session: Session,
    days: list[DayResult],
    metric: str,
    threshold_minutes: float,
    include_canceled: bool,
    frequency_filter: str | None,
    route_filter: str | None,
    settings: OnTimeSettings,
) -> dict[str, Aggregate]:
    """Time-of-day buckets restricted to matching routes.

    The cache holds only unfiltered buckets, so these are always re-derived
    from per-trip rows.  Days read from cache are reloaded from storage.
    """
    buckets = settings.empty_buckets()
    for day in days:
        rows = day.rows
        if rows is None:
            try:
                rows = load_trip_rows(session, resolve_schedule(session, day.service_date))
            except NoScheduleAvailable:
                continue
        for row in rows:
            if not _matches_filters(row.route_id, frequency_filter, route_filter, settings):
                continue
            label = settings.bucket_for(row.start_time)
            if label is None:
                continue
            on_time, value = classify(row, metric, day.service_date, threshold_minutes, include_canceled)
            buckets[label].update(on_time, row.canceled, value)
    return buckets


def compute_on_time_performance(
    session: Session,
    start: date,
    end: date | None = None,
    metric: str = "avgObserved",
    threshold_minutes: float | None = None,
    include_canceled: bool = False,
    frequency_filter: str | None = None,
    route_id: str | None = None,
    settings: OnTimeSettings | None = None,
) -> dict:
    """
    On-time performance for the inclusive range [start, end].

    Raises InvalidDateRange if end precedes start, ValueError for an unknown
    metric or frequency filter, and NoScheduleAvailable when no day in the
    range has scheduled trips.
    """
    settings = settings or OnTimeSettings()
    threshold = settings.threshold_minutes if threshold_minutes is None else threshold_minutes
    end = end or start
    route_id = (route_id or "").strip() or None
    frequency_filter = (frequency_filter or "").strip() or None
    if end < start:
        raise InvalidDateRange(f"end date {end} is before start date {start}")
    if metric not in METRICS:
        raise ValueError(f"Unknown metric {metric!r}; expected one of {METRICS}")
    if frequency_filter is not None and frequency_filter not in FREQUENCY_FILTERS:
        raise ValueError(f"Unknown frequency filter {frequency_filter!r}")

    days: list[DayResult] = []
    for service_date in iter_dates(start, end):
        try:
            result = get_day(session, service_date, metric, threshold, include_canceled, settings)
        except NoScheduleAvailable as exc:
            logger.debug("Skipping %s: %s", service_date, exc)
            continue
        if result is not None:
            days.append(result)

    if not days:
        raise NoScheduleAvailable(
            start, f"No data available for {start.isoformat()} to {end.isoformat()}",
        )

    merged = DayAggregates(buckets=settings.empty_buckets())
    for day in days:
        merged.merge(day.aggregates)

    has_filters = bool(route_id or frequency_filter)
    filtered_overall = Aggregate()
    combined: dict[str, Aggregate] = {}
    for key, agg in merged.routes.items():
        route, _ = split_route_key(key)
        combined.setdefault(route, Aggregate()).merge(agg)
        if _matches_filters(route, frequency_filter, route_id, settings):
            filtered_overall.merge(agg)

    if has_filters:
        filtered_buckets = _filtered_buckets(
            session, days, metric, threshold, include_canceled, frequency_filter, route_id, settings,
        )
    else:
        filtered_buckets = merged.buckets

    routes = []
    for key in sorted(merged.routes, key=lambda k: (route_sort_key(split_route_key(k)[0]), k)):
        route, direction = split_route_key(key)
        routes.append({"route_id": route, "direction_id": direction, **merged.routes[key].with_stats()})

    return {
        "date": start,
        "end_date": end,
        "metric": metric,
        "threshold_minutes": threshold,
        "include_canceled": include_canceled,
        "route_id": route_id,
        "frequency_filter": frequency_filter,
        "overall": (filtered_overall if has_filters else merged.overall).with_stats(),
        "route_summary": filtered_overall.with_stats() if route_id else None,
        "routes": routes,
        "routes_combined": [
            {"route_id": route, **combined[route].with_stats()}
            for route in sorted(combined, key=route_sort_key)
        ],
        "time_of_day": [{"label": label, **agg.with_stats()} for label, agg in filtered_buckets.items()],
        "route_time_of_day": (
            [{"label": label, **agg.with_stats()} for label, agg in filtered_buckets.items()]
            if route_id else None
        ),
    }
