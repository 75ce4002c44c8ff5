"""
Cancellations: the consecutive-day streak for a block, and the list of a
day's canceled trips with the service gap around each.

A block counts as canceled on a day only when every one of its scheduled
trips carries a cancellation.  Walking backwards from the query date:

  - a day whose (start time, route, direction) trip signature differs
    from the query day's is "unavailable" (weekend or schedule change);
    more than STREAK_MAX_UNAVAILABLE_DAYS in a row ends the walk,
  - a matching, fully canceled day extends the streak,
  - a matching day with any trip running ends the walk with a known
    boundary (all_days is False).
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta

from sqlalchemy import func
from sqlalchemy.orm import Session

from config import STREAK_MAX_LOOKBACK_DAYS, STREAK_MAX_UNAVAILABLE_DAYS
from db.models import CancellationRecord, ScheduledTrip, VehicleObservation
from errors import NoScheduleAvailable
from performance.stats import route_sort_key
from schedule.calendar import ScheduleScope, resolve_schedule
from schedule.times import parse_hms, to_extended_hms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancellationStreak:
    days_canceled: int
    all_days: bool


@dataclass(frozen=True)
class BlockTripState:
    start_time: str | None
    route_id: str
    direction_id: int | None
    schedule_relationship: int | None


def block_trip_states(session: Session, block_id: str, service_date: date) -> list[BlockTripState]:
    """The block's scheduled trips on service_date with their cancellation codes."""
    scope = resolve_schedule(session, service_date)
    trips = (
        session.query(
            ScheduledTrip.trip_id,
            ScheduledTrip.start_time,
            ScheduledTrip.route_id,
            ScheduledTrip.direction_id,
        )
        .filter(
            ScheduledTrip.gtfs_version == scope.version,
            ScheduledTrip.service_id.in_(list(scope.service_ids)),
            ScheduledTrip.block_id == block_id,
        )
        .all()
    )
    if not trips:
        return []
    cancellations = dict(
        session.query(CancellationRecord.trip_id, CancellationRecord.schedule_relationship)
        .filter(
            CancellationRecord.service_date == service_date,
            CancellationRecord.trip_id.in_([t.trip_id for t in trips]),
        )
        .all()
    )
    return [
        BlockTripState(t.start_time, t.route_id, t.direction_id, cancellations.get(t.trip_id))
        for t in trips
    ]


def _signature(states: list[BlockTripState]) -> Counter:
    return Counter((s.start_time, s.route_id, s.direction_id) for s in states)


def _fully_canceled(states: list[BlockTripState]) -> bool:
    return bool(states) and all(s.schedule_relationship for s in states)


def cancellation_streak(
    session: Session,
    block_id: str,
    service_date: date,
    max_unavailable_days: int = STREAK_MAX_UNAVAILABLE_DAYS,
    max_lookback_days: int = STREAK_MAX_LOOKBACK_DAYS,
) -> CancellationStreak:
    """Number of consecutive scheduled days, ending on service_date, the block was fully canceled."""
    try:
        initial = block_trip_states(session, block_id, service_date)
    except NoScheduleAvailable:
        return CancellationStreak(0, False)
    if not _fully_canceled(initial):
        return CancellationStreak(0, False)

    signature = _signature(initial)
    days_canceled = 1
    unavailable = 0
    days_back = 1
    while unavailable <= max_unavailable_days and days_back <= max_lookback_days:
        day = service_date - timedelta(days=days_back)
        days_back += 1
        try:
            states = block_trip_states(session, block_id, day)
        except NoScheduleAvailable:
            states = []

        if _signature(states) != signature:
            unavailable += 1
        elif _fully_canceled(states):
            days_canceled += 1
            unavailable = 0
        else:
            logger.debug("Block %s ran on %s; streak is %d days.", block_id, day, days_canceled)
            return CancellationStreak(days_canceled, all_days=False)

    return CancellationStreak(days_canceled, all_days=True)


# ---------------------------------------------------------------------------
# Canceled trips of a service day
# ---------------------------------------------------------------------------

# Start-time windows, inclusive, on the extended clock.
TIME_PERIODS = {
    "allday": ("00:00:00", "48:00:00"),
    "morning": ("05:00:00", "09:00:00"),
    "afternoon": ("15:00:00", "19:00:00"),
}
# A neighbouring trip must have been seen at least this often to count as run.
NEIGHBOUR_MIN_SIGHTINGS = 6


@dataclass
class CanceledTrip:
    trip_id: str
    block_id: str | None
    headsign: str | None
    direction_id: int | None
    start_time: str | None
    end_time: str | None
    last_start_time: str | None   # first sighting of the previous run trip, same route and direction
    next_start_time: str | None   # first sighting of the next run trip


@dataclass
class RouteCancellations:
    route_id: str
    total_trips: int
    cancellations: list[CanceledTrip] = field(default_factory=list)


def _first_sightings(session: Session, scope: ScheduleScope, trip_ids: list[str]) -> dict[str, str]:
    """trip_id → extended-clock time of its first sighting, for trips seen often enough."""
    window = scope.service_day
    rows = (
        session.query(
            VehicleObservation.trip_id,
            func.count(),
            func.min(VehicleObservation.observed_at),
        )
        .filter(
            VehicleObservation.trip_id.in_(trip_ids),
            VehicleObservation.observed_at > window.start,
            VehicleObservation.observed_at < window.end,
        )
        .group_by(VehicleObservation.trip_id)
        .all()
    )
    return {
        trip_id: to_extended_hms(scope.service_date, first_seen)
        for trip_id, sightings, first_seen in rows
        if sightings >= NEIGHBOUR_MIN_SIGHTINGS
    }


def list_cancellations(
    session: Session,
    service_date: date,
    time_period: str = "allday",
) -> list[RouteCancellations]:
    """
    Canceled trips starting within time_period, grouped by route.

    Each cancellation carries the first sighting of the nearest run trip
    before and after it on the same route and direction, so the size of
    the resulting service gap can be read off directly.

    Raises ValueError for an unknown period and NoScheduleAvailable for an
    unscheduled day.
    """
    if time_period not in TIME_PERIODS:
        raise ValueError(f"Unknown time period {time_period!r}; expected one of {tuple(TIME_PERIODS)}")
    low, high = (parse_hms(t) for t in TIME_PERIODS[time_period])

    scope = resolve_schedule(session, service_date)
    trips = (
        session.query(ScheduledTrip)
        .filter(
            ScheduledTrip.gtfs_version == scope.version,
            ScheduledTrip.service_id.in_(list(scope.service_ids)),
        )
        .all()
    )
    starts = {t.trip_id: parse_hms(t.start_time) for t in trips}
    in_period = [t for t in trips if starts[t.trip_id] is not None and low <= starts[t.trip_id] <= high]

    canceled_ids = {
        row[0] for row in (
            session.query(CancellationRecord.trip_id)
            .filter(
                CancellationRecord.service_date == service_date,
                CancellationRecord.schedule_relationship.isnot(None),
            )
        )
    }
    canceled = [t for t in in_period if t.trip_id in canceled_ids]
    if not canceled:
        return []

    routes = {t.route_id for t in canceled}
    route_trips = [t for t in trips if t.route_id in routes and starts[t.trip_id] is not None]
    route_trips.sort(key=lambda t: starts[t.trip_id])
    first_seen = _first_sightings(session, scope, [t.trip_id for t in route_trips])

    by_route: dict[str, RouteCancellations] = {}
    for trip in sorted(canceled, key=lambda t: starts[t.trip_id]):
        start = starts[trip.trip_id]
        run = [
            t for t in route_trips
            if t.direction_id == trip.direction_id and t.route_id == trip.route_id and t.trip_id in first_seen
        ]
        before = [t for t in run if starts[t.trip_id] < start]
        after = [t for t in run if starts[t.trip_id] > start]
        group = by_route.get(trip.route_id)
        if group is None:
            total = sum(1 for t in in_period if t.route_id == trip.route_id)
            group = by_route[trip.route_id] = RouteCancellations(trip.route_id, total)
        group.cancellations.append(CanceledTrip(
            trip_id=trip.trip_id,
            block_id=trip.block_id,
            headsign=trip.trip_headsign,
            direction_id=trip.direction_id,
            start_time=trip.start_time,
            end_time=trip.end_time,
            last_start_time=first_seen[before[-1].trip_id] if before else None,
            next_start_time=first_seen[after[0].trip_id] if after else None,
        ))

    return [by_route[route] for route in sorted(by_route, key=route_sort_key)]
