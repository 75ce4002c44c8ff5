"""
Fleet activity at one instant.

Compares the buses reporting around an instant with the trips the
schedule says should be under way at that moment:

  active_buses       distinct buses seen within ±ACTIVE_WINDOW_MINUTES
  buses_on_routes    of those, buses assigned to a trip
  trips_scheduled    revenue trips whose start < instant < end
  trips_not_running  scheduled trips with no bus reporting them in the window
  trips_never_ran    scheduled trips with no sighting all service day
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from sqlalchemy.orm import Session

from db.models import ScheduledTrip, VehicleObservation
from ingestion.gtfs_realtime import is_revenue_route
from schedule.calendar import date_from_timestamp, local_now, resolve_schedule, to_local
from schedule.times import extended_seconds, parse_hms

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_MINUTES = 2


@dataclass
class IdleTrip:
    trip_id: str
    route_id: str
    direction_id: int | None
    headsign: str | None
    block_id: str | None
    start_time: str | None


@dataclass
class BusCount:
    at: datetime
    service_date: date
    active_buses: int = 0
    buses_on_routes: int = 0
    trips_scheduled: int = 0
    trips_never_ran: int = 0
    trips_not_running: list[IdleTrip] = field(default_factory=list)


def _under_way(trip: ScheduledTrip, instant: float) -> bool:
    start, end = parse_hms(trip.start_time), parse_hms(trip.end_time)
    return start is not None and end is not None and start < instant < end


def bus_count(
    session: Session,
    at: datetime | None = None,
    window_minutes: int = ACTIVE_WINDOW_MINUTES,
) -> BusCount:
    """
    Reconcile reporting buses against trips scheduled to be running at `at`.

    Raises NoScheduleAvailable when no schedule covers the instant's service day.
    """
    at = to_local(at) if at is not None else local_now()
    service_date = date_from_timestamp(at)
    scope = resolve_schedule(session, service_date)
    result = BusCount(at=at, service_date=service_date)

    margin = timedelta(minutes=window_minutes)
    sightings = (
        session.query(VehicleObservation.bus_id, VehicleObservation.trip_id)
        .filter(
            VehicleObservation.observed_at > at - margin,
            VehicleObservation.observed_at < at + margin,
        )
        .distinct()
        .all()
    )
    result.active_buses = len({bus for bus, _ in sightings})
    result.buses_on_routes = len({bus for bus, trip in sightings if trip is not None})
    reporting_trips = {trip for _, trip in sightings if trip is not None}

    instant = extended_seconds(service_date, at)
    scheduled = [
        trip for trip in (
            session.query(ScheduledTrip)
            .filter(
                ScheduledTrip.gtfs_version == scope.version,
                ScheduledTrip.service_id.in_(list(scope.service_ids)),
            )
            .order_by(ScheduledTrip.start_time.asc())
        )
        if is_revenue_route(trip.route_id) and _under_way(trip, instant)
    ]
    result.trips_scheduled = len(scheduled)
    if not scheduled:
        return result

    window = scope.service_day
    ran_today = {
        row[0] for row in (
            session.query(VehicleObservation.trip_id)
            .filter(
                VehicleObservation.trip_id.in_([t.trip_id for t in scheduled]),
                VehicleObservation.observed_at > window.start,
                VehicleObservation.observed_at < window.end,
            )
            .distinct()
        )
    }
    result.trips_never_ran = sum(1 for t in scheduled if t.trip_id not in ran_today)
    result.trips_not_running = [
        IdleTrip(
            trip_id=t.trip_id,
            route_id=t.route_id,
            direction_id=t.direction_id,
            headsign=t.trip_headsign,
            block_id=t.block_id,
            start_time=t.start_time,
        )
        for t in scheduled
        if t.trip_id not in reporting_trips
    ]
    logger.debug(
        "Bus count at %s: %d active, %d of %d scheduled trips not running",
        at, result.active_buses, len(result.trips_not_running), result.trips_scheduled,
    )
    return result
