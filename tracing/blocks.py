"""
Block/bus tracer.

Buses and blocks form a bipartite graph for a service day: a bus ran on a
block when it was observed on one of the block's trips.  trace_block()
starts from a block (or the first block a bus was seen on) and expands
breadth-first until every bus and block reachable from it is collected.

Each bus is expanded at most once, so cycles such as
bus A → block 1 → bus B → block 2 → bus A terminate.

Per-trip detail (by block for the tracer, by route for route details) is
derived from observations:
  - the bus is the first one seen on the trip after the scheduled start
    plus a grace period (earlier sightings may be a bus still finishing
    its previous trip),
  - actual start is that bus's first recorded time on the trip,
  - actual end and delay come from its last sighting with a next stop,
  - the trip is over when there is no next stop, the last sighting is
    stale, or the service day is not the current one.  Only then is an
    end time reported, pushed forward by the scheduled running time of
    the final stop segment.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy.orm import Session

from config import TRIP_STALE_MINUTES, TRIP_START_GRACE_MINUTES
from db.models import CancellationRecord, ScheduledTrip, StopTime, VehicleObservation
from errors import NoActiveBlock
from schedule.calendar import ScheduleScope, current_service_date, local_now, resolve_schedule
from schedule.times import add_seconds, extended_seconds, parse_hms, time_diff_seconds

logger = logging.getLogger(__name__)


@dataclass
class TripDetail:
    trip_id: str
    route_id: str
    headsign: str | None
    direction_id: int | None
    scheduled_start_time: str | None
    scheduled_end_time: str | None
    actual_start_time: str | None = None
    actual_end_time: str | None = None
    delay_minutes: float | None = None
    canceled: int | None = None  # schedule_relationship code, None when not reported
    bus_id: str | None = None
    block_id: str | None = None


def find_block_for_bus(session: Session, scope: ScheduleScope, bus_id: str) -> str:
    """Block of the first trip the bus was seen on during the service day."""
    window = scope.service_day
    first = (
        session.query(VehicleObservation.trip_id)
        .filter(
            VehicleObservation.bus_id == bus_id,
            VehicleObservation.trip_id.isnot(None),
            VehicleObservation.observed_at > window.start,
            VehicleObservation.observed_at < window.end,
        )
        .order_by(VehicleObservation.observed_at.asc())
        .first()
    )
    if first is None:
        raise NoActiveBlock(bus_id, scope.service_date)

    block = (
        session.query(ScheduledTrip.block_id)
        .filter(ScheduledTrip.trip_id == first[0], ScheduledTrip.block_id.isnot(None))
        .order_by((ScheduledTrip.gtfs_version == scope.version).desc(), ScheduledTrip.gtfs_version.desc())
        .first()
    )
    if block is None:
        raise NoActiveBlock(bus_id, scope.service_date)
    return block[0]


def blocks_for_bus(session: Session, scope: ScheduleScope, bus_id: str) -> list[str]:
    """Every block the bus touched that day, in scheduled start order."""
    window = scope.service_day
    rows = (
        session.query(ScheduledTrip.block_id)
        .join(VehicleObservation, VehicleObservation.trip_id == ScheduledTrip.trip_id)
        .filter(
            ScheduledTrip.gtfs_version == scope.version,
            ScheduledTrip.service_id.in_(list(scope.service_ids)),
            ScheduledTrip.block_id.isnot(None),
            VehicleObservation.bus_id == bus_id,
            VehicleObservation.observed_at > window.start,
            VehicleObservation.observed_at < window.end,
        )
        .order_by(ScheduledTrip.start_time.asc())
        .all()
    )
    return list(dict.fromkeys(r[0] for r in rows))


def _second_last_arrivals(session: Session, version: int, trip_ids: list[str]) -> dict[str, str]:
    """trip_id → scheduled arrival at its second-to-last stop."""
    rows = (
        session.query(StopTime.trip_id, StopTime.arrival_time)
        .filter(StopTime.gtfs_version == version, StopTime.trip_id.in_(trip_ids))
        .order_by(StopTime.trip_id, StopTime.stop_sequence.asc())
        .all()
    )
    by_trip: dict[str, list[str]] = {}
    for trip_id, arrival in rows:
        by_trip.setdefault(trip_id, []).append(arrival)
    return {trip_id: arrivals[-2] for trip_id, arrivals in by_trip.items() if len(arrivals) >= 2}


def trip_details(
    session: Session,
    scope: ScheduleScope,
    block_id: str | None = None,
    route_id: str | None = None,
    now: datetime | None = None,
    grace_minutes: int = TRIP_START_GRACE_MINUTES,
    stale_minutes: int = TRIP_STALE_MINUTES,
) -> list[TripDetail]:
    """Scheduled and observed detail for the day's trips, by scheduled start.

    Restricted to one block, one route, or both.
    """
    if not block_id and not route_id:
        raise ValueError("A block id or a route id is required")
    query = session.query(ScheduledTrip).filter(
        ScheduledTrip.gtfs_version == scope.version,
        ScheduledTrip.service_id.in_(list(scope.service_ids)),
    )
    if block_id:
        query = query.filter(ScheduledTrip.block_id == block_id)
    if route_id:
        query = query.filter(ScheduledTrip.route_id == route_id)
    trips = query.order_by(ScheduledTrip.start_time.asc()).all()
    if not trips:
        return []
    trip_ids = [t.trip_id for t in trips]

    window = scope.service_day
    observations: dict[str, list[VehicleObservation]] = {}
    for obs in (
        session.query(VehicleObservation)
        .filter(
            VehicleObservation.trip_id.in_(trip_ids),
            VehicleObservation.observed_at > window.start,
            VehicleObservation.observed_at < window.end,
        )
        .order_by(VehicleObservation.observed_at.asc())
    ):
        observations.setdefault(obs.trip_id, []).append(obs)

    cancellations = dict(
        session.query(CancellationRecord.trip_id, CancellationRecord.schedule_relationship)
        .filter(
            CancellationRecord.service_date == scope.service_date,
            CancellationRecord.trip_id.in_(trip_ids),
        )
        .all()
    )
    second_last = _second_last_arrivals(session, scope.version, trip_ids)

    now = now or local_now()
    now_seconds = extended_seconds(scope.service_date, now)
    is_today = scope.service_date == current_service_date()

    details = []
    for trip in trips:
        detail = TripDetail(
            trip_id=trip.trip_id,
            route_id=trip.route_id,
            headsign=trip.trip_headsign,
            direction_id=trip.direction_id,
            scheduled_start_time=trip.start_time,
            scheduled_end_time=trip.end_time,
            canceled=cancellations.get(trip.trip_id),
            block_id=trip.block_id,
        )
        details.append(detail)

        scheduled_start = parse_hms(trip.start_time)
        seen = observations.get(trip.trip_id, [])
        if scheduled_start is None or not seen:
            continue

        cutoff = scheduled_start + grace_minutes * 60
        first = next((o for o in seen if (parse_hms(o.recorded_time) or 0) > cutoff), None)
        if first is None:
            continue
        detail.bus_id = first.bus_id

        by_bus = [o for o in seen if o.bus_id == first.bus_id]
        detail.actual_start_time = by_bus[0].recorded_time
        with_next_stop = [o for o in by_bus if o.next_stop_id is not None]
        last_reported = with_next_stop[-1] if with_next_stop else None
        latest_next_stop = by_bus[-1].next_stop_id
        if last_reported is not None:
            detail.delay_minutes = last_reported.delay_minutes

        end_time = last_reported.recorded_time if last_reported else None
        end_seconds = parse_hms(end_time)
        stale = end_seconds is not None and now_seconds - end_seconds > stale_minutes * 60
        is_over = latest_next_stop is None or stale or not is_today
        if not is_over or end_time is None:
            continue

        detail.actual_end_time = end_time
        tail_stop = second_last.get(trip.trip_id)
        if tail_stop and trip.end_time:
            detail.actual_end_time = add_seconds(end_time, time_diff_seconds(trip.end_time, tail_stop))

    return details


def block_trip_details(session: Session, scope: ScheduleScope, block_id: str, **kwargs) -> list[TripDetail]:
    return trip_details(session, scope, block_id=block_id, **kwargs)


def route_trip_details(
    session: Session,
    service_date: date,
    route_id: str,
    now: datetime | None = None,
) -> list[TripDetail]:
    """Every trip of a route on service_date, with the bus that ran it.

    Raises NoScheduleAvailable for an unscheduled day.
    """
    scope = resolve_schedule(session, service_date)
    return trip_details(session, scope, route_id=route_id, now=now)


def trace_block(
    session: Session,
    service_date: date,
    block_id: str | None = None,
    bus_id: str | None = None,
    now: datetime | None = None,
    grace_minutes: int = TRIP_START_GRACE_MINUTES,
    stale_minutes: int = TRIP_STALE_MINUTES,
) -> dict[str, list[TripDetail]]:
    """
    Every block connected to the seed block (or bus) through shared buses,
    mapped to its trip details.

    Raises ValueError without a seed, NoScheduleAvailable for an unscheduled
    day and NoActiveBlock when a seed bus ran nothing that day.
    """
    if not block_id and not bus_id:
        raise ValueError("A block id or a bus id is required")

    scope = resolve_schedule(session, service_date)
    if not block_id:
        block_id = find_block_for_bus(session, scope, bus_id)

    blocks: dict[str, list[TripDetail]] = {}
    pending_buses: deque[str] = deque()
    expanded: set[str] = set()

    def collect(block: str) -> None:
        blocks[block] = block_trip_details(
            session, scope, block, now=now,
            grace_minutes=grace_minutes, stale_minutes=stale_minutes,
        )
        for trip in blocks[block]:
            if trip.bus_id and trip.bus_id not in expanded:
                pending_buses.append(trip.bus_id)

    collect(block_id)
    while pending_buses:
        bus = pending_buses.popleft()
        if bus in expanded:
            continue
        expanded.add(bus)
        for block in blocks_for_bus(session, scope, bus):
            if block not in blocks:
                collect(block)

    logger.debug(
        "Traced %d blocks across %d buses from block %s on %s",
        len(blocks), len(expanded), block_id, service_date,
    )
    return blocks
