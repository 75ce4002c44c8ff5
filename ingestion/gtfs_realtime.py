"""
Polls the agency's GTFS-Realtime feeds and reconciles each vehicle
against the versioned static schedule.

One poll cycle:
  1. Fetch the vehicle-positions and trip-updates feeds concurrently.
     Either failing (transport, HTTP status, protobuf decode) raises
     UpstreamFeedError and nothing from this cycle is written.
  2. For every vehicle entity with an id and a position:
       - resolve placeholder trip ids to real scheduled trips,
       - correlate the trip update's first stop prediction with the
         static stop_times table to get a delay in minutes,
       - append a VehicleObservation,
       - record a TripStart the first time a revenue trip is seen.
  3. Record trip updates flagged CANCELED.
  4. Commit once.

Per-entity misses (unmatched placeholder, no stop-time correlation, no
block for a trip) degrade that entity's fields to NULL and are logged;
they never abort the poll.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime

import httpx
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2
from sqlalchemy.orm import Session

from config import (
    GTFS_RT_API_KEY,
    GTFS_RT_API_KEY_HEADER,
    GTFS_RT_TIMEOUT_SECONDS,
    GTFS_RT_TRIP_UPDATES_URL,
    GTFS_RT_VEHICLE_POSITIONS_URL,
    PLACEHOLDER_TRIP_ID_CEILING,
    REVENUE_ROUTE_CEILING,
)
from db.models import CancellationRecord, ScheduledTrip, StopTime, TripStart, VehicleObservation
from errors import NoScheduleAvailable, UpstreamFeedError
from schedule.calendar import (
    current_service_date,
    from_posix,
    local_now,
    resolve_service_ids,
    resolve_version,
)
from schedule.times import extended_seconds, hms_to_minutes, normalize_hms, to_extended_hms

logger = logging.getLogger(__name__)

# TripDescriptor.ScheduleRelationship.CANCELED
CANCELED = gtfs_realtime_pb2.TripDescriptor.CANCELED

_last_polled_at: datetime | None = None


# ---------------------------------------------------------------------------
# Trip id resolution outcome
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Resolved:
    trip_id: str


@dataclass(frozen=True)
class Unresolved:
    raw_id: str


TripResolution = Resolved | Unresolved


def stored_trip_id(resolution: TripResolution | None) -> str | None:
    """Value persisted in vehicle_observations.trip_id."""
    if resolution is None:
        return None
    if isinstance(resolution, Resolved):
        return resolution.trip_id
    return resolution.raw_id


# ---------------------------------------------------------------------------
# Decoded feed snapshots
# ---------------------------------------------------------------------------

@dataclass
class VehicleSnapshot:
    bus_id: str
    latitude: float
    longitude: float
    speed: float | None = None
    trip_id: str | None = None
    route_id: str | None = None
    start_time: str | None = None   # HH:MM:SS as reported by the feed
    start_date: str | None = None   # YYYYMMDD as reported by the feed
    timestamp: int | None = None    # POSIX seconds


@dataclass
class StopPrediction:
    stop_id: str
    stop_sequence: int
    arrival_time: int  # POSIX seconds


@dataclass
class CancellationSnapshot:
    trip_id: str
    route_id: str | None
    start_time: str | None
    start_date: str | None
    schedule_relationship: int


@dataclass
class DelayInfo:
    delay_minutes: float
    next_stop_id: str


@dataclass
class PollResult:
    polled_at: datetime
    observations: int = 0
    unresolved_trips: int = 0
    delays_computed: int = 0
    trip_starts: int = 0
    cancellations: int = 0
    skipped_trip_starts: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Fetch + decode
# ---------------------------------------------------------------------------

async def fetch_feed(client: httpx.AsyncClient, url: str) -> gtfs_realtime_pb2.FeedMessage:
    """Fetch and decode one GTFS-RT protobuf feed, raising UpstreamFeedError."""
    if not url:
        raise UpstreamFeedError(url, "feed URL is not configured")
    headers = {"Accept": "application/x-protobuf"}
    if GTFS_RT_API_KEY:
        headers[GTFS_RT_API_KEY_HEADER] = GTFS_RT_API_KEY
    try:
        response = await client.get(url, headers=headers)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise UpstreamFeedError(url, f"HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise UpstreamFeedError(url, str(exc) or exc.__class__.__name__) from exc
    return decode_feed(url, response.content)


def decode_feed(url: str, payload: bytes) -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(payload)
    except DecodeError as exc:
        raise UpstreamFeedError(url, f"undecodable payload: {exc}") from exc
    return feed


async def fetch_feeds(
    vehicle_positions_url: str = GTFS_RT_VEHICLE_POSITIONS_URL,
    trip_updates_url: str = GTFS_RT_TRIP_UPDATES_URL,
) -> tuple[gtfs_realtime_pb2.FeedMessage, gtfs_realtime_pb2.FeedMessage]:
    """Fetch both feeds as one unit; any failure fails the pair."""
    async with httpx.AsyncClient(timeout=GTFS_RT_TIMEOUT_SECONDS) as client:
        positions, updates = await asyncio.gather(
            fetch_feed(client, vehicle_positions_url),
            fetch_feed(client, trip_updates_url),
        )
    return positions, updates


def parse_vehicle_positions(feed: gtfs_realtime_pb2.FeedMessage) -> list[VehicleSnapshot]:
    """Vehicle entities that carry both a vehicle id and a position."""
    vehicles: list[VehicleSnapshot] = []
    for entity in feed.entity:
        if not entity.HasField("vehicle"):
            continue
        vp = entity.vehicle
        if not vp.HasField("vehicle") or not vp.vehicle.id or not vp.HasField("position"):
            continue
        trip = vp.trip if vp.HasField("trip") else None
        vehicles.append(VehicleSnapshot(
            bus_id=vp.vehicle.id,
            latitude=vp.position.latitude,
            longitude=vp.position.longitude,
            speed=vp.position.speed if vp.position.HasField("speed") and vp.position.speed else None,
            trip_id=trip.trip_id or None if trip is not None else None,
            route_id=trip.route_id or None if trip is not None else None,
            start_time=trip.start_time or None if trip is not None else None,
            start_date=trip.start_date or None if trip is not None else None,
            timestamp=vp.timestamp if vp.HasField("timestamp") else None,
        ))
    return vehicles


def parse_stop_predictions(feed: gtfs_realtime_pb2.FeedMessage) -> dict[str, StopPrediction | None]:
    """First stop-time prediction per (as-reported) trip id.

    The first trip-update entity carrying stop_time_updates wins.  A trip
    whose first update lacks a stop id, sequence or arrival time maps to
    None: its delay is unknown, not zero.
    """
    predictions: dict[str, StopPrediction | None] = {}
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        tu = entity.trip_update
        trip_id = tu.trip.trip_id
        if not trip_id or not tu.stop_time_update or trip_id in predictions:
            continue
        first = tu.stop_time_update[0]
        arrival = first.arrival.time if first.HasField("arrival") else 0
        if not first.stop_id or not first.stop_sequence or not arrival:
            predictions[trip_id] = None
            continue
        predictions[trip_id] = StopPrediction(
            stop_id=first.stop_id,
            stop_sequence=first.stop_sequence,
            arrival_time=arrival,
        )
    return predictions


def parse_cancellations(feed: gtfs_realtime_pb2.FeedMessage) -> list[CancellationSnapshot]:
    cancellations: list[CancellationSnapshot] = []
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        trip = entity.trip_update.trip
        if not trip.trip_id or trip.schedule_relationship != CANCELED:
            continue
        cancellations.append(CancellationSnapshot(
            trip_id=trip.trip_id,
            route_id=trip.route_id or None,
            start_time=trip.start_time or None,
            start_date=trip.start_date or None,
            schedule_relationship=trip.schedule_relationship,
        ))
    return cancellations


# ---------------------------------------------------------------------------
# Reconciliation helpers
# ---------------------------------------------------------------------------

def parse_start_date(value: str | None) -> date | None:
    """GTFS-RT start_date (YYYYMMDD) → date."""
    if not value or len(value) != 8 or not value.isdigit():
        return None
    try:
        return date(int(value[:4]), int(value[4:6]), int(value[6:]))
    except ValueError:
        return None


def is_placeholder_trip_id(trip_id: str, ceiling: int = PLACEHOLDER_TRIP_ID_CEILING) -> bool:
    """Synthetic ids are integers at or below the vendor's ceiling (e.g. "-42")."""
    try:
        return int(trip_id) <= ceiling
    except ValueError:
        return False


def is_revenue_route(route_id: str | None, ceiling: int = REVENUE_ROUTE_CEILING) -> bool:
    if not route_id:
        return False
    try:
        return int(route_id) < ceiling
    except ValueError:
        return False


def resolve_trip_id(
    session: Session,
    raw_trip_id: str,
    route_id: str | None,
    start_time: str | None,
    service_ids: set[str] | frozenset[str],
    ceiling: int = PLACEHOLDER_TRIP_ID_CEILING,
) -> TripResolution:
    """Map a feed trip id onto a scheduled trip id.

    Real ids pass through.  Placeholders are matched on (route, scheduled
    start) among the day's service ids, newest schedule version first;
    an unmatched placeholder is kept verbatim as Unresolved.
    """
    if not is_placeholder_trip_id(raw_trip_id, ceiling):
        return Resolved(raw_trip_id)

    start = normalize_hms(start_time)
    if not route_id or start is None or not service_ids:
        return Unresolved(raw_trip_id)

    match = (
        session.query(ScheduledTrip.trip_id)
        .filter(
            ScheduledTrip.route_id == route_id,
            ScheduledTrip.start_time == start,
            ScheduledTrip.service_id.in_(list(service_ids)),
        )
        .order_by(ScheduledTrip.gtfs_version.desc())
        .first()
    )
    if match is None:
        return Unresolved(raw_trip_id)
    return Resolved(match[0])


def feed_time_to_extended(service_date: date, timestamp: int) -> str:
    """Render a feed timestamp as HH:MM:SS on service_date's extended clock.

    A timestamp falling on the calendar day after service_date gets 24
    added to its hour so it compares directly with schedule times.
    """
    return to_extended_hms(service_date, from_posix(timestamp))


def compute_delay(
    session: Session,
    prediction: StopPrediction | None,
    trip_id: str,
    service_date: date,
) -> DelayInfo | None:
    """Predicted arrival minus scheduled arrival, in minutes.

    None when either the prediction or its stop_times counterpart is missing.
    """
    if prediction is None:
        return None
    scheduled = (
        session.query(StopTime.arrival_time)
        .filter(
            StopTime.trip_id == trip_id,
            StopTime.stop_id == prediction.stop_id,
            StopTime.stop_sequence == prediction.stop_sequence,
        )
        .order_by(StopTime.gtfs_version.desc())
        .first()
    )
    if scheduled is None:
        return None
    scheduled_minutes = hms_to_minutes(scheduled[0])
    if scheduled_minutes is None:
        return None
    predicted_minutes = extended_seconds(service_date, from_posix(prediction.arrival_time)) / 60
    return DelayInfo(
        delay_minutes=predicted_minutes - scheduled_minutes,
        next_stop_id=prediction.stop_id,
    )


def record_trip_start(
    session: Session,
    service_date: date,
    trip_id: str,
    bus_id: str,
    recorded_time: str,
    scheduled_start_time: str | None,
) -> TripStart | None:
    """Insert the (service_date, trip_id) start marker unless it already exists."""
    existing = session.get(TripStart, (service_date, trip_id))
    if existing is not None:
        return None

    trip = (
        session.query(ScheduledTrip)
        .filter(ScheduledTrip.trip_id == trip_id)
        .order_by(ScheduledTrip.gtfs_version.desc())
        .first()
    )
    if trip is None:
        logger.warning("No block data found for trip %s; start not recorded.", trip_id)
        return None

    logger.debug("Bus %s started trip %s (block %s).", bus_id, trip_id, trip.block_id)
    start = TripStart(
        service_date=service_date,
        trip_id=trip_id,
        bus_id=bus_id,
        block_id=trip.block_id,
        route_id=trip.route_id,
        direction_id=trip.direction_id,
        start_time=recorded_time,
        scheduled_start_time=normalize_hms(scheduled_start_time) or trip.start_time,
    )
    session.add(start)
    # Later vehicles in the same poll must see this row.
    session.flush()
    return start


def record_cancellation(
    session: Session,
    service_date: date,
    trip_id: str,
    schedule_relationship: int,
) -> bool:
    """Upsert a cancellation marker; returns True when a row was written."""
    existing = session.get(CancellationRecord, (service_date, trip_id))
    if existing is not None:
        if existing.schedule_relationship == schedule_relationship:
            return False
        existing.schedule_relationship = schedule_relationship
        existing.reported_at = local_now()
        return True
    session.add(CancellationRecord(
        service_date=service_date,
        trip_id=trip_id,
        schedule_relationship=schedule_relationship,
        reported_at=local_now(),
    ))
    session.flush()
    return True


class _ServiceIdLookup:
    """Per-poll memo of service ids by service date."""

    def __init__(self, session: Session):
        self._session = session
        self._by_date: dict[date, frozenset[str]] = {}

    def __call__(self, service_date: date) -> frozenset[str]:
        if service_date not in self._by_date:
            try:
                version = resolve_version(self._session, service_date)
                ids = frozenset(resolve_service_ids(self._session, version.version, service_date))
            except NoScheduleAvailable:
                logger.warning("No schedule for %s; placeholder trip ids stay unresolved.", service_date)
                ids = frozenset()
            self._by_date[service_date] = ids
        return self._by_date[service_date]


# ---------------------------------------------------------------------------
# Poll cycle
# ---------------------------------------------------------------------------

def process_feeds(
    session: Session,
    positions_feed: gtfs_realtime_pb2.FeedMessage,
    trip_updates_feed: gtfs_realtime_pb2.FeedMessage,
    polled_at: datetime | None = None,
) -> PollResult:
    """Reconcile decoded feeds against the schedule and stage all writes.

    The caller owns the transaction.
    """
    polled_at = polled_at or local_now()
    result = PollResult(polled_at=polled_at)
    today = current_service_date()
    service_ids_for = _ServiceIdLookup(session)
    predictions = parse_stop_predictions(trip_updates_feed)

    seen_buses: set[str] = set()
    for vehicle in parse_vehicle_positions(positions_feed):
        # vehicle_observations is keyed on (observed_at, bus_id)
        if vehicle.bus_id in seen_buses:
            continue
        seen_buses.add(vehicle.bus_id)

        service_date = parse_start_date(vehicle.start_date) or today
        reported_at = from_posix(vehicle.timestamp) if vehicle.timestamp else polled_at
        recorded_time = to_extended_hms(service_date, reported_at)

        resolution: TripResolution | None = None
        delay: DelayInfo | None = None
        if vehicle.trip_id:
            resolution = resolve_trip_id(
                session,
                vehicle.trip_id,
                vehicle.route_id,
                vehicle.start_time,
                service_ids_for(service_date),
            )
            if isinstance(resolution, Unresolved):
                result.unresolved_trips += 1
                logger.warning(
                    "Unresolved placeholder trip %s (route %s, start %s) on bus %s.",
                    resolution.raw_id, vehicle.route_id, vehicle.start_time, vehicle.bus_id,
                )
            else:
                # Trip updates are keyed by the id the feed reported, not the resolved one.
                delay = compute_delay(
                    session, predictions.get(vehicle.trip_id), resolution.trip_id, service_date,
                )
                if delay is not None:
                    result.delays_computed += 1

        session.add(VehicleObservation(
            observed_at=polled_at,
            bus_id=vehicle.bus_id,
            trip_id=stored_trip_id(resolution),
            delay_minutes=delay.delay_minutes if delay else None,
            latitude=vehicle.latitude,
            longitude=vehicle.longitude,
            speed=vehicle.speed,
            recorded_time=recorded_time,
            next_stop_id=delay.next_stop_id if delay else None,
        ))
        result.observations += 1

        if isinstance(resolution, Resolved) and is_revenue_route(vehicle.route_id):
            started = record_trip_start(
                session,
                service_date,
                resolution.trip_id,
                vehicle.bus_id,
                recorded_time,
                vehicle.start_time,
            )
            if started is not None:
                result.trip_starts += 1

    for cancellation in parse_cancellations(trip_updates_feed):
        service_date = parse_start_date(cancellation.start_date) or today
        resolution = resolve_trip_id(
            session,
            cancellation.trip_id,
            cancellation.route_id,
            cancellation.start_time,
            service_ids_for(service_date),
        )
        if isinstance(resolution, Unresolved):
            logger.warning("Cancellation for unresolved trip %s skipped.", resolution.raw_id)
            continue
        if record_cancellation(
            session, service_date, resolution.trip_id, cancellation.schedule_relationship,
        ):
            result.cancellations += 1

    return result


async def poll_realtime(
    session: Session,
    vehicle_positions_url: str = GTFS_RT_VEHICLE_POSITIONS_URL,
    trip_updates_url: str = GTFS_RT_TRIP_UPDATES_URL,
) -> PollResult:
    """One full poll cycle.  Raises UpstreamFeedError before any write."""
    global _last_polled_at
    positions, updates = await fetch_feeds(vehicle_positions_url, trip_updates_url)
    polled_at = local_now()
    logger.debug("Fetched GTFS-RT feeds at %s", polled_at.isoformat())
    try:
        result = process_feeds(session, positions, updates, polled_at)
        session.commit()
    except Exception:
        session.rollback()
        raise
    _last_polled_at = polled_at
    logger.info(
        "GTFS-RT poll: %d observations, %d delays, %d unresolved, %d trip starts, %d cancellations.",
        result.observations, result.delays_computed, result.unresolved_trips,
        result.trip_starts, result.cancellations,
    )
    return result


def get_last_polled_at() -> datetime | None:
    """Local time of the last successfully committed poll, or None."""
    return _last_polled_at
