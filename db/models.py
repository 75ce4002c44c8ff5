"""
SQLAlchemy ORM models for the versioned static schedule, the realtime
observation store and the on-time-performance cache.

Schedule tables are keyed by gtfs_version and are never updated after
import: a new GTFS feed produces a new version.

Extended-range time fields (start_time, end_time, arrival_time,
departure_time, recorded_time) are stored as zero-padded HH:MM:SS strings
because they may exceed 24:00:00 for trips crossing midnight.  Zero
padding keeps lexical order identical to chronological order.

Observation instants are naive datetimes in the agency's local time.
"""

from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, Column, Date, DateTime, Float, Index, Integer, String,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class ScheduleVersion(Base):
    __tablename__ = "schedule_versions"

    version = Column(Integer, primary_key=True)
    import_date = Column(Date, nullable=False, index=True)


class ScheduledTrip(Base):
    """One row of trips.txt enriched with its first/last departure."""
    __tablename__ = "scheduled_trips"

    gtfs_version = Column(Integer, primary_key=True)
    trip_id = Column(String, primary_key=True)
    route_id = Column(String, nullable=False)
    service_id = Column(String, nullable=False)
    trip_headsign = Column(String)
    direction_id = Column(Integer)
    block_id = Column(String)
    shape_id = Column(String)
    start_time = Column(String)  # HH:MM:SS (may exceed 24:00:00)
    end_time = Column(String)    # HH:MM:SS (may exceed 24:00:00)

    __table_args__ = (
        Index("ix_scheduled_trips_block", "gtfs_version", "service_id", "block_id"),
        Index("ix_scheduled_trips_route", "gtfs_version", "service_id", "route_id"),
        Index("ix_scheduled_trips_trip_block", "trip_id", "block_id"),
    )


class CalendarEntry(Base):
    __tablename__ = "calendar"

    gtfs_version = Column(Integer, primary_key=True)
    service_id = Column(String, primary_key=True)
    monday = Column(Boolean, nullable=False, default=False)
    tuesday = Column(Boolean, nullable=False, default=False)
    wednesday = Column(Boolean, nullable=False, default=False)
    thursday = Column(Boolean, nullable=False, default=False)
    friday = Column(Boolean, nullable=False, default=False)
    saturday = Column(Boolean, nullable=False, default=False)
    sunday = Column(Boolean, nullable=False, default=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)


class CalendarException(Base):
    __tablename__ = "calendar_dates"

    gtfs_version = Column(Integer, primary_key=True)
    service_id = Column(String, primary_key=True)
    date = Column(Date, primary_key=True)
    exception_type = Column(Integer, nullable=False)  # 1 = added, anything else = removed


class StopTime(Base):
    __tablename__ = "stop_times"

    gtfs_version = Column(Integer, primary_key=True)
    trip_id = Column(String, primary_key=True)
    stop_id = Column(String, primary_key=True)
    stop_sequence = Column(Integer, primary_key=True)
    arrival_time = Column(String)    # HH:MM:SS (may exceed 24:00:00)
    departure_time = Column(String)  # HH:MM:SS (may exceed 24:00:00)
    distance_traveled = Column(Float)
    timepoint = Column(Integer)

    __table_args__ = (Index("ix_stop_times_trip_arrival", "trip_id", "arrival_time"),)


class VehicleObservation(Base):
    """One position report per bus per feed poll.  Append-only."""
    __tablename__ = "vehicle_observations"

    observed_at = Column(DateTime, primary_key=True)
    bus_id = Column(String, primary_key=True)
    trip_id = Column(String, nullable=True)   # NULL when the feed reported no trip
    delay_minutes = Column(Float, nullable=True)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    speed = Column(Float)
    recorded_time = Column(String)  # HH:MM:SS relative to the service day
    next_stop_id = Column(String, nullable=True)

    __table_args__ = (
        Index("ix_vehicle_observations_trip_time", "trip_id", "observed_at"),
        Index("ix_vehicle_observations_time", "observed_at"),
        Index("ix_vehicle_observations_bus", "bus_id"),
    )


class TripStart(Base):
    """First confirmed assignment of a bus to a trip on a service day."""
    __tablename__ = "trip_starts"

    service_date = Column(Date, primary_key=True)
    trip_id = Column(String, primary_key=True)
    bus_id = Column(String, nullable=False)
    block_id = Column(String)
    route_id = Column(String)
    direction_id = Column(Integer)
    start_time = Column(String)            # observed, HH:MM:SS
    scheduled_start_time = Column(String)  # from the feed, HH:MM:SS

    __table_args__ = (Index("ix_trip_starts_date_block_bus", "service_date", "block_id", "bus_id"),)


class CancellationRecord(Base):
    """Feed-reported cancellation state.  No row means "not reported"."""
    __tablename__ = "cancellations"

    service_date = Column(Date, primary_key=True)
    trip_id = Column(String, primary_key=True)
    schedule_relationship = Column(Integer)
    reported_at = Column(DateTime, default=datetime.utcnow)


class DailyCacheEntry(Base):
    """Per-service-day on-time aggregate.  Never written for the in-progress day."""
    __tablename__ = "cache_on_time_daily"

    service_date = Column(Date, primary_key=True)
    metric = Column(String(20), primary_key=True)
    threshold_minutes = Column(Float, primary_key=True)
    include_canceled = Column(Boolean, primary_key=True)
    frequency_filter = Column(String(20), primary_key=True)  # "" when unfiltered
    route_id = Column(String(20), primary_key=True)          # "" when unfiltered
    data = Column(JSON, nullable=False)
    cached_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_cache_on_time_daily_date", "service_date"),)


# Tables created by init_db(); the cache table has its own setup step.
CORE_TABLES = [
    table for name, table in Base.metadata.tables.items()
    if name != DailyCacheEntry.__tablename__
]
