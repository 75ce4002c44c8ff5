"""
Tests for tracing.activity.bus_count: reporting buses against trips under way.

Monday 2026-03-02, schedule v1 (WK):

  A3  route 7    07:50 → 08:20   bus 2003 seen at 07:55 only
  A1  route 5    08:00 → 08:30   bus 2001 seen at 08:10
  N1  route 900  08:00 → 09:00   non-revenue, never counted
  A2  route 5    08:05 → 08:40   never seen
  A4  route 5    25:00 → 25:40   overnight, never seen

Bus 2002 reports at 08:11 without a trip.
"""

import pytest
from datetime import date, datetime, timezone
from unittest.mock import patch

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base, CalendarEntry, ScheduledTrip, ScheduleVersion, VehicleObservation
from errors import NoScheduleAvailable
from tracing.activity import bus_count

MONDAY = date(2026, 3, 2)


@pytest.fixture
def db():
    """In-memory SQLite DB with schema, yielding a session."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()
    engine.dispose()


def _obs(session, when, bus_id, trip_id):
    session.add(VehicleObservation(
        observed_at=when, bus_id=bus_id, trip_id=trip_id,
        latitude=43.65, longitude=-79.38,
    ))


@pytest.fixture
def fleet_db(db):
    db.add(ScheduleVersion(version=1, import_date=date(2026, 1, 1)))
    db.add(CalendarEntry(
        gtfs_version=1, service_id="WK",
        monday=True, tuesday=True, wednesday=True, thursday=True, friday=True,
        saturday=False, sunday=False,
        start_date=date(2026, 1, 1), end_date=date(2026, 12, 31),
    ))
    for trip_id, route_id, start, end in (
        ("A1", "5", "08:00:00", "08:30:00"),
        ("A2", "5", "08:05:00", "08:40:00"),
        ("A3", "7", "07:50:00", "08:20:00"),
        ("A4", "5", "25:00:00", "25:40:00"),
        ("N1", "900", "08:00:00", "09:00:00"),
    ):
        db.add(ScheduledTrip(
            gtfs_version=1, trip_id=trip_id, route_id=route_id, service_id="WK",
            trip_headsign=f"Route {route_id}", direction_id=0, block_id=f"B{trip_id}",
            start_time=start, end_time=end,
        ))
    _obs(db, datetime(2026, 3, 2, 7, 55), "2003", "A3")
    _obs(db, datetime(2026, 3, 2, 8, 10), "2001", "A1")
    _obs(db, datetime(2026, 3, 2, 8, 11), "2002", None)
    db.commit()
    return db


class TestBusCount:
    def test_counts_at_instant(self, fleet_db):
        result = bus_count(fleet_db, datetime(2026, 3, 2, 8, 10))
        assert result.service_date == MONDAY
        assert result.active_buses == 2
        assert result.buses_on_routes == 1
        assert result.trips_scheduled == 3
        assert result.trips_never_ran == 1

    def test_not_running_trips_in_start_order(self, fleet_db):
        result = bus_count(fleet_db, datetime(2026, 3, 2, 8, 10))
        idle = result.trips_not_running
        assert [t.trip_id for t in idle] == ["A3", "A2"]
        assert idle[1].block_id == "BA2"
        assert idle[1].headsign == "Route 5"
        assert idle[1].start_time == "08:05:00"

    def test_overnight_instant_belongs_to_previous_day(self, fleet_db):
        result = bus_count(fleet_db, datetime(2026, 3, 3, 1, 20))
        assert result.service_date == MONDAY
        assert result.trips_scheduled == 1
        assert [t.trip_id for t in result.trips_not_running] == ["A4"]

    def test_aware_instant_converted_to_agency_time(self, fleet_db):
        # 13:10 UTC is 08:10 in Toronto before the March DST change
        result = bus_count(fleet_db, datetime(2026, 3, 2, 13, 10, tzinfo=timezone.utc))
        assert result.at == datetime(2026, 3, 2, 8, 10)
        assert result.active_buses == 2

    def test_narrow_window(self, fleet_db):
        result = bus_count(fleet_db, datetime(2026, 3, 2, 8, 10), window_minutes=0)
        assert result.active_buses == 0
        assert result.trips_scheduled == 3

    def test_nothing_under_way(self, fleet_db):
        result = bus_count(fleet_db, datetime(2026, 3, 2, 12, 0))
        assert result.trips_scheduled == 0
        assert result.trips_not_running == []
        assert result.trips_never_ran == 0

    def test_defaults_to_now(self, fleet_db):
        with patch("tracing.activity.local_now", return_value=datetime(2026, 3, 2, 8, 10)):
            result = bus_count(fleet_db)
        assert result.at == datetime(2026, 3, 2, 8, 10)
        assert result.trips_scheduled == 3

    def test_unscheduled_day(self, fleet_db):
        with pytest.raises(NoScheduleAvailable):
            bus_count(fleet_db, datetime(2026, 3, 1, 8, 10))
