"""
Integration tests for API endpoints.

The FastAPI lifespan (init_db, setup_cache_storage, scheduler) is patched
out for every test.  Each test gets its own in-memory SQLite database via
the db_session / client fixtures, so tests are fully isolated.
"""

import pytest
from datetime import date, datetime
from unittest.mock import AsyncMock, patch, MagicMock

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import (
    Base, CalendarEntry, CancellationRecord, DailyCacheEntry, ScheduledTrip, ScheduleVersion,
    StopTime, VehicleObservation,
)
from db.session import get_session
from errors import UpstreamFeedError
from performance.prewarm import PrewarmResult

MONDAY = date(2026, 3, 2)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def db_session():
    """Fresh in-memory SQLite database, schema pre-created, per test.

    StaticPool is required so that create_all and the session both use
    the same single connection; otherwise each pool checkout gets a new
    in-memory DB that has no tables.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine)
    session = TestSession()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def mock_scheduler():
    scheduler = MagicMock(running=False)
    scheduler.get_job.return_value = None
    return scheduler


@pytest.fixture
def client(db_session, mock_scheduler):
    """
    TestClient with:
      - lifespan init_db / setup_cache_storage / scheduler patched to no-ops
      - get_session dependency overridden to use the test db_session
    """
    from api.main import app

    def override_get_session():
        yield db_session

    with (
        patch("api.main.init_db"),
        patch("api.main.setup_cache_storage"),
        patch("api.main.scheduler", mock_scheduler),
        patch("api.main.SessionLocal", return_value=MagicMock()),
    ):
        app.dependency_overrides[get_session] = override_get_session
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
        app.dependency_overrides.clear()


@pytest.fixture
def later_clock():
    """Agency clock well after MONDAY so the day counts as finished."""
    with patch("schedule.calendar.local_now", return_value=datetime(2026, 3, 10, 12, 0)):
        yield


@pytest.fixture
def monday_db(db_session):
    """
    Weekday schedule v1 with block B1:
      T1  route 5 dir 0  08:00 → 08:20   bus 1001, +2.0 min
      T2  route 5 dir 1  08:30 → 08:50   canceled
    """
    db_session.add(ScheduleVersion(version=1, import_date=date(2026, 1, 1)))
    db_session.add(CalendarEntry(
        gtfs_version=1, service_id="WK",
        monday=True, tuesday=True, wednesday=True, thursday=True, friday=True,
        saturday=False, sunday=False,
        start_date=date(2026, 1, 1), end_date=date(2026, 12, 31),
    ))
    for trip_id, direction, start, end in (("T1", 0, "08:00:00", "08:20:00"), ("T2", 1, "08:30:00", "08:50:00")):
        db_session.add(ScheduledTrip(
            gtfs_version=1, trip_id=trip_id, route_id="5", service_id="WK",
            direction_id=direction, block_id="B1", start_time=start, end_time=end,
        ))
        db_session.add(StopTime(
            gtfs_version=1, trip_id=trip_id, stop_id="S1", stop_sequence=1,
            arrival_time=start, departure_time=start,
        ))
        db_session.add(StopTime(
            gtfs_version=1, trip_id=trip_id, stop_id="S2", stop_sequence=2,
            arrival_time=end, departure_time=end,
        ))
    db_session.add(VehicleObservation(
        observed_at=datetime(2026, 3, 2, 8, 6), bus_id="1001", trip_id="T1",
        delay_minutes=2.0, latitude=43.65, longitude=-79.38,
        recorded_time="08:06:00", next_stop_id="S2",
    ))
    db_session.add(CancellationRecord(service_date=MONDAY, trip_id="T2", schedule_relationship=3))
    db_session.commit()
    return db_session


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class TestHealth:
    def test_returns_200(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200

    def test_contains_status_ok(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"

    def test_empty_db_counts(self, client):
        body = client.get("/health").json()
        assert body["schedule"]["versions"] == 0
        assert body["schedule"]["latest_version"] is None
        assert body["realtime"]["observations"] == 0
        assert body["realtime"]["polling_active"] is False
        assert body["cache_entries"] == 0

    def test_reports_loaded_data(self, client, monday_db):
        body = client.get("/health").json()
        assert body["schedule"]["versions"] == 1
        assert body["schedule"]["latest_import_date"] == "2026-01-01"
        assert body["realtime"]["observations"] == 1
        assert body["realtime"]["last_observed_at"].startswith("2026-03-02T08:06")

    def test_job_times_from_scheduler(self, client, mock_scheduler):
        job = MagicMock(next_run_time=datetime(2026, 3, 3, 4, 0))
        mock_scheduler.get_job.side_effect = lambda job_id: job if job_id == "daily_cache_prewarm" else None
        body = client.get("/health").json()
        assert body["jobs"]["next_prewarm_at"] == "2026-03-03T04:00:00"
        assert body["jobs"]["next_poll_at"] is None


class TestLifespan:
    def test_prewarm_job_always_registered(self, client, mock_scheduler):
        job_ids = [c.kwargs["id"] for c in mock_scheduler.add_job.call_args_list]
        assert "daily_cache_prewarm" in job_ids
        mock_scheduler.start.assert_called_once()

    def test_polling_needs_both_feed_urls(self, db_session, mock_scheduler):
        from api.main import app

        with (
            patch("api.main.init_db"),
            patch("api.main.setup_cache_storage"),
            patch("api.main.scheduler", mock_scheduler),
            patch("api.main.GTFS_RT_VEHICLE_POSITIONS_URL", "https://feeds.example/vp"),
            patch("api.main.GTFS_RT_TRIP_UPDATES_URL", ""),
        ):
            with TestClient(app):
                pass
        job_ids = [c.kwargs["id"] for c in mock_scheduler.add_job.call_args_list]
        assert "gtfs_rt_poll" not in job_ids

    def test_polling_registered_when_configured(self, db_session, mock_scheduler):
        from api.main import app

        with (
            patch("api.main.init_db"),
            patch("api.main.setup_cache_storage") as mock_setup,
            patch("api.main.scheduler", mock_scheduler),
            patch("api.main.GTFS_RT_VEHICLE_POSITIONS_URL", "https://feeds.example/vp"),
            patch("api.main.GTFS_RT_TRIP_UPDATES_URL", "https://feeds.example/tu"),
            patch("api.main.GTFS_STATIC_URL", "https://feeds.example/gtfs.zip"),
        ):
            with TestClient(app):
                pass
        calls = {c.kwargs["id"]: c for c in mock_scheduler.add_job.call_args_list}
        assert calls["gtfs_rt_poll"].kwargs["max_instances"] == 1
        assert calls["gtfs_rt_poll"].kwargs["coalesce"] is True
        assert "daily_gtfs_refresh" in calls
        mock_setup.assert_called_once()


# ---------------------------------------------------------------------------
# GET /api/on-time-performance
# ---------------------------------------------------------------------------

class TestOnTimePerformance:
    def test_day_summary(self, client, monday_db, later_clock):
        resp = client.get("/api/on-time-performance", params={"date": "2026-03-02"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["end_date"] == "2026-03-02"
        assert body["overall"]["total_scheduled"] == 2
        assert body["overall"]["evaluated_trips"] == 1
        assert body["overall"]["on_time_pct"] == 100.0
        assert body["overall"]["canceled_trips"] == 1
        assert [(r["route_id"], r["direction_id"]) for r in body["routes"]] == [("5", 0), ("5", 1)]
        assert body["route_summary"] is None

    def test_finished_day_is_cached(self, client, monday_db, later_clock):
        client.get("/api/on-time-performance", params={"date": "2026-03-02"})
        assert monday_db.query(DailyCacheEntry).count() == 1

    def test_include_canceled_counts_as_late(self, client, monday_db, later_clock):
        body = client.get(
            "/api/on-time-performance",
            params={"date": "2026-03-02", "include_canceled": "true"},
        ).json()
        assert body["overall"]["evaluated_trips"] == 2
        assert body["overall"]["on_time_pct"] == 50.0

    def test_route_filter(self, client, monday_db, later_clock):
        body = client.get(
            "/api/on-time-performance",
            params={"date": "2026-03-02", "route_id": "5"},
        ).json()
        assert body["route_summary"]["total_scheduled"] == 2
        assert body["route_time_of_day"] is not None

    def test_no_schedule_returns_404(self, client):
        resp = client.get("/api/on-time-performance", params={"date": "2026-03-02"})
        assert resp.status_code == 404

    def test_end_before_start_returns_400(self, client, monday_db):
        resp = client.get(
            "/api/on-time-performance",
            params={"date": "2026-03-05", "end_date": "2026-03-02"},
        )
        assert resp.status_code == 400

    def test_unknown_metric_returns_422(self, client):
        resp = client.get(
            "/api/on-time-performance",
            params={"date": "2026-03-02", "metric": "medianObserved"},
        )
        assert resp.status_code == 422

    def test_missing_date_returns_422(self, client):
        assert client.get("/api/on-time-performance").status_code == 422


# ---------------------------------------------------------------------------
# Block tracing
# ---------------------------------------------------------------------------

class TestBlockDetails:
    def test_requires_block_or_bus(self, client):
        resp = client.get("/api/block-details", params={"date": "2026-03-02"})
        assert resp.status_code == 400

    def test_block_trips(self, client, monday_db, later_clock):
        resp = client.get("/api/block-details", params={"date": "2026-03-02", "block_id": "B1"})
        assert resp.status_code == 200
        trips = resp.json()["B1"]
        assert [t["trip_id"] for t in trips] == ["T1", "T2"]
        assert trips[0]["bus_id"] == "1001"
        assert trips[1]["canceled"] == 3

    def test_seed_by_bus(self, client, monday_db, later_clock):
        resp = client.get("/api/block-details", params={"date": "2026-03-02", "bus_id": "1001"})
        assert list(resp.json()) == ["B1"]

    def test_unknown_bus_returns_404(self, client, monday_db, later_clock):
        resp = client.get("/api/block-details", params={"date": "2026-03-02", "bus_id": "4040"})
        assert resp.status_code == 404

    def test_unscheduled_day_returns_404(self, client, monday_db):
        resp = client.get("/api/block-details", params={"date": "2026-03-01", "block_id": "B1"})
        assert resp.status_code == 404


class TestBlockCancelCount:
    def test_not_fully_canceled(self, client, monday_db):
        body = client.get(
            "/api/block-cancel-count", params={"date": "2026-03-02", "block_id": "B1"},
        ).json()
        assert body == {"block_id": "B1", "date": "2026-03-02", "days_canceled": 0, "all_days": False}

    def test_block_id_required(self, client):
        assert client.get("/api/block-cancel-count").status_code == 422


class TestRouteDetails:
    def test_route_trips(self, client, monday_db, later_clock):
        resp = client.get("/api/route-details", params={"date": "2026-03-02", "route_id": "5"})
        assert resp.status_code == 200
        trips = resp.json()
        assert [t["trip_id"] for t in trips] == ["T1", "T2"]
        assert trips[0]["bus_id"] == "1001"
        assert trips[0]["block_id"] == "B1"
        assert trips[0]["actual_start_time"] == "08:06:00"
        assert trips[1]["canceled"] == 3

    def test_unknown_route_is_empty(self, client, monday_db, later_clock):
        resp = client.get("/api/route-details", params={"date": "2026-03-02", "route_id": "99"})
        assert resp.json() == []

    def test_route_id_required(self, client):
        assert client.get("/api/route-details", params={"date": "2026-03-02"}).status_code == 422

    def test_unscheduled_day_returns_404(self, client, monday_db):
        resp = client.get("/api/route-details", params={"date": "2026-03-01", "route_id": "5"})
        assert resp.status_code == 404


class TestCanceledList:
    def test_grouped_by_route(self, client, monday_db):
        body = client.get("/api/canceled", params={"date": "2026-03-02"}).json()
        assert body == [{
            "route_id": "5",
            "total_trips": 2,
            "cancellations": [{
                "trip_id": "T2",
                "block_id": "B1",
                "headsign": None,
                "direction_id": 1,
                "start_time": "08:30:00",
                "end_time": "08:50:00",
                "last_start_time": None,
                "next_start_time": None,
            }],
        }]

    def test_period_without_cancellations(self, client, monday_db):
        body = client.get("/api/canceled", params={"date": "2026-03-02", "time_period": "afternoon"}).json()
        assert body == []

    def test_unknown_period_returns_422(self, client, monday_db):
        resp = client.get("/api/canceled", params={"date": "2026-03-02", "time_period": "night"})
        assert resp.status_code == 422


class TestActiveBuses:
    def test_trip_under_way(self, client, monday_db):
        body = client.get("/api/active-buses", params={"at": "2026-03-02T08:07:00"}).json()
        assert body["service_date"] == "2026-03-02"
        assert body["active_buses"] == 1
        assert body["buses_on_routes"] == 1
        assert body["trips_scheduled"] == 1
        assert body["trips_not_running"] == []
        assert body["trips_never_ran"] == 0

    def test_trip_not_running(self, client, monday_db):
        body = client.get("/api/active-buses", params={"at": "2026-03-02T08:40:00"}).json()
        assert body["active_buses"] == 0
        assert [t["trip_id"] for t in body["trips_not_running"]] == ["T2"]
        assert body["trips_never_ran"] == 1

    def test_unscheduled_day_returns_404(self, client, monday_db):
        resp = client.get("/api/active-buses", params={"at": "2026-03-01T08:00:00"})
        assert resp.status_code == 404


# ---------------------------------------------------------------------------
# /api/cache/*
# ---------------------------------------------------------------------------

class TestCacheEndpoints:
    def test_stats_empty(self, client):
        body = client.get("/api/cache/stats").json()
        assert body["total_entries"] == 0
        assert body["oldest_cached_date"] is None

    def test_invalidate_after_warm(self, client, monday_db, later_clock):
        client.get("/api/on-time-performance", params={"date": "2026-03-02"})
        with patch("api.main.INGEST_API_KEY", ""):
            resp = client.post("/api/cache/invalidate", params={"start": "2026-03-01", "end": "2026-03-03"})
        assert resp.status_code == 200
        assert resp.json()["deleted"] == 1
        assert client.get("/api/cache/stats").json()["total_entries"] == 0

    def test_invalidate_single_day_default(self, client):
        with patch("api.main.INGEST_API_KEY", ""):
            body = client.post("/api/cache/invalidate", params={"start": "2026-03-02"}).json()
        assert body["end"] == "2026-03-02"
        assert body["deleted"] == 0

    def test_invalidate_reversed_range(self, client):
        with patch("api.main.INGEST_API_KEY", ""):
            resp = client.post("/api/cache/invalidate", params={"start": "2026-03-05", "end": "2026-03-02"})
        assert resp.status_code == 400

    def test_invalidate_requires_key_when_configured(self, client):
        with patch("api.main.INGEST_API_KEY", "secret"):
            resp = client.post("/api/cache/invalidate", params={"start": "2026-03-02"})
        assert resp.status_code == 401

    def test_invalidate_with_key(self, client):
        with patch("api.main.INGEST_API_KEY", "secret"):
            resp = client.post(
                "/api/cache/invalidate",
                params={"start": "2026-03-02"},
                headers={"X-API-Key": "secret"},
            )
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# /api/schedule/*
# ---------------------------------------------------------------------------

class TestScheduleEndpoints:
    def test_version(self, client, monday_db):
        body = client.get("/api/schedule/version", params={"date": "2026-03-02"}).json()
        assert body["version"] == 1
        assert body["import_date"] == "2026-01-01"

    def test_version_before_first_import(self, client, monday_db):
        resp = client.get("/api/schedule/version", params={"date": "2025-12-31"})
        assert resp.status_code == 404

    def test_service_ids(self, client, monday_db):
        assert client.get(
            "/api/schedule/service-ids", params={"date": "2026-03-02"},
        ).json()["service_ids"] == ["WK"]
        assert client.get(
            "/api/schedule/service-ids", params={"date": "2026-03-01"},
        ).json()["service_ids"] == []

    def test_service_day(self, client):
        body = client.get("/api/schedule/service-day", params={"date": "2026-03-02"}).json()
        assert body["start"] == "2026-03-02T03:00:00"
        assert body["end"] == "2026-03-03T05:00:00"


# ---------------------------------------------------------------------------
# POST /ingest/gtfs-static
# ---------------------------------------------------------------------------

class TestIngest:
    def test_no_key_configured_open(self, client):
        with (
            patch("api.main.INGEST_API_KEY", ""),
            patch("api.main.refresh_static_data", new_callable=AsyncMock, return_value=3),
        ):
            resp = client.post("/ingest/gtfs-static")
        assert resp.status_code == 200
        assert resp.json()["version"] == 3
        assert "v3" in resp.json()["message"]

    def test_wrong_key_rejected(self, client):
        with patch("api.main.INGEST_API_KEY", "secret"):
            resp = client.post("/ingest/gtfs-static", headers={"X-API-Key": "wrong"})
        assert resp.status_code == 401

    def test_unconfigured_feed_returns_409(self, client):
        with (
            patch("api.main.INGEST_API_KEY", ""),
            patch("api.main.refresh_static_data", new_callable=AsyncMock,
                  side_effect=ValueError("GTFS_STATIC_URL is not configured.")),
        ):
            resp = client.post("/ingest/gtfs-static")
        assert resp.status_code == 409


# ---------------------------------------------------------------------------
# Scheduled job functions
# ---------------------------------------------------------------------------

class TestRtPollJob:

    @pytest.mark.anyio
    async def test_polls_with_own_session(self):
        from api.main import _rt_poll

        mock_session = MagicMock()
        with (
            patch("api.main.SessionLocal", return_value=mock_session),
            patch("api.main.poll_realtime", new_callable=AsyncMock) as mock_poll,
        ):
            await _rt_poll()

        mock_poll.assert_called_once_with(mock_session)
        mock_session.close.assert_called_once()

    @pytest.mark.anyio
    async def test_feed_error_does_not_propagate(self):
        from api.main import _rt_poll

        mock_session = MagicMock()
        with (
            patch("api.main.SessionLocal", return_value=mock_session),
            patch("api.main.poll_realtime", new_callable=AsyncMock,
                  side_effect=UpstreamFeedError("https://feeds.example/vp", "HTTP 503")),
        ):
            await _rt_poll()  # must not raise

        mock_session.close.assert_called_once()

    @pytest.mark.anyio
    async def test_unexpected_error_does_not_propagate(self):
        from api.main import _rt_poll

        with (
            patch("api.main.SessionLocal", return_value=MagicMock()),
            patch("api.main.poll_realtime", new_callable=AsyncMock, side_effect=Exception("boom")),
        ):
            await _rt_poll()


class TestDailyGtfsRefreshJob:

    @pytest.mark.anyio
    async def test_calls_refresh(self):
        from api.main import _daily_gtfs_refresh

        mock_session = MagicMock()
        with (
            patch("api.main.SessionLocal", return_value=mock_session),
            patch("api.main.refresh_static_data", new_callable=AsyncMock, return_value=2) as mock_refresh,
        ):
            await _daily_gtfs_refresh()

        mock_refresh.assert_called_once_with(mock_session)

    @pytest.mark.anyio
    async def test_error_does_not_propagate(self):
        """A failure during refresh is swallowed so the scheduler keeps running."""
        from api.main import _daily_gtfs_refresh

        with (
            patch("api.main.SessionLocal", return_value=MagicMock()),
            patch("api.main.refresh_static_data", new_callable=AsyncMock,
                  side_effect=Exception("network down")),
        ):
            await _daily_gtfs_refresh()  # must not raise

    @pytest.mark.anyio
    async def test_session_always_closed(self):
        """DB session is closed in the finally block even when the job fails."""
        from api.main import _daily_gtfs_refresh

        mock_session = MagicMock()
        with (
            patch("api.main.SessionLocal", return_value=mock_session),
            patch("api.main.refresh_static_data", new_callable=AsyncMock,
                  side_effect=Exception("fail")),
        ):
            await _daily_gtfs_refresh()

        mock_session.close.assert_called_once()


class TestDailyCachePrewarmJob:

    @pytest.mark.anyio
    async def test_warms_with_own_session(self):
        from api.main import _daily_cache_prewarm

        mock_session = MagicMock()
        with (
            patch("api.main.SessionLocal", return_value=mock_session),
            patch("api.main.warm_on_time_cache", return_value=PrewarmResult(warmed=3)) as mock_warm,
        ):
            await _daily_cache_prewarm()

        mock_warm.assert_called_once_with(mock_session)
        mock_session.close.assert_called_once()

    @pytest.mark.anyio
    async def test_error_does_not_propagate(self):
        from api.main import _daily_cache_prewarm

        mock_session = MagicMock()
        with (
            patch("api.main.SessionLocal", return_value=mock_session),
            patch("api.main.warm_on_time_cache", side_effect=Exception("db down")),
        ):
            await _daily_cache_prewarm()

        mock_session.close.assert_called_once()
