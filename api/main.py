"""
FastAPI application entry point.

On startup:
  1. Create schedule + observation tables (init_db).
  2. Create the on-time cache table (setup_cache_storage).
  3. Start the APScheduler:
       - GTFS-RT poll every GTFS_RT_POLL_SECONDS
         (only when both feed URLs are configured).
       - Daily GTFS static import at GTFS_REFRESH_HOUR
         (only when GTFS_STATIC_URL is configured).
       - Daily on-time cache pre-warm at CACHE_PREWARM_HOUR.

Endpoints:
  GET  /health
  GET  /api/on-time-performance?date=&end_date=&metric=&threshold_minutes=
                                 &include_canceled=&route_id=&frequency_filter=
  GET  /api/block-details?date=&block_id=|bus_id=
  GET  /api/route-details?date=&route_id=
  GET  /api/block-cancel-count?date=&block_id=
  GET  /api/canceled?date=&time_period=
  GET  /api/active-buses?at=
  GET  /api/cache/stats
  POST /api/cache/invalidate?start=&end=
  GET  /api/schedule/version?date=
  GET  /api/schedule/service-ids?date=
  GET  /api/schedule/service-day?date=
  POST /ingest/gtfs-static
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime, date as Date
from typing import Literal

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader
from sqlalchemy import func
from sqlalchemy.orm import Session

from api.schemas import (
    BusCountResponse,
    CacheInvalidateResponse,
    CacheStatsResponse,
    CancellationStreakResponse,
    HealthResponse,
    IngestResponse,
    OnTimePerformanceResponse,
    RouteCancellationsResult,
    ScheduleVersionResponse,
    ServiceDayResponse,
    ServiceIdsResponse,
    TripDetailResult,
)
from config import (
    CACHE_PREWARM_HOUR,
    CORS_ORIGINS,
    GTFS_REFRESH_HOUR,
    GTFS_RT_POLL_SECONDS,
    GTFS_RT_TRIP_UPDATES_URL,
    GTFS_RT_VEHICLE_POSITIONS_URL,
    GTFS_STATIC_URL,
    INGEST_API_KEY,
)
from db.models import DailyCacheEntry, ScheduleVersion, VehicleObservation
from db.session import SessionLocal, engine, get_session, init_db
from errors import InvalidDateRange, NoScheduleAvailable, UnresolvedReference, UpstreamFeedError
from ingestion.gtfs_realtime import get_last_polled_at, poll_realtime
from ingestion.gtfs_static import refresh_static_data
from performance.cache import cache_stats, invalidate_range, setup_cache_storage
from performance.on_time import compute_on_time_performance
from performance.prewarm import warm_on_time_cache
from schedule.calendar import (
    current_service_date,
    local_now,
    resolve_service_ids,
    resolve_version,
    service_day_boundaries,
)
from tracing.activity import bus_count
from tracing.blocks import route_trip_details, trace_block
from tracing.cancellations import cancellation_streak, list_cancellations

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

_ingest_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _require_ingest_key(key: str | None = Security(_ingest_key_header)) -> None:
    """
    Optional API-key guard for the ingest and cache-invalidation endpoints.

    If INGEST_API_KEY is not set the endpoints are open (local dev / testing).
    If it is set, the request must include the matching X-API-Key header.
    """
    if not INGEST_API_KEY:
        return  # no key configured → open
    if key != INGEST_API_KEY:
        raise HTTPException(status_code=401, detail="Invalid or missing X-API-Key header.")


scheduler = AsyncIOScheduler()


def _realtime_configured() -> bool:
    return bool(GTFS_RT_VEHICLE_POSITIONS_URL and GTFS_RT_TRIP_UPDATES_URL)


async def _rt_poll() -> None:
    """
    Scheduled job: one GTFS-RT poll cycle.

    A feed failure abandons this cycle only; the next tick retries.
    """
    db = SessionLocal()
    try:
        await poll_realtime(db)
    except UpstreamFeedError as exc:
        logger.warning("GTFS-RT poll abandoned: %s", exc)
    except Exception as exc:
        logger.error("GTFS-RT poll failed: %s", exc, exc_info=True)
    finally:
        db.close()


async def _daily_gtfs_refresh() -> None:
    """
    Scheduled job: import a fresh GTFS static feed as a new schedule version.

    Opens its own DB session because APScheduler jobs run outside FastAPI's
    DI system.  Exceptions are caught and logged so a transient network
    failure cannot crash the scheduler process.
    """
    logger.info("Daily GTFS static refresh starting.")
    db = SessionLocal()
    try:
        version = await refresh_static_data(db)
        logger.info("Daily GTFS static refresh complete: schedule v%d.", version)
    except Exception as exc:
        logger.error("Daily GTFS static refresh failed: %s", exc, exc_info=True)
    finally:
        db.close()


async def _daily_cache_prewarm() -> None:
    """Scheduled job: fill the on-time cache for every finished service day."""
    db = SessionLocal()
    try:
        warm_on_time_cache(db)
    except Exception as exc:
        logger.error("Cache pre-warm failed: %s", exc, exc_info=True)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_db()
    setup_cache_storage(engine)
    logger.info("Database initialised.")

    if _realtime_configured():
        scheduler.add_job(
            _rt_poll,
            "interval",
            seconds=GTFS_RT_POLL_SECONDS,
            id="gtfs_rt_poll",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info("GTFS-RT polling scheduled (every %ds).", GTFS_RT_POLL_SECONDS)
    else:
        logger.info("GTFS-RT polling disabled: feed URLs not set.")

    if GTFS_STATIC_URL:
        scheduler.add_job(
            _daily_gtfs_refresh,
            "cron",
            hour=GTFS_REFRESH_HOUR,
            id="daily_gtfs_refresh",
            replace_existing=True,
        )
    else:
        logger.info("Daily GTFS static refresh disabled: GTFS_STATIC_URL not set.")

    scheduler.add_job(
        _daily_cache_prewarm,
        "cron",
        hour=CACHE_PREWARM_HOUR,
        id="daily_cache_prewarm",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started. GTFS refresh at %02d:00, cache pre-warm at %02d:00.",
        GTFS_REFRESH_HOUR, CACHE_PREWARM_HOUR,
    )

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()


app = FastAPI(
    title="Transit Performance Tracker",
    description="Realtime reconciliation, on-time performance and block tracing for a bus network.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def _next_run(job_id: str) -> str | None:
    job = scheduler.get_job(job_id)
    if job and job.next_run_time:
        return job.next_run_time.isoformat()
    return None


@app.get("/health", response_model=HealthResponse)
async def health(session: Session = Depends(get_session)) -> HealthResponse:
    """
    Liveness + data-freshness check.

    Returns schedule, observation and cache counts plus job timestamps so
    operators can tell whether schedules are loaded and polling is live.
    """
    versions: int = session.query(func.count(ScheduleVersion.version)).scalar() or 0
    latest = (
        session.query(ScheduleVersion)
        .order_by(ScheduleVersion.version.desc())
        .first()
    )
    observations: int = session.query(func.count()).select_from(VehicleObservation).scalar() or 0
    last_observed_at = session.query(func.max(VehicleObservation.observed_at)).scalar()
    cache_entries: int = session.query(func.count()).select_from(DailyCacheEntry).scalar() or 0

    return {
        "status": "ok",
        "timestamp": datetime.utcnow().isoformat(),
        "service_date": current_service_date(),
        "schedule": {
            "versions": versions,
            "latest_version": latest.version if latest else None,
            "latest_import_date": latest.import_date if latest else None,
        },
        "realtime": {
            "observations": observations,
            "last_observed_at": last_observed_at,
            "last_poll_at": get_last_polled_at(),
            "polling_active": _realtime_configured() and scheduler.running,
        },
        "cache_entries": cache_entries,
        "jobs": {
            "next_poll_at": _next_run("gtfs_rt_poll"),
            "next_refresh_at": _next_run("daily_gtfs_refresh"),
            "next_prewarm_at": _next_run("daily_cache_prewarm"),
        },
    }


@app.get("/api/on-time-performance", response_model=OnTimePerformanceResponse)
async def on_time_performance(
    date: Date = Query(..., description="First service date, YYYY-MM-DD"),
    end_date: Date | None = Query(None, description="Last service date (inclusive). Defaults to date."),
    metric: Literal["avgObserved", "firstObserved"] = Query("avgObserved"),
    threshold_minutes: float | None = Query(None, ge=0, description="On-time tolerance in minutes"),
    include_canceled: bool = Query(False, description="Count canceled trips as late"),
    route_id: str | None = Query(None),
    frequency_filter: Literal["frequent", "non-frequent"] | None = Query(None),
    session: Session = Depends(get_session),
) -> OnTimePerformanceResponse:
    """
    On-time performance for a service date or inclusive date range.

    Finished days are served from the daily cache; the in-progress service
    day is always recomputed.
    """
    try:
        return compute_on_time_performance(
            session,
            date,
            end_date,
            metric=metric,
            threshold_minutes=threshold_minutes,
            include_canceled=include_canceled,
            frequency_filter=frequency_filter,
            route_id=route_id,
        )
    except InvalidDateRange as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except NoScheduleAvailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.get("/api/block-details", response_model=dict[str, list[TripDetailResult]])
async def block_details(
    date: Date | None = Query(None, description="Service date. Defaults to the current service day."),
    block_id: str | None = Query(None),
    bus_id: str | None = Query(None),
    session: Session = Depends(get_session),
) -> dict[str, list[TripDetailResult]]:
    """Every block linked to the given block or bus through shared buses."""
    if not block_id and not bus_id:
        raise HTTPException(status_code=400, detail="Provide a block_id or a bus_id.")
    try:
        blocks = trace_block(
            session,
            date or current_service_date(),
            block_id=block_id,
            bus_id=bus_id,
        )
    except (NoScheduleAvailable, UnresolvedReference) as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {block: [asdict(trip) for trip in trips] for block, trips in blocks.items()}


@app.get("/api/block-cancel-count", response_model=CancellationStreakResponse)
async def block_cancel_count(
    block_id: str = Query(..., min_length=1),
    date: Date | None = Query(None, description="Service date. Defaults to the current service day."),
    session: Session = Depends(get_session),
) -> CancellationStreakResponse:
    """Consecutive days, ending on date, on which every trip of the block was canceled."""
    service_date = date or current_service_date()
    streak = cancellation_streak(session, block_id, service_date)
    return {
        "block_id": block_id,
        "date": service_date,
        "days_canceled": streak.days_canceled,
        "all_days": streak.all_days,
    }


@app.get("/api/route-details", response_model=list[TripDetailResult])
async def route_details(
    route_id: str = Query(..., min_length=1),
    date: Date | None = Query(None, description="Service date. Defaults to the current service day."),
    session: Session = Depends(get_session),
) -> list[TripDetailResult]:
    """Every trip of a route with the bus that ran it, actual times and delay."""
    try:
        trips = route_trip_details(session, date or current_service_date(), route_id)
    except NoScheduleAvailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return [asdict(trip) for trip in trips]


@app.get("/api/canceled", response_model=list[RouteCancellationsResult])
async def canceled_trips(
    date: Date | None = Query(None, description="Service date. Defaults to the current service day."),
    time_period: Literal["allday", "morning", "afternoon"] = Query("allday"),
    session: Session = Depends(get_session),
) -> list[RouteCancellationsResult]:
    """Canceled trips grouped by route, with the observed starts either side of each."""
    try:
        routes = list_cancellations(session, date or current_service_date(), time_period)
    except NoScheduleAvailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return [asdict(route) for route in routes]


@app.get("/api/active-buses", response_model=BusCountResponse)
async def active_buses(
    at: datetime | None = Query(None, description="Instant to inspect. Defaults to now."),
    session: Session = Depends(get_session),
) -> BusCountResponse:
    """Buses reporting around an instant against the trips scheduled to be running."""
    try:
        return asdict(bus_count(session, at))
    except NoScheduleAvailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@app.get("/api/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(session: Session = Depends(get_session)) -> CacheStatsResponse:
    return cache_stats(session)


@app.post("/api/cache/invalidate", response_model=CacheInvalidateResponse)
async def invalidate_cache(
    start: Date = Query(...),
    end: Date | None = Query(None, description="Defaults to start"),
    session: Session = Depends(get_session),
    _: None = Depends(_require_ingest_key),
) -> CacheInvalidateResponse:
    """Drop cached on-time aggregates for an inclusive range of service dates."""
    end = end or start
    if end < start:
        raise HTTPException(status_code=400, detail="end must be on or after start.")
    deleted = invalidate_range(session, start, end)
    return {"status": "ok", "start": start, "end": end, "deleted": deleted}


@app.get("/api/schedule/version", response_model=ScheduleVersionResponse)
async def schedule_version(
    date: Date | None = Query(None),
    session: Session = Depends(get_session),
) -> ScheduleVersionResponse:
    service_date = date or current_service_date()
    try:
        version = resolve_version(session, service_date)
    except NoScheduleAvailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"date": service_date, "version": version.version, "import_date": version.import_date}


@app.get("/api/schedule/service-ids", response_model=ServiceIdsResponse)
async def schedule_service_ids(
    date: Date | None = Query(None),
    session: Session = Depends(get_session),
) -> ServiceIdsResponse:
    service_date = date or current_service_date()
    try:
        version = resolve_version(session, service_date)
    except NoScheduleAvailable as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    service_ids = resolve_service_ids(session, version.version, service_date)
    return {"date": service_date, "version": version.version, "service_ids": sorted(service_ids)}


@app.get("/api/schedule/service-day", response_model=ServiceDayResponse)
async def schedule_service_day(date: Date | None = Query(None)) -> ServiceDayResponse:
    """Wall-clock window attributed to a service date (03:00 to 05:00 next day)."""
    service_date = date or current_service_date()
    window = service_day_boundaries(service_date)
    return {"date": service_date, "start": window.start, "end": window.end}


@app.post("/ingest/gtfs-static", response_model=IngestResponse)
async def trigger_gtfs_ingest(
    session: Session = Depends(get_session),
    _: None = Depends(_require_ingest_key),
) -> IngestResponse:
    """
    Manually trigger a GTFS static import.  (In production this runs on a
    daily schedule.)  Each import becomes a new schedule version effective
    from the current service date.
    """
    try:
        version = await refresh_static_data(session)
    except ValueError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return {
        "status": "ok",
        "version": version,
        "message": f"GTFS static data imported as schedule v{version} at {local_now().isoformat(timespec='seconds')}.",
    }
