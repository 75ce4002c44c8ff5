"""
Downloads the agency's GTFS static feed and imports it as a new,
immutable schedule version.

Feed contents used:
  calendar.txt       → CalendarEntry
  calendar_dates.txt → CalendarException
  trips.txt          → ScheduledTrip (start/end derived from stop_times)
  stop_times.txt     → StopTime

Every import allocates version = max(version) + 1 with import_date set to
the current service date.  Rows of earlier versions are never touched, so
historical days keep resolving against the schedule that was live then.
"""

import io
import logging
import zipfile
from datetime import date, datetime

import httpx
import pandas as pd
from sqlalchemy import func
from sqlalchemy.orm import Session

from config import DATA_DIR, GTFS_STATIC_URL
from db.models import CalendarEntry, CalendarException, ScheduledTrip, ScheduleVersion, StopTime
from schedule.calendar import current_service_date
from schedule.times import normalize_hms

logger = logging.getLogger(__name__)

GTFS_ZIP_PATH = DATA_DIR / "gtfs_static.zip"

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


async def download_gtfs_zip(url: str = GTFS_STATIC_URL) -> bytes:
    """Download GTFS zip from the given URL and cache it to disk."""
    if not url:
        raise ValueError("GTFS_STATIC_URL is not configured. Set it in your .env file.")
    logger.info("Downloading GTFS static feed from %s", url)
    async with httpx.AsyncClient(timeout=60) as client:
        response = await client.get(url, follow_redirects=True)
        response.raise_for_status()
    GTFS_ZIP_PATH.write_bytes(response.content)
    logger.info("Saved GTFS zip to %s (%d bytes)", GTFS_ZIP_PATH, len(response.content))
    return response.content


def _gtfs_date(value: str) -> date:
    return datetime.strptime(value.strip(), "%Y%m%d").date()


def _optional_int(value: str) -> int | None:
    value = value.strip()
    return int(value) if value else None


def _optional_float(value: str) -> float | None:
    value = value.strip()
    return float(value) if value else None


def next_version(session: Session) -> int:
    current = session.query(func.max(ScheduleVersion.version)).scalar()
    return (current or 0) + 1


def parse_and_store(zip_bytes: bytes, session: Session, import_date: date | None = None) -> int:
    """
    Import a GTFS zip as a new schedule version and return its number.
    The whole import is one transaction.
    """
    version = next_version(session)
    import_date = import_date or current_service_date()

    with zipfile.ZipFile(io.BytesIO(zip_bytes)) as zf:
        names = zf.namelist()
        logger.info("GTFS zip contains: %s", names)

        def read(filename: str) -> pd.DataFrame:
            with zf.open(filename) as f:
                return pd.read_csv(f, dtype=str).fillna("")

        session.add(ScheduleVersion(version=version, import_date=import_date))
        if "calendar.txt" in names:
            _parse_calendar(read("calendar.txt"), session, version)
        if "calendar_dates.txt" in names:
            _parse_calendar_dates(read("calendar_dates.txt"), session, version)

        stop_times = read("stop_times.txt")
        _parse_trips(read("trips.txt"), _trip_bounds(stop_times), session, version)
        _parse_stop_times(stop_times, session, version)

    session.commit()
    logger.info("GTFS static data committed as schedule v%d (effective %s).", version, import_date)
    return version


def _trip_bounds(stop_times: pd.DataFrame) -> dict[str, tuple[str | None, str | None]]:
    """trip_id → (first stop departure, last stop departure), by stop_sequence."""
    if stop_times.empty:
        return {}
    df = stop_times[["trip_id", "stop_sequence", "departure_time"]].copy()
    df["stop_sequence"] = df["stop_sequence"].astype(int)
    df = df.sort_values(["trip_id", "stop_sequence"])
    grouped = df.groupby("trip_id")["departure_time"]
    first, last = grouped.first(), grouped.last()
    return {
        trip_id: (normalize_hms(first[trip_id]), normalize_hms(last[trip_id]))
        for trip_id in first.index
    }


def _parse_calendar(df: pd.DataFrame, session: Session, version: int) -> None:
    for _, row in df.iterrows():
        session.add(CalendarEntry(
            gtfs_version=version,
            service_id=row["service_id"],
            **{day: row[day] == "1" for day in _WEEKDAYS},
            start_date=_gtfs_date(row["start_date"]),
            end_date=_gtfs_date(row["end_date"]),
        ))
    logger.info("Loaded %d calendar entries.", len(df))


def _parse_calendar_dates(df: pd.DataFrame, session: Session, version: int) -> None:
    for _, row in df.iterrows():
        session.add(CalendarException(
            gtfs_version=version,
            service_id=row["service_id"],
            date=_gtfs_date(row["date"]),
            exception_type=int(row["exception_type"]),
        ))
    logger.info("Loaded %d calendar date exceptions.", len(df))


def _parse_trips(
    df: pd.DataFrame,
    bounds: dict[str, tuple[str | None, str | None]],
    session: Session,
    version: int,
) -> None:
    missing = 0
    for _, row in df.iterrows():
        start, end = bounds.get(row["trip_id"], (None, None))
        if start is None:
            missing += 1
        session.add(ScheduledTrip(
            gtfs_version=version,
            trip_id=row["trip_id"],
            route_id=row["route_id"],
            service_id=row["service_id"],
            trip_headsign=row.get("trip_headsign", ""),
            direction_id=_optional_int(row.get("direction_id", "")),
            block_id=row.get("block_id", "") or None,
            shape_id=row.get("shape_id", "") or None,
            start_time=start,
            end_time=end,
        ))
    if missing:
        logger.warning("%d trips have no stop_times; start/end left empty.", missing)
    logger.info("Loaded %d trips.", len(df))


def _parse_stop_times(df: pd.DataFrame, session: Session, version: int) -> None:
    records = []
    for _, row in df.iterrows():
        records.append(StopTime(
            gtfs_version=version,
            trip_id=row["trip_id"],
            stop_id=row["stop_id"],
            stop_sequence=int(row["stop_sequence"]),
            arrival_time=normalize_hms(row["arrival_time"]),
            departure_time=normalize_hms(row["departure_time"]),
            distance_traveled=_optional_float(row.get("shape_dist_traveled", "")),
            timepoint=_optional_int(row.get("timepoint", "")),
        ))
    session.bulk_save_objects(records)
    logger.info("Loaded %d stop times.", len(records))


async def refresh_static_data(session: Session) -> int:
    """Download and import a fresh copy of GTFS static data."""
    zip_bytes = await download_gtfs_zip()
    return parse_and_store(zip_bytes, session)
