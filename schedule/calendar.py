"""
Schedule resolver.

Answers, for any calendar date:
  - which imported schedule version applies (latest import_date <= date),
  - which service_ids run (calendar weekday rule + calendar_dates exceptions),
  - where the service day begins and ends in wall-clock time.

Service day convention:
  A service day starts at 03:00 local and its observation window closes
  at 05:00 local the next calendar morning (26 hours).  An instant before
  03:00 belongs to the previous day's service.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from config import AGENCY_TIMEZONE
from db.models import CalendarEntry, CalendarException, ScheduleVersion
from errors import NoScheduleAvailable

logger = logging.getLogger(__name__)

SERVICE_DAY_START_HOUR = 3
# Observation window end, measured from midnight of the service date.
SERVICE_DAY_END_HOURS = 29

_WEEKDAY_COLUMNS = (
    CalendarEntry.monday,
    CalendarEntry.tuesday,
    CalendarEntry.wednesday,
    CalendarEntry.thursday,
    CalendarEntry.friday,
    CalendarEntry.saturday,
    CalendarEntry.sunday,
)


@dataclass(frozen=True)
class ServiceDay:
    start: datetime
    end: datetime

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


@dataclass(frozen=True)
class ScheduleScope:
    """Everything a query needs to restrict itself to one service day."""
    service_date: date
    version: int
    service_ids: frozenset[str]
    service_day: ServiceDay


def agency_tz() -> ZoneInfo:
    return ZoneInfo(AGENCY_TIMEZONE)


def local_now() -> datetime:
    """Current agency wall-clock time as a naive datetime."""
    return datetime.now(agency_tz()).replace(tzinfo=None)


def to_local(instant: datetime) -> datetime:
    """Normalise an instant to naive agency-local time.

    Naive datetimes are assumed to already be agency-local.
    """
    if instant.tzinfo is None:
        return instant
    return instant.astimezone(agency_tz()).replace(tzinfo=None)


def from_posix(timestamp: int | float) -> datetime:
    """POSIX seconds (as carried in GTFS-RT) → naive agency-local datetime."""
    return datetime.fromtimestamp(timestamp, agency_tz()).replace(tzinfo=None)


def date_from_timestamp(instant: datetime) -> date:
    """Service date of an instant: its calendar date, minus one before 03:00."""
    local = to_local(instant)
    if local.hour < SERVICE_DAY_START_HOUR:
        return local.date() - timedelta(days=1)
    return local.date()


def current_service_date() -> date:
    return date_from_timestamp(local_now())


def is_current_service_day(service_date: date) -> bool:
    return service_date == current_service_date()


def service_day_boundaries(service_date: date) -> ServiceDay:
    midnight = datetime.combine(service_date, time())
    return ServiceDay(
        start=midnight + timedelta(hours=SERVICE_DAY_START_HOUR),
        end=midnight + timedelta(hours=SERVICE_DAY_END_HOURS),
    )


def resolve_version(session: Session, service_date: date) -> ScheduleVersion:
    """Latest schedule version imported on or before service_date."""
    version = (
        session.query(ScheduleVersion)
        .filter(ScheduleVersion.import_date <= service_date)
        .order_by(ScheduleVersion.import_date.desc(), ScheduleVersion.version.desc())
        .first()
    )
    if version is None:
        raise NoScheduleAvailable(service_date)
    return version


def resolve_service_ids(session: Session, version: int, service_date: date) -> set[str]:
    """service_ids running on service_date under the given schedule version.

    Weekday rule first (flag for the date's weekday set, date within the
    entry's validity range), then calendar_dates for that exact date:
    exception_type 1 adds the service, any other value removes it.
    """
    weekday_flag = _WEEKDAY_COLUMNS[service_date.weekday()]
    rows = (
        session.query(CalendarEntry.service_id)
        .filter(
            CalendarEntry.gtfs_version == version,
            weekday_flag.is_(True),
            CalendarEntry.start_date <= service_date,
            CalendarEntry.end_date >= service_date,
        )
        .all()
    )
    service_ids = {r[0] for r in rows}

    exceptions = (
        session.query(CalendarException.service_id, CalendarException.exception_type)
        .filter(
            CalendarException.gtfs_version == version,
            CalendarException.date == service_date,
        )
        .all()
    )
    for service_id, exception_type in exceptions:
        if exception_type == 1:
            service_ids.add(service_id)
        else:
            service_ids.discard(service_id)

    return service_ids


def resolve_schedule(session: Session, service_date: date) -> ScheduleScope:
    """Version + service ids + window for a day; NoScheduleAvailable if empty."""
    version = resolve_version(session, service_date)
    service_ids = resolve_service_ids(session, version.version, service_date)
    if not service_ids:
        raise NoScheduleAvailable(
            service_date,
            f"No service scheduled on {service_date.isoformat()} (schedule v{version.version})",
        )
    return ScheduleScope(
        service_date=service_date,
        version=version.version,
        service_ids=frozenset(service_ids),
        service_day=service_day_boundaries(service_date),
    )


def iter_dates(start: date, end: date):
    """Inclusive day-by-day range."""
    day = start
    while day <= end:
        yield day
        day += timedelta(days=1)
