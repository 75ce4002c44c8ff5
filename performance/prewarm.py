"""
Background cache pre-warm.

Walks every service date that has vehicle observations and computes the
default on-time aggregate for dates not yet cached.  The in-progress
service day is skipped.  A failure on one date is logged and the sweep
moves on.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta

from sqlalchemy import extract, func
from sqlalchemy.orm import Session

from db.models import VehicleObservation
from errors import NoScheduleAvailable
from performance import cache as daily_cache
from performance.cache import DailyCacheKey
from performance.on_time import OnTimeSettings, get_day
from schedule.calendar import SERVICE_DAY_START_HOUR, is_current_service_day

logger = logging.getLogger(__name__)

DEFAULT_METRIC = "avgObserved"


@dataclass
class PrewarmResult:
    warmed: int = 0
    already_cached: int = 0
    skipped: int = 0
    failed: int = 0


def _as_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def observed_service_dates(session: Session) -> list[date]:
    """Distinct service dates with at least one observation, oldest first."""
    hour = extract("hour", VehicleObservation.observed_at)
    day = func.date(VehicleObservation.observed_at)
    same_day = session.query(day).filter(hour >= SERVICE_DAY_START_HOUR).distinct().all()
    # Observations before 03:00 belong to the previous service day.
    overnight = session.query(day).filter(hour < SERVICE_DAY_START_HOUR).distinct().all()

    dates = {_as_date(r[0]) for r in same_day if r[0] is not None}
    dates |= {_as_date(r[0]) - timedelta(days=1) for r in overnight if r[0] is not None}
    return sorted(dates)


def warm_on_time_cache(session: Session, settings: OnTimeSettings | None = None) -> PrewarmResult:
    settings = settings or OnTimeSettings()
    days = observed_service_dates(session)
    logger.info("Cache pre-warm: checking %d service days.", len(days))

    result = PrewarmResult()
    for service_date in days:
        if is_current_service_day(service_date):
            result.skipped += 1
            continue

        key = DailyCacheKey(
            service_date, DEFAULT_METRIC, settings.threshold_minutes, include_canceled=False,
        )
        if daily_cache.get(session, key) is not None:
            result.already_cached += 1
            continue

        try:
            day = get_day(
                session, service_date, DEFAULT_METRIC, settings.threshold_minutes, False, settings,
            )
        except NoScheduleAvailable as exc:
            logger.warning("Cache pre-warm failed for %s: %s", service_date, exc)
            result.failed += 1
            continue
        except Exception:
            logger.error("Cache pre-warm failed for %s", service_date, exc_info=True)
            session.rollback()
            result.failed += 1
            continue

        if day is None:
            logger.warning("Cache pre-warm: no scheduled trips on %s", service_date)
            result.failed += 1
            continue
        if not day.cached:
            logger.warning("Cache pre-warm: aggregate for %s was not stored", service_date)
            result.failed += 1
            continue
        result.warmed += 1
        if result.warmed % 10 == 0:
            logger.info("Cache pre-warm: %d days completed...", result.warmed)

    logger.info(
        "Cache pre-warm finished. Warmed: %d, already cached: %d, skipped: %d, failed: %d",
        result.warmed, result.already_cached, result.skipped, result.failed,
    )
    return result
