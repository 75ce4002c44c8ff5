"""
Daily on-time-performance cache.

One row per (service_date, metric, threshold, include_canceled,
frequency_filter, route_id).  The aggregation engine only ever stores the
unfiltered base key; filtered views are derived from it at read time.

Rules:
  - The in-progress service day is never written; its observations are
    still accruing.
  - Writes are a single INSERT … ON CONFLICT DO UPDATE, so concurrent
    writers of the same key resolve to last-writer-wins.
  - Every storage failure is logged and reported as a miss or a skipped
    write.  Callers always have the option of recomputing.
"""

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import String, cast, distinct, func, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.models import DailyCacheEntry
from errors import CacheWriteFailure
from schedule.calendar import is_current_service_day, local_now

logger = logging.getLogger(__name__)

_KEY_COLUMNS = (
    "service_date", "metric", "threshold_minutes",
    "include_canceled", "frequency_filter", "route_id",
)


@dataclass(frozen=True)
class DailyCacheKey:
    service_date: date
    metric: str
    threshold_minutes: float
    include_canceled: bool
    frequency_filter: str | None = None
    route_id: str | None = None

    def columns(self) -> dict:
        return {
            "service_date": self.service_date,
            "metric": self.metric,
            "threshold_minutes": float(self.threshold_minutes),
            "include_canceled": self.include_canceled,
            "frequency_filter": self.frequency_filter or "",
            "route_id": self.route_id or "",
        }


def setup_cache_storage(engine: Engine) -> None:
    """Create the cache table.  Run once at startup, after init_db()."""
    DailyCacheEntry.__table__.create(bind=engine, checkfirst=True)
    logger.info("Cache table %s ready.", DailyCacheEntry.__tablename__)


def get(session: Session, key: DailyCacheKey) -> dict | None:
    """Cached payload for key, or None on a miss or storage failure."""
    try:
        entry = session.query(DailyCacheEntry).filter_by(**key.columns()).one_or_none()
    except SQLAlchemyError as exc:
        session.rollback()
        logger.warning("Cache read failed for %s: %s", key, exc)
        return None
    if entry is None:
        return None
    logger.debug("Cache hit for %s", key)
    return entry.data


def put(session: Session, key: DailyCacheKey, payload: dict) -> bool:
    """Upsert payload under key.  Returns False when skipped or failed."""
    if is_current_service_day(key.service_date):
        logger.debug("Not caching in-progress service day %s", key.service_date)
        return False
    try:
        _upsert(session, key, payload)
    except CacheWriteFailure as exc:
        logger.warning("%s: %s", exc, exc.__cause__)
        return False
    return True


def _upsert(session: Session, key: DailyCacheKey, payload: dict) -> None:
    values = {**key.columns(), "data": payload, "cached_at": local_now()}
    try:
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            insert = None

        if insert is None:
            session.merge(DailyCacheEntry(**values))
        else:
            stmt = insert(DailyCacheEntry).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=list(_KEY_COLUMNS),
                set_={"data": stmt.excluded.data, "cached_at": stmt.excluded.cached_at},
            )
            session.execute(stmt)
        session.commit()
    except SQLAlchemyError as exc:
        session.rollback()
        raise CacheWriteFailure(f"cache write failed for {key}") from exc


def invalidate_range(session: Session, start: date, end: date) -> int:
    """Delete every entry with start <= service_date <= end; returns the count."""
    deleted = (
        session.query(DailyCacheEntry)
        .filter(DailyCacheEntry.service_date >= start, DailyCacheEntry.service_date <= end)
        .delete(synchronize_session=False)
    )
    session.commit()
    logger.info("Invalidated %d cache entries between %s and %s.", deleted, start, end)
    return deleted


def cache_stats(session: Session) -> dict:
    total, dates, oldest, newest = session.query(
        func.count(),
        func.count(distinct(DailyCacheEntry.service_date)),
        func.min(DailyCacheEntry.service_date),
        func.max(DailyCacheEntry.service_date),
    ).select_from(DailyCacheEntry).one()

    if session.get_bind().dialect.name == "postgresql":
        size = session.execute(
            text(f"SELECT pg_size_pretty(pg_total_relation_size('{DailyCacheEntry.__tablename__}'))")
        ).scalar()
    else:
        size_bytes = session.query(
            func.coalesce(func.sum(func.length(cast(DailyCacheEntry.data, String))), 0)
        ).scalar()
        size = pretty_bytes(int(size_bytes))

    return {
        "total_entries": total,
        "dates_with_cache": dates,
        "oldest_cached_date": oldest,
        "newest_cached_date": newest,
        "approximate_size": size,
    }


def pretty_bytes(size: int) -> str:
    """20480 → "20 kB", in the style of PostgreSQL's pg_size_pretty."""
    if size < 10 * 1024:
        return f"{size} bytes"
    for unit in ("kB", "MB", "GB"):
        size = round(size / 1024)
        if size < 10 * 1024:
            return f"{size} {unit}"
    return f"{round(size / 1024)} TB"
