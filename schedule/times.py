"""
Extended-range time-of-day arithmetic.

GTFS times are offsets from the start of a service date and may exceed
24:00:00 ("25:30:00" is 01:30 the next calendar morning, still on the
previous service day).  Every helper here works on that representation
directly.  Nothing in this module wraps values to a 0–24h clock, which
would reorder trips that cross midnight.
"""

from datetime import date, datetime, time


def parse_hms(value: str | None) -> int | None:
    """Convert 'H:MM:SS' / 'HH:MM:SS' (hours unbounded) to seconds.

    Returns None for empty or malformed input.
    """
    if not value:
        return None
    parts = value.strip().split(":")
    if len(parts) != 3:
        return None
    try:
        h, m, s = (int(p) for p in parts)
    except ValueError:
        return None
    if m < 0 or s < 0 or h < 0:
        return None
    return h * 3600 + m * 60 + s


def format_hms(seconds: int | float) -> str:
    """Render seconds-since-service-day-start as zero-padded HH:MM:SS."""
    total = int(round(seconds))
    if total < 0:
        raise ValueError(f"Negative extended-range time: {seconds}")
    h, rem = divmod(total, 3600)
    m, s = divmod(rem, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


def normalize_hms(value: str | None) -> str | None:
    """'5:07:00' → '05:07:00'; malformed values pass through as None."""
    seconds = parse_hms(value)
    return None if seconds is None else format_hms(seconds)


def hms_to_minutes(value: str | None) -> float | None:
    seconds = parse_hms(value)
    return None if seconds is None else seconds / 60


def time_diff_seconds(later: str, earlier: str) -> int:
    """later - earlier, in seconds.  Both operands are extended-range strings."""
    a, b = parse_hms(later), parse_hms(earlier)
    if a is None or b is None:
        raise ValueError(f"Cannot diff {later!r} and {earlier!r}")
    return a - b


def add_seconds(value: str, seconds: int) -> str:
    base = parse_hms(value)
    if base is None:
        raise ValueError(f"Invalid time string {value!r}")
    return format_hms(base + seconds)


def extended_seconds(service_date: date, instant: datetime) -> float:
    """Seconds between the start of service_date and a local wall-clock instant.

    An instant at 01:30 the following calendar day yields 25.5 hours.
    """
    midnight = datetime.combine(service_date, time())
    return (instant - midnight).total_seconds()


def to_extended_hms(service_date: date, instant: datetime) -> str:
    return format_hms(max(0.0, extended_seconds(service_date, instant)))
