from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv()

BASE_DIR = Path(__file__).parent

# Data directory (gitignored)
DATA_DIR = BASE_DIR / "data"
DATA_DIR.mkdir(exist_ok=True)

# Database
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/transit.db")

# All service-day arithmetic happens in the agency's wall-clock time.
AGENCY_TIMEZONE: str = os.getenv("AGENCY_TIMEZONE", "America/Toronto")

# GTFS Static
GTFS_STATIC_URL: str = os.getenv("GTFS_STATIC_URL", "")
GTFS_REFRESH_HOUR: int = int(os.getenv("GTFS_REFRESH_HOUR", "1"))

# GTFS-Realtime
GTFS_RT_VEHICLE_POSITIONS_URL: str = os.getenv("GTFS_RT_VEHICLE_POSITIONS_URL", "")
GTFS_RT_TRIP_UPDATES_URL: str = os.getenv("GTFS_RT_TRIP_UPDATES_URL", "")
GTFS_RT_API_KEY: str = os.getenv("GTFS_RT_API_KEY", "")
GTFS_RT_API_KEY_HEADER: str = os.getenv("GTFS_RT_API_KEY_HEADER", "Ocp-Apim-Subscription-Key")
GTFS_RT_POLL_SECONDS: int = int(os.getenv("GTFS_RT_POLL_SECONDS", "60"))
GTFS_RT_TIMEOUT_SECONDS: float = float(os.getenv("GTFS_RT_TIMEOUT_SECONDS", "15"))

# Feed vendor conventions. Integer trip ids at or below the ceiling are
# synthetic placeholders; numeric route ids at or above REVENUE_ROUTE_CEILING
# are non-revenue (garage moves, training, etc.).
PLACEHOLDER_TRIP_ID_CEILING: int = int(os.getenv("PLACEHOLDER_TRIP_ID_CEILING", "0"))
REVENUE_ROUTE_CEILING: int = int(os.getenv("REVENUE_ROUTE_CEILING", "800"))

# On-time performance
ONTIME_THRESHOLD_MINUTES: int = int(os.getenv("ONTIME_THRESHOLD_MINUTES", "5"))
FREQUENT_ROUTE_IDS: frozenset[str] = frozenset(
    r.strip()
    for r in os.getenv(
        "FREQUENT_ROUTE_IDS",
        "5,6,7,10,11,12,14,25,40,41,44,45,57,61,62,63,68,74,75,80,85,87,88,90,98,111",
    ).split(",")
    if r.strip()
)
CACHE_PREWARM_HOUR: int = int(os.getenv("CACHE_PREWARM_HOUR", "4"))

# Block tracing
TRIP_START_GRACE_MINUTES: int = int(os.getenv("TRIP_START_GRACE_MINUTES", "5"))
TRIP_STALE_MINUTES: int = int(os.getenv("TRIP_STALE_MINUTES", "30"))
STREAK_MAX_LOOKBACK_DAYS: int = int(os.getenv("STREAK_MAX_LOOKBACK_DAYS", "365"))
STREAK_MAX_UNAVAILABLE_DAYS: int = int(os.getenv("STREAK_MAX_UNAVAILABLE_DAYS", "2"))

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "8000"))
CORS_ORIGINS: list[str] = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
INGEST_API_KEY: str = os.getenv("INGEST_API_KEY", "")
