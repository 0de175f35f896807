# backend/booking_engine/services/slots/config.py
"""
Booking configuration for slots calculation and capacity accounting.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta
from functools import lru_cache
from zoneinfo import ZoneInfo

from ...config import settings


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for the booking engine.

    Attributes:
        timezone: Reporting timezone every timestamp is normalized into
        default_day_start / default_day_end: Working hours for a service
            that has no schedule configured at all
        min_duration_minutes / max_duration_minutes: Clamp for slot durations
        max_range_days: Longest inclusive date range for bulk updates,
            and longest open-slot horizon
        default_days_ahead: Horizon used when a query does not give one
        min_capacity / max_capacity: Bounds for bulk set_capacity
        default_daily_capacity: Capacity of a cell nobody configured
        update_guard_hours: Generic updates may not move a booking that is
            closer than this to its current start
        reserve_retries: Optimistic retries on a capacity cell before giving up
        cache_ttl_seconds: Redis TTL for cached day slots
    """
    timezone: str = "UTC"
    default_day_start: str = "09:00"
    default_day_end: str = "18:00"
    min_duration_minutes: int = 15
    max_duration_minutes: int = 480
    max_range_days: int = 90
    default_days_ahead: int = 7
    min_capacity: int = 1
    max_capacity: int = 50
    default_daily_capacity: int = 10
    update_guard_hours: int = 24
    reserve_retries: int = 3
    cache_ttl_seconds: int = 86400  # 24 hours

    def __post_init__(self):
        """Validate configuration."""
        if self.min_duration_minutes < 1 or self.min_duration_minutes > self.max_duration_minutes:
            raise ValueError(
                f"Invalid duration bounds: [{self.min_duration_minutes}, {self.max_duration_minutes}]"
            )
        if time_str_to_minutes(self.default_day_start) >= time_str_to_minutes(self.default_day_end):
            raise ValueError(
                f"default_day_start must be before default_day_end, "
                f"got {self.default_day_start}-{self.default_day_end}"
            )
        if self.reserve_retries < 1:
            raise ValueError(f"reserve_retries must be >= 1, got {self.reserve_retries}")
        if not 0 <= self.default_daily_capacity <= self.max_capacity:
            raise ValueError(
                f"default_daily_capacity must be within [0, {self.max_capacity}], "
                f"got {self.default_daily_capacity}"
            )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def clamp_duration(self, minutes: int) -> int:
        """Clamp a slot duration into [min_duration_minutes, max_duration_minutes]."""
        return max(self.min_duration_minutes, min(self.max_duration_minutes, int(minutes)))

    def normalize(self, dt: datetime) -> datetime:
        """
        Convert a timestamp into naive reporting-timezone time, minute-granular.

        Aware datetimes are converted; naive ones are taken as already local.
        """
        if dt.tzinfo is not None:
            dt = dt.astimezone(self.tz).replace(tzinfo=None)
        return dt.replace(second=0, microsecond=0)

    def now(self) -> datetime:
        """Current reporting-timezone time (naive, minute-granular)."""
        return self.normalize(datetime.now(self.tz))


@lru_cache
def get_booking_config() -> BookingConfig:
    """
    Get booking configuration (singleton).

    Only the timezone comes from the environment for now.
    """
    return BookingConfig(timezone=settings.timezone)


# ── Time helpers ─────────────────────────────────────────────────────────


def time_str_to_minutes(value: str) -> int:
    """"HH:MM" -> minutes since midnight. "24:00" is allowed as end of day."""
    hour, minute = value.strip().split(":")[:2]
    return int(hour) * 60 + int(minute)


def minutes_to_time_str(minutes: int) -> str:
    """Minutes since midnight -> "HH:MM"."""
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def at_minutes(day: date, minutes: int) -> datetime:
    """Naive datetime for `minutes` after midnight of `day`."""
    return datetime.combine(day, datetime.min.time()) + timedelta(minutes=minutes)


def iter_days(start: date, end: date):
    """Yield every date in [start, end] inclusive."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)
