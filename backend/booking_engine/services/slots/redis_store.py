# backend/booking_engine/services/slots/redis_store.py
"""
Redis storage for calendar day slots using Sorted Sets.

Key format: slots:day:{service_id}:{location_id}:{duration}:{date}
Value: Sorted Set where member = "HH:MM" slot start,
       score = minutes since midnight (keeps members in time order).

Only the Calendar output is cached. Capacity is always read live from the
ledger, so bookings never invalidate these keys.
Sentinel: "__empty__" with score=-1 marks "calculated, zero slots".
"""

from datetime import date
from redis import Redis

from .config import BookingConfig, get_booking_config, time_str_to_minutes


EMPTY_SENTINEL = "__empty__"


def _decode(member) -> str:
    return member.decode() if isinstance(member, bytes) else member


class SlotsRedisStore:
    """Redis storage wrapper using Sorted Sets for slot data."""

    KEY_PREFIX = "slots:day"

    def __init__(self, redis: Redis, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()

    def _key(self, service_id: int, location_id: int | None, duration: int, dt: date) -> str:
        return f"{self.KEY_PREFIX}:{service_id}:{location_id or 0}:{duration}:{dt.isoformat()}"

    # ── Write ────────────────────────────────────────────────────────────

    def store_day_slots(
        self,
        service_id: int,
        location_id: int | None,
        duration: int,
        dt: date,
        starts: list[str],
    ) -> None:
        """
        Store calculated slot starts for a day.

        Args:
            starts: List of "HH:MM" strings. Empty list → sentinel is stored.
        """
        key = self._key(service_id, location_id, duration, dt)
        pipe = self.redis.pipeline()

        # Remove old data
        pipe.delete(key)

        if starts:
            pipe.zadd(key, {s: time_str_to_minutes(s) for s in starts})
        else:
            # Empty day: sentinel so EXISTS returns True
            pipe.zadd(key, {EMPTY_SENTINEL: -1})

        pipe.expire(key, self.config.cache_ttl_seconds)
        pipe.execute()

    # ── Read ─────────────────────────────────────────────────────────────

    def get_day_slots(
        self,
        service_id: int,
        location_id: int | None,
        duration: int,
        dt: date,
    ) -> list[str] | None:
        """
        Get cached slot starts for a day.

        Returns:
            Sorted list of "HH:MM" strings, or None on cache miss.
        """
        key = self._key(service_id, location_id, duration, dt)
        if not self.redis.exists(key):
            return None

        members = self.redis.zrangebyscore(key, 0, "+inf")
        return [
            _decode(m)
            for m in members
            if _decode(m) != EMPTY_SENTINEL
        ]

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_service_slots(
        self,
        service_id: int,
        dates: list[date] | None = None,
    ) -> int:
        """
        Delete cached slots of a service (every location and duration).

        Args:
            dates: Specific dates, or None to delete all for the service.

        Returns:
            Number of deleted keys.
        """
        if dates:
            keys = []
            for dt in dates:
                keys.extend(self.redis.keys(f"{self.KEY_PREFIX}:{service_id}:*:{dt.isoformat()}"))
        else:
            keys = self.redis.keys(f"{self.KEY_PREFIX}:{service_id}:*")

        if not keys:
            return 0

        return self.redis.delete(*keys)
