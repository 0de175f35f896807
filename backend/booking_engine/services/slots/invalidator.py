# backend/booking_engine/services/slots/invalidator.py
"""
Cache invalidation for calendar day slots.

Triggers:
✓ Availability exception created/updated/deleted → invalidate affected dates

Does NOT trigger:
✗ Booking created/cancelled/rescheduled (capacity is read live)
✗ Bulk capacity updates (ledger only)
"""

import logging
from datetime import date
from redis import Redis
from redis.exceptions import RedisError

from .redis_store import SlotsRedisStore

logger = logging.getLogger(__name__)


def invalidate_service_cache(
    redis: Redis | None,
    service_id: int,
    dates: list[date] | None = None,
) -> int:
    """
    Invalidate cached day slots for a service.

    Args:
        redis: Redis client, or None when caching is disabled
        service_id: Service ID
        dates: List of specific dates to invalidate,
               or None to invalidate all cached dates

    Returns:
        Number of deleted cache keys
    """
    if redis is None:
        return 0

    store = SlotsRedisStore(redis)
    try:
        deleted = store.delete_service_slots(service_id, dates)
    except RedisError as e:
        # Stale entries expire on their own TTL
        logger.error(f"Slot cache invalidation failed for service={service_id}: {e}")
        return 0

    logger.info(f"Slot cache invalidated: service={service_id} keys={deleted}")
    return deleted
