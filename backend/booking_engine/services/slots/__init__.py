# backend/booking_engine/services/slots/__init__.py
"""
Calendar module.

Candidate slot generation from working hours and exceptions,
with an optional Redis cache of day slot starts.
"""

from .config import BookingConfig, get_booking_config
from .calculator import Slot, SlotSequence, generate_slots
from .redis_store import SlotsRedisStore
from .invalidator import invalidate_service_cache

__all__ = [
    "BookingConfig",
    "get_booking_config",
    "Slot",
    "SlotSequence",
    "generate_slots",
    "SlotsRedisStore",
    "invalidate_service_cache",
]
