# backend/booking_engine/routers/deps.py
# Engine services wired per request from the session and the Redis client

from fastapi import Depends
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..redis_client import get_redis
from ..services.availability import AvailabilityResolver
from ..services.booking_lifecycle import BookingStateMachine
from ..services.calendar_sync import CalendarSyncCoordinator
from ..services.capacity_ledger import CapacityLedger
from ..services.exception_store import AvailabilityExceptionStore
from ..services.slots import get_booking_config


def get_ledger(db: Session = Depends(get_db)) -> CapacityLedger:
    return CapacityLedger(db, get_booking_config())


def get_exception_store(
    db: Session = Depends(get_db),
    redis: Redis | None = Depends(get_redis),
) -> AvailabilityExceptionStore:
    return AvailabilityExceptionStore(db, get_booking_config(), redis)


def get_resolver(
    db: Session = Depends(get_db),
    redis: Redis | None = Depends(get_redis),
) -> AvailabilityResolver:
    config = get_booking_config()
    ledger = CapacityLedger(db, config)
    exceptions = AvailabilityExceptionStore(db, config, redis)
    return AvailabilityResolver(db, ledger, exceptions, config, redis)


def get_calendar_sync(db: Session = Depends(get_db)) -> CalendarSyncCoordinator:
    return CalendarSyncCoordinator(db, get_booking_config())


def get_state_machine(
    db: Session = Depends(get_db),
    resolver: AvailabilityResolver = Depends(get_resolver),
    calendar_sync: CalendarSyncCoordinator = Depends(get_calendar_sync),
) -> BookingStateMachine:
    return BookingStateMachine(db, resolver.ledger, resolver, calendar_sync, resolver.config)
