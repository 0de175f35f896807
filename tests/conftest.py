"""Shared test fixtures and helpers."""

from datetime import date, datetime
from typing import Optional

import pytest
from sqlalchemy.orm import sessionmaker

from booking_engine.database import build_engine, init_db
from booking_engine.models.generated import (
    ServiceLocations,
    ServicePackageItems,
    ServicePackages,
    Services,
)
from booking_engine.schemas.bookings import BookingCreate
from booking_engine.services.availability import AvailabilityResolver
from booking_engine.services.booking_lifecycle import BookingStateMachine
from booking_engine.services.capacity_ledger import CapacityLedger
from booking_engine.services.exception_store import AvailabilityExceptionStore
from booking_engine.services.slots.config import BookingConfig

# Monday morning, before opening hours
NOW = datetime(2030, 1, 7, 8, 0)
MONDAY = NOW.date()
TUESDAY = date(2030, 1, 8)
WEDNESDAY = date(2030, 1, 9)


class RecordingEmitter:
    """Stands in for the Redis event emitters."""

    def __init__(self):
        self.events: list[tuple[str, dict]] = []

    def __call__(self, event_type: str, payload: dict):
        self.events.append((event_type, payload))
        return True

    def of_type(self, event_type: str) -> list[dict]:
        return [payload for kind, payload in self.events if kind == event_type]


class RecordingNotifier:
    """Stands in for the calendar sync coordinator."""

    def __init__(self):
        self.calls: list[dict] = []

    def booking_event(self, event_type, booking, now=None, notify_client=True):
        self.calls.append({
            "event": event_type,
            "booking_id": booking.id,
            "status": booking.status,
            "notify_client": notify_client,
        })

    @property
    def event_types(self) -> list[str]:
        return [c["event"] for c in self.calls]


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'booking.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def config():
    return BookingConfig(timezone="UTC")


@pytest.fixture
def emitter():
    return RecordingEmitter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def ledger(db, config, emitter):
    return CapacityLedger(db, config, emitter=emitter)


@pytest.fixture
def exception_store(db, config):
    return AvailabilityExceptionStore(db, config)


@pytest.fixture
def resolver(db, ledger, exception_store, config):
    return AvailabilityResolver(db, ledger, exception_store, config)


@pytest.fixture
def machine(db, ledger, resolver, notifier, config):
    return BookingStateMachine(db, ledger, resolver, notifier, config)


def make_service(db, **overrides) -> Services:
    """Helper to create a Service with sensible defaults (09:00-18:00, 60 min)."""
    values = dict(
        name="Massage",
        duration_minutes=60,
        base_price=5000,
        work_schedule="{}",
        daily_capacity=None,
        min_advance_booking_hours=0,
        max_advance_booking_days=90,
        requires_consultation=0,
        is_active=1,
        is_bookable=1,
    )
    values.update(overrides)
    service = Services(**values)
    db.add(service)
    db.commit()
    db.refresh(service)
    return service


def make_location(db, service: Services, **overrides) -> ServiceLocations:
    values = dict(service_id=service.id, name="Main room", is_active=1)
    values.update(overrides)
    location = ServiceLocations(**values)
    db.add(location)
    db.commit()
    db.refresh(location)
    return location


def make_package(
    db,
    required: tuple = (),
    optional: tuple = (),
    **overrides,
) -> ServicePackages:
    """Helper to create a package; members run in the order given, required first."""
    values = dict(
        name="Spa day",
        min_advance_booking_hours=0,
        max_advance_booking_days=90,
        requires_consultation=0,
        is_active=1,
    )
    values.update(overrides)
    package = ServicePackages(**values)
    db.add(package)
    db.flush()

    members = [(s, 0) for s in required] + [(s, 1) for s in optional]
    for order, (service, is_optional) in enumerate(members):
        db.add(ServicePackageItems(
            package_id=package.id,
            service_id=service.id,
            sort_order=order,
            is_optional=is_optional,
        ))
    db.commit()
    db.refresh(package)
    return package


def booking_request(
    service: Optional[Services] = None,
    package: Optional[ServicePackages] = None,
    scheduled_at: datetime = datetime(2030, 1, 9, 10, 0),
    **overrides,
) -> BookingCreate:
    """Helper to create a BookingCreate for a service or a package."""
    values = dict(
        user_id=1,
        service_id=service.id if service is not None else None,
        service_package_id=package.id if package is not None else None,
        scheduled_at=scheduled_at,
        client_name="Ada Lovelace",
        client_email="ada@example.com",
    )
    values.update(overrides)
    return BookingCreate(**values)
