# backend/booking_engine/services/availability.py
"""
Availability resolver: is a slot bookable, and which slots are open.

Composes:
- Calendar (working hours, slot grid, custom hours, pricing)
- Exception store (blocked days, location-scoped overrides)
- Capacity ledger (read lock-free; the ledger re-checks under lock on reserve)
- Advance-booking windows of services and packages

Packages run their members back to back in sort order, starting at the
requested time. Every required member and every selected optional member
must fit its own working hours, window and capacity.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ..errors import (
    AdvanceWindowViolation,
    CapacityExhausted,
    FieldError,
    InvalidSelection,
    NotFoundError,
    ValidationError,
    raise_if_errors,
)
from ..models.generated import (
    ServiceLocations as DBLocation,
    ServicePackages as DBPackage,
    Services as DBService,
)
from .capacity_ledger import CapacityLedger, CellKey
from .exception_store import AvailabilityExceptionStore
from .rules import (
    validate_advance_window,
    validate_duration_override,
    validate_horizon,
    validate_location_advance,
    validate_service_windows,
)
from .slots.calculator import Slot, apply_price_modifier, day_slots, fits_working_hours, slot_duration
from .slots.config import BookingConfig, at_minutes, get_booking_config, minutes_to_time_str, time_str_to_minutes
from .slots.redis_store import SlotsRedisStore
from .targets import BookingTarget, PackageTarget, ServiceTarget

logger = logging.getLogger(__name__)

# Why a candidate time cannot be booked
INACTIVE = "inactive"
ADVANCE_WINDOW = "advance_window"
BLOCKED = "blocked"
CLOSED = "closed"
NO_CAPACITY = "no_capacity"


@dataclass
class Segment:
    """One member service occupying [start, end) inside a booking."""
    service: DBService
    location_id: Optional[int]
    start: datetime
    end: datetime

    @property
    def cell(self) -> CellKey:
        return CellKey.of(self.service.id, self.location_id, self.start.date())


@dataclass
class BookingPlan:
    target: BookingTarget
    location_id: Optional[int]
    start: datetime
    segments: list[Segment] = field(default_factory=list)
    package: Optional[DBPackage] = None

    @property
    def end(self) -> datetime:
        return self.segments[-1].end

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)

    @property
    def cells(self) -> list[CellKey]:
        return sorted({s.cell for s in self.segments})

    @property
    def requires_consultation(self) -> bool:
        if self.package is not None and self.package.requires_consultation:
            return True
        return any(s.service.requires_consultation for s in self.segments)

    @property
    def service_id(self) -> Optional[int]:
        return self.target.service_id if isinstance(self.target, ServiceTarget) else None

    @property
    def package_id(self) -> Optional[int]:
        return self.target.package_id if isinstance(self.target, PackageTarget) else None


class AvailabilityResolver:

    def __init__(
        self,
        db: Session,
        ledger: CapacityLedger | None = None,
        exceptions: AvailabilityExceptionStore | None = None,
        config: BookingConfig | None = None,
        redis: Redis | None = None,
    ):
        self.db = db
        self.config = config or get_booking_config()
        self.ledger = ledger or CapacityLedger(db, self.config)
        self.exceptions = exceptions or AvailabilityExceptionStore(db, self.config, redis)
        self.redis = redis

    # ── Bookability ──────────────────────────────────────────────────────

    def is_bookable(
        self,
        target: BookingTarget,
        location_id: int | None,
        when: datetime,
        now: datetime | None = None,
        duration_override: int | None = None,
    ) -> bool:
        """
        True if `when` can be booked right now.

        Unknown targets and invalid selections still raise; this only
        answers for well-formed requests.
        """
        plan = self.plan(target, location_id, when, duration_override)
        return self.unavailable_reason(plan, now) is None

    def plan(
        self,
        target: BookingTarget,
        location_id: int | None,
        when: datetime,
        duration_override: int | None = None,
    ) -> BookingPlan:
        """Lay out the member segments of a booking starting at `when`."""
        when = self.config.normalize(when)
        raise_if_errors(validate_duration_override(duration_override, self.config))

        if isinstance(target, ServiceTarget):
            service = self._get_service(target.service_id)
            self._check_location(location_id, [service])
            duration = slot_duration(service, duration_override, self.config)
            segment = Segment(service, location_id, when, when + timedelta(minutes=duration))
            return BookingPlan(target, location_id, when, [segment])

        if isinstance(target, PackageTarget):
            if duration_override is not None:
                raise ValidationError(
                    "Duration override applies to single services only",
                    field="duration_minutes",
                )
            package = self._get_package(target.package_id)
            members = self.package_members(package, target.selected_optional_ids)
            if not members:
                raise ValidationError(
                    "Package has no services to book",
                    field="selected_optional_services",
                )
            self._check_location(location_id, members)

            plan = BookingPlan(target, location_id, when, package=package)
            start = when
            for service in members:
                end = start + timedelta(minutes=slot_duration(service, None, self.config))
                member_location = location_id if self._location_serves(location_id, service) else None
                plan.segments.append(Segment(service, member_location, start, end))
                start = end
            return plan

        raise TypeError(f"Unsupported booking target: {target!r}")

    def unavailable_reason(
        self,
        plan: BookingPlan,
        now: datetime | None = None,
        held: frozenset[CellKey] = frozenset(),
    ) -> Optional[str]:
        """
        None when the plan is bookable, otherwise a reason code.

        Cells in `held` already carry one unit of the booking being moved.
        """
        now = self.config.normalize(now) if now else self.config.now()

        package = plan.package
        if package is not None:
            if not package.is_active:
                return INACTIVE
            if validate_advance_window(
                plan.start, now, package.min_advance_booking_hours, package.max_advance_booking_days
            ):
                return ADVANCE_WINDOW

        for index, segment in enumerate(plan.segments):
            reason = self._segment_reason(segment, now, package is None, held)
            if reason is not None:
                logger.debug(
                    f"Not bookable at {plan.start}: member {index} "
                    f"service={segment.service.id} reason={reason}"
                )
                return reason
        return None

    def ensure_bookable(
        self,
        plan: BookingPlan,
        now: datetime | None = None,
        held: frozenset[CellKey] = frozenset(),
    ) -> None:
        """Raise the domain error matching why `plan` cannot be booked."""
        reason = self.unavailable_reason(plan, now, held)
        if reason is None:
            return
        if reason == ADVANCE_WINDOW:
            raise AdvanceWindowViolation(
                "Requested time is outside the advance booking window",
                field="scheduled_at",
            )
        if reason == NO_CAPACITY:
            raise CapacityExhausted("No capacity left for the requested time", field="scheduled_at")
        messages = {
            INACTIVE: "Service is not available for booking",
            BLOCKED: "Requested day is blocked",
            CLOSED: "Requested time is not an available slot",
        }
        raise ValidationError(messages[reason], field="scheduled_at")

    def _segment_reason(
        self,
        segment: Segment,
        now: datetime,
        on_grid: bool,
        held: frozenset[CellKey] = frozenset(),
    ) -> Optional[str]:
        service = segment.service
        if not service.is_active or not service.is_bookable:
            return INACTIVE
        if validate_advance_window(
            segment.start, now, service.min_advance_booking_hours, service.max_advance_booking_days
        ):
            return ADVANCE_WINDOW

        day = segment.start.date()
        exception = self.exceptions.exception_for(service.id, day, segment.location_id)
        if exception is not None and exception.exception_type == "blocked":
            return BLOCKED

        location = self.db.get(DBLocation, segment.location_id) if segment.location_id else None
        if location is not None and not location.is_active:
            return INACTIVE
        if location is not None and validate_location_advance(
            segment.start, now, location.min_advance_booking_hours
        ):
            return ADVANCE_WINDOW

        if on_grid:
            duration = int((segment.end - segment.start).total_seconds() // 60)
            starts = self._day_starts(service, location, day, duration, exception)
            if minutes_to_time_str(segment.start.hour * 60 + segment.start.minute) not in starts:
                return CLOSED
        elif not fits_working_hours(service, location, segment.start, segment.end, exception, self.config):
            return CLOSED

        own = 1 if segment.cell in held else 0
        if self.ledger.available_capacity(service.id, segment.location_id, day, held=own) <= 0:
            return NO_CAPACITY
        return None

    # ── Open slots ───────────────────────────────────────────────────────

    def list_open_slots(
        self,
        target: BookingTarget,
        location_id: int | None = None,
        days_ahead: int | None = None,
        start_date: date | None = None,
        duration_override: int | None = None,
        now: datetime | None = None,
    ) -> Iterator[Slot]:
        """
        Lazily enumerate open slots from start_date (default today) for
        `days_ahead` days.

        Input errors are raised here, before iteration starts.
        """
        now = self.config.normalize(now) if now else self.config.now()
        days_ahead = days_ahead if days_ahead is not None else self.config.default_days_ahead
        raise_if_errors(validate_horizon(days_ahead, self.config))

        first_day = max(start_date or now.date(), now.date())
        last_day = first_day + timedelta(days=days_ahead - 1)

        # Validates target, location and selection eagerly
        probe = self.plan(target, location_id, at_minutes(first_day, 0), duration_override)

        if isinstance(target, ServiceTarget):
            return self._open_service_slots(probe, first_day, last_day, now)
        return self._open_package_slots(probe, first_day, last_day, now)

    def _open_service_slots(self, probe: BookingPlan, first_day: date, last_day: date, now: datetime):
        segment = probe.segments[0]
        service = segment.service
        location = self.db.get(DBLocation, segment.location_id) if segment.location_id else None
        duration = probe.duration_minutes
        exceptions = self.exceptions.exceptions_between(service.id, first_day, last_day, segment.location_id)

        day = first_day
        while day <= last_day:
            exception = exceptions.get(day)
            if self._day_open(service, segment.location_id, location, day, exception):
                price = apply_price_modifier(service.base_price, exception) if service.base_price is not None else None
                for start_str in self._day_starts(service, location, day, duration, exception):
                    start = at_minutes(day, time_str_to_minutes(start_str))
                    if validate_advance_window(
                        start, now, service.min_advance_booking_hours, service.max_advance_booking_days
                    ) or (
                        location is not None
                        and validate_location_advance(start, now, location.min_advance_booking_hours)
                    ):
                        continue
                    yield Slot(
                        start=start,
                        end=start + timedelta(minutes=duration),
                        service_id=service.id,
                        location_id=segment.location_id,
                        price=price,
                    )
            day += timedelta(days=1)

    def _open_package_slots(self, probe: BookingPlan, first_day: date, last_day: date, now: datetime):
        lead = probe.segments[0]
        location = self.db.get(DBLocation, lead.location_id) if lead.location_id else None
        lead_duration = int((lead.end - lead.start).total_seconds() // 60)

        day = first_day
        while day <= last_day:
            exception = self.exceptions.exception_for(lead.service.id, day, lead.location_id)
            for start_str in self._day_starts(lead.service, location, day, lead_duration, exception):
                start = at_minutes(day, time_str_to_minutes(start_str))
                plan = self.plan(probe.target, probe.location_id, start)
                if self.unavailable_reason(plan, now) is not None:
                    continue
                yield Slot(
                    start=plan.start,
                    end=plan.end,
                    package_id=probe.package_id,
                    location_id=probe.location_id,
                    price=self._plan_price(plan),
                )
            day += timedelta(days=1)

    def _day_open(self, service, location_id, location, day: date, exception) -> bool:
        if not service.is_active or not service.is_bookable:
            return False
        if location is not None and not location.is_active:
            return False
        if exception is not None and exception.exception_type == "blocked":
            return False
        return self.ledger.available_capacity(service.id, location_id, day) > 0

    def _plan_price(self, plan: BookingPlan) -> Optional[int]:
        total = 0
        for segment in plan.segments:
            if segment.service.base_price is None:
                continue
            exception = self.exceptions.exception_for(
                segment.service.id, segment.start.date(), segment.location_id
            )
            total += apply_price_modifier(segment.service.base_price, exception)
        return total

    # ── Packages ─────────────────────────────────────────────────────────

    def package_members(self, package: DBPackage, selected_optional_ids) -> list[DBService]:
        """
        Required members plus the selected optional ones, in package order.

        Raises InvalidSelection naming every selected id that is not an
        optional member of the package.
        """
        optional_ids = {item.service_id for item in package.items if item.is_optional}
        errors = [
            FieldError(
                "selected_optional_services",
                f"Service {service_id} is not an optional service of this package.",
                index=index,
            )
            for index, service_id in enumerate(selected_optional_ids)
            if service_id not in optional_ids
        ]
        raise_if_errors(errors, InvalidSelection)

        selected = set(selected_optional_ids)
        return [
            item.service
            for item in package.items
            if not item.is_optional or item.service_id in selected
        ]

    # ── Calendar with cache ──────────────────────────────────────────────

    def _day_starts(self, service, location, day: date, duration: int, exception) -> list[str]:
        """Slot start times ("HH:MM") of a day, served from Redis when possible."""
        location_id = location.id if location is not None else None

        # Location-scoped exceptions make the day differ per location, cache key covers it
        if self.redis is not None:
            store = SlotsRedisStore(self.redis, self.config)
            try:
                cached = store.get_day_slots(service.id, location_id, duration, day)
            except RedisError as e:
                logger.error(f"Slot cache read failed for service={service.id}: {e}")
                cached = None
            if cached is not None:
                return cached

        starts = [
            minutes_to_time_str(s.start.hour * 60 + s.start.minute)
            for s in day_slots(service, location, day, duration, exception, self.config)
        ]

        if self.redis is not None:
            try:
                store.store_day_slots(service.id, location_id, duration, day, starts)
            except RedisError as e:
                logger.error(f"Slot cache write failed for service={service.id}: {e}")
        return starts

    # ── Lookups ──────────────────────────────────────────────────────────

    def _get_service(self, service_id: int) -> DBService:
        service = self.db.get(DBService, service_id)
        if service is None:
            raise NotFoundError("Service not found", field="service_id")
        raise_if_errors(validate_service_windows(
            service.min_advance_booking_hours or 0, service.max_advance_booking_days or 0
        ))
        return service

    def _get_package(self, package_id: int) -> DBPackage:
        package = self.db.get(DBPackage, package_id)
        if package is None:
            raise NotFoundError("Service package not found", field="service_package_id")
        return package

    def _check_location(self, location_id: int | None, services: list[DBService]) -> None:
        if location_id is None:
            return
        location = self.db.get(DBLocation, location_id)
        if location is None or all(location.service_id != s.id for s in services):
            raise NotFoundError("Service location not found", field="location_id")

    def _location_serves(self, location_id: int | None, service: DBService) -> bool:
        if location_id is None:
            return False
        location = self.db.get(DBLocation, location_id)
        return location is not None and location.service_id == service.id
