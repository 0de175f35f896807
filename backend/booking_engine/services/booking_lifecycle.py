# backend/booking_engine/services/booking_lifecycle.py
"""
Booking state machine.

    pending ──► confirmed ──► completed
       │            │
       └────────────┴──► cancelled

completed and cancelled are terminal. Every transition that touches
capacity commits the booking row and the ledger cells together.

Two guards protect moves:
- reschedule(): the NEW time must satisfy the advance windows, relative to now
- update():     the CURRENT time must be at least 24h away before it can move
"""

import json
import logging
import secrets
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from ..errors import FieldError, InvalidTransition, NotFoundError, ValidationError, raise_if_errors
from ..models.generated import Bookings as DBBooking
from ..schemas.bookings import (
    BookingCreate,
    BookingReschedule,
    BookingUpdate,
    ConsultationComplete,
)
from .availability import AvailabilityResolver, BookingPlan
from .capacity_ledger import CapacityLedger, dump_cells, load_cells
from .rules import validate_future, validate_update_guard
from .slots.config import BookingConfig, get_booking_config
from .targets import BookingTarget, PackageTarget, ServiceTarget, target_from_ids

logger = logging.getLogger(__name__)

PENDING = "pending"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"

ACTIVE = (PENDING, CONFIRMED)

DECLINED_REASON = "Declined after consultation"

# Columns an update may change but never clear
NOT_NULL_FIELDS = ("client_name",)


class BookingNotifier(Protocol):
    def booking_event(
        self,
        event_type: str,
        booking: DBBooking,
        now: datetime | None = None,
        notify_client: bool = True,
    ) -> object: ...


def new_reference() -> str:
    return f"BK-{secrets.token_hex(4).upper()}"


def target_of(booking: DBBooking) -> BookingTarget:
    if booking.service_package_id is not None:
        selected = json.loads(booking.selected_optional_services or "[]")
        return PackageTarget(booking.service_package_id, tuple(selected))
    return ServiceTarget(booking.service_id)


class BookingStateMachine:

    def __init__(
        self,
        db: Session,
        ledger: CapacityLedger | None = None,
        resolver: AvailabilityResolver | None = None,
        notifier: BookingNotifier | None = None,
        config: BookingConfig | None = None,
    ):
        self.db = db
        self.config = config or get_booking_config()
        self.ledger = ledger or CapacityLedger(db, self.config)
        self.resolver = resolver or AvailabilityResolver(db, self.ledger, config=self.config)
        if notifier is None:
            from .calendar_sync import CalendarSyncCoordinator
            notifier = CalendarSyncCoordinator(db, self.config)
        self.notifier = notifier

    # ── Read ─────────────────────────────────────────────────────────────

    def get(self, booking_id: int) -> DBBooking:
        booking = self.db.get(DBBooking, booking_id)
        if booking is None:
            raise NotFoundError("Booking not found", field="booking_id")
        return booking

    def list_bookings(self, user_id: int | None = None, status: str | None = None) -> list[DBBooking]:
        query = self.db.query(DBBooking)
        if user_id is not None:
            query = query.filter(DBBooking.user_id == user_id)
        if status is not None:
            query = query.filter(DBBooking.status == status)
        return query.order_by(DBBooking.scheduled_at).all()

    # ── Create ───────────────────────────────────────────────────────────

    def create(self, data: BookingCreate, now: datetime | None = None) -> DBBooking:
        now = self._now(now)
        scheduled_at = self.config.normalize(data.scheduled_at)
        raise_if_errors(validate_future(scheduled_at, now))

        try:
            target = target_from_ids(data.service_id, data.service_package_id, data.selected_optional_services)
        except ValueError as e:
            raise ValidationError(str(e), field="service_id") from None

        plan = self.resolver.plan(target, data.location_id, scheduled_at, data.duration_minutes)
        self.resolver.ensure_bookable(plan, now)

        booking = DBBooking(
            reference=self._unique_reference(),
            user_id=data.user_id,
            service_id=plan.service_id,
            service_package_id=plan.package_id,
            location_id=data.location_id,
            scheduled_at=plan.start,
            ends_at=plan.end,
            duration_minutes=plan.duration_minutes,
            status=PENDING,
            client_name=data.client_name,
            client_email=data.client_email,
            client_phone=data.client_phone,
            notes=data.notes,
            special_requirements=data.special_requirements,
            metadata_json=json.dumps(data.metadata),
            selected_optional_services=json.dumps(list(data.selected_optional_services)),
            reserved_cells=dump_cells(plan.cells),
            requires_consultation=1 if (data.requires_consultation or plan.requires_consultation) else 0,
            reschedule_count=0,
        )

        with self.ledger.transaction(plan.cells):
            self.ledger.reserve_cells(plan.cells)
            self.db.add(booking)
            self.db.flush()

        logger.info(
            f"Booking created: id={booking.id} ref={booking.reference} "
            f"at={booking.scheduled_at} cells={len(plan.cells)}"
        )
        self.notifier.booking_event("booking_created", booking, now=now)
        return booking

    # ── Status transitions ───────────────────────────────────────────────

    def confirm(self, booking_id: int, now: datetime | None = None) -> DBBooking:
        now = self._now(now)
        booking = self.get(booking_id)
        self._require_status(booking, (PENDING,), "confirm")

        booking.status = CONFIRMED
        booking.updated_at = now.isoformat(sep=" ")
        self.db.commit()

        logger.info(f"Booking confirmed: id={booking.id}")
        self.notifier.booking_event("booking_confirmed", booking, now=now)
        return booking

    def complete(self, booking_id: int, now: datetime | None = None) -> DBBooking:
        now = self._now(now)
        booking = self.get(booking_id)
        self._require_status(booking, (CONFIRMED,), "complete")
        if booking.requires_consultation and booking.consultation_completed_at is None:
            raise InvalidTransition(
                "Consultation must be completed before the booking can be completed",
                field="status",
            )

        booking.status = COMPLETED
        booking.updated_at = now.isoformat(sep=" ")
        self.db.commit()

        logger.info(f"Booking completed: id={booking.id}")
        return booking

    def cancel(
        self,
        booking_id: int,
        reason: str | None = None,
        now: datetime | None = None,
        notify_client: bool = True,
    ) -> DBBooking:
        now = self._now(now)
        booking = self.get(booking_id)
        self._require_status(booking, ACTIVE, "cancel")

        self._cancel(booking, reason, now)

        logger.info(f"Booking cancelled: id={booking.id} reason={reason!r}")
        self.notifier.booking_event("booking_cancelled", booking, now=now, notify_client=notify_client)
        return booking

    def _cancel(self, booking: DBBooking, reason: Optional[str], now: datetime) -> None:
        cells = load_cells(booking.reserved_cells)
        with self.ledger.transaction(cells):
            self.ledger.release_cells(cells)
            booking.status = CANCELLED
            booking.cancelled_at = now
            booking.cancel_reason = reason
            booking.reserved_cells = dump_cells([])
            booking.updated_at = now.isoformat(sep=" ")

    # ── Moves ────────────────────────────────────────────────────────────

    def reschedule(
        self,
        booking_id: int,
        data: BookingReschedule,
        now: datetime | None = None,
    ) -> DBBooking:
        """
        Move the booking to data.scheduled_at.

        Checked in order: status, new time in the future, advance window of
        the new time measured from now, availability, ledger reservation.
        """
        now = self._now(now)
        booking = self.get(booking_id)
        self._require_status(booking, ACTIVE, "reschedule")

        new_at = self.config.normalize(data.scheduled_at)
        raise_if_errors(validate_future(new_at, now))

        self._move(booking, new_at, booking.location_id, now, reschedule_reason=data.reason)

        logger.info(
            f"Booking rescheduled: id={booking.id} to={booking.scheduled_at} "
            f"count={booking.reschedule_count}"
        )
        self.notifier.booking_event(
            "booking_rescheduled", booking, now=now, notify_client=data.notify_client
        )
        return booking

    def update(
        self,
        booking_id: int,
        data: BookingUpdate,
        now: datetime | None = None,
    ) -> DBBooking:
        """Generic update. Moving time or location is refused within the guard period."""
        now = self._now(now)
        booking = self.get(booking_id)
        self._require_status(booking, ACTIVE, "update")

        changes = data.model_dump(exclude_unset=True)
        raise_if_errors([
            FieldError(name, "Must not be empty.")
            for name in NOT_NULL_FIELDS
            if name in changes and changes[name] is None
        ])
        new_at = changes.pop("scheduled_at", None)
        new_at = self.config.normalize(new_at) if new_at is not None else booking.scheduled_at
        new_location = changes.pop("location_id", booking.location_id)
        moving = new_at != booking.scheduled_at or new_location != booking.location_id

        if moving:
            raise_if_errors(validate_update_guard(booking.scheduled_at, now, self.config))
            raise_if_errors(validate_future(new_at, now))
            self._move(booking, new_at, new_location, now, **changes)
        else:
            for name, value in changes.items():
                setattr(booking, name, value)
            booking.updated_at = now.isoformat(sep=" ")
            self.db.commit()

        logger.info(f"Booking updated: id={booking.id} moved={moving}")
        if moving:
            self.notifier.booking_event("booking_rescheduled", booking, now=now)
        return booking

    def _move(
        self,
        booking: DBBooking,
        new_at: datetime,
        location_id: Optional[int],
        now: datetime,
        **fields,
    ) -> None:
        """
        Reserve the new cells, then give back the old ones, in one commit.

        Cells shared by both slots are left untouched. `fields` are written
        to the booking in the same commit.
        """
        old_cells = load_cells(booking.reserved_cells)
        plan = self._plan_move(booking, new_at, location_id)
        self.resolver.ensure_bookable(plan, now, held=frozenset(old_cells))

        to_take = set(plan.cells) - set(old_cells)
        to_return = set(old_cells) - set(plan.cells)

        with self.ledger.transaction(set(old_cells) | set(plan.cells)):
            self.ledger.reserve_cells(to_take)
            self.ledger.release_cells(to_return)
            booking.scheduled_at = plan.start
            booking.ends_at = plan.end
            booking.duration_minutes = plan.duration_minutes
            booking.location_id = location_id
            booking.reserved_cells = dump_cells(plan.cells)
            booking.reschedule_count = (booking.reschedule_count or 0) + 1
            booking.updated_at = now.isoformat(sep=" ")
            for name, value in fields.items():
                setattr(booking, name, value)

    def _plan_move(self, booking: DBBooking, new_at: datetime, location_id: Optional[int]) -> BookingPlan:
        target = target_of(booking)
        override = booking.duration_minutes if isinstance(target, ServiceTarget) else None
        return self.resolver.plan(target, location_id, new_at, override)

    # ── Consultation ─────────────────────────────────────────────────────

    def complete_consultation(
        self,
        booking_id: int,
        data: ConsultationComplete,
        now: datetime | None = None,
    ) -> DBBooking:
        """
        Record the consultation outcome.

        proceed_with_booking=False cancels the booking and frees its
        capacity. True confirms a pending booking.
        """
        now = self._now(now)
        booking = self.get(booking_id)
        if not booking.requires_consultation:
            raise InvalidTransition("Booking does not require a consultation", field="requires_consultation")
        if booking.consultation_completed_at is not None:
            raise InvalidTransition("Consultation already completed", field="consultation_completed_at")
        self._require_status(booking, ACTIVE, "complete the consultation of")

        booking.consultation_completed_at = (
            self.config.normalize(data.completed_at) if data.completed_at else now
        )
        booking.consultation_notes = data.notes
        booking.consultation_proceed = 1 if data.proceed_with_booking else 0
        booking.recommended_services = json.dumps(data.recommended_services)
        booking.estimated_duration_minutes = data.estimated_duration_minutes

        if not data.proceed_with_booking:
            self._cancel(booking, DECLINED_REASON, now)
            logger.info(f"Consultation declined, booking cancelled: id={booking.id}")
            self.notifier.booking_event("booking_cancelled", booking, now=now)
            return booking

        event = "consultation_completed"
        if booking.status == PENDING:
            booking.status = CONFIRMED
            event = "booking_confirmed"
        booking.updated_at = now.isoformat(sep=" ")
        self.db.commit()

        logger.info(f"Consultation completed: id={booking.id} status={booking.status}")
        self.notifier.booking_event(event, booking, now=now)
        return booking

    # ── Helpers ──────────────────────────────────────────────────────────

    def _now(self, now: datetime | None) -> datetime:
        return self.config.normalize(now) if now else self.config.now()

    @staticmethod
    def _require_status(booking: DBBooking, allowed: tuple, action: str) -> None:
        if booking.status not in allowed:
            logger.warning(f"Refused to {action} booking {booking.id} in status {booking.status}")
            raise InvalidTransition(f"Cannot {action} a {booking.status} booking", field="status")

    def _unique_reference(self) -> str:
        while True:
            reference = new_reference()
            exists = self.db.query(DBBooking.id).filter(DBBooking.reference == reference).first()
            if exists is None:
                return reference
