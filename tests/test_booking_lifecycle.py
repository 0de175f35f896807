"""Tests for the booking state machine."""

import json
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from booking_engine.errors import (
    AdvanceWindowViolation,
    CapacityExhausted,
    InvalidSelection,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from booking_engine.models.generated import Bookings, CapacityCells
from booking_engine.schemas.bookings import (
    BookingReschedule,
    BookingUpdate,
    ConsultationComplete,
)
from booking_engine.services.availability import AvailabilityResolver
from booking_engine.services.booking_lifecycle import BookingStateMachine
from booking_engine.services.capacity_ledger import CapacityLedger
from booking_engine.services.exception_store import AvailabilityExceptionStore
from tests.conftest import (
    NOW,
    TUESDAY,
    WEDNESDAY,
    RecordingEmitter,
    RecordingNotifier,
    booking_request,
    make_package,
    make_service,
)

WED_10 = datetime(2030, 1, 9, 10, 0)


def consumed(db, service_id, day) -> int:
    db.expire_all()
    row = db.query(CapacityCells).filter_by(service_id=service_id, location_id=0, day=day).first()
    return row.consumed if row else 0


class TestCreate:
    def test_creates_pending_booking(self, db, machine, notifier):
        service = make_service(db)
        booking = machine.create(booking_request(service, notes="first visit"), now=NOW)

        assert booking.status == "pending"
        assert booking.reference.startswith("BK-") and len(booking.reference) == 11
        assert booking.ends_at == WED_10 + timedelta(minutes=60)
        assert booking.notes == "first visit"
        assert consumed(db, service.id, WEDNESDAY) == 1
        assert notifier.event_types == ["booking_created"]

    def test_duration_override(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service, duration_minutes=90, scheduled_at=datetime(2030, 1, 9, 10, 30)), now=NOW)
        assert booking.duration_minutes == 90
        assert booking.ends_at == datetime(2030, 1, 9, 12, 0)

    def test_requires_consultation_from_service(self, db, machine):
        service = make_service(db, requires_consultation=1)
        booking = machine.create(booking_request(service), now=NOW)
        assert booking.requires_consultation == 1

    def test_past_time_is_rejected(self, db, machine):
        service = make_service(db)
        with pytest.raises(ValidationError):
            machine.create(booking_request(service, scheduled_at=datetime(2030, 1, 6, 10, 0)), now=NOW)

    def test_advance_window(self, db, machine):
        service = make_service(db, min_advance_booking_hours=72)
        with pytest.raises(AdvanceWindowViolation):
            machine.create(booking_request(service), now=NOW)
        assert db.query(Bookings).count() == 0

    def test_exhausted_day_commits_nothing(self, db, machine, ledger):
        service = make_service(db, daily_capacity=1)
        machine.create(booking_request(service), now=NOW)

        with pytest.raises(CapacityExhausted):
            machine.create(booking_request(service, scheduled_at=datetime(2030, 1, 9, 11, 0)), now=NOW)
        assert db.query(Bookings).count() == 1
        assert consumed(db, service.id, WEDNESDAY) == 1

    def test_unknown_service(self, db, machine):
        service = make_service(db)
        with pytest.raises(NotFoundError):
            machine.create(booking_request(service, service_id=999), now=NOW)


@pytest.fixture
def spa(db):
    massage = make_service(db, name="Massage", duration_minutes=60)
    facial = make_service(db, name="Facial", duration_minutes=30)
    sauna = make_service(db, name="Sauna", duration_minutes=30, requires_consultation=1)
    package = make_package(db, required=(massage, facial), optional=(sauna,))
    return massage, facial, sauna, package


class TestPackageBookings:
    def test_reserves_every_member(self, db, machine, spa):
        massage, facial, sauna, package = spa
        booking = machine.create(
            booking_request(package=package, selected_optional_services=[sauna.id]), now=NOW
        )

        assert booking.service_id is None
        assert booking.duration_minutes == 120
        assert booking.requires_consultation == 1
        assert json.loads(booking.selected_optional_services) == [sauna.id]
        for service in (massage, facial, sauna):
            assert consumed(db, service.id, WEDNESDAY) == 1

    def test_invalid_selection_commits_nothing(self, db, machine, spa):
        massage, facial, sauna, package = spa
        with pytest.raises(InvalidSelection) as info:
            machine.create(
                booking_request(package=package, selected_optional_services=[sauna.id, 4242]), now=NOW
            )

        assert info.value.errors[0].index == 1
        assert db.query(Bookings).count() == 0
        assert db.query(CapacityCells).count() == 0

    def test_one_full_member_fails_the_whole_package(self, db, machine, ledger, spa):
        massage, facial, sauna, package = spa
        ledger.bulk_update(facial.id, None, WEDNESDAY, WEDNESDAY, "set_capacity", capacity=1)
        ledger.reserve(facial.id, None, WEDNESDAY)

        with pytest.raises(CapacityExhausted):
            machine.create(booking_request(package=package), now=NOW)
        assert consumed(db, massage.id, WEDNESDAY) == 0

    def test_cancel_returns_every_member(self, db, machine, spa):
        massage, facial, sauna, package = spa
        booking = machine.create(booking_request(package=package), now=NOW)
        machine.cancel(booking.id, now=NOW)

        assert consumed(db, massage.id, WEDNESDAY) == 0
        assert consumed(db, facial.id, WEDNESDAY) == 0


class TestTransitions:
    def test_confirm_then_complete(self, db, machine, notifier):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)

        machine.confirm(booking.id, now=NOW)
        completed = machine.complete(booking.id, now=NOW)

        assert completed.status == "completed"
        assert notifier.event_types == ["booking_created", "booking_confirmed"]

    def test_complete_requires_confirmation(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)
        with pytest.raises(InvalidTransition):
            machine.complete(booking.id, now=NOW)

    def test_complete_waits_for_consultation(self, db, machine):
        service = make_service(db, requires_consultation=1)
        booking = machine.create(booking_request(service), now=NOW)
        machine.confirm(booking.id, now=NOW)

        with pytest.raises(InvalidTransition):
            machine.complete(booking.id, now=NOW)

    def test_cancel_releases_capacity(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)

        cancelled = machine.cancel(booking.id, reason="Changed plans", now=NOW)

        assert cancelled.status == "cancelled"
        assert cancelled.cancel_reason == "Changed plans"
        assert cancelled.cancelled_at == NOW
        assert consumed(db, service.id, WEDNESDAY) == 0

    @pytest.mark.parametrize("final", ["cancel", "complete"])
    def test_terminal_states(self, db, machine, final):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)
        if final == "complete":
            machine.confirm(booking.id, now=NOW)
            machine.complete(booking.id, now=NOW)
        else:
            machine.cancel(booking.id, now=NOW)

        with pytest.raises(InvalidTransition):
            machine.cancel(booking.id, now=NOW)
        with pytest.raises(InvalidTransition):
            machine.confirm(booking.id, now=NOW)
        with pytest.raises(InvalidTransition):
            machine.reschedule(booking.id, BookingReschedule(scheduled_at=datetime(2030, 1, 10, 10, 0)), now=NOW)

    def test_unknown_booking(self, db, machine):
        with pytest.raises(NotFoundError):
            machine.get(12345)


class TestReschedule:
    def test_exactly_min_advance_succeeds(self, db, machine):
        service = make_service(db, min_advance_booking_hours=24)
        booking = machine.create(booking_request(service), now=NOW)

        moved = machine.reschedule(
            booking.id,
            BookingReschedule(scheduled_at=datetime(2030, 1, 8, 9, 0)),
            now=datetime(2030, 1, 7, 9, 0),
        )
        assert moved.scheduled_at == datetime(2030, 1, 8, 9, 0)

    def test_one_minute_short_fails(self, db, machine):
        service = make_service(db, min_advance_booking_hours=24)
        booking = machine.create(booking_request(service), now=NOW)

        with pytest.raises(AdvanceWindowViolation):
            machine.reschedule(
                booking.id,
                BookingReschedule(scheduled_at=datetime(2030, 1, 8, 9, 0)),
                now=datetime(2030, 1, 7, 9, 1),
            )
        db.expire_all()
        assert machine.get(booking.id).scheduled_at == WED_10

    def test_moves_capacity_between_days(self, db, machine, notifier):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)

        moved = machine.reschedule(
            booking.id,
            BookingReschedule(scheduled_at=datetime(2030, 1, 8, 11, 0), reason="Clash", notify_client=False),
            now=NOW,
        )

        assert consumed(db, service.id, WEDNESDAY) == 0
        assert consumed(db, service.id, TUESDAY) == 1
        assert moved.reschedule_count == 1
        assert moved.reschedule_reason == "Clash"
        assert notifier.calls[-1]["event"] == "booking_rescheduled"
        assert notifier.calls[-1]["notify_client"] is False

    def test_same_day_move_on_full_day(self, db, machine):
        service = make_service(db, daily_capacity=1)
        booking = machine.create(booking_request(service), now=NOW)

        machine.reschedule(booking.id, BookingReschedule(scheduled_at=datetime(2030, 1, 9, 15, 0)), now=NOW)

        assert consumed(db, service.id, WEDNESDAY) == 1

    def test_full_target_day_keeps_original_slot(self, db, machine, ledger):
        service = make_service(db, daily_capacity=1)
        booking = machine.create(booking_request(service), now=NOW)
        ledger.reserve(service.id, None, TUESDAY)

        with pytest.raises(CapacityExhausted):
            machine.reschedule(booking.id, BookingReschedule(scheduled_at=datetime(2030, 1, 8, 10, 0)), now=NOW)

        db.expire_all()
        assert machine.get(booking.id).scheduled_at == WED_10
        assert consumed(db, service.id, WEDNESDAY) == 1
        assert consumed(db, service.id, TUESDAY) == 1

    def test_past_time_is_rejected(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)
        with pytest.raises(ValidationError):
            machine.reschedule(booking.id, BookingReschedule(scheduled_at=datetime(2030, 1, 6, 10, 0)), now=NOW)

    def test_keeps_duration_override(self, db, machine):
        service = make_service(db)
        booking = machine.create(
            booking_request(service, duration_minutes=90, scheduled_at=datetime(2030, 1, 9, 10, 30)), now=NOW
        )
        moved = machine.reschedule(booking.id, BookingReschedule(scheduled_at=datetime(2030, 1, 8, 12, 0)), now=NOW)
        assert moved.ends_at == datetime(2030, 1, 8, 13, 30)


class TestUpdateGuard:
    def test_move_allowed_a_day_ahead(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service, scheduled_at=datetime(2030, 1, 8, 10, 0)), now=NOW)

        moved = machine.update(
            booking.id, BookingUpdate(scheduled_at=WED_10), now=datetime(2030, 1, 7, 10, 0)
        )
        assert moved.scheduled_at == WED_10
        assert consumed(db, service.id, TUESDAY) == 0

    def test_move_refused_inside_guard(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service, scheduled_at=datetime(2030, 1, 8, 10, 0)), now=NOW)

        with pytest.raises(ValidationError) as info:
            machine.update(booking.id, BookingUpdate(scheduled_at=WED_10), now=datetime(2030, 1, 7, 10, 1))
        assert not isinstance(info.value, AdvanceWindowViolation)
        assert info.value.errors[0].field == "scheduled_at"

    def test_details_can_change_inside_guard(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service, scheduled_at=datetime(2030, 1, 8, 10, 0)), now=NOW)

        updated = machine.update(
            booking.id, BookingUpdate(notes="Bring towel"), now=datetime(2030, 1, 8, 9, 0)
        )
        assert updated.notes == "Bring towel"
        assert updated.reschedule_count == 0

    def test_client_name_cannot_be_cleared(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)

        with pytest.raises(ValidationError) as info:
            machine.update(booking.id, BookingUpdate(client_name=None), now=NOW)
        assert info.value.errors[0].field == "client_name"

        db.expire_all()
        assert machine.get(booking.id).client_name == "Ada Lovelace"

    def test_optional_details_can_be_cleared(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service, notes="Allergic to lavender"), now=NOW)

        updated = machine.update(booking.id, BookingUpdate(notes=None), now=NOW)
        assert updated.notes is None


class TestConsultation:
    def test_decline_cancels_and_restores_capacity(self, db, machine):
        service = make_service(db, requires_consultation=1)
        booking = machine.create(booking_request(service), now=NOW)
        assert consumed(db, service.id, WEDNESDAY) == 1

        result = machine.complete_consultation(
            booking.id,
            ConsultationComplete(notes="Not a good fit", proceed_with_booking=False),
            now=NOW,
        )

        assert result.status == "cancelled"
        assert result.consultation_completed_at == NOW
        assert result.consultation_proceed == 0
        assert consumed(db, service.id, WEDNESDAY) == 0

    def test_proceed_confirms_pending_booking(self, db, machine):
        service = make_service(db, requires_consultation=1)
        booking = machine.create(booking_request(service), now=NOW)

        result = machine.complete_consultation(
            booking.id,
            ConsultationComplete(
                notes="Go ahead",
                proceed_with_booking=True,
                recommended_services=[7, 8],
                estimated_duration_minutes=90,
                completed_at=datetime(2030, 1, 7, 7, 30),
            ),
            now=NOW,
        )

        assert result.status == "confirmed"
        assert result.consultation_completed_at == datetime(2030, 1, 7, 7, 30)
        assert json.loads(result.recommended_services) == [7, 8]
        assert machine.complete(booking.id, now=NOW).status == "completed"

    def test_only_once(self, db, machine):
        service = make_service(db, requires_consultation=1)
        booking = machine.create(booking_request(service), now=NOW)
        data = ConsultationComplete(notes="ok", proceed_with_booking=True)
        machine.complete_consultation(booking.id, data, now=NOW)

        with pytest.raises(InvalidTransition):
            machine.complete_consultation(booking.id, data, now=NOW)

    def test_not_required(self, db, machine):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)
        with pytest.raises(InvalidTransition):
            machine.complete_consultation(
                booking.id, ConsultationComplete(notes="x", proceed_with_booking=True), now=NOW
            )


class TestCapacityReview:
    def test_block_flags_existing_booking(self, db, machine, ledger, emitter):
        service = make_service(db)
        booking = machine.create(booking_request(service), now=NOW)

        result = ledger.bulk_update(service.id, None, WEDNESDAY, WEDNESDAY, "block")

        assert result.flagged_days == [WEDNESDAY]
        assert emitter.of_type("capacity_review_required")[0]["booking_ids"] == [booking.id]
        db.expire_all()
        assert machine.get(booking.id).status == "pending"

    def test_package_bookings_of_a_blocked_member_are_listed(self, db, machine, ledger, emitter, spa):
        massage, facial, sauna, package = spa
        in_package = machine.create(booking_request(package=package), now=NOW)
        massage_only = machine.create(booking_request(massage, scheduled_at=datetime(2030, 1, 9, 14, 0)), now=NOW)
        machine.create(booking_request(facial, scheduled_at=datetime(2030, 1, 10, 10, 0)), now=NOW)

        ledger.bulk_update(facial.id, None, WEDNESDAY, WEDNESDAY, "block")
        ledger.bulk_update(massage.id, None, WEDNESDAY, WEDNESDAY, "block")

        facial_alert, massage_alert = emitter.of_type("capacity_review_required")
        assert facial_alert["booking_ids"] == [in_package.id]
        assert massage_alert["booking_ids"] == [in_package.id, massage_only.id]


class TestConcurrentPackages:
    def _book_in_threads(self, session_factory, config, package_ids, workers):
        barrier = threading.Barrier(workers)

        def attempt(index):
            session = session_factory()
            try:
                ledger = CapacityLedger(session, config, emitter=RecordingEmitter())
                resolver = AvailabilityResolver(session, ledger, AvailabilityExceptionStore(session, config), config)
                machine = BookingStateMachine(session, ledger, resolver, RecordingNotifier(), config)
                request = booking_request(
                    service_package_id=package_ids[index % len(package_ids)],
                    scheduled_at=datetime(2030, 1, 8, 9, 0),
                )
                barrier.wait()
                machine.create(request, now=NOW)
                return "ok"
            except CapacityExhausted:
                return "exhausted"
            finally:
                session.close()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(attempt, i) for i in range(workers)]
            return [f.result(timeout=30) for f in futures]

    def test_overlapping_packages_in_opposite_order(self, db, session_factory, config):
        wide = make_service(db, name="Massage", daily_capacity=3)
        narrow = make_service(db, name="Facial", daily_capacity=1)
        forward = make_package(db, required=(wide, narrow), name="Forward")
        backward = make_package(db, required=(narrow, wide), name="Backward")

        results = self._book_in_threads(session_factory, config, [forward.id, backward.id], 6)

        assert results.count("ok") == 1
        assert results.count("exhausted") == 5
        assert consumed(db, narrow.id, TUESDAY) == 1
        # Losers that got the wide cell first gave it back
        assert consumed(db, wide.id, TUESDAY) == 1
        assert db.query(Bookings).count() == 1

    def test_capacity_shared_by_both_packages(self, db, session_factory, config):
        first = make_service(db, name="Massage", daily_capacity=2)
        second = make_service(db, name="Facial", daily_capacity=2)
        forward = make_package(db, required=(first, second), name="Forward")
        backward = make_package(db, required=(second, first), name="Backward")

        results = self._book_in_threads(session_factory, config, [forward.id, backward.id], 8)

        assert results.count("ok") == 2
        assert consumed(db, first.id, TUESDAY) == 2
        assert consumed(db, second.id, TUESDAY) == 2
        assert db.query(Bookings).filter_by(status="pending").count() == 2
