# backend/booking_engine/services/rules.py
"""
Named domain-invariant checks.

Every check is a pure function returning a list of FieldError. Callers
compose them and raise once via errors.raise_if_errors.
"""

from datetime import date, datetime, timedelta
from typing import Optional

from ..errors import FieldError
from .slots.config import BookingConfig, get_booking_config, time_str_to_minutes

EXCEPTION_TYPES = ("blocked", "custom_hours", "special_pricing")
PRICE_MODIFIER_TYPES = ("fixed", "percentage")
CAPACITY_ACTIONS = ("block", "unblock", "set_capacity")

_REQUIRED_FIELDS = {
    "blocked": frozenset(),
    "custom_hours": frozenset({"start_time", "end_time"}),
    "special_pricing": frozenset({"price_modifier"}),
}


def required_fields(exception_type: str) -> frozenset[str]:
    """Fields an availability exception of this type must carry."""
    try:
        return _REQUIRED_FIELDS[exception_type]
    except KeyError:
        raise ValueError(f"Unknown exception type: {exception_type!r}") from None


def validate_exception_fields(
    exception_type: str,
    start_time: Optional[str] = None,
    end_time: Optional[str] = None,
    price_modifier: Optional[int] = None,
    price_modifier_type: Optional[str] = None,
) -> list[FieldError]:
    if exception_type not in EXCEPTION_TYPES:
        return [FieldError("exception_type", f"Must be one of {', '.join(EXCEPTION_TYPES)}.")]

    values = {
        "start_time": start_time,
        "end_time": end_time,
        "price_modifier": price_modifier,
    }
    errors = [
        FieldError(name, f"{name} is required for {exception_type} exceptions.")
        for name in sorted(required_fields(exception_type))
        if values[name] is None
    ]

    if start_time is not None and end_time is not None:
        try:
            if time_str_to_minutes(start_time) >= time_str_to_minutes(end_time):
                errors.append(FieldError("end_time", "End time must be after start time."))
        except ValueError:
            errors.append(FieldError("start_time", "Times must be in HH:MM format."))

    if exception_type == "special_pricing" and price_modifier_type is not None:
        if price_modifier_type not in PRICE_MODIFIER_TYPES:
            errors.append(FieldError("price_modifier_type", "Must be fixed or percentage."))

    return errors


def validate_exception_date(exception_date: date, today: date) -> list[FieldError]:
    if exception_date < today:
        return [FieldError("exception_date", "Exception date must be today or later.")]
    return []


def validate_service_windows(min_advance_booking_hours: int, max_advance_booking_days: int) -> list[FieldError]:
    if min_advance_booking_hours < 0:
        return [FieldError("min_advance_booking_hours", "Must not be negative.")]
    if min_advance_booking_hours > max_advance_booking_days * 24:
        return [FieldError(
            "min_advance_booking_hours",
            "Minimum advance booking cannot exceed the maximum advance window.",
        )]
    return []


def validate_advance_window(
    when: datetime,
    now: datetime,
    min_advance_booking_hours: int,
    max_advance_booking_days: int,
    field: str = "scheduled_at",
) -> list[FieldError]:
    """`when` must fall in [now + min hours, now + max days]."""
    earliest = now + timedelta(hours=min_advance_booking_hours or 0)
    if when < earliest:
        return [FieldError(
            field,
            f"Must be booked at least {min_advance_booking_hours} hours in advance.",
        )]
    if max_advance_booking_days:
        latest = now + timedelta(days=max_advance_booking_days)
        if when > latest:
            return [FieldError(
                field,
                f"Cannot be booked more than {max_advance_booking_days} days in advance.",
            )]
    return []


def validate_location_advance(
    when: datetime,
    now: datetime,
    min_advance_booking_hours: Optional[int],
    field: str = "scheduled_at",
) -> list[FieldError]:
    """A location may demand more notice than its service."""
    if min_advance_booking_hours and when < now + timedelta(hours=min_advance_booking_hours):
        return [FieldError(
            field,
            f"This location requires at least {min_advance_booking_hours} hours advance booking.",
        )]
    return []

def validate_future(when: datetime, now: datetime, field: str = "scheduled_at") -> list[FieldError]:
    if when <= now:
        return [FieldError(field, "Time must be in the future.")]
    return []


def validate_update_guard(
    current_scheduled_at: datetime,
    now: datetime,
    config: BookingConfig | None = None,
) -> list[FieldError]:
    """Generic updates may not move a booking that starts within the guard period."""
    config = config or get_booking_config()
    if current_scheduled_at - now < timedelta(hours=config.update_guard_hours):
        return [FieldError(
            "scheduled_at",
            f"Bookings starting within {config.update_guard_hours} hours cannot be moved.",
        )]
    return []


def validate_capacity_range(
    start: date,
    end: date,
    config: BookingConfig | None = None,
) -> list[FieldError]:
    config = config or get_booking_config()
    if end < start:
        return [FieldError("end_date", "End date must not be before start date.")]
    span = (end - start).days + 1
    if span > config.max_range_days:
        return [FieldError(
            "end_date",
            f"Date range cannot exceed {config.max_range_days} days (got {span}).",
        )]
    return []


def validate_capacity_value(
    action: str,
    capacity: Optional[int],
    config: BookingConfig | None = None,
) -> list[FieldError]:
    config = config or get_booking_config()
    if action not in CAPACITY_ACTIONS:
        return [FieldError("action", f"Must be one of {', '.join(CAPACITY_ACTIONS)}.")]
    if action != "set_capacity":
        return []
    if capacity is None:
        return [FieldError("capacity", "Capacity is required for set_capacity.")]
    if not config.min_capacity <= capacity <= config.max_capacity:
        return [FieldError(
            "capacity",
            f"Capacity must be between {config.min_capacity} and {config.max_capacity}.",
        )]
    return []


def validate_duration_override(
    minutes: Optional[int],
    config: BookingConfig | None = None,
) -> list[FieldError]:
    config = config or get_booking_config()
    if minutes is None:
        return []
    if not config.min_duration_minutes <= minutes <= config.max_duration_minutes:
        return [FieldError(
            "duration_minutes",
            f"Duration must be between {config.min_duration_minutes} "
            f"and {config.max_duration_minutes} minutes.",
        )]
    return []


def validate_horizon(days_ahead: int, config: BookingConfig | None = None) -> list[FieldError]:
    config = config or get_booking_config()
    if not 1 <= days_ahead <= config.max_range_days:
        return [FieldError("days_ahead", f"Must be between 1 and {config.max_range_days}.")]
    return []
