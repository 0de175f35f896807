# backend/booking_engine/services/slots/calculator.py
"""
Calendar: candidate slot generation for a service.

Produces Slot(start, end) for every day in a date range:
✓ working hours of the service (or of the location, when it has its own)
✓ custom_hours exception replaces the day's hours entirely
✓ blocked exception → no slots for the day
✓ special_pricing exception → adjusted slot price

Does NOT contain:
✗ Capacity (checked by the availability resolver against the ledger)
✗ Advance-booking windows (resolver)
"""

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterator, Optional

from .config import (
    BookingConfig,
    at_minutes,
    get_booking_config,
    iter_days,
    time_str_to_minutes,
)

logger = logging.getLogger(__name__)

ExceptionLookup = Callable[[int, date, Optional[int]], object]

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]


@dataclass(frozen=True)
class Slot:
    start: datetime
    end: datetime
    service_id: int | None = None
    package_id: int | None = None
    location_id: int | None = None
    price: int | None = None

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


class SlotSequence:
    """
    Lazy, finite, restartable sequence of slots.

    Every iteration recomputes from the current exception data.
    """

    def __init__(
        self,
        service,
        location,
        start: date,
        end: date,
        duration_override: int | None = None,
        exception_for: ExceptionLookup | None = None,
        config: BookingConfig | None = None,
    ):
        self.service = service
        self.location = location
        self.start = start
        self.end = end
        self.config = config or get_booking_config()
        self.duration = slot_duration(service, duration_override, self.config)
        self.exception_for = exception_for

    def __iter__(self) -> Iterator[Slot]:
        location_id = self.location.id if self.location is not None else None
        for day in iter_days(self.start, self.end):
            exception = None
            if self.exception_for is not None:
                exception = self.exception_for(self.service.id, day, location_id)
            yield from day_slots(
                self.service, self.location, day, self.duration, exception, self.config
            )


def generate_slots(
    service,
    location=None,
    date_range: tuple[date, date] | None = None,
    duration_override: int | None = None,
    exception_for: ExceptionLookup | None = None,
    config: BookingConfig | None = None,
) -> SlotSequence:
    """
    Candidate slots for a service over an inclusive date range.

    Args:
        service: Object with id, duration_minutes, work_schedule, base_price
        location: Optional location with id and work_schedule
        date_range: (start, end) inclusive; defaults to today only
        duration_override: Slot length in minutes, clamped to the configured bounds
        exception_for: Callable (service_id, day, location_id) -> exception or None
    """
    config = config or get_booking_config()
    if date_range is None:
        today = config.now().date()
        date_range = (today, today)
    start, end = date_range
    return SlotSequence(service, location, start, end, duration_override, exception_for, config)


def slot_duration(service, duration_override: int | None, config: BookingConfig) -> int:
    minutes = duration_override if duration_override is not None else service.duration_minutes
    return config.clamp_duration(minutes)


def day_slots(
    service,
    location,
    day: date,
    duration: int,
    exception=None,
    config: BookingConfig | None = None,
) -> list[Slot]:
    """
    Slots of `duration` minutes on `day`, one every duration + buffer
    minutes. The last slot of an interval needs no trailing buffer.
    """
    config = config or get_booking_config()
    location_id = location.id if location is not None else None
    price = _slot_price(service, exception)
    step = duration + (getattr(service, "buffer_minutes", None) or 0)

    slots: list[Slot] = []
    for start_min, end_min in working_intervals(service, location, day, exception, config):
        t = start_min
        while t + duration <= end_min:
            slots.append(Slot(
                start=at_minutes(day, t),
                end=at_minutes(day, t + duration),
                service_id=service.id,
                location_id=location_id,
                price=price,
            ))
            t += step
    return slots


def working_intervals(
    service,
    location,
    day: date,
    exception=None,
    config: BookingConfig | None = None,
) -> list[tuple[int, int]]:
    """
    Working intervals of `day` as (start_minute, end_minute) pairs.

    A location schedule, when present, replaces the service schedule.
    A service without any schedule works the configured default hours.
    """
    config = config or get_booking_config()

    if exception is not None:
        if exception.exception_type == "blocked":
            return []
        if exception.exception_type == "custom_hours" and exception.start_time and exception.end_time:
            return _valid_intervals([[exception.start_time, exception.end_time]])

    schedule = None
    if location is not None:
        schedule = parse_schedule(location.work_schedule)
    if not schedule:
        schedule = parse_schedule(service.work_schedule)
    if not schedule:
        return _valid_intervals([[config.default_day_start, config.default_day_end]])

    return _valid_intervals(get_day_intervals(schedule, day))


def fits_working_hours(
    service,
    location,
    start: datetime,
    end: datetime,
    exception=None,
    config: BookingConfig | None = None,
) -> bool:
    """True if [start, end) lies inside one working interval of start's day."""
    day = start.date()
    if end.date() != day and end != at_minutes(day, 24 * 60):
        return False
    start_min = start.hour * 60 + start.minute
    end_min = start_min + int((end - start).total_seconds() // 60)
    return any(
        lo <= start_min and end_min <= hi
        for lo, hi in working_intervals(service, location, day, exception, config)
    )


# ── Helpers ──────────────────────────────────────────────────────────────


def parse_schedule(raw) -> dict:
    """Decode a work_schedule JSON column. Broken JSON counts as no schedule."""
    if not raw:
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        schedule = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Ignoring malformed work_schedule: {raw!r}")
        return {}
    return schedule if isinstance(schedule, dict) else {}


def get_day_intervals(
    schedule: dict,
    target_date: date,
) -> list[list[str]]:
    """
    Extract working intervals for target_date from schedule.
    Supports both Format A and Format B.

    Format A: {"mon": {"start": "09:00", "end": "18:00"}, "sun": null}
    Format B: {"0": [["09:00", "13:00"], ["14:00", "18:00"]]}

    Returns list of intervals: [["09:00", "18:00"], ...]
    """
    weekday = target_date.weekday()  # 0 = Monday, 6 = Sunday

    # Format B: numeric keys "0", "1", etc.
    weekday_str = str(weekday)
    if weekday_str in schedule:
        intervals = schedule[weekday_str]
        if isinstance(intervals, list):
            return intervals
        return []

    # Format A: named keys "mon", "tue", etc.
    day_name = DAY_NAMES[weekday]

    if day_name in schedule:
        day_data = schedule[day_name]

        if day_data is None:
            return []

        if isinstance(day_data, dict):
            start = day_data.get("start")
            end = day_data.get("end")
            if start and end:
                return [[start, end]]

        if isinstance(day_data, list):
            return day_data

    return []


def _valid_intervals(intervals: list) -> list[tuple[int, int]]:
    result = []
    for interval in intervals:
        if len(interval) != 2:
            continue
        try:
            start_min = time_str_to_minutes(interval[0])
            end_min = time_str_to_minutes(interval[1])
        except (ValueError, AttributeError):
            continue
        if start_min < end_min:
            result.append((start_min, end_min))
    return sorted(result)


def apply_price_modifier(base_price: int, exception) -> int:
    """Price of a service on a day with (or without) a special_pricing exception."""
    if exception is None or exception.exception_type != "special_pricing":
        return base_price
    if not exception.price_modifier:
        return base_price

    if exception.price_modifier_type == "percentage":
        return base_price + int(round(base_price * exception.price_modifier / 100))
    return base_price + exception.price_modifier


def _slot_price(service, exception) -> int | None:
    base_price = getattr(service, "base_price", None)
    if base_price is None:
        return None
    return apply_price_modifier(base_price, exception)
