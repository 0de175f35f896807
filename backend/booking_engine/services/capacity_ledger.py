# backend/booking_engine/services/capacity_ledger.py
"""
Capacity ledger: the single source of truth for "is there room".

One cell per (service, location, day). location_id 0 is the service-wide
cell used when a booking has no location.

Concurrency:
- every mutation of a cell runs under an in-process lock for that cell
- the UPDATE itself is a compare-and-swap on `version`, so a writer in
  another process loses the race cleanly and is retried
- locks come from a fixed pool of stripes (a cell maps to hash % LOCK_STRIPES);
  a transaction takes the distinct stripes of its cells in index order, so
  two requests can never wait on each other
"""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Callable, Iterable, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from ..errors import (
    CapacityExhausted,
    InvalidCapacity,
    InvalidRange,
    NotFoundError,
    ValidationError,
    raise_if_errors,
)
from ..models.generated import (
    Bookings as DBBooking,
    CapacityCells as DBCell,
    ServiceLocations as DBLocation,
    ServicePackageItems as DBPackageItem,
    Services as DBService,
)
from .rules import CAPACITY_ACTIONS, validate_capacity_range, validate_capacity_value
from .slots.config import BookingConfig, get_booking_config, iter_days

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ("pending", "confirmed")
LOCK_STRIPES = 256


@dataclass(frozen=True, order=True)
class CellKey:
    service_id: int
    location_id: int
    day: date

    @classmethod
    def of(cls, service_id: int, location_id: int | None, day: date) -> "CellKey":
        return cls(service_id, location_id or 0, day)

    def to_json(self) -> list:
        return [self.service_id, self.location_id or None, self.day.isoformat()]

    @classmethod
    def from_json(cls, raw: list) -> "CellKey":
        service_id, location_id, day = raw
        return cls.of(int(service_id), location_id, date.fromisoformat(day))


def dump_cells(keys: Iterable[CellKey]) -> str:
    return json.dumps([k.to_json() for k in sorted(keys)])


def load_cells(raw: str | None) -> list[CellKey]:
    if not raw:
        return []
    return [CellKey.from_json(item) for item in json.loads(raw)]


@dataclass
class CellSummary:
    day: date
    capacity: int
    consumed: int
    available: int
    is_blocked: bool
    needs_review: bool

    @property
    def status(self) -> str:
        if self.is_blocked:
            return "blocked"
        if self.available <= 0:
            return "full"
        if self.consumed == 0:
            return "available"
        return "partial"


@dataclass
class BulkUpdateResult:
    action: str
    start_date: date
    end_date: date
    updated_days: list[date] = field(default_factory=list)
    flagged_days: list[date] = field(default_factory=list)
    reason: Optional[str] = None


class CapacityLedger:
    """Per-cell capacity accounting over the capacity_cells table."""

    _locks: tuple[threading.Lock, ...] = tuple(threading.Lock() for _ in range(LOCK_STRIPES))

    def __init__(
        self,
        db: Session,
        config: BookingConfig | None = None,
        emitter: Callable[[str, dict], None] | None = None,
    ):
        self.db = db
        self.config = config or get_booking_config()
        if emitter is None:
            from .events import emit_broadcast
            emitter = emit_broadcast
        self.emitter = emitter

    # ── Read (lock-free, may be slightly stale) ──────────────────────────

    def available_capacity(
        self,
        service_id: int,
        location_id: int | None,
        day: date,
        held: int = 0,
    ) -> int:
        """
        Free units of the cell. `held` counts units the caller already owns
        there (a booking moving within the same day).
        """
        key = CellKey.of(service_id, location_id, day)
        cell = self._find(key)
        if cell is None:
            return self._default_capacity(service_id, location_id)
        if cell.is_blocked:
            return 0
        return max(0, cell.capacity - cell.consumed + held)

    def summary(
        self,
        service_id: int,
        location_id: int | None,
        start: date,
        end: date,
    ) -> list[CellSummary]:
        raise_if_errors(validate_capacity_range(start, end, self.config), InvalidRange)
        default = self._default_capacity(service_id, location_id)

        rows = (
            self.db.query(DBCell)
            .filter(
                DBCell.service_id == service_id,
                DBCell.location_id == (location_id or 0),
                DBCell.day >= start,
                DBCell.day <= end,
            )
            .all()
        )
        by_day = {row.day: row for row in rows}

        result = []
        for day in iter_days(start, end):
            cell = by_day.get(day)
            if cell is None:
                result.append(CellSummary(day, default, 0, default, False, False))
                continue
            available = 0 if cell.is_blocked else max(0, cell.capacity - cell.consumed)
            result.append(CellSummary(
                day=day,
                capacity=cell.capacity,
                consumed=cell.consumed,
                available=available,
                is_blocked=bool(cell.is_blocked),
                needs_review=bool(cell.needs_review),
            ))
        return result

    # ── Transactions ─────────────────────────────────────────────────────

    @contextmanager
    def transaction(self, keys: Iterable[CellKey]):
        """
        Hold the locks of all `keys` and commit the session on success.

        Anything raised inside rolls the whole session back, so ledger
        changes and the caller's own changes land together or not at all.
        """
        locks = self._locks_for(keys)
        for lock in locks:
            lock.acquire()
        try:
            try:
                yield self
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
        finally:
            for lock in reversed(locks):
                lock.release()

    def reserve_cells(self, keys: Iterable[CellKey]) -> None:
        """Take one unit from every cell. Must run inside transaction()."""
        for key in sorted(set(keys)):
            self._increment(key)

    def release_cells(self, keys: Iterable[CellKey]) -> None:
        """Give back one unit to every cell. Must run inside transaction()."""
        for key in sorted(set(keys)):
            self._decrement(key)

    # ── Single-cell operations ───────────────────────────────────────────

    def reserve(self, service_id: int, location_id: int | None, day: date) -> DBCell:
        key = CellKey.of(service_id, location_id, day)
        with self.transaction([key]):
            self.reserve_cells([key])
        logger.info(f"Capacity reserved: {key}")
        return self._find(key)

    def release(self, service_id: int, location_id: int | None, day: date) -> Optional[DBCell]:
        key = CellKey.of(service_id, location_id, day)
        with self.transaction([key]):
            self.release_cells([key])
        logger.info(f"Capacity released: {key}")
        return self._find(key)

    # ── Bulk administration ──────────────────────────────────────────────

    def bulk_update(
        self,
        service_id: int,
        location_id: int | None,
        start: date,
        end: date,
        action: str,
        capacity: int | None = None,
        reason: str | None = None,
    ) -> BulkUpdateResult:
        """
        Apply block / unblock / set_capacity to every day of [start, end].

        Each day is its own atomic step. Days that cannot take the change
        without touching existing bookings are reported in flagged_days.
        """
        if action not in CAPACITY_ACTIONS:
            raise ValidationError(f"Unknown action: {action}", field="action")
        raise_if_errors(validate_capacity_range(start, end, self.config), InvalidRange)
        raise_if_errors(validate_capacity_value(action, capacity, self.config), InvalidCapacity)
        self._check_refs(service_id, location_id)

        result = BulkUpdateResult(action=action, start_date=start, end_date=end, reason=reason)
        for day in iter_days(start, end):
            key = CellKey.of(service_id, location_id, day)
            with self.transaction([key]):
                cell = self._load(key)
                applied = self._apply(cell, action, capacity, reason)
            if applied:
                result.updated_days.append(day)
            else:
                result.flagged_days.append(day)

        logger.info(
            f"Bulk capacity {action}: service={service_id} location={location_id} "
            f"{start}..{end} updated={len(result.updated_days)} flagged={len(result.flagged_days)}"
        )
        if result.flagged_days:
            self._report_flagged(service_id, location_id, result)
        return result

    def _apply(self, cell: DBCell, action: str, capacity: int | None, reason: str | None) -> bool:
        """Mutate one locked cell. Returns False when the day needs manual review."""
        if action == "block":
            if not cell.is_blocked:
                if cell.capacity > 0:
                    cell.previous_capacity = cell.capacity
                cell.capacity = 0
                cell.is_blocked = 1
            cell.block_reason = reason
            # Existing bookings stay; the operator decides what happens to them
            cell.needs_review = 1 if cell.consumed > 0 else 0
            applied = not cell.needs_review
        elif action == "unblock":
            if cell.is_blocked or cell.capacity == 0:
                cell.capacity = cell.previous_capacity or self._default_capacity(
                    cell.service_id, cell.location_id
                )
            cell.is_blocked = 0
            cell.previous_capacity = None
            cell.block_reason = None
            cell.needs_review = 1 if cell.consumed > cell.capacity else 0
            applied = True
        else:
            if capacity < cell.consumed:
                logger.warning(
                    f"set_capacity {capacity} below consumption {cell.consumed} "
                    f"on service={cell.service_id} day={cell.day}; skipped"
                )
                return False
            cell.capacity = capacity
            cell.is_blocked = 0
            cell.previous_capacity = None
            cell.block_reason = None
            cell.needs_review = 0
            applied = True

        cell.version = (cell.version or 0) + 1
        return applied

    def _report_flagged(self, service_id: int, location_id: int | None, result: BulkUpdateResult) -> None:
        flagged = {CellKey.of(service_id, location_id, day) for day in result.flagged_days}
        first, last = min(result.flagged_days), max(result.flagged_days)

        packages = select(DBPackageItem.package_id).where(DBPackageItem.service_id == service_id)
        candidates = (
            self.db.query(DBBooking)
            .filter(
                DBBooking.status.in_(ACTIVE_STATUSES),
                or_(DBBooking.service_id == service_id, DBBooking.service_package_id.in_(packages)),
                # a package started the evening before can hold a cell on `first`
                DBBooking.scheduled_at >= datetime.combine(first - timedelta(days=1), time.min),
                DBBooking.scheduled_at < datetime.combine(last + timedelta(days=1), time.min),
            )
            .order_by(DBBooking.id)
            .all()
        )
        booking_ids = [b.id for b in candidates if flagged.intersection(load_cells(b.reserved_cells))]

        logger.warning(
            f"Capacity review required: service={service_id} location={location_id} "
            f"days={[d.isoformat() for d in result.flagged_days]} bookings={booking_ids}"
        )
        self.emitter("capacity_review_required", {
            "service_id": service_id,
            "location_id": location_id,
            "action": result.action,
            "days": [d.isoformat() for d in result.flagged_days],
            "booking_ids": booking_ids,
            "reason": result.reason,
        })

    # ── Cell primitives ──────────────────────────────────────────────────

    def _increment(self, key: CellKey) -> None:
        for attempt in range(self.config.reserve_retries):
            cell = self._load(key)
            if cell.is_blocked or cell.consumed >= cell.capacity:
                raise CapacityExhausted(
                    f"No capacity left for service {key.service_id} on {key.day.isoformat()}",
                    field="scheduled_at",
                )

            stmt = (
                update(DBCell)
                .where(
                    DBCell.id == cell.id,
                    DBCell.version == cell.version,
                    DBCell.consumed < DBCell.capacity,
                    DBCell.is_blocked == 0,
                )
                .values(consumed=DBCell.consumed + 1, version=DBCell.version + 1)
                .execution_options(synchronize_session=False)
            )
            if self.db.execute(stmt).rowcount == 1:
                self.db.expire(cell)
                return

            logger.warning(f"Capacity cell conflict on {key}, attempt {attempt + 1}")

        raise CapacityExhausted(
            f"Capacity for service {key.service_id} on {key.day.isoformat()} is contended, try again",
            field="scheduled_at",
        )

    def _decrement(self, key: CellKey) -> None:
        cell = self._find(key, fresh=True)
        if cell is None:
            return
        stmt = (
            update(DBCell)
            .where(DBCell.id == cell.id, DBCell.consumed > 0)
            .values(consumed=DBCell.consumed - 1, version=DBCell.version + 1)
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
        self.db.expire(cell)

        if cell.needs_review and cell.consumed <= cell.capacity and not cell.is_blocked:
            cell.needs_review = 0
            self.db.flush()

    def _find(self, key: CellKey, fresh: bool = False) -> Optional[DBCell]:
        query = self.db.query(DBCell).filter(
            DBCell.service_id == key.service_id,
            DBCell.location_id == key.location_id,
            DBCell.day == key.day,
        )
        if fresh:
            query = query.populate_existing()
        return query.first()

    def _load(self, key: CellKey) -> DBCell:
        """Fresh copy of the cell, created with its default capacity if missing."""
        cell = self._find(key, fresh=True)
        if cell is not None:
            return cell

        cell = DBCell(
            service_id=key.service_id,
            location_id=key.location_id,
            day=key.day,
            capacity=self._default_capacity(key.service_id, key.location_id),
            consumed=0,
            is_blocked=0,
            needs_review=0,
            version=0,
        )
        self.db.add(cell)
        self.db.flush()
        return cell

    def _default_capacity(self, service_id: int, location_id: int | None) -> int:
        if location_id:
            location = self.db.get(DBLocation, location_id)
            if location is not None and location.daily_capacity is not None:
                return location.daily_capacity
        service = self.db.get(DBService, service_id)
        if service is None:
            raise NotFoundError("Service not found", field="service_id")
        if service.daily_capacity is not None:
            return service.daily_capacity
        return self.config.default_daily_capacity

    def _check_refs(self, service_id: int, location_id: int | None) -> None:
        if self.db.get(DBService, service_id) is None:
            raise NotFoundError("Service not found", field="service_id")
        if location_id:
            location = self.db.get(DBLocation, location_id)
            if location is None or location.service_id != service_id:
                raise NotFoundError("Service location not found", field="location_id")

    @staticmethod
    def stripe_of(key: CellKey) -> int:
        return hash(key) % LOCK_STRIPES

    @classmethod
    def _locks_for(cls, keys: Iterable[CellKey]) -> list[threading.Lock]:
        # Cells sharing a stripe share one non-reentrant lock: take it once
        return [cls._locks[i] for i in sorted({cls.stripe_of(k) for k in keys})]
