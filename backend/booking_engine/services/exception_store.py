# backend/booking_engine/services/exception_store.py
"""
Date-scoped availability overrides per service.

One exception per (service, calendar date): a later write for the same date
replaces the earlier one. An exception with a location applies to that
location only; one without a location applies to the whole service.
"""

import logging
from datetime import date
from typing import Optional

from redis import Redis
from sqlalchemy.orm import Session

from ..errors import NotFoundError, raise_if_errors
from ..models.generated import (
    AvailabilityExceptions as DBException,
    ServiceLocations as DBLocation,
    Services as DBService,
)
from ..schemas.availability_exceptions import (
    AvailabilityExceptionCreate,
    AvailabilityExceptionUpdate,
)
from .rules import validate_exception_date, validate_exception_fields
from .slots.config import BookingConfig, get_booking_config
from .slots.invalidator import invalidate_service_cache

logger = logging.getLogger(__name__)


class AvailabilityExceptionStore:
    """Reads and writes availability exceptions."""

    def __init__(
        self,
        db: Session,
        config: BookingConfig | None = None,
        redis: Redis | None = None,
    ):
        self.db = db
        self.config = config or get_booking_config()
        self.redis = redis

    # ── Read ─────────────────────────────────────────────────────────────

    def exception_for(
        self,
        service_id: int,
        day: date,
        location_id: int | None = None,
    ) -> Optional[DBException]:
        """Exception in effect for the service on `day`, seen from `location_id`."""
        exc = (
            self.db.query(DBException)
            .filter(
                DBException.service_id == service_id,
                DBException.exception_date == day,
            )
            .first()
        )
        if exc is None:
            return None
        if exc.location_id is not None and exc.location_id != location_id:
            return None
        return exc

    def exceptions_between(
        self,
        service_id: int,
        start: date,
        end: date,
        location_id: int | None = None,
    ) -> dict[date, DBException]:
        """Batch lookup of exceptions in [start, end] keyed by date."""
        rows = (
            self.db.query(DBException)
            .filter(
                DBException.service_id == service_id,
                DBException.exception_date >= start,
                DBException.exception_date <= end,
            )
            .all()
        )
        return {
            row.exception_date: row
            for row in rows
            if row.location_id is None or row.location_id == location_id
        }

    def list_for_service(
        self,
        service_id: int,
        start: date | None = None,
        end: date | None = None,
    ) -> list[DBException]:
        query = self.db.query(DBException).filter(DBException.service_id == service_id)
        if start is not None:
            query = query.filter(DBException.exception_date >= start)
        if end is not None:
            query = query.filter(DBException.exception_date <= end)
        return query.order_by(DBException.exception_date).all()

    def get(self, exception_id: int) -> DBException:
        exc = self.db.get(DBException, exception_id)
        if exc is None:
            raise NotFoundError("Availability exception not found", field="exception_id")
        return exc

    # ── Write ────────────────────────────────────────────────────────────

    def upsert(
        self,
        data: AvailabilityExceptionCreate,
        today: date | None = None,
    ) -> DBException:
        """Create the exception for (service, date), replacing any existing one."""
        today = today or self.config.now().date()

        self._check_refs(data.service_id, data.location_id)

        errors = validate_exception_date(data.exception_date, today)
        errors += validate_exception_fields(
            data.exception_type,
            data.start_time,
            data.end_time,
            data.price_modifier,
            data.price_modifier_type,
        )
        raise_if_errors(errors)

        exc = (
            self.db.query(DBException)
            .filter(
                DBException.service_id == data.service_id,
                DBException.exception_date == data.exception_date,
            )
            .first()
        )
        replaced = exc is not None
        if exc is None:
            exc = DBException(service_id=data.service_id, exception_date=data.exception_date)
            self.db.add(exc)

        values = data.model_dump(exclude={"service_id", "exception_date"})
        if data.exception_type == "blocked":
            values.update(start_time=None, end_time=None, price_modifier=None)

        self._assign(exc, values)
        self.db.commit()
        self.db.refresh(exc)

        invalidate_service_cache(self.redis, exc.service_id, [exc.exception_date])
        logger.info(
            f"Availability exception {'replaced' if replaced else 'created'}: "
            f"service={exc.service_id} date={exc.exception_date} type={exc.exception_type}"
        )
        return exc

    def update(
        self,
        exception_id: int,
        data: AvailabilityExceptionUpdate,
        today: date | None = None,
    ) -> DBException:
        today = today or self.config.now().date()
        exc = self.get(exception_id)
        changes = data.model_dump(exclude_unset=True)

        # null means unchanged for the columns that cannot be cleared
        new_date = changes.get("exception_date") or exc.exception_date
        new_type = changes.get("exception_type") or exc.exception_type
        changes.update(exception_date=new_date, exception_type=new_type)
        merged = {
            "start_time": changes.get("start_time", exc.start_time),
            "end_time": changes.get("end_time", exc.end_time),
            "price_modifier": changes.get("price_modifier", exc.price_modifier),
            "price_modifier_type": changes.get("price_modifier_type", exc.price_modifier_type),
        }

        if "location_id" in changes:
            self._check_refs(exc.service_id, changes["location_id"])

        errors = []
        if new_date != exc.exception_date:
            errors += validate_exception_date(new_date, today)
        errors += validate_exception_fields(new_type, **merged)
        raise_if_errors(errors)

        old_date = exc.exception_date
        if new_date != old_date:
            # Moving onto a date that already has an exception: last write wins
            (
                self.db.query(DBException)
                .filter(
                    DBException.service_id == exc.service_id,
                    DBException.exception_date == new_date,
                    DBException.id != exc.id,
                )
                .delete(synchronize_session=False)
            )

        if new_type == "blocked":
            # blocked carries no hours or pricing
            changes.update(start_time=None, end_time=None, price_modifier=None)

        self._assign(exc, changes)
        self.db.commit()
        self.db.refresh(exc)

        invalidate_service_cache(self.redis, exc.service_id, sorted({old_date, exc.exception_date}))
        logger.info(f"Availability exception updated: id={exc.id} service={exc.service_id}")
        return exc

    def delete(self, exception_id: int) -> None:
        exc = self.get(exception_id)
        service_id, day = exc.service_id, exc.exception_date
        self.db.delete(exc)
        self.db.commit()

        invalidate_service_cache(self.redis, service_id, [day])
        logger.info(f"Availability exception deleted: id={exception_id} service={service_id}")

    # ── Helpers ──────────────────────────────────────────────────────────

    def _check_refs(self, service_id: int, location_id: int | None) -> None:
        if self.db.get(DBService, service_id) is None:
            raise NotFoundError("Service not found", field="service_id")
        if location_id is not None:
            location = self.db.get(DBLocation, location_id)
            if location is None or location.service_id != service_id:
                raise NotFoundError("Service location not found", field="location_id")

    @staticmethod
    def _assign(exc: DBException, values: dict) -> None:
        for name, value in values.items():
            setattr(exc, name, value)
