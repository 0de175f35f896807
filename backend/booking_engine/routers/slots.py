# backend/booking_engine/routers/slots.py
"""
Slots API endpoints.

GET /slots        - Open slots of a service or package over a horizon
GET /slots/check  - Is one start time bookable right now
"""

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query

from ..errors import ValidationError
from ..schemas.slots import AvailabilityQuery, BookableCheck, OpenSlotsResponse, SlotRead
from ..services.availability import AvailabilityResolver
from ..services.targets import target_from_ids
from .deps import get_resolver

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("/", response_model=OpenSlotsResponse)
def list_open_slots(
    query: Annotated[AvailabilityQuery, Query()],
    resolver: AvailabilityResolver = Depends(get_resolver),
):
    target = target_from_ids(query.service_id, query.service_package_id, query.selected_optional_services)
    now = resolver.config.now()
    start_date = max(query.start_date or now.date(), now.date())

    slots = resolver.list_open_slots(
        target,
        location_id=query.location_id,
        days_ahead=query.days_ahead,
        start_date=start_date,
        duration_override=query.duration_minutes,
        now=now,
    )
    return OpenSlotsResponse(
        service_id=query.service_id,
        service_package_id=query.service_package_id,
        location_id=query.location_id,
        start_date=start_date,
        days_ahead=query.days_ahead,
        slots=[
            SlotRead(
                start=s.start,
                end=s.end,
                duration_minutes=s.duration_minutes,
                service_id=s.service_id,
                package_id=s.package_id,
                location_id=s.location_id,
                price=s.price,
            )
            for s in slots
        ],
    )


@router.get("/check", response_model=BookableCheck)
def check_slot(
    scheduled_at: datetime,
    service_id: Optional[int] = None,
    service_package_id: Optional[int] = None,
    location_id: Optional[int] = None,
    selected_optional_services: Annotated[list[int], Query()] = [],
    duration_minutes: Optional[int] = Query(None, ge=15, le=480),
    resolver: AvailabilityResolver = Depends(get_resolver),
):
    try:
        target = target_from_ids(service_id, service_package_id, selected_optional_services)
    except ValueError as e:
        raise ValidationError(str(e), field="service_id") from None

    plan = resolver.plan(target, location_id, scheduled_at, duration_minutes)
    reason = resolver.unavailable_reason(plan)
    return BookableCheck(scheduled_at=plan.start, bookable=reason is None, reason=reason)
