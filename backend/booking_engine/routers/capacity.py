# backend/booking_engine/routers/capacity.py

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from ..schemas.capacity import (
    BulkCapacityUpdate,
    BulkUpdateResultRead,
    CapacityDayRead,
    CapacitySummaryRead,
)
from ..services.capacity_ledger import CapacityLedger
from .deps import get_ledger

router = APIRouter(prefix="/capacity", tags=["capacity"])


@router.post("/bulk", response_model=BulkUpdateResultRead)
def bulk_update_capacity(
    data: BulkCapacityUpdate,
    ledger: CapacityLedger = Depends(get_ledger),
):
    return ledger.bulk_update(
        data.service_id,
        data.location_id,
        data.start_date,
        data.end_date,
        data.action,
        capacity=data.capacity,
        reason=data.reason,
    )


@router.get("/summary", response_model=CapacitySummaryRead)
def capacity_summary(
    service_id: int,
    start_date: date,
    end_date: date,
    location_id: Optional[int] = None,
    ledger: CapacityLedger = Depends(get_ledger),
):
    rows = ledger.summary(service_id, location_id, start_date, end_date)
    return CapacitySummaryRead(
        service_id=service_id,
        location_id=location_id,
        days=[
            CapacityDayRead(
                day=row.day,
                capacity=row.capacity,
                consumed=row.consumed,
                available=row.available,
                is_blocked=row.is_blocked,
                needs_review=row.needs_review,
                status=row.status,
            )
            for row in rows
        ],
    )
