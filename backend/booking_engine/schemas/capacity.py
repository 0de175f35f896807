# backend/booking_engine/schemas/capacity.py

from datetime import date
from typing import Literal, Optional
from pydantic import BaseModel, Field


class BulkCapacityUpdate(BaseModel):
    service_id: int
    location_id: Optional[int] = None

    start_date: date
    end_date: date
    action: Literal["block", "unblock", "set_capacity"]
    capacity: Optional[int] = Field(None, ge=1, le=50, description="Required for set_capacity")
    reason: Optional[str] = Field(None, max_length=255)

    model_config = {"from_attributes": True}


class BulkUpdateResultRead(BaseModel):
    action: str
    start_date: date
    end_date: date
    updated_days: list[date]
    flagged_days: list[date]
    reason: Optional[str] = None

    model_config = {"from_attributes": True}


class CapacityDayRead(BaseModel):
    day: date
    capacity: int
    consumed: int
    available: int
    is_blocked: bool
    needs_review: bool
    status: str

    model_config = {"from_attributes": True}


class CapacitySummaryRead(BaseModel):
    service_id: int
    location_id: Optional[int] = None
    days: list[CapacityDayRead]
