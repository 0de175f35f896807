# backend/booking_engine/schemas/slots.py
"""
Pydantic schemas for slots API.
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field, model_validator


class AvailabilityQuery(BaseModel):
    """Open slots request for a service or a package."""
    service_id: Optional[int] = None
    service_package_id: Optional[int] = None
    location_id: Optional[int] = None
    selected_optional_services: list[int] = Field(default_factory=list)

    start_date: Optional[date] = None  # Defaults to today
    duration_minutes: Optional[int] = Field(None, ge=15, le=480)
    days_ahead: int = Field(7, ge=1, le=90)

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def one_target(self):
        if (self.service_id is None) == (self.service_package_id is None):
            raise ValueError("Exactly one of service_id / service_package_id must be set")
        return self


class SlotRead(BaseModel):
    start: datetime
    end: datetime
    duration_minutes: int
    service_id: Optional[int] = None
    package_id: Optional[int] = None
    location_id: Optional[int] = None
    price: Optional[int] = None

    model_config = {"from_attributes": True}


class OpenSlotsResponse(BaseModel):
    service_id: Optional[int] = None
    service_package_id: Optional[int] = None
    location_id: Optional[int] = None
    start_date: date
    days_ahead: int
    slots: list[SlotRead]

    model_config = {"from_attributes": True}


class BookableCheck(BaseModel):
    scheduled_at: datetime
    bookable: bool
    reason: Optional[str] = Field(None, description="inactive / advance_window / blocked / closed / no_capacity")
