# backend/booking_engine/schemas/availability_exceptions.py

from datetime import date
from typing import Literal, Optional
from pydantic import BaseModel, Field

TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

ExceptionType = Literal["blocked", "custom_hours", "special_pricing"]


class AvailabilityExceptionCreate(BaseModel):
    service_id: int
    location_id: Optional[int] = None

    exception_date: date
    exception_type: ExceptionType

    start_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    price_modifier: Optional[int] = None
    price_modifier_type: Literal["fixed", "percentage"] = "fixed"

    reason: Optional[str] = Field(default=None, max_length=255)

    model_config = {"from_attributes": True}


class AvailabilityExceptionUpdate(BaseModel):
    location_id: Optional[int] = None
    exception_date: Optional[date] = None
    exception_type: Optional[ExceptionType] = None

    start_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    end_time: Optional[str] = Field(default=None, pattern=TIME_PATTERN)
    price_modifier: Optional[int] = None
    price_modifier_type: Optional[Literal["fixed", "percentage"]] = None

    reason: Optional[str] = Field(default=None, max_length=255)

    model_config = {"from_attributes": True}


class AvailabilityExceptionRead(BaseModel):
    id: int

    service_id: int
    location_id: Optional[int] = None

    exception_date: date
    exception_type: str

    start_time: Optional[str] = None
    end_time: Optional[str] = None
    price_modifier: Optional[int] = None
    price_modifier_type: Optional[str] = None
    reason: Optional[str] = None

    model_config = {"from_attributes": True}
