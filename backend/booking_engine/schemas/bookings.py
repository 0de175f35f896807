# backend/booking_engine/schemas/bookings.py

import json
from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class BookingCreate(BaseModel):
    user_id: int
    service_id: Optional[int] = None
    service_package_id: Optional[int] = None
    location_id: Optional[int] = None

    scheduled_at: datetime
    duration_minutes: Optional[int] = Field(None, ge=15, le=480, description="Override of the service duration")
    selected_optional_services: list[int] = Field(default_factory=list)

    client_name: str = Field(..., min_length=1, max_length=255)
    client_email: str = Field(..., pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    client_phone: Optional[str] = Field(None, max_length=50)

    notes: Optional[str] = Field(None, max_length=1000)
    special_requirements: Optional[str] = Field(None, max_length=1000)
    metadata: dict[str, Any] = Field(default_factory=dict)
    requires_consultation: bool = False

    model_config = {"from_attributes": True}

    @model_validator(mode="after")
    def one_target(self):
        if (self.service_id is None) == (self.service_package_id is None):
            raise ValueError("Exactly one of service_id / service_package_id must be set")
        if self.service_id is not None and self.selected_optional_services:
            raise ValueError("selected_optional_services only applies to package bookings")
        return self


class BookingUpdate(BaseModel):
    """Generic update. Moving the booking is refused within 24 hours of its start."""
    scheduled_at: Optional[datetime] = None
    location_id: Optional[int] = None

    client_name: Optional[str] = Field(None, min_length=1, max_length=255)
    client_phone: Optional[str] = Field(None, max_length=50)
    notes: Optional[str] = Field(None, max_length=1000)
    special_requirements: Optional[str] = Field(None, max_length=1000)

    model_config = {"from_attributes": True}


class BookingReschedule(BaseModel):
    scheduled_at: datetime
    reason: Optional[str] = Field(None, max_length=500)
    notify_client: bool = True

    model_config = {"from_attributes": True}


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
    notify_client: bool = True


class ConsultationComplete(BaseModel):
    notes: str = Field(..., min_length=1, max_length=2000)
    proceed_with_booking: bool
    recommended_services: list[int] = Field(default_factory=list)
    estimated_duration_minutes: Optional[int] = Field(None, ge=15, le=480)
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BookingRead(BaseModel):
    id: int
    reference: str
    user_id: int

    service_id: Optional[int] = None
    service_package_id: Optional[int] = None
    location_id: Optional[int] = None

    scheduled_at: datetime
    ends_at: datetime
    duration_minutes: int
    status: str

    client_name: str
    client_email: str
    client_phone: Optional[str] = None
    notes: Optional[str] = None
    special_requirements: Optional[str] = None
    selected_optional_services: list[int] = []

    requires_consultation: bool
    consultation_completed_at: Optional[datetime] = None
    consultation_notes: Optional[str] = None
    consultation_proceed: Optional[bool] = None
    recommended_services: list[int] = []
    estimated_duration_minutes: Optional[int] = None

    reschedule_count: int = 0
    reschedule_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None

    model_config = {"from_attributes": True}

    @field_validator("selected_optional_services", "recommended_services", mode="before")
    @classmethod
    def decode_id_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return json.loads(value or "[]")
        return value
