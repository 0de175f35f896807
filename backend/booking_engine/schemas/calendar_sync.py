# backend/booking_engine/schemas/calendar_sync.py

from datetime import datetime
from typing import Annotated, Optional
from pydantic import BaseModel, Field

COLOR_PATTERN = r"^#[a-fA-F0-9]{6}$"

ReminderMinutes = Annotated[int, Field(ge=0, le=10080)]


class CalendarIntegrationCreate(BaseModel):
    user_id: int
    provider: str = Field(default="google", max_length=50)

    sync_frequency_minutes: int = Field(default=60, ge=5, le=1440)
    reminder_minutes: list[ReminderMinutes] = Field(default_factory=list)
    calendar_color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)

    model_config = {"from_attributes": True}


class CalendarSyncSettingsUpdate(BaseModel):
    """Partial update of sync settings."""
    sync_frequency_minutes: Optional[int] = Field(default=None, ge=5, le=1440)
    reminder_minutes: Optional[list[ReminderMinutes]] = None
    calendar_color: Optional[str] = Field(default=None, pattern=COLOR_PATTERN)
    is_active: Optional[bool] = None

    model_config = {"from_attributes": True}


class CalendarIntegrationRead(BaseModel):
    id: int
    user_id: int
    provider: str

    sync_frequency_minutes: int
    reminder_minutes: list[int] = []
    calendar_color: Optional[str] = None
    is_active: bool
    last_sync_at: Optional[datetime] = None
    next_sync_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
