# backend/booking_engine/routers/integrations.py
# Calendar integration sync settings (provider OAuth lives elsewhere)

import json

from fastapi import APIRouter, Depends, status

from ..schemas.calendar_sync import (
    CalendarIntegrationCreate,
    CalendarIntegrationRead,
    CalendarSyncSettingsUpdate,
)
from ..services.calendar_sync import CalendarSyncCoordinator
from .deps import get_calendar_sync

router = APIRouter(prefix="/integrations", tags=["integrations"])


def _read(coordinator: CalendarSyncCoordinator, integration) -> CalendarIntegrationRead:
    return CalendarIntegrationRead(
        id=integration.id,
        user_id=integration.user_id,
        provider=integration.provider,
        sync_frequency_minutes=integration.sync_frequency_minutes,
        reminder_minutes=json.loads(integration.reminder_minutes or "[]"),
        calendar_color=integration.calendar_color,
        is_active=bool(integration.is_active),
        last_sync_at=integration.last_sync_at,
        next_sync_at=coordinator.next_sync_at(integration) if integration.is_active else None,
    )


@router.get("/calendar/due", response_model=list[CalendarIntegrationRead])
def list_due_integrations(coordinator: CalendarSyncCoordinator = Depends(get_calendar_sync)):
    return [_read(coordinator, i) for i in coordinator.due_integrations()]


@router.post(
    "/calendar", response_model=CalendarIntegrationRead, status_code=status.HTTP_201_CREATED
)
def create_calendar_integration(
    data: CalendarIntegrationCreate,
    coordinator: CalendarSyncCoordinator = Depends(get_calendar_sync),
):
    return _read(coordinator, coordinator.create_integration(data))


@router.get("/calendar/{id}", response_model=CalendarIntegrationRead)
def get_calendar_integration(
    id: int,
    coordinator: CalendarSyncCoordinator = Depends(get_calendar_sync),
):
    return _read(coordinator, coordinator.get(id))


@router.patch("/calendar/{id}/settings", response_model=CalendarIntegrationRead)
def update_sync_settings(
    id: int,
    data: CalendarSyncSettingsUpdate,
    coordinator: CalendarSyncCoordinator = Depends(get_calendar_sync),
):
    return _read(coordinator, coordinator.update_settings(id, data))


@router.post("/calendar/{id}/synced", response_model=CalendarIntegrationRead)
def mark_integration_synced(
    id: int,
    coordinator: CalendarSyncCoordinator = Depends(get_calendar_sync),
):
    return _read(coordinator, coordinator.mark_synced(id))
